"""Readiness polling for resources reconciled by the operator."""

import asyncio
import time

from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_delay, wait_fixed

from kplane.core.errors import ReadinessTimeoutError
from kplane.core.logging import LogSink, NullSink, get_logger
from kplane.kube.kubectl import Kubectl
from kplane.system.command import CommandError

logger = get_logger(__name__)

READY_JSONPATH = '{.status.conditions[?(@.type=="Ready")].status}'
ENDPOINT_JSONPATH = "{.status.endpoint}"
READY_VALUE = "True"

POLL_INTERVAL = 2.0
STATUS_INTERVAL = 10.0


class _NotReady(Exception):
    """Signals one more polling round."""


class _StatusReporter:
    """Emits at most one status line per interval."""

    def __init__(self, sink: LogSink, interval: float) -> None:
        self.sink = sink
        self.interval = interval
        self._last: float | None = None

    def due(self) -> bool:
        now = time.monotonic()
        return self._last is None or now - self._last >= self.interval

    def emit(self, kind: str, ready: str, endpoint: str) -> None:
        if not ready and not endpoint:
            self.sink.line(f"waiting for {kind} to reconcile...")
        else:
            self.sink.line(f"{kind} status: ready={ready} endpoint={endpoint}")
        self._last = time.monotonic()


async def _read(kubectl: Kubectl, context: str, kind: str, name: str, namespace: str, jsonpath: str) -> str:
    try:
        return await kubectl.get_jsonpath(context, kind, name, namespace, jsonpath)
    except CommandError as e:
        logger.debug("Status query failed", resource=f"{kind}/{name}", error=e.output)
        return ""


async def wait_for_ready(
    kubectl: Kubectl,
    context: str,
    kind: str,
    name: str,
    namespace: str = "",
    timeout: float = 300.0,
    sink: LogSink | None = None,
    interval: float = POLL_INTERVAL,
    status_interval: float = STATUS_INTERVAL,
) -> None:
    """Block until a resource reports a ``Ready`` condition of ``True``.

    The condition is queried every ``interval`` seconds. Query failures count
    as not ready. While waiting, a status line with the readiness and
    endpoint fields is written to ``sink`` at most once per
    ``status_interval``. Cancelling the calling task stops polling at once.

    Args:
        kubectl: kubectl wrapper
        context: Kubeconfig context of the management cluster
        kind: Resource type (e.g. "controlplane")
        name: Resource name
        namespace: Resource namespace, empty for cluster-scoped resources
        timeout: Seconds to wait before giving up
        sink: Receives status lines
        interval: Seconds between queries
        status_interval: Minimum seconds between status lines

    Raises:
        ReadinessTimeoutError: If the resource is not ready within ``timeout``
    """
    reporter = _StatusReporter(sink or NullSink(), status_interval)

    async def check() -> None:
        ready = await _read(kubectl, context, kind, name, namespace, READY_JSONPATH)
        if ready == READY_VALUE:
            return
        if reporter.due():
            endpoint = await _read(kubectl, context, kind, name, namespace, ENDPOINT_JSONPATH)
            reporter.emit(kind, ready, endpoint)
        raise _NotReady()

    message = f"timed out after {timeout:g}s waiting for {kind} {name!r} to become ready"
    try:
        # A hung query must not hold the caller past one extra interval.
        async with asyncio.timeout(timeout + interval):
            async for attempt in AsyncRetrying(
                wait=wait_fixed(interval),
                stop=stop_after_delay(timeout),
                retry=retry_if_exception_type(_NotReady),
            ):
                with attempt:
                    await check()
    except RetryError as e:
        raise ReadinessTimeoutError(message) from e
    except TimeoutError as e:
        raise ReadinessTimeoutError(message) from e

    logger.info("Resource is ready", resource=f"{kind}/{name}")
