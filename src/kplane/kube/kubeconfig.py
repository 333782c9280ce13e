"""Kubeconfig parsing, merging and rewriting.

Every operation parses the input into a ``KubeConfig`` model, mutates it and
serializes it back to YAML. Fields kplane does not know about are carried
through untouched, and serialization is deterministic so repeating an
operation yields identical bytes.
"""

import os
import tempfile
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from kplane.core.errors import ContextNotFoundError, KubeconfigError
from kplane.core.logging import get_logger

logger = get_logger(__name__)


class NamedCluster(BaseModel):
    """A named cluster entry (server URL, CA data, TLS settings)."""

    model_config = ConfigDict(extra="allow")

    name: str
    cluster: dict[str, Any] = Field(default_factory=dict)

    @field_validator("cluster", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class NamedUser(BaseModel):
    """A named user entry holding credential material."""

    model_config = ConfigDict(extra="allow")

    name: str
    user: dict[str, Any] = Field(default_factory=dict)

    @field_validator("user", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class ContextRef(BaseModel):
    """The cluster/user pair a context points at."""

    model_config = ConfigDict(extra="allow")

    cluster: str = ""
    user: str = ""
    namespace: str | None = None

    @field_validator("cluster", "user", mode="before")
    @classmethod
    def _null_as_blank(cls, value: Any) -> Any:
        return "" if value is None else value


class NamedContext(BaseModel):
    """A named context entry."""

    model_config = ConfigDict(extra="allow")

    name: str
    context: ContextRef = Field(default_factory=ContextRef)

    @field_validator("context", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class KubeConfig(BaseModel):
    """A multi-cluster kubeconfig document."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    api_version: str = Field("v1", alias="apiVersion")
    kind: str = "Config"
    clusters: list[NamedCluster] = Field(default_factory=list)
    contexts: list[NamedContext] = Field(default_factory=list)
    current_context: str = Field("", alias="current-context")
    preferences: dict[str, Any] = Field(default_factory=dict)
    users: list[NamedUser] = Field(default_factory=list)

    @field_validator("clusters", "contexts", "users", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("preferences", mode="before")
    @classmethod
    def _null_as_empty_mapping(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("current_context", mode="before")
    @classmethod
    def _null_as_blank(cls, value: Any) -> Any:
        return "" if value is None else value

    def context(self, name: str) -> NamedContext | None:
        """Look up a context by exact name."""
        for entry in self.contexts:
            if entry.name == name:
                return entry
        return None


T = TypeVar("T", NamedCluster, NamedUser, NamedContext)


def _dedupe(entries: list[T]) -> list[T]:
    """Collapse entries sharing a name; the last definition wins."""
    by_name: dict[str, T] = {}
    for entry in entries:
        by_name[entry.name] = entry
    return list(by_name.values())


def _upsert(entries: list[T], incoming: list[T]) -> list[T]:
    """Overlay ``incoming`` onto ``entries`` by name; incoming wins on collision."""
    by_name: dict[str, T] = {entry.name: entry for entry in entries}
    for entry in incoming:
        by_name[entry.name] = entry
    return list(by_name.values())


def load(data: bytes | str) -> KubeConfig:
    """Parse kubeconfig bytes.

    Empty input parses as an empty configuration.

    Args:
        data: YAML (or JSON) kubeconfig content

    Returns:
        Parsed configuration

    Raises:
        KubeconfigError: If the data is not a valid kubeconfig
    """
    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise KubeconfigError(f"parse kubeconfig: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise KubeconfigError("parse kubeconfig: document must be a mapping")

    try:
        config = KubeConfig.model_validate(raw)
    except PydanticValidationError as e:
        raise KubeconfigError(f"parse kubeconfig: {e}") from e

    config.clusters = _dedupe(config.clusters)
    config.users = _dedupe(config.users)
    config.contexts = _dedupe(config.contexts)
    return config


def dump(config: KubeConfig) -> bytes:
    """Serialize a kubeconfig to YAML bytes.

    Args:
        config: Configuration to serialize

    Returns:
        YAML document
    """
    data = config.model_dump(mode="json", by_alias=True, exclude_none=True)
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False).encode("utf-8")


def _write(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data``, readable only by the owner."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            os.unlink(tmp_name)
            raise
    except OSError as e:
        raise KubeconfigError(f"write kubeconfig: {e}") from e

    logger.debug("Wrote kubeconfig", path=str(path))


def _read(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise KubeconfigError(f"read kubeconfig: {e}") from e


def merge(base: KubeConfig, incoming: KubeConfig, set_current: bool) -> KubeConfig:
    """Overlay every entry of ``incoming`` onto ``base``.

    Entries only present in ``base`` are kept. On a name collision the
    incoming entry wins.

    Args:
        base: Existing configuration
        incoming: Configuration to merge in
        set_current: Adopt the incoming current context when it is set

    Returns:
        Merged configuration (``base`` is not modified)
    """
    merged = base.model_copy(deep=True)
    merged.clusters = _upsert(merged.clusters, incoming.clusters)
    merged.users = _upsert(merged.users, incoming.users)
    merged.contexts = _upsert(merged.contexts, incoming.contexts)
    if set_current and incoming.current_context:
        merged.current_context = incoming.current_context
    return merged


def merge_and_write(path: Path | str, kubeconfig_data: bytes, set_current: bool) -> None:
    """Merge kubeconfig data into the file at ``path``.

    A missing file is treated as an empty configuration.

    Args:
        path: Kubeconfig file to update
        kubeconfig_data: Kubeconfig to merge in
        set_current: Adopt the incoming current context

    Raises:
        KubeconfigError: If either side fails to parse or the write fails
    """
    path = Path(path)
    incoming = load(kubeconfig_data)

    try:
        existing_data = path.read_bytes()
    except FileNotFoundError:
        existing = KubeConfig()
    except OSError as e:
        raise KubeconfigError(f"read kubeconfig: {e}") from e
    else:
        try:
            existing = load(existing_data)
        except KubeconfigError as e:
            raise KubeconfigError(f"existing kubeconfig {path}: {e}") from e

    _write(path, dump(merge(existing, incoming, set_current)))

    logger.info(
        "Merged kubeconfig",
        path=str(path),
        contexts=",".join(c.name for c in incoming.contexts),
        set_current=set_current,
    )


def rewrite_server(kubeconfig_data: bytes, server: str) -> bytes:
    """Point every cluster entry at ``server``.

    An empty ``server`` leaves the entries untouched.

    Args:
        kubeconfig_data: Kubeconfig to rewrite
        server: New server URL

    Returns:
        Rewritten kubeconfig
    """
    config = load(kubeconfig_data)
    if server:
        for entry in config.clusters:
            entry.cluster["server"] = server
    return dump(config)


def rename_context(kubeconfig_data: bytes, name: str) -> bytes:
    """Collapse every cluster, user and context entry onto one name.

    Generated kubeconfigs carry exactly one of each, so this gives them a
    stable, caller-chosen identity before they are merged. An empty ``name``
    returns the input unchanged (after validating that it parses).

    Args:
        kubeconfig_data: Kubeconfig to rename
        name: Name for the cluster, user and context

    Returns:
        Renamed kubeconfig
    """
    config = load(kubeconfig_data)
    if not name:
        return kubeconfig_data

    old_names = {entry.name for entry in config.clusters}
    old_names.update(entry.name for entry in config.users)
    old_names.update(entry.name for entry in config.contexts)

    if config.clusters:
        config.clusters = [config.clusters[-1].model_copy(update={"name": name})]
    if config.users:
        config.users = [config.users[-1].model_copy(update={"name": name})]
    if config.contexts:
        context = config.contexts[-1]
        ref = context.context.model_copy(update={"cluster": name, "user": name})
        config.contexts = [context.model_copy(update={"name": name, "context": ref})]

    if config.current_context in old_names:
        config.current_context = name

    return dump(config)


def set_current_context(path: Path | str, name: str) -> None:
    """Switch the current context of the kubeconfig at ``path``.

    The file is left untouched when the context does not exist.

    Args:
        path: Kubeconfig file
        name: Context to make current

    Raises:
        KubeconfigError: If name is empty or the file cannot be read/parsed
        ContextNotFoundError: If the context is absent
    """
    if not name:
        raise KubeconfigError("context name is required")

    path = Path(path)
    config = load(_read(path))
    if config.context(name) is None:
        raise ContextNotFoundError(name)

    config.current_context = name
    _write(path, dump(config))


def list_contexts(path: Path | str) -> tuple[list[str], str]:
    """List context names and the current context of a kubeconfig file.

    Args:
        path: Kubeconfig file

    Returns:
        Tuple of (context names, current context)
    """
    config = load(_read(Path(path)))
    return [entry.name for entry in config.contexts], config.current_context
