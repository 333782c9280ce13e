"""Kubernetes manifests for the management-plane stack.

Manifests are built as plain dicts and serialized with PyYAML. Multi-line
secret material is emitted as YAML literal blocks under ``stringData`` so the
cluster stores it verbatim without pre-encoding.
"""

from typing import Any

import yaml

from kplane.kube.kubeconfig import ContextRef, KubeConfig, NamedCluster, NamedContext, NamedUser
from kplane.kube.kubeconfig import dump as dump_kubeconfig
from kplane.pki.certs import APISERVER_NAME, APISERVER_PORT, CertBundle

API_GROUP = "controlplane.kplane.dev"
API_VERSION = f"{API_GROUP}/v1alpha1"

ETCD_NAME = "kplane-etcd"
ETCD_CLIENT_PORT = 2379
ETCD_PEER_PORT = 2380

ADMIN_USER = "kplane-admin"
ADMIN_GROUP = "system:masters"

INGRESS_CONFIG_NAME = "kplane-management"
INGRESS_PATH_PREFIX = "/clusters/"
KUBECONFIG_SECRET_NAME = "apiserver-kubeconfig"
TOKEN_AUTH_SECRET_NAME = "apiserver-token-auth"
OPERATOR_CONFIG_NAME = "operator-config"
DEFAULT_CLASS_NAME = "starter"


class LiteralStr(str):
    """String emitted as a YAML literal block scalar."""


class ManifestDumper(yaml.SafeDumper):
    """Safe dumper that renders ``LiteralStr`` values as literal blocks."""


def _represent_literal(dumper: yaml.SafeDumper, data: LiteralStr) -> yaml.ScalarNode:
    return dumper.represent_scalar("tag:yaml.org,2002:str", str(data), style="|")


ManifestDumper.add_representer(LiteralStr, _represent_literal)


def literal(value: bytes | str) -> LiteralStr:
    """Wrap PEM or other multi-line text for literal-block output."""
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return LiteralStr(value)


def to_yaml(*documents: dict[str, Any]) -> str:
    """Serialize one or more manifests as a multi-document YAML stream."""
    return yaml.dump_all(
        documents,
        Dumper=ManifestDumper,
        sort_keys=False,
        default_flow_style=False,
        explicit_start=len(documents) > 1,
    )


def _metadata(name: str, namespace: str = "") -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    return metadata


def secret(
    name: str,
    namespace: str,
    string_data: dict[str, Any],
    secret_type: str = "Opaque",
) -> dict[str, Any]:
    """Build a Secret carrying literal (not base64-encoded) values."""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(name, namespace),
        "type": secret_type,
        "stringData": string_data,
    }


def config_map(name: str, namespace: str, data: dict[str, Any]) -> dict[str, Any]:
    """Build a ConfigMap."""
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(name, namespace),
        "data": data,
    }


def service(name: str, namespace: str, ports: list[tuple[str, int]]) -> dict[str, Any]:
    """Build a ClusterIP Service selecting pods labelled ``app=<name>``."""
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(name, namespace),
        "spec": {
            "selector": {"app": name},
            "ports": [
                {"name": port_name, "port": port, "targetPort": port}
                for port_name, port in ports
            ],
        },
    }


def deployment(
    name: str,
    namespace: str,
    container: dict[str, Any],
    volumes: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Build a single-replica Deployment labelled ``app=<name>``."""
    pod_spec: dict[str, Any] = {"containers": [container]}
    if volumes:
        pod_spec["volumes"] = volumes
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(name, namespace),
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": pod_spec,
            },
        },
    }


def render_secrets(namespace: str, certs: CertBundle) -> str:
    """Render the secrets holding all generated key and certificate material."""
    return to_yaml(
        secret(
            "apiserver-serviceaccount-keys",
            namespace,
            {
                "sa.key": literal(certs.service_account_key),
                "sa.pub": literal(certs.service_account_pub),
            },
        ),
        secret(
            "kplane-cluster-signing-keys",
            namespace,
            {"ca.crt": literal(certs.ca_cert), "ca.key": literal(certs.ca_key)},
        ),
        secret(
            "kplane-kubelet-client",
            namespace,
            {
                "client.crt": literal(certs.kubelet_client_cert),
                "client.key": literal(certs.kubelet_client_key),
            },
        ),
        secret(
            "kplane-apiserver-tls",
            namespace,
            {
                "tls.crt": literal(certs.apiserver_tls_cert),
                "tls.key": literal(certs.apiserver_tls_key),
            },
            secret_type="kubernetes.io/tls",
        ),
    )


def etcd_url(namespace: str, port: int = ETCD_CLIENT_PORT) -> str:
    """In-cluster URL of the etcd service."""
    return f"http://{ETCD_NAME}.{namespace}.svc.cluster.local:{port}"


def render_etcd(namespace: str, image: str) -> str:
    """Render the etcd Service and Deployment.

    etcd runs without authentication; it is only reachable inside the cluster.
    """
    peer_url = etcd_url(namespace, ETCD_PEER_PORT)
    env = {
        "ALLOW_NONE_AUTHENTICATION": "yes",
        "ETCD_LISTEN_CLIENT_URLS": f"http://0.0.0.0:{ETCD_CLIENT_PORT}",
        "ETCD_ADVERTISE_CLIENT_URLS": etcd_url(namespace),
        "ETCD_LISTEN_PEER_URLS": f"http://0.0.0.0:{ETCD_PEER_PORT}",
        "ETCD_INITIAL_ADVERTISE_PEER_URLS": peer_url,
        "ETCD_INITIAL_CLUSTER": f"default={peer_url}",
        "ETCD_NAME": "default",
    }
    container = {
        "name": "etcd",
        "image": image,
        "env": [{"name": key, "value": value} for key, value in env.items()],
        "ports": [{"containerPort": ETCD_CLIENT_PORT}, {"containerPort": ETCD_PEER_PORT}],
    }
    return to_yaml(
        service(ETCD_NAME, namespace, [("client", ETCD_CLIENT_PORT), ("peer", ETCD_PEER_PORT)]),
        deployment(ETCD_NAME, namespace, container),
    )


# (volume name, secret name, mount path)
_APISERVER_MOUNTS = [
    ("apiserver-tls", "kplane-apiserver-tls", "/var/run/kplane/tls"),
    ("sa-keys", "apiserver-serviceaccount-keys", "/var/run/kplane/sa"),
    ("cluster-signing-keys", "kplane-cluster-signing-keys", "/var/run/kplane/cluster-signing"),
    ("kubelet-client", "kplane-kubelet-client", "/var/run/kplane/kubelet-client"),
    ("token-auth", TOKEN_AUTH_SECRET_NAME, "/var/run/kplane/token"),
]


def apiserver_args(namespace: str) -> list[str]:
    """Command-line flags wiring the API server to etcd and its mounted secrets."""
    return [
        f"--etcd-servers={etcd_url(namespace)}",
        f"--secure-port={APISERVER_PORT}",
        "--service-cluster-ip-range=10.96.0.0/12",
        "--allow-privileged=true",
        "--authorization-mode=AlwaysAllow",
        "--anonymous-auth=true",
        "--enable-bootstrap-token-auth=true",
        "--api-audiences=https://kplane.local",
        "--service-account-issuer=https://kplane.local",
        "--service-account-signing-key-file=/var/run/kplane/sa/sa.key",
        "--service-account-key-file=/var/run/kplane/sa/sa.pub",
        "--service-account-lookup=false",
        "--token-auth-file=/var/run/kplane/token/token.csv",
        "--kubelet-client-certificate=/var/run/kplane/kubelet-client/client.crt",
        "--kubelet-client-key=/var/run/kplane/kubelet-client/client.key",
        "--kubelet-certificate-authority=/var/run/kplane/cluster-signing/ca.crt",
        "--tls-cert-file=/var/run/kplane/tls/tls.crt",
        "--tls-private-key-file=/var/run/kplane/tls/tls.key",
        "--client-ca-file=/var/run/kplane/cluster-signing/ca.crt",
        "--v=2",
    ]


def render_apiserver(namespace: str, image: str) -> str:
    """Render the API server Service and Deployment."""
    mounts = []
    for volume, _, path in _APISERVER_MOUNTS:
        mount: dict[str, Any] = {"name": volume, "mountPath": path}
        if volume != "apiserver-tls":
            mount["readOnly"] = True
        mounts.append(mount)

    container = {
        "name": "apiserver",
        "image": image,
        "imagePullPolicy": "IfNotPresent",
        "args": apiserver_args(namespace),
        "ports": [{"containerPort": APISERVER_PORT}],
        "volumeMounts": mounts,
    }
    volumes = [
        {"name": volume, "secret": {"secretName": secret_name}}
        for volume, secret_name, _ in _APISERVER_MOUNTS
    ]
    return to_yaml(
        service(APISERVER_NAME, namespace, [("https", APISERVER_PORT)]),
        deployment(APISERVER_NAME, namespace, container, volumes),
    )


def render_ingress_route(namespace: str) -> str:
    """Render the Ingress routing ``/clusters/`` to the API server over TLS.

    The backend presents a leaf signed by the generated CA, so the ingress
    controller is told not to verify it.
    """
    ingress = {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {
            **_metadata(APISERVER_NAME, namespace),
            "annotations": {
                "nginx.ingress.kubernetes.io/backend-protocol": "HTTPS",
                "nginx.ingress.kubernetes.io/proxy-ssl-verify": "off",
            },
        },
        "spec": {
            "ingressClassName": "nginx",
            "rules": [
                {
                    "http": {
                        "paths": [
                            {
                                "path": INGRESS_PATH_PREFIX,
                                "pathType": "Prefix",
                                "backend": {
                                    "service": {
                                        "name": APISERVER_NAME,
                                        "port": {"number": APISERVER_PORT},
                                    }
                                },
                            }
                        ]
                    }
                }
            ],
        },
    }
    return to_yaml(ingress)


def render_operator_config(namespace: str, raw_config: str) -> str:
    """Render the operator ConfigMap wrapping the embedded operator config."""
    return to_yaml(
        config_map(OPERATOR_CONFIG_NAME, namespace, {"operatorconfig.yaml": literal(raw_config)})
    )


def token_auth_line(token: str) -> str:
    """Static token file entry mapping the admin token to a superuser."""
    return f"{token},{ADMIN_USER},1,{ADMIN_GROUP}"


def render_token_auth_secret(namespace: str, token: str) -> str:
    """Render the static token-auth secret mounted by the API server."""
    return to_yaml(
        secret(TOKEN_AUTH_SECRET_NAME, namespace, {"token.csv": token_auth_line(token)})
    )


def apiserver_kubeconfig(certs: CertBundle) -> bytes:
    """Build a token-authenticated kubeconfig for the API server service."""
    config = KubeConfig(
        clusters=[
            NamedCluster(
                name=certs.apiserver_server_name,
                cluster={
                    "server": certs.apiserver_service_address,
                    "insecure-skip-tls-verify": True,
                },
            )
        ],
        users=[NamedUser(name=ADMIN_USER, user={"token": certs.admin_token})],
        contexts=[
            NamedContext(
                name=certs.apiserver_server_name,
                context=ContextRef(cluster=certs.apiserver_server_name, user=ADMIN_USER),
            )
        ],
        current_context=certs.apiserver_server_name,
    )
    return dump_kubeconfig(config)


def render_apiserver_kubeconfig_secret(namespace: str, certs: CertBundle) -> str:
    """Render the secret carrying a ready-to-use API server kubeconfig."""
    return to_yaml(
        secret(
            KUBECONFIG_SECRET_NAME,
            namespace,
            {"kubeconfig": literal(apiserver_kubeconfig(certs))},
        )
    )


def render_default_control_plane_class() -> str:
    """Render the default ``starter`` ControlPlaneClass."""
    return to_yaml(
        {
            "apiVersion": API_VERSION,
            "kind": "ControlPlaneClass",
            "metadata": _metadata(DEFAULT_CLASS_NAME),
            "spec": {
                "addons": ["starter"],
                "auth": {"model": "basic", "defaultRole": "admin"},
                "modesAllowed": ["Virtual"],
            },
        }
    )


def render_ingress_config(namespace: str, port: int) -> str:
    """Render the ConfigMap recording the host ingress port."""
    return to_yaml(config_map(INGRESS_CONFIG_NAME, namespace, {"ingressPort": str(port)}))


def internal_endpoint(namespace: str, control_plane: str) -> str:
    """Endpoint of a control plane as seen from inside the management cluster."""
    return (
        f"https://{APISERVER_NAME}.{namespace}.svc.cluster.local:{APISERVER_PORT}"
        f"{INGRESS_PATH_PREFIX}{control_plane}/control-plane"
    )


def external_endpoint(ingress_port: int, control_plane: str) -> str:
    """Endpoint of a control plane as seen from the host through the ingress."""
    return f"https://127.0.0.1:{ingress_port}{INGRESS_PATH_PREFIX}{control_plane}/control-plane"


def render_control_plane(
    name: str,
    class_name: str,
    internal: str,
    external: str,
) -> str:
    """Render a ControlPlaneEndpoint and the ControlPlane referencing it."""
    endpoint_name = f"{name}-endpoint"
    return to_yaml(
        {
            "apiVersion": API_VERSION,
            "kind": "ControlPlaneEndpoint",
            "metadata": _metadata(endpoint_name),
            "spec": {"endpoint": internal, "externalEndpoint": external},
        },
        {
            "apiVersion": API_VERSION,
            "kind": "ControlPlane",
            "metadata": _metadata(name),
            "spec": {
                "classRef": {"name": class_name},
                "endpointRef": {"name": endpoint_name},
            },
        },
    )
