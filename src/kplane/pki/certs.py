"""PKI bootstrap for the virtual API server stack.

A fresh bundle is generated on every install: a self-signed CA, a
service-account signing keypair, three CA-signed leaf certificates
(kubelet client, API server TLS, admin client) and a static admin token.
Nothing is cached; private material only ever lands in the generated secrets.
"""

import ipaddress
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from kplane.core.errors import CertificateError
from kplane.core.logging import get_logger

logger = get_logger(__name__)

KEY_SIZE = 2048
TOKEN_BYTES = 32
BACKDATE = timedelta(hours=1)
CA_VALIDITY_YEARS = 10
LEAF_VALIDITY_YEARS = 1

APISERVER_NAME = "kplane-apiserver"
APISERVER_PORT = 6443
DEFAULT_NAMESPACE = "kplane-system"


@dataclass(frozen=True)
class CertBundle:
    """Generated trust material for one API server stack.

    All keys and certificates are PEM encoded.
    """

    ca_key: bytes = field(repr=False)
    ca_cert: bytes
    service_account_key: bytes = field(repr=False)
    service_account_pub: bytes
    kubelet_client_key: bytes = field(repr=False)
    kubelet_client_cert: bytes
    apiserver_tls_key: bytes = field(repr=False)
    apiserver_tls_cert: bytes
    admin_key: bytes = field(repr=False)
    admin_cert: bytes
    admin_token: str = field(repr=False)
    apiserver_server_name: str
    apiserver_service_address: str


def apiserver_service_address(namespace: str = DEFAULT_NAMESPACE) -> str:
    """In-cluster URL of the API server service."""
    return f"https://{APISERVER_NAME}.{namespace}.svc.cluster.local:{APISERVER_PORT}"


def apiserver_dns_names(namespace: str = DEFAULT_NAMESPACE) -> list[str]:
    """DNS subject-alternative-names for the API server certificate."""
    return [
        APISERVER_NAME,
        f"{APISERVER_NAME}.{namespace}",
        f"{APISERVER_NAME}.{namespace}.svc",
        f"{APISERVER_NAME}.{namespace}.svc.cluster.local",
        "localhost",
        "*.kplane.example",
        "*.join.kplane.example",
    ]


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year.
        return moment.replace(year=moment.year + years, day=28)


def _generate_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _private_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _public_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _leaf_key_usage() -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=True,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=False,
        crl_sign=False,
        encipher_only=False,
        decipher_only=False,
    )


def _issue_leaf(
    *,
    serial: int,
    subject: x509.Name,
    key: rsa.RSAPrivateKey,
    usage: x509.ObjectIdentifier,
    ca_cert: x509.Certificate,
    ca_key: rsa.RSAPrivateKey,
    now: datetime,
    san: x509.SubjectAlternativeName | None = None,
) -> x509.Certificate:
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(serial)
        .not_valid_before(now - BACKDATE)
        .not_valid_after(_add_years(now, LEAF_VALIDITY_YEARS))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(_leaf_key_usage(), critical=True)
        .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
    )
    if san is not None:
        builder = builder.add_extension(san, critical=False)
    return builder.sign(ca_key, hashes.SHA256())


def _issue_ca(key: rsa.RSAPrivateKey, now: datetime) -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "kplane-ca")])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(1)
        .not_valid_before(now - BACKDATE)
        .not_valid_after(_add_years(now, CA_VALIDITY_YEARS))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )


def generate_cert_bundle(namespace: str = DEFAULT_NAMESPACE) -> CertBundle:
    """Generate a complete trust bundle for an API server in ``namespace``.

    Args:
        namespace: Namespace the API server service lives in

    Returns:
        The generated bundle

    Raises:
        CertificateError: If any key generation or signing step fails
    """
    now = datetime.now(UTC)
    try:
        ca_key = _generate_key()
        ca_cert = _issue_ca(ca_key, now)

        sa_key = _generate_key()

        kubelet_key = _generate_key()
        kubelet_cert = _issue_leaf(
            serial=2,
            subject=x509.Name(
                [
                    x509.NameAttribute(NameOID.ORGANIZATION_NAME, "system:masters"),
                    x509.NameAttribute(NameOID.COMMON_NAME, "system:kube-apiserver"),
                ]
            ),
            key=kubelet_key,
            usage=ExtendedKeyUsageOID.CLIENT_AUTH,
            ca_cert=ca_cert,
            ca_key=ca_key,
            now=now,
        )

        apiserver_key = _generate_key()
        apiserver_cert = _issue_leaf(
            serial=3,
            subject=x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, APISERVER_NAME)]),
            key=apiserver_key,
            usage=ExtendedKeyUsageOID.SERVER_AUTH,
            ca_cert=ca_cert,
            ca_key=ca_key,
            now=now,
            san=x509.SubjectAlternativeName(
                [x509.DNSName(dns) for dns in apiserver_dns_names(namespace)]
                + [x509.IPAddress(ipaddress.IPv4Address("127.0.0.1"))]
            ),
        )

        admin_key = _generate_key()
        admin_cert = _issue_leaf(
            serial=4,
            subject=x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "kplane-admin")]),
            key=admin_key,
            usage=ExtendedKeyUsageOID.CLIENT_AUTH,
            ca_cert=ca_cert,
            ca_key=ca_key,
            now=now,
        )
    except (ValueError, TypeError) as e:
        raise CertificateError(f"generate certificates: {e}") from e

    pem = serialization.Encoding.PEM
    bundle = CertBundle(
        ca_key=_private_key_pem(ca_key),
        ca_cert=ca_cert.public_bytes(pem),
        service_account_key=_private_key_pem(sa_key),
        service_account_pub=_public_key_pem(sa_key),
        kubelet_client_key=_private_key_pem(kubelet_key),
        kubelet_client_cert=kubelet_cert.public_bytes(pem),
        apiserver_tls_key=_private_key_pem(apiserver_key),
        apiserver_tls_cert=apiserver_cert.public_bytes(pem),
        admin_key=_private_key_pem(admin_key),
        admin_cert=admin_cert.public_bytes(pem),
        admin_token=secrets.token_hex(TOKEN_BYTES),
        apiserver_server_name=APISERVER_NAME,
        apiserver_service_address=apiserver_service_address(namespace),
    )

    logger.debug("Generated certificate bundle", namespace=namespace)

    return bundle
