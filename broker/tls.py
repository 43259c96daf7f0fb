# mqtt_test_server/broker/tls.py

import enum
import os
import ssl
import tempfile
from dataclasses import dataclass
from typing import Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


class IdentityError(Exception):
    """Certificate/key material cannot be turned into a server identity."""


class KeyParseError(IdentityError):
    """Raw RSA private key bytes could not be parsed."""


class IncompleteIdentityError(IdentityError):
    """Only part of the certificate/key/CA inputs were supplied."""


class TLSMode(enum.Enum):
    NO_TLS      = "NoTLS"
    SERVER_AUTH = "ServerAuth"
    MUTUAL_TLS  = "MutualTLS"


@dataclass(frozen=True)
class ServerIdentity:
    cert_pem: bytes
    key_pem: bytes
    ca_pem: Optional[bytes] = None

    @property
    def mode(self) -> TLSMode:
        # a CA pool means client certificates are required
        return TLSMode.MUTUAL_TLS if self.ca_pem else TLSMode.SERVER_AUTH

    def private_key(self):
        return serialization.load_pem_private_key(self.key_pem, password=None)


def tls_mode(identity: Optional[ServerIdentity]) -> TLSMode:
    return identity.mode if identity is not None else TLSMode.NO_TLS


def reframe_raw_key(raw: bytes) -> bytes:
    """
    Parse an unencrypted raw (DER) RSA private key and re-serialise it
    as an "RSA PRIVATE KEY" PEM block.
    """
    try:
        key = serialization.load_der_private_key(raw, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyParseError(f"cannot parse raw RSA private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyParseError(f"expected an RSA private key, got {type(key).__name__}")
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _pair(cert_pem: bytes, key_pem: bytes) -> None:
    try:
        chain = x509.load_pem_x509_certificates(cert_pem)
    except ValueError as exc:
        raise IdentityError(f"invalid certificate PEM: {exc}") from exc
    try:
        key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise IdentityError(f"invalid private key PEM: {exc}") from exc

    der, spki = serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    try:
        cert_pub = chain[0].public_key().public_bytes(der, spki)
    except UnsupportedAlgorithm as exc:
        raise IdentityError(f"unsupported certificate key algorithm: {exc}") from exc
    if cert_pub != key.public_key().public_bytes(der, spki):
        raise IdentityError("private key does not match the certificate public key")


def load_identity(cert_pem: bytes, key_bytes: bytes, password: str = "") -> ServerIdentity:
    """
    Build a ServerIdentity from certificate PEM and key bytes.

    :param cert_pem:  PEM certificate chain, leaf first
    :param key_bytes: PEM private key, or a raw RSA key when a password is given
    :param password:  only selects the raw key format; nothing is decrypted
    """
    if password:
        key_bytes = reframe_raw_key(key_bytes)
    _pair(cert_pem, key_bytes)
    return ServerIdentity(cert_pem=cert_pem, key_pem=key_bytes)


def load_ca_pool(ca_pem: bytes) -> bytes:
    try:
        x509.load_pem_x509_certificates(ca_pem)
    except ValueError as exc:
        raise IdentityError(f"no usable certificates in CA bundle ({len(ca_pem)} bytes)") from exc
    return ca_pem


def _read(path: str, what: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as exc:
        raise IdentityError(f"{what} {path}: {exc.strerror or exc}") from exc


def build_identity(server_cert: str = "",
                   server_key: str = "",
                   ca_cert: str = "",
                   key_password: str = "") -> Optional[ServerIdentity]:
    """
    Read the configured files and assemble the listener identity.
    Returns None when no TLS inputs were given.
    """
    if server_cert and not server_key:
        raise IncompleteIdentityError("server key must not be empty when a server certificate is set")
    if server_key and not server_cert:
        raise IncompleteIdentityError("server certificate must not be empty when a server key is set")
    if ca_cert and not server_cert:
        raise IncompleteIdentityError("a CA certificate needs a server certificate and key")
    if not server_cert:
        return None

    ca_pem = None
    if ca_cert:
        content = _read(ca_cert, "CA certificate")
        try:
            ca_pem = load_ca_pool(content)
        except IdentityError as exc:
            raise IdentityError(f"CA certificate {ca_cert}: {exc}") from exc

    cert_pem = _read(server_cert, "server certificate")
    key_bytes = _read(server_key, "server key")
    try:
        identity = load_identity(cert_pem, key_bytes, key_password)
    except KeyParseError as exc:
        raise KeyParseError(f"server key {server_key}: {exc}") from exc
    except IdentityError as exc:
        raise IdentityError(f"server certificate {server_cert}: {exc}") from exc

    if ca_pem is None:
        return identity
    return ServerIdentity(cert_pem=identity.cert_pem, key_pem=identity.key_pem, ca_pem=ca_pem)


def create_tls_context(identity: ServerIdentity) -> ssl.SSLContext:
    """
    Build and return an SSLContext for the broker listener.
    """
    try:
        ctx = ssl.create_default_context(
            purpose=ssl.Purpose.CLIENT_AUTH,
            cadata=identity.ca_pem.decode() if identity.ca_pem else None
        )
    except (ssl.SSLError, ValueError) as exc:
        raise IdentityError(f"TLS library rejected the CA certificates: {exc}") from exc

    # ssl only loads key material from files
    with tempfile.TemporaryDirectory() as tmp:
        bundle = os.path.join(tmp, "server.pem")
        with open(bundle, "wb") as f:
            f.write(identity.key_pem.rstrip(b"\n") + b"\n" + identity.cert_pem)
        try:
            ctx.load_cert_chain(certfile=bundle)
        except ssl.SSLError as exc:
            raise IdentityError(f"TLS library rejected the server identity: {exc}") from exc

    if identity.mode is TLSMode.MUTUAL_TLS:
        ctx.verify_mode = ssl.CERT_REQUIRED

    return ctx
