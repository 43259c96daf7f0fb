import datetime
import ipaddress
from types import SimpleNamespace

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


def _name(cn):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


def _cert(cn, key, issuer_cert=None, issuer_key=None, is_ca=False, usage=None):
    now = datetime.datetime.now(datetime.timezone.utc)
    issuer_name = issuer_cert.subject if issuer_cert else _name(cn)
    signing_key = issuer_key or key
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(cn))
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(signing_key.public_key()),
            critical=False)
    )
    if is_ca:
        builder = builder.add_extension(x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=False,
            data_encipherment=False, key_agreement=False, key_cert_sign=True,
            crl_sign=True, encipher_only=False, decipher_only=False), critical=True)
    else:
        builder = builder.add_extension(x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=True,
            data_encipherment=False, key_agreement=False, key_cert_sign=False,
            crl_sign=False, encipher_only=False, decipher_only=False), critical=True)
        builder = builder.add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        builder = builder.add_extension(x509.SubjectAlternativeName([
            x509.DNSName("localhost"),
            x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
        ]), critical=False)
    return builder.sign(signing_key, hashes.SHA256())


def _pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def _pkcs8(key):
    return key.private_bytes(serialization.Encoding.PEM,
                             serialization.PrivateFormat.PKCS8,
                             serialization.NoEncryption())


@pytest.fixture(scope="session")
def pki(tmp_path_factory):
    """A throwaway CA with a server and a client certificate, as bytes and files."""
    ca_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    ca_cert = _cert("Test CA", ca_key, is_ca=True)

    server_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    server_cert = _cert("localhost", server_key, ca_cert, ca_key,
                        usage=ExtendedKeyUsageOID.SERVER_AUTH)

    client_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    client_cert = _cert("sensor1", client_key, ca_cert, ca_key,
                        usage=ExtendedKeyUsageOID.CLIENT_AUTH)

    other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    ec_key = ec.generate_private_key(ec.SECP256R1())

    d = tmp_path_factory.mktemp("pki")
    files = {
        "ca.crt":      _pem(ca_cert),
        "server.crt":  _pem(server_cert),
        "server.key":  _pkcs8(server_key),
        "server.der":  server_key.private_bytes(serialization.Encoding.DER,
                                                serialization.PrivateFormat.TraditionalOpenSSL,
                                                serialization.NoEncryption()),
        "client.crt":  _pem(client_cert),
        "client.key":  _pkcs8(client_key),
    }
    for name, content in files.items():
        (d / name).write_bytes(content)

    return SimpleNamespace(
        ca_pem=files["ca.crt"],
        cert_pem=files["server.crt"],
        key_pem=files["server.key"],
        key_raw=files["server.der"],
        server_key=server_key,
        other_key_pem=_pkcs8(other_key),
        ec_key_der=ec_key.private_bytes(serialization.Encoding.DER,
                                        serialization.PrivateFormat.TraditionalOpenSSL,
                                        serialization.NoEncryption()),
        ca_file=str(d / "ca.crt"),
        cert_file=str(d / "server.crt"),
        key_file=str(d / "server.key"),
        raw_key_file=str(d / "server.der"),
        client_cert_file=str(d / "client.crt"),
        client_key_file=str(d / "client.key"),
    )


@pytest.fixture
def log_paths(tmp_path):
    return SimpleNamespace(
        data=str(tmp_path / "data.csv"),
        status=str(tmp_path / "status.csv"),
        console=str(tmp_path / "console.log"),
    )

