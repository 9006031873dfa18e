"""
Pytest configuration and fixtures for unbound-control tests.

Credentials are generated per test with ``cryptography``, laid out the way
unbound-control-setup does it: a self-signed server certificate that is its
own trust anchor, and a control certificate signed by the server key.
"""

import datetime
import socket
import ssl
import sys
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, List, Optional

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

# Make the package importable without installing it
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

from unbound_control.config import CredentialPaths  # noqa: E402


def generate_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def generate_cert(
    common_name: str,
    key,
    issuer_name: Optional[str] = None,
    issuer_key=None,
    is_ca: bool = False,
) -> x509.Certificate:
    """Build a certificate; self-signed when no issuer is given."""
    issuer_name = issuer_name or common_name
    issuer_key = issuer_key or key
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name)]))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=is_ca,
                crl_sign=is_ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
            critical=False,
        )
    )
    return builder.sign(issuer_key, hashes.SHA256())


def write_key(path: Path, key, password: Optional[bytes] = None) -> Path:
    encryption = (
        serialization.BestAvailableEncryption(password)
        if password else serialization.NoEncryption()
    )
    path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        encryption,
    ))
    return path


def write_cert(path: Path, cert: x509.Certificate) -> Path:
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return path


@dataclass
class CredentialFiles:
    """Generated key material for one test"""
    server_cert: Path
    server_key: Path
    control_cert: Path
    control_key: Path

    @property
    def paths(self) -> CredentialPaths:
        return CredentialPaths(
            server_cert_file=str(self.server_cert),
            control_key_file=str(self.control_key),
            control_cert_file=str(self.control_cert),
        )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def credentials(temp_dir: Path) -> CredentialFiles:
    """Server and control credentials in the layout unbound expects."""
    server_key = generate_key()
    server_cert = generate_cert("unbound", server_key, is_ca=True)
    control_key = generate_key()
    control_cert = generate_cert(
        "unbound-control", control_key, issuer_name="unbound", issuer_key=server_key
    )
    return CredentialFiles(
        server_cert=write_cert(temp_dir / "unbound_server.pem", server_cert),
        server_key=write_key(temp_dir / "unbound_server.key", server_key),
        control_cert=write_cert(temp_dir / "unbound_control.pem", control_cert),
        control_key=write_key(temp_dir / "unbound_control.key", control_key),
    )


class ControlServer:
    """
    Minimal TLS control server on 127.0.0.1 for end-to-end tests.

    Accepts one connection, requires a client certificate, reads one request,
    sends the scripted response chunks and then closes, with close_notify
    when ``orderly`` is set.
    """

    def __init__(self, creds: CredentialFiles, responses: List[bytes], orderly: bool = True):
        self.responses = responses
        self.orderly = orderly
        self.received = b""
        self.error: Optional[BaseException] = None

        self.context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self.context.load_cert_chain(str(creds.server_cert), str(creds.server_key))
        self.context.verify_mode = ssl.CERT_REQUIRED
        self.context.load_verify_locations(cafile=str(creds.server_cert))

        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(1)
        self.port = self.sock.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)

    def start(self) -> "ControlServer":
        self.thread.start()
        return self

    def stop(self) -> None:
        self.thread.join(timeout=5)
        self.sock.close()

    def _serve(self) -> None:
        try:
            conn, _ = self.sock.accept()
            with self.context.wrap_socket(conn, server_side=True) as tls:
                self.received = tls.recv(4096)
                for chunk in self.responses:
                    tls.sendall(chunk)
                if self.orderly:
                    try:
                        tls.unwrap()
                    except (ssl.SSLError, OSError):
                        # the client drops the connection without replying
                        pass
        except (ssl.SSLError, OSError) as e:
            self.error = e


@pytest.fixture
def control_server(credentials: CredentialFiles):
    """Factory for running ControlServer instances, stopped at teardown."""
    servers: List[ControlServer] = []

    def _start(responses: List[bytes], orderly: bool = True) -> ControlServer:
        server = ControlServer(credentials, responses, orderly=orderly).start()
        servers.append(server)
        return server

    yield _start

    for server in servers:
        server.stop()


@pytest.fixture
def config_file(temp_dir: Path, credentials: CredentialFiles):
    """Write a YAML config pointing at the generated credentials."""

    def _write(port: int = 8953, **overrides) -> Path:
        section = {
            "control-enable": True,
            "control-interface": ["127.0.0.1"],
            "control-port": port,
            "server-cert-file": credentials.server_cert.name,
            "control-key-file": credentials.control_key.name,
            "control-cert-file": credentials.control_cert.name,
        }
        section.update(overrides)
        data = {"directory": str(temp_dir), "remote-control": section}
        path = temp_dir / "unbound-control.yml"
        path.write_text(yaml.safe_dump(data))
        return path

    return _write


@pytest.fixture
def closed_port() -> int:
    """A localhost port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
