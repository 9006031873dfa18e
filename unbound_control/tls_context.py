"""
Mutual-TLS trust context for the control channel.

The server is authenticated against a pinned certificate (server-cert-file),
and the client presents its own key and certificate. The policy is fixed:
- peer certificate verification is required
- SSLv2/SSLv3/TLS 1.0/TLS 1.1 are never negotiated

PEM files are parsed with ``cryptography`` first so that a malformed file or a
key that does not belong to the client certificate is reported before any
connection is made.
"""

import logging
import os
import socket
import ssl
from typing import List

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from unbound_control.config import CredentialPaths
from unbound_control.errors import CredentialError

MINIMUM_TLS_VERSION = ssl.TLSVersion.TLSv1_2

# Bytes fed to the PRNG when OpenSSL reports it is not seeded
PRNG_SEED_SIZE = 256

logger = logging.getLogger(__name__)

_tls_initialized = False


def init_tls_library() -> None:
    """One-time process setup of the TLS library.

    Safe to call repeatedly; only the first call does any work.
    """
    global _tls_initialized

    if _tls_initialized:
        return

    if not ssl.RAND_status():
        ssl.RAND_add(os.urandom(PRNG_SEED_SIZE), PRNG_SEED_SIZE / 8)
        logger.warning("no entropy, seeding OpenSSL PRNG from os.urandom")

    logger.debug(f"TLS library: {ssl.OPENSSL_VERSION}")
    _tls_initialized = True


def _read_pem(path: str, what: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise CredentialError(f"could not read {what} {path}: {e}") from e


def _public_der(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_trust_anchors(path: str) -> List[x509.Certificate]:
    """Parse the trusted server certificate(s) from a PEM file"""
    pem = _read_pem(path, "server certificate")
    try:
        certs = x509.load_pem_x509_certificates(pem)
    except ValueError as e:
        raise CredentialError(f"malformed server certificate {path}: {e}") from e
    return certs


def check_client_identity(key_path: str, cert_path: str) -> x509.Certificate:
    """Verify that the client key and certificate parse and belong together.

    Returns:
        The parsed client certificate

    Raises:
        CredentialError: unreadable or malformed file, or key/cert mismatch
    """
    key_pem = _read_pem(key_path, "control key")
    cert_pem = _read_pem(cert_path, "control certificate")

    try:
        key = serialization.load_pem_private_key(key_pem, password=None)
    except TypeError as e:
        # encrypted key; the control client never prompts for a passphrase
        raise CredentialError(f"control key {key_path} is encrypted: {e}") from e
    except (ValueError, UnsupportedAlgorithm) as e:
        raise CredentialError(f"malformed control key {key_path}: {e}") from e

    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        raise CredentialError(f"malformed control certificate {cert_path}: {e}") from e

    if _public_der(key.public_key()) != _public_der(cert.public_key()):
        raise CredentialError(
            f"control key {key_path} does not match certificate {cert_path}"
        )
    return cert


class TrustContext:
    """TLS client context for exactly one handshake.

    Wraps an ``ssl.SSLContext`` built by :func:`build_trust_context`. The
    context is not exposed for modification; :meth:`wrap` may be called once.
    """

    def __init__(self, ssl_context: ssl.SSLContext):
        self._ssl_context = ssl_context
        self._used = False

    @property
    def verify_enforced(self) -> bool:
        """True when the handshake rejects unverifiable peer chains"""
        return self._ssl_context.verify_mode == ssl.CERT_REQUIRED

    def wrap(self, sock: socket.socket) -> ssl.SSLSocket:
        """Bind the context to a connected socket without starting the handshake"""
        if self._used:
            raise RuntimeError("trust context already used for a handshake")
        self._used = True
        return self._ssl_context.wrap_socket(
            sock,
            server_side=False,
            server_hostname=None,
            do_handshake_on_connect=False,
            # a missing close_notify must surface as an error, not as EOF
            suppress_ragged_eofs=False,
        )


def build_trust_context(credentials: CredentialPaths) -> TrustContext:
    """Load credentials and build the mutual-TLS client context.

    Args:
        credentials: server certificate, control key and control certificate paths

    Raises:
        CredentialError: any credential problem, or the TLS library cannot
            enforce the protocol policy
    """
    init_tls_library()

    anchors = load_trust_anchors(credentials.server_cert_file)
    client_cert = check_client_identity(
        credentials.control_key_file, credentials.control_cert_file
    )

    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    try:
        ctx.minimum_version = MINIMUM_TLS_VERSION
    except (ValueError, AttributeError) as e:
        raise CredentialError(f"could not disable legacy TLS versions: {e}") from e

    # The server is identified by its pinned certificate, not by host name
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_REQUIRED

    try:
        ctx.load_cert_chain(
            certfile=credentials.control_cert_file,
            keyfile=credentials.control_key_file,
        )
    except (ssl.SSLError, OSError) as e:
        raise CredentialError(f"error setting up client key and cert: {e}") from e

    try:
        ctx.load_verify_locations(cafile=credentials.server_cert_file)
    except (ssl.SSLError, OSError) as e:
        raise CredentialError(f"error setting up verify, server cert: {e}") from e

    logger.debug(
        f"Trust context ready: {len(anchors)} trusted server cert(s), "
        f"client subject {client_cert.subject.rfc4514_string()}"
    )
    return TrustContext(ctx)
