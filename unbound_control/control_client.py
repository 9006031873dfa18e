"""
Remote control client.

Contacts the server over mutually authenticated TLS, sends one command,
streams the answer to the caller and disconnects.

Wire protocol:
  client -> server: command bytes, written once
  server -> client: response bytes until the server sends close_notify

There is no framing, no pipelining and no connection reuse. Blocking I/O,
no timeouts.

Usage:
    config = load_config("/etc/unbound/unbound-control.yml")
    run_control(config, "127.0.0.1@8953", "stats\\n")
"""

import logging
import select
import socket
import ssl
import sys
from enum import Enum
from typing import BinaryIO, Optional, Union

from unbound_control.config import ControlConfig
from unbound_control.endpoint import Endpoint, resolve_endpoint
from unbound_control.errors import ConnectError, HandshakeError, TransportError
from unbound_control.tls_context import TrustContext, build_trust_context, init_tls_library

# One byte short of 1K, the size the server side writes in
READ_BUFFER_SIZE = 1023

logger = logging.getLogger(__name__)


class ChannelState(Enum):
    """Lifecycle of a secure channel"""
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ESTABLISHED = "established"
    EXCHANGING = "exchanging"
    CLOSED = "closed"


def open_transport(endpoint: Endpoint) -> socket.socket:
    """Open a blocking TCP connection to the endpoint.

    Raises:
        ConnectError: socket creation or connect() failed
    """
    try:
        sock = socket.socket(endpoint.family, socket.SOCK_STREAM)
    except OSError as e:
        raise ConnectError(f"socket: {e}") from e

    try:
        sock.connect(endpoint.sockaddr)
    except OSError as e:
        sock.close()
        raise ConnectError(f"connect to {endpoint}: {e}") from e

    logger.debug(f"Connected to {endpoint}")
    return sock


def _wait_for_io(tls_sock: ssl.SSLSocket, want_write: bool) -> None:
    if want_write:
        select.select([], [tls_sock], [])
    else:
        select.select([tls_sock], [], [])


def perform_handshake(tls_sock: ssl.SSLSocket) -> None:
    """Run the client side of the TLS handshake to completion.

    Want-read and want-write are the only outcomes that are retried, after
    waiting for the socket to become ready. Anything else is fatal.
    """
    while True:
        try:
            tls_sock.do_handshake()
            return
        except ssl.SSLWantReadError:
            _wait_for_io(tls_sock, want_write=False)
        except ssl.SSLWantWriteError:
            _wait_for_io(tls_sock, want_write=True)
        except (ssl.SSLError, OSError) as e:
            raise HandshakeError(f"SSL handshake failed: {e}") from e


def verify_peer(tls_sock: ssl.SSLSocket, trust: TrustContext) -> None:
    """Check server authenticity after a completed handshake.

    Raises:
        HandshakeError: chain verification was not enforced, or the server
            presented no certificate
    """
    if not trust.verify_enforced:
        raise HandshakeError("SSL verification failed: peer chain was not verified")

    peer_cert = tls_sock.getpeercert(binary_form=True)
    if not peer_cert:
        raise HandshakeError("Server presented no peer certificate")


class SecureChannel:
    """
    A TLS session to the server, good for a single exchange.

    States move connecting -> handshaking -> established -> exchanging ->
    closed; any failure goes straight to closed.

    Usage:
        with establish_channel(endpoint, trust) as channel:
            channel.exchange(b"status\\n", sys.stdout.buffer)
    """

    def __init__(self, endpoint: Endpoint):
        self.endpoint = endpoint
        self._tls_sock: Optional[ssl.SSLSocket] = None
        self.state = ChannelState.CONNECTING

    def __enter__(self) -> "SecureChannel":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _enter_state(self, state: ChannelState) -> None:
        self.state = state
        logger.debug(f"Channel {state.value}: {self.endpoint}")

    def open(self, trust: TrustContext) -> None:
        """Connect, handshake and authenticate the server.

        Raises:
            ConnectError: TCP connection failed
            HandshakeError: TLS negotiation or server verification failed
        """
        if self.state is not ChannelState.CONNECTING:
            raise HandshakeError(f"channel is {self.state.value}, cannot connect again")

        logger.debug(f"Channel {self.state.value}: {self.endpoint}")
        try:
            sock = open_transport(self.endpoint)
        except ConnectError:
            self.state = ChannelState.CLOSED
            raise

        try:
            self._tls_sock = trust.wrap(sock)
        except (ssl.SSLError, OSError, RuntimeError) as e:
            sock.close()
            self.state = ChannelState.CLOSED
            raise HandshakeError(f"could not set up SSL on the connection: {e}") from e

        self._enter_state(ChannelState.HANDSHAKING)
        try:
            perform_handshake(self._tls_sock)
            verify_peer(self._tls_sock, trust)
        except HandshakeError:
            self.close()
            raise

        self._enter_state(ChannelState.ESTABLISHED)
        logger.debug(f"Negotiated {self._tls_sock.version()} with {self.endpoint}")

    def close(self) -> None:
        """Drop the connection without a TLS shutdown exchange"""
        if self.state is ChannelState.CLOSED:
            return
        self.state = ChannelState.CLOSED
        if self._tls_sock is None:
            return
        try:
            self._tls_sock.close()
        finally:
            logger.debug(f"Disconnected from {self.endpoint}")

    def _send(self, payload: bytes) -> None:
        try:
            written = self._tls_sock.send(payload)
        except (ssl.SSLError, OSError) as e:
            raise TransportError(f"could not SSL_write: {e}") from e
        if written <= 0:
            raise TransportError("could not SSL_write: nothing written")
        if written != len(payload):
            raise TransportError(
                f"could not SSL_write: short write ({written} of {len(payload)} bytes)"
            )

    def exchange(self, command: Union[bytes, str], output: BinaryIO) -> int:
        """Write the command, then copy the response to ``output`` as it arrives.

        Each received chunk is written and flushed before the next read.
        The channel is closed when this returns or raises.

        Args:
            command: Request payload, str is UTF-8 encoded
            output: Binary stream receiving the response bytes

        Returns:
            Total number of response bytes received

        Raises:
            TransportError: write failed, the read ended other than by an
                orderly TLS closure, or ``output`` could not be written
        """
        if self.state is not ChannelState.ESTABLISHED:
            raise TransportError(f"channel is {self.state.value}, not established")

        payload = command.encode("utf-8") if isinstance(command, str) else bytes(command)
        self._enter_state(ChannelState.EXCHANGING)
        total = 0
        try:
            self._send(payload)
            logger.debug(f"Sent {len(payload)} byte command")

            while True:
                try:
                    chunk = self._tls_sock.recv(READ_BUFFER_SIZE)
                except (ssl.SSLError, OSError) as e:
                    raise TransportError(f"could not SSL_read: {e}") from e
                if not chunk:
                    # close_notify from the server
                    break
                total += len(chunk)
                try:
                    output.write(chunk)
                    output.flush()
                except OSError as e:
                    raise TransportError(f"could not write response: {e}") from e
        finally:
            self.close()

        logger.debug(f"Received {total} response bytes")
        return total


def establish_channel(endpoint: Endpoint, trust: TrustContext) -> SecureChannel:
    """Open a channel to the endpoint and return it established.

    Raises:
        ConnectError: TCP connection failed
        HandshakeError: TLS negotiation or server verification failed
    """
    channel = SecureChannel(endpoint)
    channel.open(trust)
    return channel


def run_control(
    config: ControlConfig,
    server: Optional[str],
    command: Union[bytes, str],
    output: Optional[BinaryIO] = None,
) -> int:
    """Send one command to the server and stream the reply.

    Args:
        config: Remote-control settings
        server: Explicit ``ip[@port]``, None for the configured default
        command: Request payload
        output: Response sink, defaults to stdout

    Returns:
        Number of response bytes received
    """
    if output is None:
        output = sys.stdout.buffer

    init_tls_library()
    if not config.control_enable:
        logger.warning("control-enable is 'no' in the config file.")

    endpoint = resolve_endpoint(server, config.control_interfaces, config.control_port)
    trust = build_trust_context(config.credentials)

    with establish_channel(endpoint, trust) as channel:
        return channel.exchange(command, output)
