"""
Error types raised by the remote control client.

Every error is fatal to the invocation. The CLI prints ``error: <stage>: <msg>``
and exits with status 1.
"""


class ControlError(Exception):
    """Base error for the control client"""

    stage = "control"

    def __str__(self) -> str:
        return f"{self.stage}: {super().__str__()}"


class ConfigError(ControlError):
    """Configuration file missing, unreadable or malformed"""

    stage = "config"


class CredentialError(ControlError):
    """Bad, missing or mismatched local key material"""

    stage = "credentials"


class AddressError(ControlError):
    """Unparseable or ambiguous server address"""

    stage = "address"


class ConnectError(ControlError):
    """Transport connection failure (renamed to avoid shadowing built-in ConnectionError)"""

    stage = "connect"


class HandshakeError(ControlError):
    """TLS negotiation or trust-validation failure"""

    stage = "handshake"


class TransportError(ControlError):
    """Write or read failure on an established channel"""

    stage = "transport"


class StartError(ControlError):
    """The server daemon could not be executed"""

    stage = "start"
