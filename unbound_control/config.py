"""
Configuration loading for the remote control client.

Reads a YAML file with the remote-control settings of the server:

    chroot: ""
    directory: /etc/unbound
    service-config: /etc/unbound/unbound.conf
    server-executable: unbound
    remote-control:
      control-enable: yes
      control-interface: [127.0.0.1, "::1"]
      control-port: 8953
      server-cert-file: unbound_server.pem
      control-key-file: unbound_control.key
      control-cert-file: unbound_control.pem

Credential paths are mapped the same way the server maps them: relative to
``directory``, and inside ``chroot`` when one is configured.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from unbound_control.errors import ConfigError

# Default config file (overridable with UNBOUND_CONTROL_CONFIG)
DEFAULT_CONFIG_FILE = "/etc/unbound/unbound-control.yml"

DEFAULT_CONTROL_PORT = 8953
DEFAULT_DIRECTORY = "/etc/unbound"
DEFAULT_SERVICE_CONFIG = "/etc/unbound/unbound.conf"
DEFAULT_SERVER_EXECUTABLE = "unbound"

DEFAULT_SERVER_CERT_FILE = "unbound_server.pem"
DEFAULT_CONTROL_KEY_FILE = "unbound_control.key"
DEFAULT_CONTROL_CERT_FILE = "unbound_control.pem"

logger = logging.getLogger(__name__)


@dataclass
class CredentialPaths:
    """Paths of the PEM files used for mutual TLS"""
    server_cert_file: str
    control_key_file: str
    control_cert_file: str


@dataclass
class ControlConfig:
    """Resolved remote-control settings"""
    credentials: CredentialPaths
    control_port: int = DEFAULT_CONTROL_PORT
    control_interfaces: List[str] = field(default_factory=list)
    control_enable: bool = False
    service_config: str = DEFAULT_SERVICE_CONFIG
    server_executable: str = DEFAULT_SERVER_EXECUTABLE


def default_config_path() -> str:
    """Config file used when -c is not given"""
    return os.environ.get("UNBOUND_CONTROL_CONFIG", DEFAULT_CONFIG_FILE)


def map_path(fname: str, directory: str, chroot: str = "") -> str:
    """Map a configured file name to the path the client must open.

    Relative names are taken relative to ``directory``. When a chroot is set,
    paths that are not already inside it are placed under it.
    """
    path = fname
    if not os.path.isabs(path):
        path = os.path.join(directory, path)
    if chroot:
        root = chroot.rstrip("/")
        if root and path != root and not path.startswith(root + "/"):
            path = root + "/" + path.lstrip("/")
    return os.path.normpath(path)


def _as_list(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ConfigError(f"'{key}' must be a string or a list of strings")


def _as_port(value: Any) -> int:
    # bool is an int subclass; "control-port: yes" is a mistake, not port 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'control-port' must be an integer, got {value!r}")
    if not 1 <= value <= 65535:
        raise ConfigError(f"'control-port' out of range (1-65535): {value}")
    return value


def _as_str(value: Any, key: str) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"'{key}' must be a non-empty string")
    return value


def parse_config(data: Dict[str, Any]) -> ControlConfig:
    """Build a ControlConfig from already-parsed YAML data.

    Args:
        data: Top-level mapping from the YAML document

    Raises:
        ConfigError: a key has the wrong type or value
    """
    if not isinstance(data, dict):
        raise ConfigError("top level of the config file must be a mapping")

    section = data.get("remote-control") or {}
    if not isinstance(section, dict):
        raise ConfigError("'remote-control' must be a mapping")

    chroot = data.get("chroot") or ""
    if not isinstance(chroot, str):
        raise ConfigError("'chroot' must be a string")
    directory = _as_str(data.get("directory", DEFAULT_DIRECTORY), "directory")

    def cred(key: str, default: str) -> str:
        return map_path(_as_str(section.get(key, default), key), directory, chroot)

    credentials = CredentialPaths(
        server_cert_file=cred("server-cert-file", DEFAULT_SERVER_CERT_FILE),
        control_key_file=cred("control-key-file", DEFAULT_CONTROL_KEY_FILE),
        control_cert_file=cred("control-cert-file", DEFAULT_CONTROL_CERT_FILE),
    )

    enable = section.get("control-enable", False)
    if not isinstance(enable, bool):
        raise ConfigError(f"'control-enable' must be yes/no, got {enable!r}")

    return ControlConfig(
        credentials=credentials,
        control_port=_as_port(section.get("control-port", DEFAULT_CONTROL_PORT)),
        control_interfaces=_as_list(section.get("control-interface"), "control-interface"),
        control_enable=enable,
        service_config=_as_str(data.get("service-config", DEFAULT_SERVICE_CONFIG), "service-config"),
        server_executable=_as_str(
            data.get("server-executable", DEFAULT_SERVER_EXECUTABLE), "server-executable"
        ),
    )


def load_config(path: str) -> ControlConfig:
    """Read and parse the YAML config file.

    Raises:
        ConfigError: the file is missing, unreadable, not UTF-8 or not valid YAML
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"could not read config file: {path} not found")
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"could not read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    logger.debug(f"Loaded config from {path}")
    return parse_config(data)
