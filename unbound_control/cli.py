"""
Command line entry point: unbound-control [options] command

Exit status is 0 on success and 1 on any failure.
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from unbound_control import __version__
from unbound_control.config import ControlConfig, default_config_path, load_config
from unbound_control.control_client import run_control
from unbound_control.errors import ControlError, StartError
from unbound_control.log_config import setup_logging

logger = logging.getLogger(__name__)


def error(msg: str) -> None:
    """Print error message to stderr"""
    print(f"error: {msg}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="unbound-control",
        description="Remote control utility for unbound server.",
        epilog=(
            "Commands:\n"
            "  start\t\tstart server; runs unbound(8)\n"
            "  <command>\tsent to the server, e.g. stop, reload, stats\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help=f"config file, default is {default_config_path()}",
    )
    parser.add_argument(
        "-s", "--server",
        metavar="ip[@port]",
        default=None,
        help="server address, if omitted config is used",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="debug logging to stderr",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="command and its arguments",
    )
    return parser


def format_command(words: List[str]) -> bytes:
    """Join the command words into the request line sent to the server"""
    return (" ".join(words) + "\n").encode("utf-8")


def start_server(config: ControlConfig) -> None:
    """Replace this process with the server daemon. Only returns by raising."""
    argv = [config.server_executable, "-c", config.service_config]
    logger.debug(f"exec {' '.join(argv)}")
    try:
        os.execvp(config.server_executable, argv)
    except OSError as e:
        raise StartError(f"could not exec {config.server_executable}: {e}") from e


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_usage(sys.stderr)
        return 1

    setup_logging(level=logging.DEBUG if args.verbose else None)

    try:
        config = load_config(args.config or default_config_path())
        if args.command == ["start"]:
            start_server(config)
        run_control(config, args.server, format_command(args.command))
    except ControlError as e:
        error(str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
