import argparse
import logging
import os
import shlex
import sys

import paramiko
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from config import DEFAULT_BIND, ServerConfig, load_or_generate_host_key
from key_fetcher import DEFAULT_FETCH_TIMEOUT, DEFAULT_KEYS_URL
from key_store import KeyStoreError, load_keys
from ssh_server import GatewayError, SSHBoxServer

__version__ = "0.2.0"

LOGGER = logging.getLogger("sshbox")


def full_version() -> str:
    return __version__


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="sshbox",
        usage="%(prog)s [options] <keys> <command>",
        description="sshbox – run one command per SSH connection, authenticated by public key",
    )
    parser.add_argument("keys", nargs="?", help="authorized keys file (path or file://path)")
    parser.add_argument("command", nargs="?", help="command line to run for every session")
    parser.add_argument("-b", "--bind", default=DEFAULT_BIND, help="interface and port to bind to")
    parser.add_argument("-v", "--version", action="store_true", help="display version information")
    parser.add_argument("-d", "--debug", action="store_true", help="enable debug logging")
    parser.add_argument("-g", "--github-auth", action="store_true", help="use github to authorize keys")
    parser.add_argument("--keys-url", default=DEFAULT_KEYS_URL, help="profile keys URL template ({identity} is replaced)")
    parser.add_argument("--fetch-timeout", type=float, default=DEFAULT_FETCH_TIMEOUT, help="seconds to wait for the profile keys endpoint")
    parser.add_argument("--host-key", default=None, help="path to persist the RSA host key (optional)")
    return parser, parser.parse_args(argv)


def setup_logging(debug: bool = False) -> None:
    if debug:
        os.environ["SSHBOX_DEBUG"] = "1"
    log_level = logging.DEBUG if os.getenv("SSHBOX_DEBUG") == "1" else logging.INFO
    logging.basicConfig(level=log_level, format="%(levelname)s %(name)s - %(message)s")
    if log_level != logging.DEBUG:
        logging.getLogger("paramiko").setLevel(logging.WARNING)


def _host_key(path):
    if path and os.path.exists(path):
        return load_or_generate_host_key(path)

    with Progress(
        SpinnerColumn(style="bold green"),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
        console=Console(stderr=True),
    ) as progress:
        progress.add_task(description="Generating host key…", total=None)
        return load_or_generate_host_key(path)


def main(argv=None) -> int:
    parser, args = parse_args(argv)
    setup_logging(args.debug)

    if args.version:
        print(f"sshbox version {full_version()}")
        return 0

    if args.keys is None or args.command is None:
        parser.print_usage(sys.stderr)
        return 1

    try:
        cmd = shlex.split(args.command)
    except ValueError as e:
        LOGGER.error("error parsing command: %s", e)
        return 2
    if not cmd:
        LOGGER.error("error parsing command: empty command")
        return 2

    try:
        config = ServerConfig(
            bind=args.bind,
            command=cmd[0],
            args=tuple(cmd[1:]),
            authorized_keys=load_keys(args.keys),
            github_auth=args.github_auth,
            keys_url=args.keys_url,
            fetch_timeout=args.fetch_timeout,
            host_key_path=args.host_key,
        )
        server = SSHBoxServer(config, host_key=_host_key(args.host_key))
        server.listen()
    except (KeyStoreError, GatewayError, ValueError, OSError, paramiko.SSHException) as e:
        LOGGER.error("error creating server: %s", e)
        return 2

    if not config.authorized_keys and not config.github_auth:
        LOGGER.warning("No authorized keys and github auth disabled: every login will be denied")

    LOGGER.info("sshbox %s listening on %s", full_version(), args.bind)
    try:
        server.run()
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted while waiting for %d sessions", server.active_sessions)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
