import logging
import queue
import signal
import socket
import threading
from typing import Dict, Optional, Set, Tuple

import paramiko

from authenticator import KeyAuthenticator
from config import ServerConfig, load_or_generate_host_key
from key_fetcher import KeyFetcher
from pty_session import PtySessionExecutor
from session import PtyRequest, Session, WindowSize

LOGGER = logging.getLogger(__name__)

ACCEPT_POLL_INTERVAL = 0.5
LISTEN_BACKLOG = 100


class GatewayError(Exception):
    """The gateway could not be started."""


class SSHHandler(paramiko.ServerInterface):
    """Per-connection paramiko ServerInterface for sshbox.

    Records what the client asked for (identity, PTY, window changes) so the
    connection thread can build a ``Session`` once a shell or exec request
    arrives.
    """

    def __init__(self, authenticator: KeyAuthenticator, remote_addr: str):
        self.authenticator = authenticator
        self.remote_addr = remote_addr
        self.username: Optional[str] = None
        self.command: Optional[str] = None
        self.pty_request: Optional[PtyRequest] = None
        self.window_changes: "queue.Queue[Optional[WindowSize]]" = queue.Queue()
        self.session_event = threading.Event()
        self._channel_opened = False
        self._decisions: Dict[Tuple[str, bytes], bool] = {}

    # ----------------------- AUTH -----------------------------
    def get_allowed_auths(self, username):
        return "publickey"

    def check_auth_publickey(self, username, key):
        # paramiko asks once without and once with a signature; decide once.
        cache_key = (username, key.asbytes())
        if cache_key not in self._decisions:
            try:
                allowed = self.authenticator.authorize(username, key, self.remote_addr)
            except Exception:
                LOGGER.exception("Error authorizing %s from %s", username, self.remote_addr)
                allowed = False
            self._decisions[cache_key] = allowed

        if self._decisions[cache_key]:
            self.username = username
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    # --------------------- CHANNELS ---------------------------
    def check_channel_request(self, kind, chanid):
        if kind == "session" and not self._channel_opened:
            self._channel_opened = True
            return paramiko.OPEN_SUCCEEDED
        LOGGER.info("Refusing %s channel from %s", kind, self.remote_addr)
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_channel_pty_request(
        self, channel, term, width, height, pixelwidth, pixelheight, modes
    ):
        if isinstance(term, bytes):
            term = term.decode("utf-8", "replace")
        LOGGER.debug("PTY request from %s: term=%s size=%dx%d", self.remote_addr, term, width, height)
        self.pty_request = PtyRequest(term=term, rows=height, cols=width)
        return True

    def check_channel_window_change_request(
        self, channel, width, height, pixelwidth, pixelheight
    ):
        LOGGER.debug("Window resize request from %s to %dx%d", self.remote_addr, width, height)
        self.window_changes.put((height, width))
        return True

    def check_channel_shell_request(self, channel):
        return self._start_session()

    def check_channel_exec_request(self, channel, command):
        if isinstance(command, bytes):
            command = command.decode("utf-8", "replace")
        LOGGER.info("Ignoring exec command %r from %s, running the configured command", command, self.remote_addr)
        self.command = command
        return self._start_session()

    def check_channel_subsystem_request(self, channel, name):
        LOGGER.info("Refusing subsystem %s from %s", name, self.remote_addr)
        return False

    def _start_session(self) -> bool:
        if self.session_event.is_set():
            return False
        self.session_event.set()
        return True


class SSHBoxServer:
    """Listens for SSH connections and runs the configured command for each."""

    def __init__(
        self,
        config: ServerConfig,
        host_key: Optional[paramiko.PKey] = None,
        authenticator: Optional[KeyAuthenticator] = None,
        executor: Optional[PtySessionExecutor] = None,
    ):
        self.config = config
        self.host_key = host_key or load_or_generate_host_key(config.host_key_path)
        if authenticator is None:
            fetcher = KeyFetcher(config.keys_url, config.fetch_timeout) if config.github_auth else None
            authenticator = KeyAuthenticator(config.authorized_keys, fetcher)
        self.authenticator = authenticator
        self.executor = executor or PtySessionExecutor(config.command, config.args)

        self._sock: Optional[socket.socket] = None
        self._stop = threading.Event()
        self._closed = threading.Event()
        self._serve_thread: Optional[threading.Thread] = None
        self._workers: Set[threading.Thread] = set()
        self._workers_lock = threading.Lock()

    # ------------------------------------------------------------
    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """The bound socket address, once listening."""
        if self._sock is None:
            return None
        return self._sock.getsockname()[:2]

    @property
    def active_sessions(self) -> int:
        with self._workers_lock:
            return len(self._workers)

    def listen(self) -> None:
        if self._sock is not None:
            return
        host, port = self.config.address
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
            sock.listen(LISTEN_BACKLOG)
        except OSError as e:
            sock.close()
            raise GatewayError(f"cannot listen on {self.config.bind}: {e}") from e
        sock.settimeout(ACCEPT_POLL_INTERVAL)
        self._sock = sock
        LOGGER.info("SSH server listening on %s:%s", *self.address)

    def run(self, install_signal_handlers: bool = True) -> None:
        """Serve until shutdown, then wait for in-flight sessions to end."""
        self.listen()
        self._serve_thread = threading.current_thread()
        previous = {}
        if install_signal_handlers and threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                previous[signum] = signal.signal(signum, self.handle_signal)
        try:
            self._serve_forever()
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
        self._drain()

    def handle_signal(self, signum, frame) -> None:
        LOGGER.info("Shutdown server on signal %s", signal.Signals(signum).name)
        self._stop.set()

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """Stop accepting connections; in-flight sessions keep running.

        With ``wait`` the call returns once the listening socket is closed.
        """
        LOGGER.info("Shutdown requested")
        self._stop.set()
        if wait and threading.current_thread() is not self._serve_thread:
            return self._closed.wait(timeout)
        return self._closed.is_set()

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        return self._closed.wait(timeout)

    # ------------------------------------------------------------
    def _serve_forever(self):
        sock = self._sock
        try:
            while not self._stop.is_set():
                try:
                    client, addr = sock.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._stop.is_set():
                        break
                    LOGGER.error("Error accepting connection: %s", e)
                    continue

                client.setblocking(True)
                try:
                    client.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                except OSError:
                    pass  # Not fatal; continue
                LOGGER.info("Incoming connection from %s:%s", *addr[:2])
                worker = threading.Thread(
                    target=self._handle_client,
                    args=(client, addr),
                    name=f"conn-{addr[0]}:{addr[1]}",
                    daemon=True,
                )
                with self._workers_lock:
                    self._workers.add(worker)
                worker.start()
        finally:
            sock.close()
            self._sock = None
            self._closed.set()
            LOGGER.info("SSH server stopped accepting connections")

    def _drain(self):
        with self._workers_lock:
            pending = list(self._workers)
        if pending:
            LOGGER.info("Waiting for %d in-flight sessions to finish", len(pending))
        for worker in pending:
            worker.join()

    def _handle_client(self, client: socket.socket, addr):
        """Handle individual client connections."""
        remote_addr = "%s:%s" % addr[:2]
        transport = None
        try:
            transport = paramiko.Transport(client)
            transport.add_server_key(self.host_key)

            handler = SSHHandler(self.authenticator, remote_addr)
            transport.start_server(server=handler)

            channel = transport.accept(self.config.channel_timeout)
            if channel is None:
                LOGGER.warning("No channel established by %s within timeout", remote_addr)
                return
            if not handler.session_event.wait(self.config.channel_timeout):
                LOGGER.warning("No shell or exec request from %s within timeout", remote_addr)
                channel.close()
                return

            session = Session(
                channel,
                identity=handler.username,
                remote_addr=remote_addr,
                pty_request=handler.pty_request,
                window_changes=handler.window_changes,
            )
            self.executor.handle(session)
        except (paramiko.SSHException, EOFError, OSError) as e:
            LOGGER.warning("Client connection error from %s: %s", remote_addr, e)
        except Exception:
            LOGGER.exception("Unexpected error handling %s", remote_addr)
        finally:
            if transport is not None:
                transport.close()
            else:
                client.close()
            with self._workers_lock:
                self._workers.discard(threading.current_thread())
