"""Shared fixtures for the sshbox test suite.

Keys are generated per test session rather than checked in, and the PTY
executor is exercised against ``FakeSession``, an in-memory stand-in for a
paramiko channel.
"""

import queue
import threading
import time

import paramiko
import pytest

from key_store import AuthorizedKey
from session import PtyRequest


# ---------------------------------------------------------------------------
# Key fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def host_key() -> paramiko.PKey:
    return paramiko.RSAKey.generate(2048)


@pytest.fixture(scope="session")
def client_key() -> paramiko.PKey:
    return paramiko.RSAKey.generate(2048)


@pytest.fixture(scope="session")
def other_key() -> paramiko.PKey:
    return paramiko.RSAKey.generate(2048)


@pytest.fixture(scope="session")
def ecdsa_key() -> paramiko.PKey:
    return paramiko.ECDSAKey.generate()


@pytest.fixture
def key_line():
    """Render a key as an authorized_keys line."""

    def render(key: paramiko.PKey, comment: str = "") -> str:
        line = f"{key.get_name()} {key.get_base64()}"
        return f"{line} {comment}" if comment else line

    return render


@pytest.fixture
def client_authorized_key(client_key) -> AuthorizedKey:
    return AuthorizedKey.from_pkey(client_key)


# ---------------------------------------------------------------------------
# Session double
# ---------------------------------------------------------------------------


class FakeSession:
    """Duck-typed ``session.Session`` backed by queues instead of a channel."""

    def __init__(self, pty_request=None, identity="alice", remote_addr="127.0.0.1:50000"):
        self.identity = identity
        self.remote_addr = remote_addr
        self.pty_request = pty_request
        self.window_changes = queue.Queue()
        self.exit_status = None
        self.closed = threading.Event()
        self._hung_up = False
        self._input = queue.Queue()
        self._output = bytearray()
        self._output_lock = threading.Lock()

    # -- test side ------------------------------------------------------
    def feed(self, data: bytes) -> None:
        self._input.put(data)

    def hang_up(self) -> None:
        self._hung_up = True
        self._input.put(b"")

    @property
    def output(self) -> bytes:
        with self._output_lock:
            return bytes(self._output)

    def wait_for_output(self, needle: bytes, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if needle in self.output:
                return True
            time.sleep(0.02)
        return False

    # -- executor side --------------------------------------------------
    @property
    def connected(self) -> bool:
        return not self._hung_up and not self.closed.is_set()

    def read(self, size: int = 4096) -> bytes:
        if self.closed.is_set() or self._hung_up:
            return b""
        return self._input.get()

    def write(self, data: bytes) -> None:
        if self.closed.is_set():
            raise OSError("Socket is closed")
        with self._output_lock:
            self._output.extend(data)

    def exit(self, status: int) -> None:
        self.exit_status = status

    def close(self) -> None:
        self.closed.set()
        self._input.put(b"")
        self.window_changes.put(None)


@pytest.fixture
def pty_session() -> FakeSession:
    return FakeSession(PtyRequest(term="xterm-256color", rows=24, cols=80))


@pytest.fixture
def plain_session() -> FakeSession:
    return FakeSession()
