"""Run the configured command under a pseudo-terminal for one SSH session.

The session thread owns the process: it spawns it, waits for it, and tears
everything down. Two helper threads live alongside it for the lifetime of
the process, one feeding caller input into the PTY and one applying
window-change events; PTY output is pumped back to the caller by a third.
"""

import errno
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import subprocess
import termios
import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

from session import Session

LOGGER = logging.getLogger(__name__)

DEFAULT_ENV_PATH = "/sbin:/usr/sbin:/bin:/usr/bin"
DEFAULT_ENV_HOME = "/var/empty"

NO_PTY_MESSAGE = b"No PTY requested.\n"

POLL_INTERVAL = 0.1
DRAIN_TIMEOUT = 1.0
HANGUP_GRACE = 5.0
WINSIZE_MAX = 0xFFFF


def build_env(term: Optional[str] = None) -> Dict[str, str]:
    """Environment for the spawned command. Nothing is inherited."""
    env = {"PATH": DEFAULT_ENV_PATH, "HOME": DEFAULT_ENV_HOME}
    if term:
        env["TERM"] = term
    return env


def set_winsize(fd: int, rows: int, cols: int) -> None:
    # SSH carries sizes as uint32; the kernel winsize fields are uint16.
    rows = min(max(rows, 0), WINSIZE_MAX)
    cols = min(max(cols, 0), WINSIZE_MAX)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def get_winsize(fd: int) -> Tuple[int, int]:
    packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, struct.pack("HHHH", 0, 0, 0, 0))
    rows, cols, _, _ = struct.unpack("HHHH", packed)
    return rows, cols


def wait_fd(fd: int, events: int, timeout: float) -> bool:
    """Wait until ``fd`` reports one of ``events``; works for any descriptor number."""
    poller = select.poll()
    poller.register(fd, events)
    return bool(poller.poll(timeout * 1000))


def _acquire_controlling_tty():
    # Runs in the child after setsid(); fd 0 is already the PTY slave.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass  # command runs without a controlling terminal


class PtyProcess:
    """A command attached to the slave side of a PTY.

    Every access to the master descriptor happens under ``_lock`` and is
    skipped once ``close`` has run, so late readers and writers never touch
    a closed (or since reused) descriptor number.
    """

    def __init__(self, proc: subprocess.Popen, master_fd: int):
        self._proc = proc
        self._fd: Optional[int] = master_fd
        self._lock = threading.Lock()

    @classmethod
    def spawn(cls, argv: Sequence[str], env: Dict[str, str], rows: int = 24, cols: int = 80) -> "PtyProcess":
        master_fd, slave_fd = pty.openpty()
        try:
            set_winsize(slave_fd, rows, cols)
            proc = subprocess.Popen(
                list(argv),
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                close_fds=True,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        os.set_blocking(master_fd, False)
        return cls(proc, master_fd)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def running(self) -> bool:
        return self._proc.poll() is None

    @property
    def closed(self) -> bool:
        return self._fd is None

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------
    def read(self, size: int = 4096, timeout: float = POLL_INTERVAL) -> Optional[bytes]:
        """Read PTY output.

        Returns ``None`` when nothing arrived within ``timeout`` and ``b""``
        once the PTY is closed or every slave side has gone away.
        """
        fd = self._fd
        if fd is None:
            return b""
        try:
            ready = wait_fd(fd, select.POLLIN, timeout)
        except OSError:
            return b""
        if not ready:
            return None
        with self._lock:
            if self._fd is None:
                return b""
            try:
                return os.read(self._fd, size)
            except BlockingIOError:
                return None
            except OSError as exc:
                # Linux reports EIO on the master once the slave is closed.
                LOGGER.debug("PTY read for pid %d ended: %s", self.pid, exc)
                return b""

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            with self._lock:
                fd = self._fd
                if fd is None:
                    raise OSError(errno.EBADF, "PTY is closed")
                try:
                    written = os.write(fd, view)
                except BlockingIOError:
                    written = 0
            view = view[written:]
            if view:
                try:
                    wait_fd(fd, select.POLLOUT, POLL_INTERVAL)
                except OSError:
                    pass

    def resize(self, rows: int, cols: int) -> bool:
        with self._lock:
            if self._fd is None:
                return False
            set_winsize(self._fd, rows, cols)
            return True

    def window_size(self) -> Tuple[int, int]:
        with self._lock:
            if self._fd is None:
                raise OSError(errno.EBADF, "PTY is closed")
            return get_winsize(self._fd)

    # ------------------------------------------------------------------
    # Process control
    # ------------------------------------------------------------------
    def wait(self) -> int:
        """Wait for the command and return its exit status.

        A command killed by signal N reports ``128 + N``, as shells do.
        """
        returncode = self._proc.wait()
        if returncode < 0:
            return 128 - returncode
        return returncode

    def signal(self, signum: int) -> None:
        if not self.running:
            return
        try:
            os.killpg(self._proc.pid, signum)
        except ProcessLookupError:
            pass

    def hangup(self, grace: float = HANGUP_GRACE) -> None:
        """Deliver SIGHUP to the process group, then SIGKILL after ``grace``."""
        self.signal(signal.SIGHUP)
        try:
            self._proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            LOGGER.warning("pid %d ignored SIGHUP for %.1fs, killing it", self.pid, grace)
            self.signal(signal.SIGKILL)

    def close(self) -> bool:
        with self._lock:
            if self._fd is None:
                return False
            os.close(self._fd)
            self._fd = None
            return True


class PtySessionExecutor:
    """Session handler spawning one fixed command per authorized connection."""

    def __init__(self, command: str, args: Sequence[str] = ()):
        self.command = command
        self.args: Tuple[str, ...] = tuple(args)

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]

    def handle(self, session: Session) -> int:
        """Run the session to completion and return the exit status sent."""
        stime = time.time()
        LOGGER.info("New session @%s %s (%d)", session.identity, session.remote_addr, int(stime))
        try:
            return self._run(session)
        finally:
            etime = time.time()
            LOGGER.info(
                "Session ended @%s %s (%d) [%.3fs]",
                session.identity, session.remote_addr, int(etime), etime - stime,
            )

    # ------------------------------------------------------------------
    def _run(self, session: Session) -> int:
        request = session.pty_request
        if request is None:
            try:
                session.write(NO_PTY_MESSAGE)
            except (OSError, EOFError) as exc:
                LOGGER.debug("Could not notify %s: %s", session.remote_addr, exc)
            return self._finish(session, 1)

        env = build_env(request.term)
        LOGGER.debug("Executing command %s with arguments %s", self.command, list(self.args))
        try:
            process = PtyProcess.spawn(self.argv, env, rows=request.rows, cols=request.cols)
        except (OSError, subprocess.SubprocessError) as exc:
            LOGGER.error("Error executing command %s: %s", self.command, exc)
            return self._finish(session, 1)
        LOGGER.debug("Started %s as pid %d (%dx%d)", self.command, process.pid, request.cols, request.rows)

        stopping = threading.Event()
        workers = {
            "resize": threading.Thread(target=self._apply_resizes, args=(session, process), daemon=True),
            "stdin": threading.Thread(target=self._copy_input, args=(session, process), daemon=True),
            "stdout": threading.Thread(target=self._copy_output, args=(session, process, stopping), daemon=True),
        }
        for name, worker in workers.items():
            worker.name = f"{name}-{process.pid}"
            worker.start()

        status = process.wait()
        LOGGER.debug("pid %d exited with status %d", process.pid, status)
        stopping.set()
        workers["stdout"].join()

        self._finish(session, status)
        workers["stdin"].join(timeout=DRAIN_TIMEOUT)
        process.close()
        workers["stdin"].join()
        workers["resize"].join()
        return status

    @staticmethod
    def _finish(session: Session, status: int) -> int:
        session.exit(status)
        session.close()
        return status

    # ----------------------- workers ---------------------------
    @staticmethod
    def _apply_resizes(session: Session, process: PtyProcess):
        for size in iter(session.window_changes.get, None):
            rows, cols = size
            try:
                if not process.resize(rows, cols):
                    LOGGER.debug("Dropping resize to %dx%d, PTY closed", cols, rows)
            except OSError as exc:
                LOGGER.debug("Resize to %dx%d failed: %s", cols, rows, exc)

    @staticmethod
    def _copy_input(session: Session, process: PtyProcess):
        while True:
            data = session.read()
            if not data:
                break
            try:
                process.write(data)
            except OSError as exc:
                LOGGER.debug("stdin copy for pid %d stopped: %s", process.pid, exc)
                return
        if not session.connected and process.running:
            LOGGER.info("Caller %s hung up, sending SIGHUP to pid %d", session.remote_addr, process.pid)
            process.hangup()

    @staticmethod
    def _copy_output(session: Session, process: PtyProcess, stopping: threading.Event):
        deadline = None
        while True:
            if stopping.is_set() and deadline is None:
                deadline = time.monotonic() + DRAIN_TIMEOUT
            if deadline is not None and time.monotonic() > deadline:
                break
            data = process.read()
            if data is None:
                if stopping.is_set():
                    break
                continue
            if not data:
                break
            try:
                session.write(data)
            except (OSError, EOFError) as exc:
                LOGGER.debug("stdout copy for pid %d stopped: %s", process.pid, exc)
                break
