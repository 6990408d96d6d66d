import logging
import queue
from dataclasses import dataclass
from typing import Optional, Tuple

import paramiko

LOGGER = logging.getLogger(__name__)

WindowSize = Tuple[int, int]  # (rows, cols)


@dataclass(frozen=True)
class PtyRequest:
    term: str
    rows: int
    cols: int


class Session:
    """One accepted connection, seen from the command's side.

    Wraps the paramiko channel the caller opened. Window-change requests
    arriving on the channel are pushed onto ``window_changes`` as
    ``(rows, cols)`` tuples; ``None`` marks the end of the stream.
    """

    def __init__(
        self,
        channel: paramiko.Channel,
        identity: str,
        remote_addr: str,
        pty_request: Optional[PtyRequest] = None,
        window_changes: "Optional[queue.Queue[Optional[WindowSize]]]" = None,
    ):
        self.channel = channel
        self.identity = identity
        self.remote_addr = remote_addr
        self.pty_request = pty_request
        self.window_changes = window_changes if window_changes is not None else queue.Queue()

    @property
    def connected(self) -> bool:
        transport = self.channel.get_transport()
        return not self.channel.closed and transport is not None and transport.is_active()

    def read(self, size: int = 4096) -> bytes:
        """Read caller input; ``b""`` on EOF or on any channel error."""
        try:
            return self.channel.recv(size)
        except (OSError, EOFError, paramiko.SSHException) as exc:
            LOGGER.debug("Channel read from %s ended: %s", self.remote_addr, exc)
            return b""

    def write(self, data: bytes) -> None:
        self.channel.sendall(data)

    def exit(self, status: int) -> None:
        try:
            self.channel.send_exit_status(status)
        except (OSError, EOFError, paramiko.SSHException) as exc:
            LOGGER.debug("Could not deliver exit status to %s: %s", self.remote_addr, exc)

    def close(self) -> None:
        self.window_changes.put(None)
        try:
            self.channel.close()
        except (OSError, EOFError) as exc:
            LOGGER.debug("Channel close for %s failed: %s", self.remote_addr, exc)

    def __repr__(self):
        return f"<Session {self.identity}@{self.remote_addr} pty={self.pty_request}>"
