import base64
import hashlib
import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, Tuple

import paramiko

LOGGER = logging.getLogger(__name__)

FILE_SCHEME = "file://"


class KeyParseError(Exception):
    """A line could not be parsed as an OpenSSH authorized key."""


class KeyStoreError(Exception):
    """The authorized keys source could not be read."""


@dataclass(frozen=True)
class AuthorizedKey:
    """A public key in SSH wire encoding.

    Two keys are equal when their encoded key material matches; the type
    label and the comment are informational only.
    """

    key_type: str = field(compare=False)
    blob: bytes
    comment: Optional[str] = field(default=None, compare=False)

    @classmethod
    def from_pkey(cls, key: paramiko.PKey) -> "AuthorizedKey":
        """Wrap a key offered by a client during authentication."""
        return cls(key_type=key.get_name(), blob=key.asbytes())

    @property
    def fingerprint(self) -> str:
        digest = hashlib.sha256(self.blob).digest()
        return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")

    def to_line(self) -> str:
        line = f"{self.key_type} {base64.b64encode(self.blob).decode('ascii')}"
        if self.comment:
            line = f"{line} {self.comment}"
        return line


class KeySet:
    """Ordered, immutable collection of authorized keys.

    ``extend`` hands back a new set so that callers can build a private
    working copy without touching the shared one.
    """

    def __init__(self, keys: Iterable[AuthorizedKey] = ()):
        self._keys: Tuple[AuthorizedKey, ...] = tuple(keys)

    def extend(self, keys: Iterable[AuthorizedKey]) -> "KeySet":
        return KeySet(self._keys + tuple(keys))

    def __iter__(self) -> Iterator[AuthorizedKey]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: object) -> bool:
        return any(candidate == key for candidate in self._keys)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KeySet):
            return NotImplemented
        return self._keys == other._keys

    def __repr__(self):
        return f"KeySet({len(self._keys)} keys)"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def _skip_options(line: str) -> str:
    """Drop a leading authorized_keys options field (``no-pty,command="x y"``)."""
    in_quotes = False
    i = 0
    while i < len(line):
        ch = line[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            in_quotes = not in_quotes
        elif ch in " \t" and not in_quotes:
            return line[i:].lstrip()
        i += 1
    return ""


def _parse_blob(text: str) -> AuthorizedKey:
    try:
        blob = paramiko.PublicBlob.from_string(text)
    except (ValueError, TypeError, IndexError, paramiko.SSHException) as exc:
        raise KeyParseError(str(exc)) from exc
    comment = blob.comment or None
    return AuthorizedKey(key_type=blob.key_type, blob=bytes(blob.key_blob), comment=comment)


def parse_authorized_key(line: str) -> AuthorizedKey:
    """Parse one ``[options] <type> <base64> [comment]`` line."""
    text = line.strip()
    if not text or text.startswith("#"):
        raise KeyParseError("empty or comment line")
    try:
        return _parse_blob(text)
    except KeyParseError:
        rest = _skip_options(text)
        if not rest:
            raise
        return _parse_blob(rest)


def parse_authorized_keys(data: str, strict: bool = False) -> KeySet:
    """Parse a whole authorized_keys document.

    Blank lines and ``#`` comments are always skipped. Other bad lines are
    dropped unless ``strict`` is set, in which case the first one raises
    ``KeyParseError``.
    """
    keys = []
    for lineno, line in enumerate(data.splitlines(), start=1):
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        try:
            keys.append(parse_authorized_key(text))
        except KeyParseError as exc:
            if strict:
                raise KeyParseError(f"line {lineno}: {exc}") from exc
            LOGGER.debug("Skipping unparseable key on line %d: %s", lineno, exc)
    return KeySet(keys)


def load_keys(source: Optional[str]) -> KeySet:
    """Load the static key set from ``source``.

    ``source`` is a path or a ``file://`` reference. A source that is neither
    prefixed nor an existing file yields an empty set.
    """
    if not source:
        LOGGER.warning("No authorized keys source configured")
        return KeySet()

    explicit = source.startswith(FILE_SCHEME)
    path = source[len(FILE_SCHEME):] if explicit else source
    if not explicit and not os.path.isfile(path):
        LOGGER.warning("Authorized keys file %s not found, starting with no static keys", path)
        return KeySet()

    try:
        with open(path, "r", encoding="utf-8", errors="replace") as fh:
            data = fh.read()
    except OSError as exc:
        raise KeyStoreError(f"error reading keys file {path}: {exc}") from exc

    keys = parse_authorized_keys(data)
    LOGGER.info("Loaded %d authorized keys from %s", len(keys), path)
    return keys
