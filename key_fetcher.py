import logging
import time
from typing import Optional
from urllib.parse import quote

import requests

from key_store import KeyParseError, KeySet, parse_authorized_keys

LOGGER = logging.getLogger(__name__)

DEFAULT_KEYS_URL = "https://github.com/{identity}.keys"
DEFAULT_FETCH_TIMEOUT = 10.0
MAX_BODY_SIZE = 1 << 20
CHUNK_SIZE = 4096


class KeyFetchError(Exception):
    """The profile-keys endpoint did not yield a usable key list."""


class KeyFetcher:
    """Fetches a user's current public keys from a profile-keys endpoint.

    The endpoint serves plain ``authorized_keys`` text, one key per line, the
    way ``https://github.com/<user>.keys`` does.
    """

    def __init__(
        self,
        url_template: str = DEFAULT_KEYS_URL,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.url_template = url_template
        self.timeout = timeout
        self.session = session or requests.Session()

    def url_for(self, identity: str) -> str:
        return self.url_template.format(identity=quote(identity, safe=""))

    def fetch(self, identity: str) -> KeySet:
        url = self.url_for(identity)
        LOGGER.debug("Fetching keys for %s: GET %s", identity, url)
        deadline = time.monotonic() + self.timeout
        try:
            resp = self.session.get(url, timeout=self.timeout, stream=True)
        except requests.RequestException as exc:
            raise KeyFetchError(f"fetching keys from {url}: {exc}") from exc

        try:
            if resp.status_code != 200:
                raise KeyFetchError(f"invalid response from {url}: {resp.status_code}")
            body = self._read_body(resp, url, deadline)
        finally:
            resp.close()

        try:
            keys = parse_authorized_keys(body.decode("utf-8", errors="replace"), strict=True)
        except KeyParseError as exc:
            raise KeyFetchError(f"parsing keys from {url}: {exc}") from exc

        LOGGER.debug("Fetched %d keys for %s", len(keys), identity)
        return keys

    @staticmethod
    def _read_body(resp: requests.Response, url: str, deadline: float) -> bytes:
        # The per-request timeout bounds each socket read, not the whole body.
        body = bytearray()
        try:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                body += chunk
                if len(body) > MAX_BODY_SIZE:
                    raise KeyFetchError(f"response from {url} exceeds {MAX_BODY_SIZE} bytes")
                if time.monotonic() > deadline:
                    raise KeyFetchError(f"response from {url} not received in time")
        except requests.RequestException as exc:
            raise KeyFetchError(f"fetching keys from {url}: {exc}") from exc
        return bytes(body)

    def __repr__(self):
        return f"<KeyFetcher url={self.url_template!r} timeout={self.timeout}>"
