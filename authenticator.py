import logging
from typing import Optional, Union

import paramiko

from key_fetcher import KeyFetchError, KeyFetcher
from key_store import AuthorizedKey, KeySet

LOGGER = logging.getLogger(__name__)


class KeyAuthenticator:
    """Accept/reject decision for a public key offered by ``identity``.

    The static key set is shared by every connection and never modified.
    When a fetcher is configured, each attempt works on its own copy of the
    static set extended with the keys fetched for that identity.
    """

    def __init__(self, authorized_keys: KeySet, fetcher: Optional[KeyFetcher] = None):
        self.authorized_keys = authorized_keys
        self.fetcher = fetcher

    def keys_for(self, identity: str) -> KeySet:
        keys = self.authorized_keys
        if self.fetcher is None:
            return keys
        try:
            fetched = self.fetcher.fetch(identity)
        except KeyFetchError as exc:
            LOGGER.warning("Error fetching keys for %s: %s", identity, exc)
            return keys
        # TODO: skip fetched keys already present in the static set
        return keys.extend(fetched)

    def authorize(
        self,
        identity: str,
        offered_key: Union[AuthorizedKey, paramiko.PKey],
        remote_addr: Optional[str] = None,
    ) -> bool:
        if not isinstance(offered_key, AuthorizedKey):
            offered_key = AuthorizedKey.from_pkey(offered_key)

        for candidate in self.keys_for(identity):
            if candidate == offered_key:
                LOGGER.info(
                    "User %s authorized from %s (%s)",
                    identity, remote_addr or "-", offered_key.fingerprint,
                )
                return True

        LOGGER.warning(
            "User %s denied from %s (%s)",
            identity, remote_addr or "-", offered_key.fingerprint,
        )
        return False
