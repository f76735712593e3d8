"""
Session Key Cache — short-lived unlock cache for the derived vault key.

Keeps exactly one entry ``{"until": <epoch ms>, "keyB64": <raw key>}`` in a
session-scoped store so a reload within the TTL skips the slow password
derivation. The password itself is never cached.

Security Note (Threat Model):
    The raw key sits in session storage for up to ``ttl`` seconds. Anyone
    who can read that storage during the window can open the vault. It must
    never be written to persistent storage, and ``clear()`` runs on every
    lock and reset.
"""
import time
import logging
from typing import Callable, Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as ModelValidationError

from ..codec import b64decode, b64encode
from ..conf import SESSION_UNLOCK_KEY
from ..exceptions import FormatError
from ..storage import KeyValueStore
from .config import KEY_LENGTH

logger = logging.getLogger("modulr.vault")


class SessionCacheEntry(BaseModel):
    """Cached raw key with its absolute expiry."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    until: int  # epoch milliseconds
    key_b64: str = Field(alias="keyB64", repr=False)

    def is_valid(self, now_ms: int) -> bool:
        return now_ms < self.until


class SessionKeyCache:
    """Single-slot cache of one derived vault key.

    Args:
        store: Session-scoped key-value store (must not be persistent).
        key: Storage key of the slot.
        clock: Returns the current time in seconds; injectable for tests.

    Raises:
        ValueError: If ``store`` is persistent.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str = SESSION_UNLOCK_KEY,
        clock: Callable[[], float] = time.time,
    ):
        if getattr(store, "persistent", True):
            raise ValueError("Session key cache requires a session-scoped store")
        self._store = store
        self._key = key
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def set(self, raw_key: bytes, ttl: float) -> SessionCacheEntry:
        """Cache ``raw_key`` until ``now + ttl`` seconds, replacing any entry."""
        if len(raw_key) != KEY_LENGTH:
            raise ValueError(f"Raw vault key must be {KEY_LENGTH} bytes")
        entry = SessionCacheEntry(
            until=self._now_ms() + int(ttl * 1000),
            key_b64=b64encode(raw_key),
        )
        await self._store.set(
            self._key, orjson.dumps(entry.model_dump(by_alias=True))
        )
        logger.debug("Session unlock cached for %ss", ttl)
        return entry

    async def get(self) -> Optional[bytes]:
        """Return the cached key while it has not expired, else None.

        Expired or unreadable entries are removed.
        """
        data = await self._store.get(self._key)
        if data is None:
            return None
        try:
            entry = SessionCacheEntry.model_validate(orjson.loads(data))
            raw_key = b64decode(entry.key_b64)
        except (orjson.JSONDecodeError, ModelValidationError, FormatError):
            logger.warning("Discarding unreadable session unlock entry")
            await self.clear()
            return None
        if not entry.is_valid(self._now_ms()) or len(raw_key) != KEY_LENGTH:
            logger.debug("Session unlock expired")
            await self.clear()
            return None
        return raw_key

    async def clear(self) -> None:
        """Drop the cached key, whether or not it is still valid."""
        await self._store.remove(self._key)
