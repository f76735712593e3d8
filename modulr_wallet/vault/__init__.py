"""Vault — password-sealed storage for the wallet state.

Security Note (Threat Model):
    The decrypted wallet state and, while unlocked, the derived vault key
    live in process memory. A memory dump of the process during that window
    exposes them. This is an accepted limitation; mitigation requires
    hardware-backed key storage which is out of scope.
"""

from .config import VaultConfig, DEFAULT_ITERATIONS
from .envelope import VaultEnvelope
from .crypto import (
    derive_key,
    derive_raw_key,
    create_envelope,
    seal,
    open_envelope,
    open_with_raw_key,
    seal_with_raw_key,
)
from .session_cache import SessionKeyCache, SessionCacheEntry
from .key_rotation import needs_rehash, rotate_password

__all__ = [
    "VaultConfig",
    "DEFAULT_ITERATIONS",
    "VaultEnvelope",
    "derive_key",
    "derive_raw_key",
    "create_envelope",
    "seal",
    "open_envelope",
    "open_with_raw_key",
    "seal_with_raw_key",
    "SessionKeyCache",
    "SessionCacheEntry",
    "needs_rehash",
    "rotate_password",
]
