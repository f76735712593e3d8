"""
Vault Crypto Core — password key derivation and authenticated encryption.

- Key derivation: PBKDF2-HMAC-SHA256(password, salt 16B, iter) → 32-byte key
- Encryption: AES-256-GCM with a fresh random 96-bit nonce per seal

``seal`` draws a new salt and nonce on every call. ``seal_with_raw_key``
reuses the envelope's salt and iteration count (the raw key is bound to
them) but always draws a fresh nonce. Nonce reuse under one key is never
an acceptable optimization.

Security Note:
    Never log passwords, raw keys, plaintext or ciphertext.
    Wrong password and tampered ciphertext raise the same error.
"""
import os
import logging
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..codec import b64encode
from ..exceptions import AuthenticationFailed, ValidationError
from .config import (
    DEFAULT_ITERATIONS,
    ENVELOPE_VERSION,
    KDF_PBKDF2_SHA256,
    KEY_LENGTH,
    NONCE_SIZE,
    SALT_SIZE,
)
from .envelope import VaultEnvelope

logger = logging.getLogger("modulr.vault")

Plaintext = Union[bytes, str]


def _as_bytes(plaintext: Plaintext) -> bytes:
    if isinstance(plaintext, str):
        return plaintext.encode("utf-8")
    return bytes(plaintext)


def _check_raw_key(raw_key: bytes) -> bytes:
    if len(raw_key) != KEY_LENGTH:
        raise ValidationError(f"Raw vault key must be {KEY_LENGTH} bytes")
    return bytes(raw_key)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(password: str, salt: bytes, iterations: int) -> bytes:
    """Derive a 32-byte key from a password using PBKDF2-HMAC-SHA256.

    This is the deliberately slow step of every password unlock.

    Args:
        password: User password (UTF-8 encoded as is).
        salt: Per-envelope random salt.
        iterations: PBKDF2 iteration count.

    Returns:
        32-byte derived key.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def derive_raw_key(password: str, envelope: VaultEnvelope) -> bytes:
    """Derive the envelope's symmetric key without decrypting.

    Used to cache the key for the session instead of keeping the password.
    """
    envelope.check_format()
    return derive_key(password, envelope.salt, envelope.iterations)


# ---------------------------------------------------------------------------
# Seal / open
# ---------------------------------------------------------------------------

def _encrypt(key: bytes, salt: bytes, iterations: int, plaintext: bytes) -> VaultEnvelope:
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(key).encrypt(nonce, plaintext, None)
    return VaultEnvelope(
        v=ENVELOPE_VERSION,
        kdf=KDF_PBKDF2_SHA256,
        iterations=iterations,
        salt_b64=b64encode(salt),
        iv_b64=b64encode(nonce),
        ct_b64=b64encode(ct),
    )


def _decrypt(key: bytes, envelope: VaultEnvelope) -> bytes:
    try:
        return AESGCM(key).decrypt(envelope.iv, envelope.ciphertext, None)
    except InvalidTag as err:
        raise AuthenticationFailed(
            "Cannot open wallet: wrong password or corrupted data"
        ) from err


def seal(
    password: str,
    plaintext: Plaintext,
    iterations: Optional[int] = None,
) -> VaultEnvelope:
    """Encrypt ``plaintext`` under a password with fresh salt and nonce.

    Args:
        password: User password.
        plaintext: Data to protect (str is UTF-8 encoded).
        iterations: PBKDF2 iterations, defaults to ``DEFAULT_ITERATIONS``.

    Returns:
        New ``VaultEnvelope``.
    """
    return create_envelope(password, plaintext, iterations)[0]


def create_envelope(
    password: str,
    plaintext: Plaintext,
    iterations: Optional[int] = None,
) -> tuple[VaultEnvelope, bytes]:
    """Seal like ``seal`` and also return the derived raw key.

    Saves a second password derivation when the caller caches the key.

    Returns:
        Tuple of (new envelope, raw 32-byte key).
    """
    iterations = iterations or DEFAULT_ITERATIONS
    salt = os.urandom(SALT_SIZE)
    key = derive_key(password, salt, iterations)
    envelope = _encrypt(key, salt, iterations, _as_bytes(plaintext))
    logger.debug("Vault sealed (iterations=%d)", iterations)
    return envelope, key


def open_envelope(password: str, envelope: VaultEnvelope) -> bytes:
    """Decrypt an envelope with a password.

    Raises:
        UnsupportedFormat: Unknown envelope version or KDF.
        FormatError: Malformed envelope parameters.
        AuthenticationFailed: Wrong password or tampered ciphertext.
    """
    key = derive_raw_key(password, envelope)
    return _decrypt(key, envelope)


def open_with_raw_key(raw_key: bytes, envelope: VaultEnvelope) -> bytes:
    """Decrypt an envelope with a previously derived raw key.

    Raises:
        UnsupportedFormat: Unknown envelope version or KDF.
        AuthenticationFailed: Key does not match or ciphertext was tampered.
    """
    envelope.check_format()
    return _decrypt(_check_raw_key(raw_key), envelope)


def seal_with_raw_key(
    raw_key: bytes,
    envelope: VaultEnvelope,
    plaintext: Plaintext,
) -> VaultEnvelope:
    """Re-encrypt under a cached key, keeping the envelope's salt/iterations.

    A fresh nonce is drawn on every call.

    Args:
        raw_key: Key from ``derive_raw_key`` for ``envelope``.
        envelope: Current envelope (source of salt and iteration count).
        plaintext: New data to protect.

    Returns:
        New ``VaultEnvelope`` sharing salt and iterations with ``envelope``.

    Raises:
        AuthenticationFailed: If ``raw_key`` does not open ``envelope``.
    """
    envelope.check_format()
    raw_key = _check_raw_key(raw_key)
    # a key that cannot open the current envelope would lock the data away
    _decrypt(raw_key, envelope)
    sealed = _encrypt(
        raw_key,
        envelope.salt,
        envelope.iterations,
        _as_bytes(plaintext),
    )
    logger.debug("Vault resealed with cached key")
    return sealed
