"""
Key Derivation & Signing — ed25519 seeds, BIP39 phrases and detached signatures.

Mnemonic accounts derive exactly like the Modulr JS SDK:

1. BIP39 seed = PBKDF2-HMAC-SHA512(normalized phrase, "mnemonic" + passphrase)
2. BIP32 master = HMAC-SHA512("Bitcoin seed", seed)
3. Four hardened child steps over the secp256k1 order:
   ``I = HMAC-SHA512(c, 0x00 || k || ser32(i + 2^31))``, ``k' = (IL + k) mod n``
4. The final 32-byte private key is used as the ed25519 seed.

Security Note:
    Never log seeds, phrases, passphrases or private keys.
"""
import hmac
import hashlib
import struct
import secrets
import logging
from typing import Union
from collections.abc import Sequence

import base58
from mnemonic import Mnemonic
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .conf import DEFAULT_BIP44_PATH
from .exceptions import (
    InvalidAddress,
    InvalidMnemonic,
    InvalidSeedLength,
    KeyDerivationError,
    ValidationError,
)

logger = logging.getLogger("modulr.keys")

SEED_LENGTH = 32  # ed25519 seed
PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64
HARDENED_OFFSET = 0x80000000
PATH_LENGTH = 4

# secp256k1 group order
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_MASTER_HMAC_KEY = b"Bitcoin seed"

_ENGLISH = Mnemonic("english")

Message = Union[bytes, str]


def _as_bytes(message: Message) -> bytes:
    if isinstance(message, str):
        return message.encode("utf-8")
    return bytes(message)


# ---------------------------------------------------------------------------
# Seeds and keypairs
# ---------------------------------------------------------------------------

def random_seed() -> bytes:
    """Draw a fresh 32-byte seed from the OS CSPRNG."""
    return secrets.token_bytes(SEED_LENGTH)


def check_seed(seed: bytes) -> bytes:
    """Ensure ``seed`` is exactly 32 bytes.

    Raises:
        InvalidSeedLength: On any other length.
    """
    if not isinstance(seed, (bytes, bytearray)) or len(seed) != SEED_LENGTH:
        size = len(seed) if isinstance(seed, (bytes, bytearray)) else type(seed).__name__
        raise InvalidSeedLength(
            f"Seed must be exactly {SEED_LENGTH} bytes, got {size}"
        )
    return bytes(seed)


def derive_keypair(seed: bytes) -> tuple[bytes, Ed25519PrivateKey]:
    """Derive the ed25519 keypair for a 32-byte seed.

    Pure and deterministic: the same seed always yields the same public key.

    Returns:
        Tuple of (raw 32-byte public key, private key object).
    """
    private_key = Ed25519PrivateKey.from_private_bytes(check_seed(seed))
    public_key = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return public_key, private_key


def public_key_from_seed(seed: bytes) -> bytes:
    """Raw 32-byte ed25519 public key for ``seed``."""
    return derive_keypair(seed)[0]


# ---------------------------------------------------------------------------
# Addresses (base58 public keys)
# ---------------------------------------------------------------------------

def encode_address(public_key: bytes) -> str:
    """Base58 encode a raw public key."""
    return base58.b58encode(public_key).decode("ascii")


def decode_address(address: str) -> bytes:
    """Decode a base58 address back to its 32-byte public key.

    Raises:
        InvalidAddress: If the text is not base58 or not 32 bytes long.
    """
    try:
        raw = base58.b58decode(address.strip())
    except (ValueError, AttributeError) as err:
        raise InvalidAddress(f"Invalid base58 address: {address!r}") from err
    if len(raw) != PUBLIC_KEY_LENGTH:
        raise InvalidAddress(
            f"Address must decode to {PUBLIC_KEY_LENGTH} bytes, got {len(raw)}"
        )
    return raw


def is_valid_address(address: str) -> bool:
    try:
        decode_address(address)
    except InvalidAddress:
        return False
    return True


def address_from_seed(seed: bytes) -> str:
    return encode_address(public_key_from_seed(seed))


# ---------------------------------------------------------------------------
# Detached signatures
# ---------------------------------------------------------------------------

def sign_detached(message: Message, seed: bytes) -> bytes:
    """Sign ``message`` (str is UTF-8 encoded) with the key for ``seed``.

    Returns:
        64-byte ed25519 signature.

    Raises:
        InvalidSeedLength: If ``seed`` is not 32 bytes.
    """
    _, private_key = derive_keypair(seed)
    signature = private_key.sign(_as_bytes(message))
    if len(signature) != SIGNATURE_LENGTH:
        raise RuntimeError("ed25519 produced a malformed signature")
    return signature


def verify_detached(message: Message, signature: bytes, public_key: bytes) -> bool:
    """Check a detached ed25519 signature.

    Returns:
        True when the signature is valid for ``message`` and ``public_key``.
    """
    if len(public_key) != PUBLIC_KEY_LENGTH or len(signature) != SIGNATURE_LENGTH:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(
            signature, _as_bytes(message)
        )
    except InvalidSignature:
        return False
    return True


# ---------------------------------------------------------------------------
# Mnemonics
# ---------------------------------------------------------------------------

def normalize_mnemonic(phrase: str) -> str:
    """Trim, lowercase and collapse internal whitespace to single spaces."""
    return " ".join(phrase.strip().lower().split())


def validate_mnemonic(phrase: str) -> str:
    """Normalize and validate a phrase against the English wordlist.

    Returns:
        The normalized phrase.

    Raises:
        InvalidMnemonic: On unknown words, bad length or bad checksum.
    """
    normalized = normalize_mnemonic(phrase)
    try:
        valid = bool(normalized) and _ENGLISH.check(normalized)
    except (ValueError, LookupError):
        valid = False
    if not valid:
        raise InvalidMnemonic("Invalid seed phrase")
    return normalized


def generate_mnemonic(strength: int = 256) -> str:
    """Generate a new English BIP39 phrase (24 words by default)."""
    return _ENGLISH.generate(strength=strength)


def mnemonic_to_seed(phrase: str, passphrase: str = "") -> bytes:
    """64-byte BIP39 seed for a validated phrase."""
    return Mnemonic.to_seed(validate_mnemonic(phrase), passphrase=passphrase or "")


# ---------------------------------------------------------------------------
# Hardened BIP32 derivation
# ---------------------------------------------------------------------------

def validate_path(path: Sequence[int]) -> tuple[int, int, int, int]:
    """Check a 4-segment derivation path of unhardened indices.

    Raises:
        ValidationError: On wrong length, negative or out of range segments.
    """
    segments = tuple(path)
    if len(segments) != PATH_LENGTH:
        raise ValidationError(
            f"Derivation path must have {PATH_LENGTH} segments, got {len(segments)}"
        )
    for segment in segments:
        if isinstance(segment, bool) or not isinstance(segment, int):
            raise ValidationError(f"Path segment must be an integer: {segment!r}")
        if not 0 <= segment < HARDENED_OFFSET:
            raise ValidationError(f"Path segment out of range: {segment}")
    return segments  # type: ignore[return-value]


def master_key(seed: bytes) -> tuple[bytes, bytes]:
    """BIP32 master (private key, chain code) for a BIP39 seed."""
    digest = hmac.new(_MASTER_HMAC_KEY, seed, hashlib.sha512).digest()
    key, chain_code = digest[:32], digest[32:]
    if not 0 < int.from_bytes(key, "big") < SECP256K1_ORDER:
        raise KeyDerivationError("Master key is outside the curve order")
    return key, chain_code


def derive_hardened_child(
    key: bytes, chain_code: bytes, index: int
) -> tuple[bytes, bytes]:
    """One hardened BIP32 private derivation step.

    Args:
        key: Parent 32-byte private key.
        chain_code: Parent chain code.
        index: Child index without the hardened offset.

    Returns:
        Tuple of (child private key, child chain code).
    """
    data = b"\x00" + key + struct.pack(">L", index | HARDENED_OFFSET)
    digest = hmac.new(chain_code, data, hashlib.sha512).digest()
    tweak = int.from_bytes(digest[:32], "big")
    if tweak >= SECP256K1_ORDER:
        raise KeyDerivationError(f"Invalid child at index {index}")
    child = (tweak + int.from_bytes(key, "big")) % SECP256K1_ORDER
    if child == 0:
        raise KeyDerivationError(f"Invalid child at index {index}")
    return child.to_bytes(32, "big"), digest[32:]


def derive_path(seed: bytes, path: Sequence[int]) -> bytes:
    """Walk hardened ``path`` from the master key of ``seed``."""
    key, chain_code = master_key(seed)
    for index in path:
        key, chain_code = derive_hardened_child(key, chain_code, index)
    return key


def seed_from_mnemonic(
    phrase: str,
    passphrase: str = "",
    path: Sequence[int] = DEFAULT_BIP44_PATH,
) -> bytes:
    """Derive the 32-byte ed25519 seed for a phrase, passphrase and path.

    Raises:
        InvalidMnemonic: If the phrase fails validation.
        ValidationError: If the path is malformed.
    """
    segments = validate_path(path)
    root = mnemonic_to_seed(phrase, passphrase)
    seed = derive_path(root, segments)
    logger.debug("Derived mnemonic seed on path m/%s'", "'/".join(map(str, segments)))
    return check_seed(seed)
