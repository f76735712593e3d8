"""
Wallet Exceptions — Error taxonomy shared by every wallet component.

- ``FormatError``: the stored envelope or plaintext cannot be understood.
  Fatal to the open attempt; never auto-migrated.
- ``AuthenticationError``: wrong password or tampered ciphertext. The two
  cases are deliberately indistinguishable; callers re-prompt.
- ``ValidationError``: malformed user input (mnemonic, seed, address, payload).
- ``NotFoundError``: nothing stored yet; routes to first-run setup.
- ``NetworkError``: the node could not be reached or rejected a request.
"""
from typing import Optional


class WalletError(Exception):
    """Base class for all wallet errors."""


class FormatError(WalletError):
    """Unrecognized envelope version, KDF, or malformed stored data."""


class UnsupportedFormat(FormatError):
    """Envelope version or KDF identifier is not supported."""


class AuthenticationError(WalletError):
    """Authenticated decryption failed."""


class AuthenticationFailed(AuthenticationError):
    """Wrong password or corrupted ciphertext."""


class ValidationError(WalletError, ValueError):
    """User supplied data failed validation."""


class InvalidMnemonic(ValidationError):
    """Seed phrase failed wordlist or checksum validation."""


class InvalidSeedLength(ValidationError):
    """Secret seed is not exactly 32 bytes."""


class InvalidAddress(ValidationError):
    """Address is not a base58 encoded 32-byte public key."""


class CircularReference(ValidationError):
    """A value contains itself along its own descent path."""


class UnsupportedValue(ValidationError):
    """A value falls outside the canonical JSON value set."""


class NotFoundError(WalletError):
    """Requested item does not exist."""


class VaultNotFound(NotFoundError):
    """No vault envelope is present in storage."""


class AccountNotFound(NotFoundError):
    """No account with the requested id."""


class NetworkError(WalletError):
    """Node request failed.

    Args:
        message: Human readable reason (node response text when available).
        status: HTTP status code if the node answered.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class WalletLocked(WalletError):
    """Operation requires an unlocked wallet."""


class KeyDerivationError(WalletError):
    """Hierarchical derivation produced an invalid key."""
