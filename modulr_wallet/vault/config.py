"""
Vault Configuration — KDF parameters and session cache settings.

Optional overrides from environment variables:
    MODULR_VAULT_ITERATIONS = <PBKDF2 iterations for newly sealed envelopes>
    MODULR_SESSION_TTL = <seconds an unlock stays cached in session storage>

Security Note:
    Never log passwords or derived keys. Only log iteration counts and TTLs.
"""
import os
import logging

from pydantic import BaseModel, Field, field_validator

from ..conf import SESSION_UNLOCK_KEY, VAULT_STORAGE_KEY

logger = logging.getLogger("modulr.vault")

ENVELOPE_VERSION = 1
KDF_PBKDF2_SHA256 = "pbkdf2-sha256"
SUPPORTED_KDFS = frozenset({KDF_PBKDF2_SHA256})

DEFAULT_ITERATIONS = 310_000
MIN_ITERATIONS = 1_000
DEFAULT_SESSION_TTL = 15 * 60  # seconds

SALT_SIZE = 16
NONCE_SIZE = 12  # 96-bit nonce
KEY_LENGTH = 32  # AES-256


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    iterations: int = Field(default=DEFAULT_ITERATIONS, ge=MIN_ITERATIONS)
    kdf: str = Field(default=KDF_PBKDF2_SHA256)
    session_ttl: float = Field(default=DEFAULT_SESSION_TTL, gt=0)
    vault_key: str = Field(default=VAULT_STORAGE_KEY, min_length=1)
    session_key: str = Field(default=SESSION_UNLOCK_KEY, min_length=1)

    @field_validator("kdf")
    @classmethod
    def validate_kdf(cls, v: str) -> str:
        """Validate the KDF identifier is supported."""
        if v not in SUPPORTED_KDFS:
            raise ValueError(f"Unsupported KDF: {v}")
        return v

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig from environment overrides.

        Returns:
            Populated VaultConfig instance.
        """
        iterations = int(os.environ.get("MODULR_VAULT_ITERATIONS", DEFAULT_ITERATIONS))
        session_ttl = float(os.environ.get("MODULR_SESSION_TTL", DEFAULT_SESSION_TTL))
        if iterations < DEFAULT_ITERATIONS:
            logger.warning(
                "Vault iterations lowered to %d (default %d)",
                iterations, DEFAULT_ITERATIONS,
            )
        return cls(iterations=iterations, session_ttl=session_ttl)
