"""
Vault Key Rotation — re-seal a vault under a new password or iteration count.

Envelopes keep their own iteration count, so raising ``DEFAULT_ITERATIONS``
never breaks old vaults. ``needs_rehash`` reports envelopes sealed below the
configured count; ``rotate_password`` re-seals them (optionally under a new
password) with a fresh salt and nonce.

Security Note:
    Plaintext exists in memory only during re-encryption.
    Never log passwords, plaintext or ciphertext.
"""
import logging
from typing import Optional

from .config import DEFAULT_ITERATIONS
from .crypto import create_envelope, open_envelope
from .envelope import VaultEnvelope

logger = logging.getLogger("modulr.vault")


def needs_rehash(envelope: VaultEnvelope, iterations: int = DEFAULT_ITERATIONS) -> bool:
    """True if ``envelope`` was sealed with fewer than ``iterations``."""
    return envelope.iterations < iterations


def rotate_password(
    envelope: VaultEnvelope,
    old_password: str,
    new_password: Optional[str] = None,
    iterations: Optional[int] = None,
) -> tuple[VaultEnvelope, bytes]:
    """Open ``envelope`` with ``old_password`` and seal it again.

    Args:
        envelope: Current envelope.
        old_password: Password that opens ``envelope``.
        new_password: Replacement password, defaults to ``old_password``.
        iterations: Iterations for the new envelope, defaults to
            ``DEFAULT_ITERATIONS``.

    Returns:
        Tuple of (new envelope with fresh salt and nonce, its raw key).

    Raises:
        AuthenticationFailed: If ``old_password`` is wrong.
        UnsupportedFormat: If ``envelope`` has an unknown format.
    """
    plaintext = open_envelope(old_password, envelope)
    target = iterations or DEFAULT_ITERATIONS
    rotated, raw_key = create_envelope(
        new_password if new_password is not None else old_password,
        plaintext,
        target,
    )
    logger.info(
        "Vault re-sealed: iterations %d -> %d, password changed=%s",
        envelope.iterations, target, new_password is not None,
    )
    return rotated, raw_key
