"""
Account factories — random and mnemonic-derived signing accounts.

Security Note:
    Seeds and phrases only ever leave this module inside an account model,
    which lives in the sealed ``WalletState``.
"""
import secrets
import logging
from typing import Optional
from collections.abc import Sequence

from .codec import b64encode
from .conf import DEFAULT_BIP44_PATH
from .data import DerivedAccount, RandomAccount
from .keys import (
    encode_address,
    derive_keypair,
    generate_mnemonic,
    normalize_mnemonic,
    random_seed,
    seed_from_mnemonic,
    validate_path,
)

logger = logging.getLogger("modulr.keys")


def new_account_id() -> str:
    """Random 16-byte hex account identifier."""
    return secrets.token_hex(16)


def generate_random(name: str) -> RandomAccount:
    """Create an account from 32 fresh random bytes.

    Args:
        name: Display name.

    Returns:
        A ``RandomAccount``; not recoverable from a phrase.
    """
    seed = random_seed()
    public_key, _ = derive_keypair(seed)
    account = RandomAccount(
        id=new_account_id(),
        name=name,
        pub=encode_address(public_key),
        seed_b64=b64encode(seed),
    )
    logger.debug("Generated random account %s", account.id)
    return account


def generate_from_mnemonic(
    name: str,
    mnemonic: str,
    passphrase: str = "",
    path: Optional[Sequence[int]] = None,
) -> DerivedAccount:
    """Create (or recover) an account from a BIP39 phrase.

    Args:
        name: Display name.
        mnemonic: Seed phrase; normalized before validation.
        passphrase: Optional BIP39 passphrase.
        path: 4-segment hardened path, defaults to ``m/44'/7337'/0'/0'``.

    Returns:
        A ``DerivedAccount`` holding the normalized phrase and path.

    Raises:
        InvalidMnemonic: If the phrase fails wordlist/checksum validation.
        ValidationError: If the path is malformed.
    """
    segments = validate_path(path if path is not None else DEFAULT_BIP44_PATH)
    passphrase = passphrase or ""
    seed = seed_from_mnemonic(mnemonic, passphrase, segments)
    public_key, _ = derive_keypair(seed)
    account = DerivedAccount(
        id=new_account_id(),
        name=name,
        pub=encode_address(public_key),
        seed_b64=b64encode(seed),
        mnemonic=normalize_mnemonic(mnemonic),
        mnemonic_password=passphrase,
        bip44_path=segments,
    )
    logger.debug("Derived account %s from mnemonic", account.id)
    return account


def generate_default_account(name: str, passphrase: str = "") -> DerivedAccount:
    """New 24-word phrase on the default path."""
    return generate_from_mnemonic(
        name, generate_mnemonic(256), passphrase, DEFAULT_BIP44_PATH
    )
