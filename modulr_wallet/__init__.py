"""Modulr Wallet.

Client-side wallet core: sealed vault, account keys and signed transfers.
"""
from .version import __version__
from .exceptions import (
    WalletError,
    FormatError,
    UnsupportedFormat,
    AuthenticationError,
    AuthenticationFailed,
    ValidationError,
    NotFoundError,
    NetworkError,
    WalletLocked,
)
from .data import WalletState, RandomAccount, DerivedAccount, TxRecord
from .storage import MemoryStorage, FileStorage
from .node import NodeClient
from .transaction import build_transfer, verify_transfer
from .wallet import Wallet, WalletStatus

__all__ = [
    "__version__",
    "Wallet",
    "WalletStatus",
    "WalletState",
    "RandomAccount",
    "DerivedAccount",
    "TxRecord",
    "MemoryStorage",
    "FileStorage",
    "NodeClient",
    "build_transfer",
    "verify_transfer",
    "WalletError",
    "FormatError",
    "UnsupportedFormat",
    "AuthenticationError",
    "AuthenticationFailed",
    "ValidationError",
    "NotFoundError",
    "NetworkError",
    "WalletLocked",
]
