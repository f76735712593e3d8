"""
Wallet settings read from the environment.

    MODULR_NODE_URL = <default node endpoint for new wallets>
    MODULR_NODE_TIMEOUT = <seconds, default request timeout>
"""
import os

DEFAULT_NODE_URL = os.environ.get("MODULR_NODE_URL", "http://localhost:7332")
NODE_TIMEOUT = float(os.environ.get("MODULR_NODE_TIMEOUT", "10"))

# Storage keys (persistent / session-scoped)
VAULT_STORAGE_KEY = "modulr.vault.v1"
SESSION_UNLOCK_KEY = "modulr.session.unlock.v1"

# BIP44 path used for new and imported accounts: m/44'/7337'/0'/0'
DEFAULT_BIP44_PATH: tuple[int, int, int, int] = (44, 7337, 0, 0)

WALLET_FORMAT_VERSION = 1
