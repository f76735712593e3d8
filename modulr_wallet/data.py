"""
Wallet State — the plaintext payload protected by the vault.

Wire shape (field names are part of the compatibility contract)::

    {
      "v": 1, "createdAt": <ms>, "selectedAccountId": <id|null>,
      "accounts": [{"id", "name", "pub", "seedB64",
                    "mnemonic"?, "mnemonicPassword"?, "bip44Path"?}],
      "txs": [{"id", "time", "status", "nodeUrl", "from", "to",
               "amount", "fee", "nonce", "sig"?, "error"?}],
      "settings": {"nodeUrl": <url>}
    }

A ``WalletState`` must never be persisted unsealed; see ``Wallet.save``.
"""
import time
from typing import Annotated, Any, Literal, Optional, Union

import orjson
from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
    model_serializer,
    model_validator,
)
from pydantic import ValidationError as ModelValidationError

from .codec import b64decode
from .conf import DEFAULT_BIP44_PATH, DEFAULT_NODE_URL, WALLET_FORMAT_VERSION
from .exceptions import AccountNotFound, FormatError, UnsupportedFormat
from .keys import SEED_LENGTH, address_from_seed, validate_path


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

class RandomAccount(BaseModel):
    """Account backed by a random 32-byte seed."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    name: str
    pub: str
    seed_b64: str = Field(alias="seedB64", repr=False)

    @property
    def kind(self) -> str:
        return "random"

    @property
    def seed(self) -> bytes:
        return b64decode(self.seed_b64)

    @property
    def recoverable(self) -> bool:
        return False

    @model_validator(mode="after")
    def check_keypair(self) -> "RandomAccount":
        """Seed must be 32 bytes and ``pub`` must be its public key."""
        try:
            seed = b64decode(self.seed_b64)
        except FormatError as err:
            raise ValueError("seedB64 is not valid base64") from err
        if len(seed) != SEED_LENGTH:
            raise ValueError(
                f"seed must be exactly {SEED_LENGTH} bytes, got {len(seed)}"
            )
        if address_from_seed(seed) != self.pub:
            raise ValueError("pub does not match the account seed")
        return self


class DerivedAccount(RandomAccount):
    """Account recoverable from a BIP39 phrase, passphrase and path."""

    mnemonic: str = Field(min_length=1, repr=False)
    mnemonic_password: str = Field(default="", alias="mnemonicPassword", repr=False)
    bip44_path: tuple[int, int, int, int] = Field(
        default=DEFAULT_BIP44_PATH, alias="bip44Path"
    )

    @property
    def kind(self) -> str:
        return "derived"

    @property
    def recoverable(self) -> bool:
        return True

    @field_validator("bip44_path")
    @classmethod
    def check_path(cls, v: tuple[int, int, int, int]) -> tuple[int, int, int, int]:
        return validate_path(v)


def _account_kind(value: Any) -> str:
    if isinstance(value, dict):
        return "derived" if "mnemonic" in value else "random"
    return getattr(value, "kind", "random")


Account = Annotated[
    Union[
        Annotated[DerivedAccount, Tag("derived")],
        Annotated[RandomAccount, Tag("random")],
    ],
    Discriminator(_account_kind),
]


# ---------------------------------------------------------------------------
# Transaction history
# ---------------------------------------------------------------------------

TxStatus = Literal["created", "submitted", "failed"]


class TxRecord(BaseModel):
    """Locally recorded transaction and its submission status."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    time: int = Field(default_factory=now_ms)
    status: TxStatus = "created"
    node_url: str = Field(alias="nodeUrl")
    from_: str = Field(alias="from")
    to: str
    amount: Union[int, float]
    fee: Union[int, float]
    nonce: int
    sig: Optional[str] = None
    error: Optional[str] = None

    @model_serializer(mode="wrap")
    def _drop_unset(self, handler):
        data = handler(self)
        return {k: v for k, v in data.items() if v is not None}


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    node_url: str = Field(default=DEFAULT_NODE_URL, alias="nodeUrl")


# ---------------------------------------------------------------------------
# Wallet state
# ---------------------------------------------------------------------------

class WalletState(BaseModel):
    """Decrypted wallet contents: accounts, history and settings."""

    model_config = ConfigDict(populate_by_name=True)

    v: int = WALLET_FORMAT_VERSION
    created_at: int = Field(default_factory=now_ms, alias="createdAt")
    selected_account_id: Optional[str] = Field(default=None, alias="selectedAccountId")
    accounts: list[Account] = Field(default_factory=list)
    txs: list[TxRecord] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)

    @property
    def selected_account(self) -> Optional[RandomAccount]:
        if self.selected_account_id is None:
            return None
        for account in self.accounts:
            if account.id == self.selected_account_id:
                return account
        return None

    def get_account(self, account_id: str) -> RandomAccount:
        """Return the account with ``account_id``.

        Raises:
            AccountNotFound: If no such account exists.
        """
        for account in self.accounts:
            if account.id == account_id:
                return account
        raise AccountNotFound(f"Account {account_id} not found")

    def transactions_for(self, pub: Optional[str]) -> list[TxRecord]:
        """Transactions sent from or to ``pub`` (all when ``pub`` is None)."""
        if pub is None:
            return list(self.txs)
        return [tx for tx in self.txs if tx.from_ == pub or tx.to == pub]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> bytes:
        """Serialize to UTF-8 JSON for sealing."""
        return orjson.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: bytes) -> "WalletState":
        """Parse decrypted vault plaintext.

        Raises:
            UnsupportedFormat: If the state version is not recognized.
            FormatError: If the plaintext is not a valid wallet state.
        """
        try:
            parsed = orjson.loads(data)
        except orjson.JSONDecodeError as err:
            raise FormatError("Wallet state is not valid JSON") from err
        if not isinstance(parsed, dict):
            raise FormatError("Wallet state must be a JSON object")
        if parsed.get("v") != WALLET_FORMAT_VERSION:
            raise UnsupportedFormat(
                f"Unsupported wallet state version: {parsed.get('v')!r}"
            )
        try:
            return cls.model_validate(parsed)
        except ModelValidationError as err:
            raise FormatError(f"Invalid wallet state: {err}") from err
