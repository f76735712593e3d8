"""
Transaction Builder — canonical preimage, content id and detached signature.

Preimage (protocol v1)::

    v:from:to:amount:fee:nonce:<stable_serialize(payload)>

Each scalar is coerced with ``codec.as_string`` (``None`` becomes ``""``),
the delimiter is ``:`` and the payload defaults to ``{}``.

The id is the BLAKE3 hex digest of the UTF-8 preimage. The node verifies the
ed25519 signature over the UTF-8 bytes of that hex id, so ``sign_over="id"``
is the pinned default. ``sign_over="preimage"`` reproduces the earlier
sign-the-preimage convention for nodes that still expect it.

Security Note:
    A hashing or signing failure propagates. There is no fallback that could
    emit an empty or default signature.
"""
import math
import logging
from typing import Any, Literal, Union

import orjson
from blake3 import blake3
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as ModelValidationError

from .codec import as_string, b64decode, b64encode, stable_dumps
from .exceptions import FormatError, InvalidAddress, ValidationError
from .keys import check_seed, decode_address, sign_detached, verify_detached

logger = logging.getLogger("modulr.wallet")

TX_VERSION = 1
TX_TYPE = "transfer"
PREIMAGE_DELIMITER = ":"


class TxProtocol(BaseModel):
    """Pinned hashing/signing convention."""

    model_config = ConfigDict(frozen=True)

    hash_name: Literal["blake3"] = "blake3"
    sign_over: Literal["id", "preimage"] = "id"


DEFAULT_PROTOCOL = TxProtocol()


class TransferDraft(BaseModel):
    """Unsigned transfer as sent to the node (minus ``sig``)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    v: int = TX_VERSION
    type: Literal["transfer"] = TX_TYPE
    from_: str = Field(alias="from")
    to: str
    amount: Union[int, float]
    fee: Union[int, float]
    nonce: int
    payload: Any = Field(default_factory=dict)

    def preimage(self) -> str:
        return tx_preimage(
            self.v, self.from_, self.to, self.amount, self.fee, self.nonce,
            self.payload,
        )


class SignedTransfer(BaseModel):
    """Result of ``build_transfer``."""

    model_config = ConfigDict(frozen=True)

    draft: TransferDraft
    preimage: str
    id: str
    signature: str  # base64

    @property
    def tx(self) -> dict[str, Any]:
        """Draft fields plus ``sig``, ready for submission."""
        data = self.draft.model_dump(by_alias=True)
        data["sig"] = self.signature
        return data

    def to_json(self) -> bytes:
        return orjson.dumps(self.tx)


# ---------------------------------------------------------------------------
# Preimage / id
# ---------------------------------------------------------------------------

def tx_preimage(
    version: Any,
    sender: Any,
    recipient: Any,
    amount: Any,
    fee: Any,
    nonce: Any,
    payload: Any = None,
) -> str:
    """Canonical preimage string for a transfer.

    Raises:
        CircularReference: If the payload contains itself.
        UnsupportedValue: If a field or payload value is not canonical.
    """
    fields = [as_string(value) for value in (version, sender, recipient, amount, fee, nonce)]
    fields.append(stable_dumps({} if payload is None else payload))
    return PREIMAGE_DELIMITER.join(fields)


def tx_id(preimage: Union[str, bytes]) -> str:
    """BLAKE3 hex digest (64 chars) of the preimage."""
    if isinstance(preimage, str):
        preimage = preimage.encode("utf-8")
    return blake3(preimage).hexdigest()


def signing_message(preimage: str, txid: str, protocol: TxProtocol = DEFAULT_PROTOCOL) -> bytes:
    """Bytes covered by the signature under ``protocol``."""
    if protocol.sign_over == "id":
        return txid.encode("utf-8")
    return preimage.encode("utf-8")


# ---------------------------------------------------------------------------
# Build / verify
# ---------------------------------------------------------------------------

def _check_amount(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number, got {type(value).__name__}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(f"{name} must be finite")
    if value < 0:
        raise ValidationError(f"{name} cannot be negative")


def build_transfer(
    sender: str,
    recipient: str,
    amount: Union[int, float],
    fee: Union[int, float],
    nonce: int,
    payload: Any = None,
    *,
    seed: bytes,
    protocol: TxProtocol = DEFAULT_PROTOCOL,
) -> SignedTransfer:
    """Compose, hash and sign a transfer.

    Identical inputs always yield an identical preimage and id.

    Args:
        sender: Base58 public key of the signing account.
        recipient: Base58 public key of the recipient.
        amount: Transfer amount.
        fee: Fee paid to the node.
        nonce: Account nonce (last known nonce + 1).
        payload: JSON-like payload, defaults to ``{}``.
        seed: 32-byte ed25519 seed of ``sender``.
        protocol: Signing convention, defaults to signing the id.

    Returns:
        ``SignedTransfer`` with draft, preimage, id and base64 signature.

    Raises:
        InvalidSeedLength: If ``seed`` is not 32 bytes.
        ValidationError: If amount, fee or nonce are malformed.
        CircularReference: If the payload contains itself.
    """
    seed = check_seed(seed)
    _check_amount("amount", amount)
    _check_amount("fee", fee)
    if isinstance(nonce, bool) or not isinstance(nonce, int) or nonce < 0:
        raise ValidationError(f"nonce must be a non-negative integer, got {nonce!r}")
    payload = {} if payload is None else payload

    preimage = tx_preimage(TX_VERSION, sender, recipient, amount, fee, nonce, payload)
    txid = tx_id(preimage)
    signature = sign_detached(signing_message(preimage, txid, protocol), seed)

    draft = TransferDraft(
        from_=sender,
        to=recipient,
        amount=amount,
        fee=fee,
        nonce=nonce,
        payload=payload,
    )
    logger.debug("Built transfer %s (nonce=%d)", txid, nonce)
    return SignedTransfer(
        draft=draft,
        preimage=preimage,
        id=txid,
        signature=b64encode(signature),
    )


def verify_transfer(tx: dict[str, Any], protocol: TxProtocol = DEFAULT_PROTOCOL) -> bool:
    """Recompute the preimage of a signed transfer and check ``sig``.

    Returns:
        True if ``sig`` is a valid signature by ``from``.

    Raises:
        ValidationError: If the transaction is malformed.
    """
    try:
        draft = TransferDraft.model_validate(
            {k: v for k, v in tx.items() if k != "sig"}
        )
        signature = b64decode(tx["sig"])
        public_key = decode_address(draft.from_)
    except (ModelValidationError, KeyError, FormatError, InvalidAddress) as err:
        raise ValidationError(f"Malformed transaction: {err}") from err
    preimage = draft.preimage()
    txid = tx_id(preimage)
    return verify_detached(signing_message(preimage, txid, protocol), signature, public_key)
