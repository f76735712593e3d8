"""
Vault Envelope — versioned container for password-sealed data.

Persisted shape (field names are part of the compatibility contract)::

    {"v": 1, "kdf": "pbkdf2-sha256", "iter": <int>,
     "saltB64": <16 bytes>, "ivB64": <12 bytes>, "ctB64": <ciphertext + tag>}

The iteration count travels with each envelope so envelopes sealed under an
older default keep opening after the default is raised.
"""
from typing import Any, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as ModelValidationError

from ..codec import b64decode
from ..exceptions import FormatError, UnsupportedFormat
from .config import ENVELOPE_VERSION, NONCE_SIZE, SALT_SIZE, SUPPORTED_KDFS


class VaultEnvelope(BaseModel):
    """Sealed vault as stored in persistent storage."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    v: int
    kdf: str
    iterations: int = Field(alias="iter")
    salt_b64: str = Field(alias="saltB64")
    iv_b64: str = Field(alias="ivB64")
    ct_b64: str = Field(alias="ctB64")

    @property
    def salt(self) -> bytes:
        return b64decode(self.salt_b64)

    @property
    def iv(self) -> bytes:
        return b64decode(self.iv_b64)

    @property
    def ciphertext(self) -> bytes:
        return b64decode(self.ct_b64)

    def check_format(self) -> None:
        """Validate version, KDF and parameter sizes.

        Raises:
            UnsupportedFormat: Unknown version or KDF identifier.
            FormatError: Malformed salt, nonce or iteration count.
        """
        if self.v != ENVELOPE_VERSION or self.kdf not in SUPPORTED_KDFS:
            raise UnsupportedFormat(
                f"Unsupported vault format: v={self.v!r} kdf={self.kdf!r}"
            )
        if self.iterations < 1:
            raise FormatError(f"Invalid iteration count: {self.iterations}")
        if len(self.salt) != SALT_SIZE:
            raise FormatError(f"Salt must be {SALT_SIZE} bytes")
        if len(self.iv) != NONCE_SIZE:
            raise FormatError(f"Nonce must be {NONCE_SIZE} bytes")
        b64decode(self.ct_b64)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> "VaultEnvelope":
        """Build an envelope from its stored mapping.

        Raises:
            UnsupportedFormat: Unknown version or KDF.
            FormatError: Missing or mistyped fields.
        """
        if not isinstance(data, dict):
            raise FormatError("Vault envelope must be a JSON object")
        if data.get("v") != ENVELOPE_VERSION or data.get("kdf") not in SUPPORTED_KDFS:
            raise UnsupportedFormat(
                f"Unsupported vault format: v={data.get('v')!r} kdf={data.get('kdf')!r}"
            )
        try:
            return cls.model_validate(data)
        except ModelValidationError as err:
            raise FormatError(f"Invalid vault envelope: {err}") from err

    @classmethod
    def from_json(cls, data: Union[bytes, str]) -> "VaultEnvelope":
        try:
            parsed = orjson.loads(data)
        except orjson.JSONDecodeError as err:
            raise FormatError("Vault envelope is not valid JSON") from err
        return cls.from_dict(parsed)
