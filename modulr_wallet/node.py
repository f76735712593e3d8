"""
Node Client — thin aiohttp client for a Modulr node.

Endpoints:
- ``GET  /account/{id}``      → ``{"balance", "nonce"}``
- ``POST /transaction``       → submission acknowledgement
- ``GET  /transaction/{id}``  → ``{"transaction", "receipt"}`` or 404

Every call takes a caller-supplied timeout. Retry and backoff are the
caller's business; failures surface as ``NetworkError``.
"""
import asyncio
import logging
from typing import Any, Optional, Union
from urllib.parse import quote

import orjson
import aiohttp
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as ModelValidationError

from .exceptions import NetworkError

logger = logging.getLogger("modulr.node")


class AccountState(BaseModel):
    """On-chain account view."""

    model_config = ConfigDict(extra="ignore")

    balance: Union[int, float] = 0
    nonce: int = 0


class TxLookup(BaseModel):
    """Result of a transaction-by-id lookup."""

    found: bool
    transaction: Optional[dict[str, Any]] = None
    receipt: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def confirmed(self) -> Optional[bool]:
        """Receipt success flag, None while pending."""
        if not self.found or self.receipt is None:
            return None
        return bool(self.receipt.get("success"))


class NodeClient:
    """HTTP client bound to one node base URL.

    Args:
        base_url: Node endpoint, trailing slashes are ignored.
        session: Optional shared ``aiohttp.ClientSession``; when omitted a
            short-lived session is opened per request.
    """

    def __init__(self, base_url: str, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self._session = session

    def __repr__(self) -> str:
        return f"<NodeClient {self.base_url}>"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float,
        body: Optional[bytes] = None,
    ) -> tuple[int, bytes]:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"} if body is not None else None
        session = self._session or aiohttp.ClientSession()
        try:
            async with session.request(
                method,
                url,
                data=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                return response.status, await response.read()
        except asyncio.TimeoutError as err:
            raise NetworkError(f"{method} {path} timed out after {timeout}s") from err
        except aiohttp.ClientError as err:
            raise NetworkError(f"{method} {path} failed: {err}") from err
        finally:
            if self._session is None:
                await session.close()

    @staticmethod
    def _decode(status: int, data: bytes) -> Any:
        try:
            return orjson.loads(data) if data else {}
        except orjson.JSONDecodeError as err:
            raise NetworkError("Node returned invalid JSON", status) from err

    async def fetch_account(self, account_id: str, *, timeout: float) -> AccountState:
        """Fetch balance and nonce for ``account_id``.

        Raises:
            NetworkError: On transport failure, timeout or non-200 status.
        """
        status, data = await self._request(
            "GET", f"/account/{quote(account_id, safe='')}", timeout=timeout,
        )
        if status != 200:
            raise NetworkError(data.decode("utf-8", "replace") or f"HTTP {status}", status)
        try:
            return AccountState.model_validate(self._decode(status, data))
        except ModelValidationError as err:
            raise NetworkError(f"Unexpected account response: {err}", status) from err

    async def submit_transaction(self, tx: dict[str, Any], *, timeout: float) -> Any:
        """Submit a signed transaction.

        Returns:
            Decoded node acknowledgement.

        Raises:
            NetworkError: On transport failure, timeout or rejection.
        """
        status, data = await self._request(
            "POST", "/transaction", timeout=timeout, body=orjson.dumps(tx),
        )
        if not 200 <= status < 300:
            raise NetworkError(data.decode("utf-8", "replace") or f"HTTP {status}", status)
        logger.info("Node accepted transaction (status=%d)", status)
        return self._decode(status, data)

    async def fetch_transaction(self, tx_id: str, *, timeout: float) -> TxLookup:
        """Look up a transaction and its receipt.

        A 404 is reported as ``found=False`` rather than an error.
        """
        status, data = await self._request(
            "GET", f"/transaction/{quote(tx_id, safe='')}", timeout=timeout,
        )
        if status == 404:
            return TxLookup(found=False, error=data.decode("utf-8", "replace") or "Not found")
        if status != 200:
            raise NetworkError(data.decode("utf-8", "replace") or f"HTTP {status}", status)
        payload = self._decode(status, data)
        if not isinstance(payload, dict):
            raise NetworkError("Unexpected transaction response", status)
        return TxLookup(
            found=True,
            transaction=payload.get("transaction"),
            receipt=payload.get("receipt"),
        )
