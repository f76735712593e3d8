"""
Wallet — headless controller over the vault, accounts and transactions.

Provides the public API consumed by UI/state-management code:
- ``load()``: resolve onboarding, locked, or unlocked from the session cache
- ``create_vault(password)`` / ``unlock(password)`` / ``lock()`` / ``reset()``
- ``save(next_state)``: the single persistence entry point, always sealed
- ``create_account()`` / ``import_account()`` / ``select_account()``
- ``add_tx()`` / ``update_tx()`` / ``send_transfer()``
- ``refresh_selected_account()``: generation-stamped node lookup

Every mutation runs under one writer lock: copy the latest state, apply one
transition, reseal, persist, then publish. Two concurrent ``add_tx`` calls
therefore never lose each other's record.

Security Note:
    The password is never retained. Unlocking derives the vault key once and
    keeps it in the ``WalletSession`` and the session key cache; it is dropped
    on ``lock()`` and ``reset()``. Never log key material or wallet contents.
"""
import time
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union
from collections.abc import Sequence

from .accounts import generate_default_account, generate_from_mnemonic, generate_random
from .conf import NODE_TIMEOUT
from .data import RandomAccount, TxRecord, WalletState
from .exceptions import (
    AccountNotFound,
    AuthenticationError,
    FormatError,
    NetworkError,
    ValidationError,
    VaultNotFound,
    WalletError,
    WalletLocked,
)
from .keys import decode_address
from .node import AccountState, NodeClient, TxLookup
from .storage import KeyValueStore, MemoryStorage
from .transaction import build_transfer
from .vault import (
    SessionKeyCache,
    VaultConfig,
    VaultEnvelope,
    create_envelope,
    derive_raw_key,
    needs_rehash,
    open_with_raw_key,
    rotate_password,
    seal_with_raw_key,
)

logger = logging.getLogger("modulr.wallet")


def _check_password(password: str) -> None:
    if not password:
        raise ValidationError("Password cannot be empty")


class WalletStatus(str, Enum):
    LOADING = "loading"
    NEEDS_ONBOARDING = "needs_onboarding"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


@dataclass
class WalletSession:
    """Unlocked session context owned by one ``Wallet`` instance."""

    envelope: VaultEnvelope
    raw_key: bytes = field(repr=False)
    state: WalletState = field(repr=False)


class Wallet:
    """Wallet bound to a persistent store and a session-scoped store.

    Args:
        storage: Persistent key-value store holding the sealed vault.
        session_storage: Session-scoped store for the unlock cache.
        config: Vault settings (iterations, session TTL, storage keys).
        node_factory: Builds a node client for a node URL.
        clock: Current time in seconds, shared with the session cache.
        timeout: Default node request timeout in seconds.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        session_storage: Optional[KeyValueStore] = None,
        *,
        config: Optional[VaultConfig] = None,
        node_factory: Callable[[str], NodeClient] = NodeClient,
        clock: Callable[[], float] = time.time,
        timeout: float = NODE_TIMEOUT,
    ):
        self.config = config or VaultConfig()
        self._storage = storage
        self._cache = SessionKeyCache(
            session_storage if session_storage is not None else MemoryStorage(),
            self.config.session_key,
            clock,
        )
        self._node_factory = node_factory
        self._timeout = timeout
        self._status = WalletStatus.LOADING
        self._envelope: Optional[VaultEnvelope] = None
        self._session: Optional[WalletSession] = None
        self._write_lock = asyncio.Lock()
        self._refresh_generation = 0
        self._refresh_task: Optional[asyncio.Future] = None
        self.account_state: Optional[AccountState] = None

    def __repr__(self) -> str:
        accounts = len(self._session.state.accounts) if self._session else 0
        return f"<Wallet [status:{self._status.value}] accounts={accounts}>"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def status(self) -> WalletStatus:
        return self._status

    @property
    def is_unlocked(self) -> bool:
        return self._session is not None

    @property
    def state(self) -> Optional[WalletState]:
        return self._session.state if self._session else None

    @property
    def envelope(self) -> Optional[VaultEnvelope]:
        return self._envelope

    @property
    def selected_account(self) -> Optional[RandomAccount]:
        return self._session.state.selected_account if self._session else None

    @property
    def transactions(self) -> list[TxRecord]:
        """History filtered to the selected account (sender or recipient)."""
        if self._session is None:
            return []
        account = self._session.state.selected_account
        return self._session.state.transactions_for(account.pub if account else None)

    @property
    def needs_rehash(self) -> bool:
        """True if the stored vault uses fewer iterations than configured."""
        return self._envelope is not None and needs_rehash(
            self._envelope, self.config.iterations
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_session(self) -> WalletSession:
        if self._session is None:
            raise WalletLocked("Wallet is locked")
        return self._session

    async def _read_envelope(self) -> Optional[VaultEnvelope]:
        data = await self._storage.get(self.config.vault_key)
        if data is None:
            return None
        return VaultEnvelope.from_json(data)

    def _open_session(self, envelope: VaultEnvelope, raw_key: bytes, state: WalletState) -> None:
        self._envelope = envelope
        self._session = WalletSession(envelope=envelope, raw_key=raw_key, state=state)
        self._status = WalletStatus.UNLOCKED
        self.account_state = None

    def _drop_session(self) -> None:
        self._session = None
        self.account_state = None
        self._refresh_generation += 1
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None

    def _node(self, session: WalletSession) -> NodeClient:
        return self._node_factory(session.state.settings.node_url)

    async def _persist(self, next_state: WalletState) -> None:
        """Seal and store ``next_state``; caller holds the writer lock."""
        session = self._require_session()
        envelope = seal_with_raw_key(session.raw_key, session.envelope, next_state.to_json())
        await self._storage.set(self.config.vault_key, envelope.to_json())
        self._envelope = envelope
        if self._session is not session:
            # locked while the write was pending; never republish key material
            logger.debug("Session ended during save; state not republished")
            return
        self._session = WalletSession(envelope=envelope, raw_key=session.raw_key, state=next_state)

    async def _mutate(self, transition: Callable[[WalletState], Any]) -> Any:
        """Apply one state transition to a copy of the latest state and save."""
        async with self._write_lock:
            session = self._require_session()
            draft = session.state.model_copy(deep=True)
            result = transition(draft)
            await self._persist(draft)
            return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self) -> WalletStatus:
        """Resolve the startup status, reusing a cached unlock if valid.

        Raises:
            FormatError: If the stored envelope cannot be parsed.
        """
        envelope = await self._read_envelope()
        if envelope is None:
            self._envelope = None
            self._status = WalletStatus.NEEDS_ONBOARDING
            return self._status
        self._envelope = envelope
        raw_key = await self._cache.get()
        if raw_key is not None:
            try:
                state = WalletState.from_json(open_with_raw_key(raw_key, envelope))
            except (AuthenticationError, FormatError) as err:
                logger.warning("Cached unlock rejected: %s", type(err).__name__)
                await self._cache.clear()
            else:
                self._open_session(envelope, raw_key, state)
                logger.info("Wallet unlocked from session cache")
                return self._status
        self._status = WalletStatus.LOCKED
        return self._status

    async def create_vault(
        self,
        password: str,
        *,
        mnemonic: Optional[str] = None,
        passphrase: str = "",
    ) -> WalletState:
        """First-run setup: new vault holding one account.

        Args:
            password: Vault password.
            mnemonic: Existing phrase to restore; a new 24-word phrase is
                generated when omitted.
            passphrase: Optional BIP39 passphrase for the first account.

        Raises:
            WalletError: If a vault already exists.
            ValidationError: If ``password`` is empty.
            InvalidMnemonic: If ``mnemonic`` is invalid.
        """
        _check_password(password)
        async with self._write_lock:
            if await self._read_envelope() is not None:
                raise WalletError("A vault already exists; reset it first")
            if mnemonic is not None:
                account = await asyncio.to_thread(
                    generate_from_mnemonic, "Account 1", mnemonic, passphrase,
                )
            else:
                account = await asyncio.to_thread(
                    generate_default_account, "Account 1", passphrase,
                )
            state = WalletState(accounts=[account], selected_account_id=account.id)
            envelope, raw_key = await asyncio.to_thread(
                create_envelope, password, state.to_json(), self.config.iterations,
            )
            await self._storage.set(self.config.vault_key, envelope.to_json())
            self._open_session(envelope, raw_key, state)
        await self._cache.set(raw_key, self.config.session_ttl)
        logger.info("Vault created (iterations=%d)", envelope.iterations)
        return state

    async def unlock(self, password: str) -> WalletState:
        """Open the vault with a password and cache the derived key.

        Raises:
            VaultNotFound: No vault in storage.
            UnsupportedFormat: Unknown envelope format.
            AuthenticationFailed: Wrong password or tampered vault.
        """
        envelope = await self._read_envelope()
        if envelope is None:
            self._status = WalletStatus.NEEDS_ONBOARDING
            raise VaultNotFound("No vault found")
        raw_key = await asyncio.to_thread(derive_raw_key, password, envelope)
        state = WalletState.from_json(open_with_raw_key(raw_key, envelope))
        self._open_session(envelope, raw_key, state)
        await self._cache.set(raw_key, self.config.session_ttl)
        logger.info("Wallet unlocked")
        return state

    async def lock(self) -> None:
        """Forget the session and the cached key immediately."""
        try:
            await self._cache.clear()
        finally:
            self._drop_session()
            self._status = (
                WalletStatus.LOCKED if self._envelope is not None
                else WalletStatus.NEEDS_ONBOARDING
            )
        logger.info("Wallet locked")

    async def reset(self) -> None:
        """Delete the vault and the cached key; back to onboarding."""
        async with self._write_lock:
            try:
                await self._storage.remove(self.config.vault_key)
            finally:
                await self._cache.clear()
                self._drop_session()
                self._envelope = None
                self._status = WalletStatus.NEEDS_ONBOARDING
        logger.info("Wallet reset")

    async def change_password(self, old_password: str, new_password: str) -> None:
        """Re-seal the vault under ``new_password`` and current iterations.

        Raises:
            AuthenticationFailed: If ``old_password`` is wrong.
            ValidationError: If ``new_password`` is empty.
        """
        _check_password(new_password)
        async with self._write_lock:
            session = self._require_session()
            envelope, raw_key = await asyncio.to_thread(
                rotate_password,
                session.envelope,
                old_password,
                new_password,
                self.config.iterations,
            )
            await self._storage.set(self.config.vault_key, envelope.to_json())
            self._envelope = envelope
            if self._session is not session:
                logger.debug("Session ended during password change")
                return
            self._session = WalletSession(envelope=envelope, raw_key=raw_key, state=session.state)
        await self._cache.set(raw_key, self.config.session_ttl)

    async def save(self, next_state: WalletState) -> None:
        """Seal and persist ``next_state``; returns only once it is durable.

        Raises:
            WalletLocked: If the wallet is not unlocked.
        """
        async with self._write_lock:
            await self._persist(next_state)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def create_account(
        self,
        name: Optional[str] = None,
        *,
        recoverable: bool = True,
        passphrase: str = "",
    ) -> RandomAccount:
        """Add and select a new account.

        Args:
            name: Display name, defaults to ``Account N``.
            recoverable: Derive from a new phrase (default) or use raw
                random bytes.
            passphrase: BIP39 passphrase for recoverable accounts.
        """
        self._require_session()
        if recoverable:
            account = await asyncio.to_thread(generate_default_account, name or "", passphrase)
        else:
            account = generate_random(name or "")

        def transition(state: WalletState) -> RandomAccount:
            added = account if name else account.model_copy(
                update={"name": f"Account {len(state.accounts) + 1}"}
            )
            state.accounts.append(added)
            state.selected_account_id = added.id
            return added

        return await self._mutate(transition)

    async def import_account(
        self,
        mnemonic: str,
        passphrase: str = "",
        name: Optional[str] = None,
        path: Optional[Sequence[int]] = None,
    ) -> RandomAccount:
        """Recover an account from a seed phrase and select it.

        Raises:
            InvalidMnemonic: If the phrase is invalid.
            ValidationError: If the account is already in the wallet.
        """
        self._require_session()
        account = await asyncio.to_thread(
            generate_from_mnemonic, name or "", mnemonic, passphrase, path,
        )

        def transition(state: WalletState) -> RandomAccount:
            if any(existing.pub == account.pub for existing in state.accounts):
                raise ValidationError("Account is already in this wallet")
            added = account if name else account.model_copy(
                update={"name": f"Imported {len(state.accounts) + 1}"}
            )
            state.accounts.append(added)
            state.selected_account_id = added.id
            return added

        return await self._mutate(transition)

    async def select_account(self, account_id: str) -> None:
        """Select an account; clears the cached node view.

        Raises:
            AccountNotFound: If ``account_id`` is unknown.
        """
        def transition(state: WalletState) -> None:
            state.get_account(account_id)
            state.selected_account_id = account_id

        self.account_state = None
        await self._mutate(transition)

    async def set_node_url(self, url: str) -> None:
        url = url.strip()
        if not url.startswith(("http://", "https://")):
            raise ValidationError(f"Node URL must be http(s): {url!r}")

        def transition(state: WalletState) -> None:
            state.settings.node_url = url

        await self._mutate(transition)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def add_tx(self, record: TxRecord) -> None:
        """Prepend ``record`` to the history and persist."""
        def transition(state: WalletState) -> None:
            state.txs.insert(0, record)

        await self._mutate(transition)

    async def update_tx(self, tx_id: str, **patch: Any) -> Optional[TxRecord]:
        """Patch fields of a recorded transaction and persist.

        Returns:
            Updated record, or None if ``tx_id`` is not recorded.
        """
        def transition(state: WalletState) -> Optional[TxRecord]:
            for index, record in enumerate(state.txs):
                if record.id == tx_id:
                    updated = TxRecord.model_validate({**record.model_dump(), **patch})
                    state.txs[index] = updated
                    return updated
            return None

        return await self._mutate(transition)

    async def send_transfer(
        self,
        to: str,
        amount: Union[int, float],
        fee: Union[int, float],
        payload: Any = None,
        *,
        timeout: Optional[float] = None,
    ) -> TxRecord:
        """Sign and submit a transfer from the selected account.

        The record is stored as ``created`` before submission, then promoted
        to ``submitted`` or marked ``failed`` with the error attached.

        Raises:
            AccountNotFound: If no account is selected.
            InvalidAddress: If ``to`` is not a valid address.
            NetworkError: If the nonce lookup or submission fails.
        """
        session = self._require_session()
        account = session.state.selected_account
        if account is None:
            raise AccountNotFound("No account selected")
        decode_address(to)
        timeout = self._timeout if timeout is None else timeout
        node_url = session.state.settings.node_url
        node = self._node(session)

        remote = await node.fetch_account(account.pub, timeout=timeout)
        nonce = remote.nonce + 1
        built = build_transfer(
            account.pub, to, amount, fee, nonce, payload, seed=account.seed,
        )
        record = TxRecord(
            id=built.id,
            status="created",
            node_url=node_url,
            from_=account.pub,
            to=to,
            amount=amount,
            fee=fee,
            nonce=nonce,
            sig=built.signature,
        )
        await self.add_tx(record)

        try:
            await node.submit_transaction(built.tx, timeout=timeout)
        except NetworkError as err:
            logger.warning("Transaction %s rejected: %s", built.id, err)
            await self.update_tx(built.id, status="failed", error=str(err))
            raise
        logger.info("Transaction %s submitted", built.id)
        return await self.update_tx(built.id, status="submitted")

    async def fetch_transaction(self, tx_id: str, *, timeout: Optional[float] = None) -> TxLookup:
        """Look up a transaction on the configured node."""
        session = self._require_session()
        return await self._node(session).fetch_transaction(
            tx_id, timeout=self._timeout if timeout is None else timeout,
        )

    async def refresh_selected_account(self, *, timeout: Optional[float] = None) -> Optional[AccountState]:
        """Fetch balance/nonce for the selected account.

        A newer call cancels an older in-flight one; stale results are
        discarded and reported as None.

        Raises:
            NetworkError: If the latest request fails.
        """
        session = self._require_session()
        self._refresh_generation += 1
        generation = self._refresh_generation
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        account = session.state.selected_account
        if account is None:
            self.account_state = None
            return None

        task = asyncio.ensure_future(
            self._node(session).fetch_account(
                account.pub, timeout=self._timeout if timeout is None else timeout,
            )
        )
        self._refresh_task = task
        try:
            result = await task
        except asyncio.CancelledError:
            if generation != self._refresh_generation:
                logger.debug("Account refresh superseded")
                return None
            raise
        except NetworkError:
            if generation != self._refresh_generation:
                return None
            self.account_state = None
            raise
        finally:
            if self._refresh_task is task:
                self._refresh_task = None
        if generation != self._refresh_generation:
            logger.debug("Discarding stale account refresh")
            return None
        self.account_state = result
        return result
