"""
Tests for the Wallet controller.

Tests cover:
- Lifecycle: onboarding, create, unlock, lock, reset and cached reloads
- The vault is the only thing persisted, always sealed
- Account creation, import and selection
- Serialized writes (concurrent add_tx/update_tx lose nothing)
- send_transfer lifecycle against a fake node
- Stale account refreshes are discarded
- Password change and rehash detection
"""
import asyncio
import orjson
import pytest

from modulr_wallet.data import TxRecord, WalletState
from modulr_wallet.exceptions import (
    AccountNotFound,
    AuthenticationFailed,
    InvalidAddress,
    InvalidMnemonic,
    NetworkError,
    ValidationError,
    VaultNotFound,
    WalletError,
    WalletLocked,
)
from modulr_wallet.keys import address_from_seed, seed_from_mnemonic
from modulr_wallet.node import AccountState, TxLookup
from modulr_wallet.storage import MemoryStorage
from modulr_wallet.transaction import verify_transfer
from modulr_wallet.vault import VaultConfig, VaultEnvelope, open_envelope
from modulr_wallet.wallet import Wallet, WalletStatus

PASSWORD = "correct horse"
VAULT_KEY = "modulr.vault.v1"
SESSION_KEY = "modulr.session.unlock.v1"
COMPAT_MNEMONIC = (
    "audit lunch phrase siren salmon left drive venture egg clutch immense "
    "surround nose response involve attack slim basic pig sister collect "
    "green bounce team"
)
RECIPIENT = address_from_seed(b"\x42" * 32)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeNodeClient:
    """In-memory stand-in for NodeClient."""

    def __init__(self):
        self.nonce = 4
        self.balance = 100
        self.calls = 0
        self.submitted = []
        self.reject = None
        self.gate = None
        self.started = asyncio.Event()

    async def fetch_account(self, account_id, *, timeout):
        self.calls += 1
        call = self.calls
        self.started.set()
        if call == 1 and self.gate is not None:
            await self.gate.wait()
        return AccountState(balance=self.balance + call, nonce=self.nonce)

    async def submit_transaction(self, tx, *, timeout):
        if self.reject:
            raise NetworkError(self.reject, 400)
        self.submitted.append(tx)
        return {"accepted": True}

    async def fetch_transaction(self, tx_id, *, timeout):
        return TxLookup(found=False, error="Not found")


class GatedStorage(MemoryStorage):
    """Persistent store whose writes wait on ``gate`` once one is set."""

    def __init__(self):
        super().__init__(persistent=True)
        self.gate = None
        self.started = asyncio.Event()

    async def set(self, key, value):
        if self.gate is not None:
            self.started.set()
            await self.gate.wait()
        await super().set(key, value)


@pytest.fixture
def storage():
    return GatedStorage()


@pytest.fixture
def session_storage():
    return MemoryStorage()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def node():
    return FakeNodeClient()


@pytest.fixture
def config():
    return VaultConfig(iterations=1000, session_ttl=60)


@pytest.fixture
def make_wallet(storage, session_storage, clock, node, config):
    def factory(session=None, **kwargs):
        return Wallet(
            storage,
            session if session is not None else session_storage,
            config=kwargs.pop("config", config),
            node_factory=lambda url: node,
            clock=clock,
            **kwargs,
        )
    return factory


@pytest.fixture
async def wallet(make_wallet):
    """Unlocked wallet restored from the compatibility mnemonic."""
    instance = make_wallet()
    await instance.load()
    await instance.create_vault(PASSWORD, mnemonic=COMPAT_MNEMONIC, passphrase="Hello")
    return instance


def _record(tx_id: str, sender: str, **extra) -> TxRecord:
    return TxRecord(
        id=tx_id,
        node_url="http://localhost:7332",
        from_=sender,
        to=RECIPIENT,
        amount=1,
        fee=0,
        nonce=1,
        **extra,
    )


# --- Test Lifecycle ---

class TestLifecycle:
    """Tests for load/create/unlock/lock/reset."""

    async def test_needs_onboarding(self, make_wallet):
        """Test an empty store routes to first-run setup."""
        wallet = make_wallet()
        assert wallet.status is WalletStatus.LOADING
        assert await wallet.load() is WalletStatus.NEEDS_ONBOARDING

    async def test_create_vault(self, wallet):
        """Test create_vault unlocks with one selected account."""
        assert wallet.status is WalletStatus.UNLOCKED
        assert len(wallet.state.accounts) == 1
        account = wallet.selected_account
        assert account.recoverable is True
        expected = address_from_seed(seed_from_mnemonic(COMPAT_MNEMONIC, "Hello"))
        assert account.pub == expected

    async def test_create_generates_mnemonic(self, make_wallet):
        """Test create_vault without a phrase generates 24 words."""
        wallet = make_wallet()
        state = await wallet.create_vault(PASSWORD)
        assert len(state.accounts[0].mnemonic.split()) == 24

    async def test_create_invalid_mnemonic(self, make_wallet, storage):
        """Test an invalid phrase stores nothing."""
        wallet = make_wallet()
        with pytest.raises(InvalidMnemonic):
            await wallet.create_vault(PASSWORD, mnemonic="abandon " * 12)
        assert await storage.get(VAULT_KEY) is None

    async def test_create_twice(self, wallet):
        """Test an existing vault is never overwritten."""
        with pytest.raises(WalletError):
            await wallet.create_vault("other")

    async def test_only_sealed_data_persisted(self, wallet, storage):
        """Test the stored vault contains no plaintext secrets."""
        stored = await storage.get(VAULT_KEY)
        account = wallet.selected_account
        assert b"audit lunch" not in stored
        assert account.seed_b64.encode() not in stored
        assert len(storage) == 1
        envelope = VaultEnvelope.from_json(stored)
        state = WalletState.from_json(open_envelope(PASSWORD, envelope))
        assert state.accounts[0].pub == account.pub

    async def test_reload_uses_session_cache(self, wallet, make_wallet):
        """Test a reload within the TTL unlocks without the password."""
        reloaded = make_wallet()
        assert await reloaded.load() is WalletStatus.UNLOCKED
        assert reloaded.selected_account.pub == wallet.selected_account.pub

    async def test_reload_after_expiry(self, wallet, make_wallet, clock, session_storage):
        """Test an expired cache falls back to the locked state."""
        clock.now += 61
        reloaded = make_wallet()
        assert await reloaded.load() is WalletStatus.LOCKED
        assert SESSION_KEY not in session_storage

    async def test_reload_new_session(self, wallet, make_wallet):
        """Test a fresh session store starts locked."""
        reloaded = make_wallet(session=MemoryStorage())
        assert await reloaded.load() is WalletStatus.LOCKED
        assert reloaded.state is None

    async def test_stale_cached_key_cleared(self, wallet, make_wallet, session_storage):
        """Test a cached key that no longer opens the vault is discarded."""
        cache_entry = orjson.loads(await session_storage.get(SESSION_KEY))
        cache_entry["keyB64"] = "A" * 43 + "="
        await session_storage.set(SESSION_KEY, orjson.dumps(cache_entry))
        reloaded = make_wallet()
        assert await reloaded.load() is WalletStatus.LOCKED
        assert SESSION_KEY not in session_storage

    async def test_unlock(self, wallet, make_wallet):
        """Test unlocking with the password restores the state."""
        reloaded = make_wallet(session=MemoryStorage())
        await reloaded.load()
        state = await reloaded.unlock(PASSWORD)
        assert reloaded.status is WalletStatus.UNLOCKED
        assert state.accounts[0].pub == wallet.selected_account.pub

    async def test_unlock_wrong_password(self, wallet, make_wallet):
        """Test a wrong password leaves the wallet locked."""
        reloaded = make_wallet(session=MemoryStorage())
        await reloaded.load()
        with pytest.raises(AuthenticationFailed):
            await reloaded.unlock("wrong")
        assert reloaded.status is WalletStatus.LOCKED

    async def test_unlock_without_vault(self, make_wallet):
        """Test unlocking an empty store raises VaultNotFound."""
        with pytest.raises(VaultNotFound):
            await make_wallet().unlock(PASSWORD)

    async def test_lock(self, wallet, session_storage):
        """Test lock drops the session and the cached key."""
        await wallet.lock()
        assert wallet.status is WalletStatus.LOCKED
        assert wallet.state is None
        assert SESSION_KEY not in session_storage
        with pytest.raises(WalletLocked):
            await wallet.create_account()

    async def test_lock_then_unlock(self, wallet):
        """Test a locked wallet unlocks again with its password."""
        pub = wallet.selected_account.pub
        await wallet.lock()
        await wallet.unlock(PASSWORD)
        assert wallet.selected_account.pub == pub

    async def test_reset(self, wallet, storage, session_storage):
        """Test reset deletes the vault and the cached key."""
        await wallet.reset()
        assert wallet.status is WalletStatus.NEEDS_ONBOARDING
        assert await storage.get(VAULT_KEY) is None
        assert SESSION_KEY not in session_storage

    async def test_save(self, wallet, make_wallet, storage):
        """Test save reseals the given state with a fresh nonce."""
        before = VaultEnvelope.from_json(await storage.get(VAULT_KEY))
        next_state = wallet.state.model_copy(deep=True)
        next_state.settings.node_url = "https://other:7332"
        await wallet.save(next_state)
        after = VaultEnvelope.from_json(await storage.get(VAULT_KEY))
        assert after.salt == before.salt
        assert after.iv != before.iv
        reloaded = make_wallet()
        await reloaded.load()
        assert reloaded.state.settings.node_url == "https://other:7332"

    async def test_save_requires_unlock(self, wallet):
        """Test a locked wallet cannot persist state."""
        state = wallet.state
        await wallet.lock()
        with pytest.raises(WalletLocked):
            await wallet.save(state)

    async def test_lock_during_pending_save(self, wallet, storage, session_storage):
        """Test a save finishing after lock does not unlock the wallet again."""
        storage.gate = asyncio.Event()
        task = asyncio.create_task(wallet.add_tx(_record("t1", wallet.selected_account.pub)))
        await storage.started.wait()
        await wallet.lock()
        storage.gate.set()
        await task
        assert wallet.is_unlocked is False
        assert wallet.state is None
        assert wallet.status is WalletStatus.LOCKED
        assert SESSION_KEY not in session_storage
        with pytest.raises(WalletLocked):
            await wallet.create_account()
        await wallet.unlock(PASSWORD)
        assert [tx.id for tx in wallet.state.txs] == ["t1"]

    async def test_create_empty_password(self, make_wallet, storage):
        """Test a vault cannot be created without a password."""
        with pytest.raises(ValidationError):
            await make_wallet().create_vault("")
        assert await storage.get(VAULT_KEY) is None

    async def test_corrupt_vault(self, make_wallet, storage):
        """Test an unparsable stored vault is a format error."""
        await storage.set(VAULT_KEY, b"{broken")
        with pytest.raises(WalletError):
            await make_wallet().load()

    def test_persistent_session_store_refused(self, storage):
        """Test the session cache cannot live in persistent storage."""
        with pytest.raises(ValueError):
            Wallet(storage, MemoryStorage(persistent=True))


# --- Test Accounts ---

class TestAccounts:
    """Tests for account management."""

    async def test_create_random_account(self, wallet):
        """Test a non-recoverable account is added and selected."""
        account = await wallet.create_account(recoverable=False)
        assert account.recoverable is False
        assert account.name == "Account 2"
        assert wallet.selected_account.id == account.id

    async def test_create_recoverable_account(self, wallet):
        """Test a named recoverable account keeps its name."""
        account = await wallet.create_account("Savings")
        assert account.name == "Savings"
        assert account.recoverable is True

    async def test_accounts_persisted(self, wallet, make_wallet):
        """Test new accounts survive a reload."""
        await wallet.create_account(recoverable=False)
        reloaded = make_wallet()
        await reloaded.load()
        assert len(reloaded.state.accounts) == 2

    async def test_import_account(self, wallet):
        """Test importing a phrase on another path adds a new account."""
        account = await wallet.import_account(
            COMPAT_MNEMONIC, "Hello", path=(44, 7337, 0, 1)
        )
        assert account.bip44_path == (44, 7337, 0, 1)
        assert len(wallet.state.accounts) == 2

    async def test_import_duplicate(self, wallet):
        """Test importing an existing account is rejected."""
        with pytest.raises(ValidationError):
            await wallet.import_account(COMPAT_MNEMONIC, "Hello")
        assert len(wallet.state.accounts) == 1

    async def test_select_account(self, wallet):
        """Test selecting an existing account."""
        first = wallet.selected_account
        await wallet.create_account(recoverable=False)
        await wallet.select_account(first.id)
        assert wallet.selected_account.id == first.id

    async def test_select_unknown(self, wallet):
        """Test selecting an unknown id raises AccountNotFound."""
        with pytest.raises(AccountNotFound):
            await wallet.select_account("missing")

    async def test_set_node_url(self, wallet):
        """Test node URL validation and persistence."""
        await wallet.set_node_url(" https://node.example:7332 ")
        assert wallet.state.settings.node_url == "https://node.example:7332"
        with pytest.raises(ValidationError):
            await wallet.set_node_url("ftp://node")


# --- Test Transactions ---

class TestTransactions:
    """Tests for transaction history and sending."""

    async def test_concurrent_add_tx(self, wallet, make_wallet):
        """Test concurrent appends are all persisted."""
        sender = wallet.selected_account.pub
        await asyncio.gather(*[
            wallet.add_tx(_record(f"tx{i}", sender)) for i in range(10)
        ])
        assert len(wallet.state.txs) == 10
        reloaded = make_wallet()
        await reloaded.load()
        assert {tx.id for tx in reloaded.state.txs} == {f"tx{i}" for i in range(10)}

    async def test_concurrent_add_and_update(self, wallet):
        """Test an update racing an append does not drop either."""
        sender = wallet.selected_account.pub
        await wallet.add_tx(_record("a", sender))
        await asyncio.gather(
            wallet.update_tx("a", status="submitted"),
            wallet.add_tx(_record("b", sender)),
        )
        by_id = {tx.id: tx for tx in wallet.state.txs}
        assert by_id["a"].status == "submitted"
        assert "b" in by_id

    async def test_add_tx_newest_first(self, wallet):
        """Test new records are prepended."""
        sender = wallet.selected_account.pub
        await wallet.add_tx(_record("old", sender))
        await wallet.add_tx(_record("new", sender))
        assert [tx.id for tx in wallet.state.txs] == ["new", "old"]

    async def test_update_unknown_tx(self, wallet):
        """Test updating a missing record returns None."""
        assert await wallet.update_tx("missing", status="failed") is None

    async def test_transactions_filtered(self, wallet):
        """Test history is filtered to the selected account."""
        sender = wallet.selected_account.pub
        await wallet.add_tx(_record("mine", sender))
        await wallet.add_tx(_record("other", address_from_seed(b"\x01" * 32)))
        assert [tx.id for tx in wallet.transactions] == ["mine"]

    async def test_send_transfer(self, wallet, node):
        """Test a successful send records a submitted transaction."""
        record = await wallet.send_transfer(RECIPIENT, 10, 1, {"memo": "hi"})
        assert record.status == "submitted"
        assert record.nonce == 5
        assert record.from_ == wallet.selected_account.pub
        assert len(node.submitted) == 1
        submitted = node.submitted[0]
        assert submitted["nonce"] == 5
        assert submitted["sig"] == record.sig
        assert verify_transfer(submitted) is True
        assert wallet.state.txs[0].id == record.id

    async def test_send_transfer_rejected(self, wallet, node):
        """Test a rejected send is recorded as failed with the error."""
        node.reject = "insufficient balance"
        with pytest.raises(NetworkError):
            await wallet.send_transfer(RECIPIENT, 10_000, 1)
        record = wallet.state.txs[0]
        assert record.status == "failed"
        assert "insufficient balance" in record.error

    async def test_send_invalid_recipient(self, wallet, node):
        """Test an invalid recipient is refused before anything is stored."""
        with pytest.raises(InvalidAddress):
            await wallet.send_transfer("0OIl", 1, 0)
        assert wallet.state.txs == []
        assert node.calls == 0

    async def test_send_requires_unlock(self, wallet):
        """Test sending from a locked wallet raises."""
        await wallet.lock()
        with pytest.raises(WalletLocked):
            await wallet.send_transfer(RECIPIENT, 1, 0)

    async def test_fetch_transaction(self, wallet):
        """Test lookups go through the node client."""
        lookup = await wallet.fetch_transaction("abc")
        assert lookup.found is False


# --- Test Account Refresh ---

class TestRefresh:
    """Tests for refresh_selected_account."""

    async def test_refresh(self, wallet):
        """Test the selected account's balance and nonce are fetched."""
        state = await wallet.refresh_selected_account()
        assert state.nonce == 4
        assert wallet.account_state == state

    async def test_stale_refresh_discarded(self, wallet, node):
        """Test an older in-flight refresh never overwrites a newer one."""
        node.gate = asyncio.Event()
        first = asyncio.create_task(wallet.refresh_selected_account())
        await asyncio.wait_for(node.started.wait(), timeout=1)
        second = await wallet.refresh_selected_account()
        assert await asyncio.wait_for(first, timeout=1) is None
        assert second.balance == 102
        assert wallet.account_state == second

    async def test_lock_discards_refresh(self, wallet):
        """Test lock clears the cached node view."""
        await wallet.refresh_selected_account()
        await wallet.lock()
        assert wallet.account_state is None


# --- Test Password Management ---

class TestPassword:
    """Tests for change_password and rehash detection."""

    async def test_change_password(self, wallet, make_wallet):
        """Test the vault opens only with the new password afterwards."""
        await wallet.change_password(PASSWORD, "battery staple")
        fresh = make_wallet(session=MemoryStorage())
        await fresh.load()
        with pytest.raises(AuthenticationFailed):
            await fresh.unlock(PASSWORD)
        await fresh.unlock("battery staple")
        assert fresh.selected_account.pub == wallet.selected_account.pub

    async def test_change_password_keeps_cache(self, wallet, make_wallet):
        """Test the session cache follows the new key."""
        await wallet.change_password(PASSWORD, "battery staple")
        reloaded = make_wallet()
        assert await reloaded.load() is WalletStatus.UNLOCKED

    async def test_change_password_wrong_old(self, wallet):
        """Test the current password is required."""
        with pytest.raises(AuthenticationFailed):
            await wallet.change_password("wrong", "new")

    async def test_change_password_empty(self, wallet):
        """Test the new password cannot be empty."""
        with pytest.raises(ValidationError):
            await wallet.change_password(PASSWORD, "")
        assert wallet.is_unlocked

    async def test_lock_during_password_change(self, wallet, storage, session_storage):
        """Test lock wins over a password change still writing to storage."""
        storage.gate = asyncio.Event()
        task = asyncio.create_task(wallet.change_password(PASSWORD, "battery staple"))
        await storage.started.wait()
        await wallet.lock()
        storage.gate.set()
        await task
        assert wallet.is_unlocked is False
        assert wallet.status is WalletStatus.LOCKED
        assert SESSION_KEY not in session_storage
        storage.gate = None
        await wallet.unlock("battery staple")
        assert wallet.is_unlocked

    async def test_needs_rehash(self, wallet, make_wallet):
        """Test raising configured iterations flags the stored vault."""
        assert wallet.needs_rehash is False
        stronger = make_wallet(config=VaultConfig(iterations=2000, session_ttl=60))
        await stronger.load()
        assert stronger.needs_rehash is True
        await stronger.change_password(PASSWORD, PASSWORD)
        assert stronger.needs_rehash is False
