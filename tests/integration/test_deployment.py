from concurrent.futures import ThreadPoolExecutor

import pytest
from filelock import FileLock
from solders.keypair import Keypair

from mcp_ico_registry import config
from mcp_ico_registry import deployment
from mcp_ico_registry import rate_limiter
from mcp_ico_registry import state_store
from mcp_ico_registry.config import LAMPORTS_PER_SOL
from mcp_ico_registry.errors import PersistenceError

TOKEN_PRICE = 1_000


@pytest.fixture
def state_file(tmp_path, monkeypatch):
    """A platform with one minted project, saved to a fresh state file."""
    path = tmp_path / "chain.json"
    monkeypatch.setattr(config, "STATE_FILE", str(path))
    monkeypatch.setattr(rate_limiter, "RATE_LIMIT_PER_MINUTE", 1000)
    deployment.reset_platform()
    yield path
    deployment.reset_platform()


@pytest.fixture
def owner(state_file):
    account = str(Keypair().pubkey())
    deployment.fund(account, 10 * LAMPORTS_PER_SOL)
    return account


@pytest.fixture
def token_contract(owner):
    deployment.execute(owner, "list_new_project", "Project X", "d", 1, 2, value=config.DEFAULT_LISTING_FEE_LAMPORTS)
    return deployment.execute(owner, "create_new_erc20_token", 0, "TestToken", "TT", 100, TOKEN_PRICE).return_value


def funded_accounts(count):
    accounts = [str(Keypair().pubkey()) for _ in range(count)]
    for account in accounts:
        deployment.fund(account, LAMPORTS_PER_SOL)
    return accounts


def test_every_change_is_saved_with_the_next_sequence(state_file, owner, token_contract):
    # fund, list, mint
    assert state_store.read_snapshot(state_file).sequence == 3
    restored = state_store.load_chain(state_file)
    assert restored.call_view_method(token_contract, "balance_of", owner) == 100


def test_concurrent_purchases_are_all_saved(state_file, token_contract):
    buyers = funded_accounts(8)
    sequence_before = state_store.read_snapshot(state_file).sequence

    def buy_ten(buyer):
        for _ in range(10):
            deployment.execute(buyer, "buy_tokens", 1, value=TOKEN_PRICE, address=token_contract)

    with ThreadPoolExecutor(max_workers=len(buyers)) as pool:
        list(pool.map(buy_ten, buyers))

    snapshot = state_store.read_snapshot(state_file)
    assert snapshot.sequence == sequence_before + 80
    restored = state_store.restore_chain(snapshot)
    assert len(restored.call_view_method(token_contract, "get_all_transactions")) == 80
    assert all(restored.call_view_method(token_contract, "balance_of", buyer) == 10 for buyer in buyers)
    assert [path.name for path in state_file.parent.iterdir() if path.name.endswith(".tmp")] == []


def test_changes_saved_by_another_process_are_picked_up(state_file, owner, token_contract):
    carol = str(Keypair().pubkey())
    other = state_store.load_chain(state_file)
    other.fund(carol, LAMPORTS_PER_SOL)
    other.call_public_method(token_contract, "buy_tokens", carol, 5, value=5 * TOKEN_PRICE)
    sequence = state_store.read_snapshot(state_file).sequence
    state_store.save_chain(other, state_file, sequence=sequence + 1)

    deployment.execute(owner, "buy_tokens", 1, value=TOKEN_PRICE, address=token_contract)

    assert deployment.call_view("balance_of", carol, address=token_contract) == 5
    transactions = deployment.call_view("get_all_transactions", address=token_contract)
    assert [(purchase.to, purchase.amount) for purchase in transactions] == [(carol, 5), (owner, 1)]
    assert state_store.read_snapshot(state_file).sequence == sequence + 2


def test_newer_state_on_disk_is_never_overwritten(state_file, owner, token_contract):
    deployment.get_platform()
    other = state_store.load_chain(state_file)
    sequence = state_store.read_snapshot(state_file).sequence
    other.call_public_method(token_contract, "update_token_price", owner, 2 * TOKEN_PRICE)
    state_store.save_chain(other, state_file, sequence=sequence + 1)

    with pytest.raises(PersistenceError):
        deployment.save_state()

    snapshot = state_store.read_snapshot(state_file)
    assert snapshot.sequence == sequence + 1
    assert state_store.restore_chain(snapshot).call_view_method(token_contract, "token_price") == 2 * TOKEN_PRICE


def test_failed_save_drops_the_change(state_file, owner, token_contract, monkeypatch):
    def failing_save(chain, path, sequence=0):
        raise PersistenceError(f"Could not save chain state to {path}: disk full")

    with monkeypatch.context() as patched:
        patched.setattr(state_store, "save_chain", failing_save)
        with pytest.raises(PersistenceError):
            deployment.execute(owner, "buy_tokens", 1, value=TOKEN_PRICE, address=token_contract)

    assert deployment.call_view("get_all_transactions", address=token_contract) == []
    assert deployment.call_view("balance_of", owner, address=token_contract) == 100


def test_state_lock_timeout(state_file, owner, monkeypatch):
    monkeypatch.setattr(config, "STATE_LOCK_TIMEOUT", 0.1)
    # A separate lock object stands in for another process holding the file
    with FileLock(f"{state_file}.lock"):
        with pytest.raises(PersistenceError):
            deployment.fund(owner, 1)
    assert deployment.fund(owner, 1) == 10 * LAMPORTS_PER_SOL + 1
