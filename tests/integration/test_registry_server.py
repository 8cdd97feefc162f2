import json
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from solders.keypair import Keypair

from mcp_ico_registry import config
from mcp_ico_registry import deployment
from mcp_ico_registry import rate_limiter
from mcp_ico_registry import server
from mcp_ico_registry import state_store
from mcp_ico_registry.config import LAMPORTS_PER_SOL
from mcp_ico_registry.errors import PersistenceError

LISTING_FEE = config.DEFAULT_LISTING_FEE_LAMPORTS


@pytest.fixture(autouse=True)
def fresh_platform(monkeypatch):
    """Serves a freshly bootstrapped registry and never touches a state file."""
    monkeypatch.setattr(config, "STATE_FILE", "")
    monkeypatch.setattr(config, "FAUCET_ENABLED", True)
    monkeypatch.setattr(rate_limiter, "RATE_LIMIT_PER_MINUTE", 1000)
    chain, registry_address = deployment.bootstrap(state_file="")
    deployment.reset_platform(chain, registry_address)
    yield
    deployment.reset_platform()


@pytest.fixture
def context():
    return MagicMock()


@pytest_asyncio.fixture
async def alice(context):
    account = str(Keypair().pubkey())
    await server.fund_account(context=context, account=account, lamports=10 * LAMPORTS_PER_SOL)
    return account


@pytest_asyncio.fixture
async def bob(context):
    account = str(Keypair().pubkey())
    await server.fund_account(context=context, account=account, lamports=10 * LAMPORTS_PER_SOL)
    return account


async def list_project(context, caller, name="Project X"):
    return await server.list_new_project(
        context=context, caller=caller, name=name, description="A test project",
        opening_date=1_700_000_000, closing_date=1_702_592_000,
    )


async def mint_token(context, caller, project_id=0, total_supply=100, price=1_000):
    return await server.create_new_erc20_token(
        context=context, caller=caller, project_id=project_id, token_name="TestToken",
        token_symbol="TT", total_supply=total_supply, token_price_lamports=price,
    )


@pytest.mark.asyncio
async def test_get_registry_info(context):
    info = json.loads(await server.get_registry_info(context=context))
    assert info["registry"] == deployment.get_registry_address()
    assert info["superowner"] == str(config.SUPEROWNER_WALLET.pubkey())
    assert info["listing_fee"] == LISTING_FEE
    assert info["contract_balance"] == 0
    assert info["projects"] == 0


@pytest.mark.asyncio
async def test_list_new_project(context, alice):
    result = await list_project(context, alice)
    assert result.startswith(f"Project 0 'Project X' listed by {alice}")
    assert "txid:" in result
    assert await server.get_project_status(context=context, project_id=0) == "PROJECT_LISTED"
    assert deployment.get_chain().get_balance(alice) == 10 * LAMPORTS_PER_SOL - LISTING_FEE


@pytest.mark.asyncio
async def test_list_new_project_with_low_payment(context, alice):
    result = await server.list_new_project(
        context=context, caller=alice, name="Cheap", description="d",
        opening_date=0, closing_date=1, payment_lamports=LISTING_FEE - 1,
    )
    assert result == "Project listing reverted: Insufficient listing fee"


@pytest.mark.asyncio
async def test_list_new_project_without_funds(context):
    pauper = str(Keypair().pubkey())
    result = await list_project(context, pauper)
    assert result.startswith("Project listing failed: Insufficient funds")


@pytest.mark.asyncio
async def test_invalid_caller(context):
    result = await list_project(context, "not-an-address")
    assert result.startswith("Error: Invalid address")


@pytest.mark.asyncio
async def test_close_project(context, alice, bob):
    await list_project(context, alice)

    result = await server.close_project(context=context, caller=bob, project_id=0)
    assert result == (f"Project closing reverted with custom error "
                      f"ICO_ProjectListing_NotAuthorizedAsListedProjectOwner('{bob}', 0)")

    result = await server.close_project(context=context, caller=alice, project_id=0)
    assert result.startswith("Project 0 closed")
    assert await server.get_project_status(context=context, project_id=0) == "PROJECT_CLOSED"


@pytest.mark.asyncio
async def test_unknown_project(context, alice):
    assert await server.get_project_status(context=context, project_id=7) == \
        "Status lookup reverted: Project does not exist"
    assert await server.close_project(context=context, caller=alice, project_id=7) == \
        "Project closing reverted: Project does not exist"


@pytest.mark.asyncio
async def test_token_sale_flow(context, alice, bob):
    await list_project(context, alice)
    result = await mint_token(context, alice)
    assert result.startswith("Token TT created for project 0 at ")

    details = json.loads(await server.get_project_details(context=context, project_id=0))
    assert details["project_id"] == 0
    assert details["project_name"] == "Project X"
    assert details["project_owner"] == alice
    assert details["status"] == "PROJECT_TOKEN_MINTED"
    assert details["token_symbol"] == "TT"
    assert details["token_price"] == 1_000

    result = await server.buy_tokens(context=context, caller=bob, project_id=0, amount=10)
    assert result.startswith("Successfully purchased 10 TT for 0.000010000 SOL")

    assert await server.get_token_balance(context=context, project_id=0, account=bob) == f"{bob} holds 10 TT"
    assert await server.get_token_balance(context=context, project_id=0, account=alice) == f"{alice} holds 90 TT"

    transactions = json.loads(await server.get_token_transactions(context=context, project_id=0))
    assert len(transactions) == 1
    assert transactions[0]["to"] == bob
    assert transactions[0]["amount"] == 10


@pytest.mark.asyncio
async def test_buy_with_wrong_payment(context, alice, bob):
    await list_project(context, alice)
    await mint_token(context, alice)
    result = await server.buy_tokens(context=context, caller=bob, project_id=0, amount=10, payment_lamports=9_999)
    assert result == "Token purchase reverted: Incorrect payment amount"


@pytest.mark.asyncio
async def test_buy_before_token_exists(context, alice, bob):
    await list_project(context, alice)
    result = await server.buy_tokens(context=context, caller=bob, project_id=0, amount=1)
    assert result == "Error: Project 0 has no token yet"


@pytest.mark.asyncio
async def test_buy_rejects_non_positive_amount(context, alice, bob):
    await list_project(context, alice)
    await mint_token(context, alice)
    result = await server.buy_tokens(context=context, caller=bob, project_id=0, amount=0)
    assert result == "Error: Amount must be positive"


@pytest.mark.asyncio
async def test_second_token_is_rejected(context, alice):
    await list_project(context, alice)
    await mint_token(context, alice)
    result = await mint_token(context, alice)
    assert result == "Token creation reverted: Token already created for this project"


@pytest.mark.asyncio
async def test_update_token_price(context, alice, bob):
    await list_project(context, alice)
    await mint_token(context, alice)

    result = await server.update_token_price(context=context, caller=bob, project_id=0, new_price_lamports=1)
    assert result == "Price update reverted: Only the initial owner can call this function"

    result = await server.update_token_price(context=context, caller=alice, project_id=0, new_price_lamports=2_000)
    assert result.startswith("Token price for project 0 updated")

    await server.buy_tokens(context=context, caller=bob, project_id=0, amount=2)
    transactions = json.loads(await server.get_token_transactions(context=context, project_id=0))
    assert transactions[0]["amount"] == 2
    assert deployment.get_chain().get_balance(bob) == 10 * LAMPORTS_PER_SOL - 4_000


@pytest.mark.asyncio
async def test_listing_fee_administration(context, alice):
    superowner = str(config.SUPEROWNER_WALLET.pubkey())

    result = await server.update_listing_fee(context=context, caller=alice, new_fee_lamports=0)
    assert result.startswith("Listing fee update reverted with custom error ICO_ProjectListing_NotAuthorizedAsSuperOwner")

    await list_project(context, alice)
    result = await server.withdraw_contract_balance(context=context, caller=superowner)
    assert result.startswith(f"Withdrew 0.100000000 SOL to {superowner}")

    result = await server.update_listing_fee(context=context, caller=superowner, new_fee_lamports=2 * LISTING_FEE)
    assert result.startswith("Listing fee updated to 0.200000000 SOL")
    info = json.loads(await server.get_registry_info(context=context))
    assert info["listing_fee"] == 2 * LISTING_FEE
    assert info["projects"] == 1


@pytest.mark.asyncio
async def test_account_balance_and_faucet(context, monkeypatch):
    account = str(Keypair().pubkey())
    result = await server.fund_account(context=context, account=account, lamports=LAMPORTS_PER_SOL)
    assert result == f"Funded {account} with 1.000000000 SOL. Balance: 1.000000000 SOL"
    assert await server.get_account_balance(context=context, account=account) == f"{account} holds 1.000000000 SOL"

    monkeypatch.setattr(config, "FAUCET_ENABLED", False)
    assert await server.fund_account(context=context, account=account, lamports=1) == \
        "The faucet is disabled on this server."


@pytest.mark.asyncio
async def test_rate_limit(context, alice, monkeypatch):
    monkeypatch.setattr(rate_limiter, "RATE_LIMIT_PER_MINUTE", 1)
    rate_limiter.reset()
    await list_project(context, alice, name="First")
    result = await list_project(context, alice, name="Second")
    assert result == f"Rate limit exceeded for caller: {alice}"
    assert deployment.call_view("get_projects_count") == 1


@pytest.mark.asyncio
async def test_state_is_saved_after_each_call(context, alice, tmp_path, monkeypatch):
    state_file = tmp_path / "chain.json"
    monkeypatch.setattr(config, "STATE_FILE", str(state_file))
    await list_project(context, alice)

    restored = state_store.load_chain(state_file)
    assert restored.call_view_method(deployment.get_registry_address(), "get_projects_count") == 1

    chain, registry_address = deployment.bootstrap(state_file=str(state_file))
    assert registry_address == deployment.get_registry_address()
    assert chain.get_balance(alice) == deployment.get_chain().get_balance(alice)


def test_bootstrap_funds_superowner():
    with patch.object(config, "GENESIS_LAMPORTS", 5 * LAMPORTS_PER_SOL):
        chain, registry_address = deployment.bootstrap(state_file="")
    assert chain.get_balance(config.SUPEROWNER_WALLET.pubkey()) == 5 * LAMPORTS_PER_SOL
    assert chain.call_view_method(registry_address, "get_superowner") == str(config.SUPEROWNER_WALLET.pubkey())


@pytest.mark.asyncio
async def test_unsaved_change_is_reported(context, tmp_path, monkeypatch):
    monkeypatch.setattr(config, "STATE_FILE", str(tmp_path / "chain.json"))

    def failing_save(chain, path, sequence=0):
        raise PersistenceError(f"Could not save chain state to {path}: disk full")

    monkeypatch.setattr(state_store, "save_chain", failing_save)
    account = str(Keypair().pubkey())
    result = await server.fund_account(context=context, account=account, lamports=LAMPORTS_PER_SOL)
    assert result.startswith("Funding was not saved: Could not save chain state")
