import pytest
from solders.keypair import Keypair

from mcp_ico_registry import rate_limiter
from mcp_ico_registry.chain import Chain
from mcp_ico_registry.config import LAMPORTS_PER_SOL
from mcp_ico_registry.project_registry import ProjectRegistry

GENESIS_TIMESTAMP = 1_700_000_000
LISTING_FEE = LAMPORTS_PER_SOL // 10


def new_account() -> str:
    return str(Keypair().pubkey())


@pytest.fixture
def make_account(chain):
    """Creates an account holding 10 SOL."""

    def factory() -> str:
        account = new_account()
        chain.fund(account, 10 * LAMPORTS_PER_SOL)
        return account

    return factory


@pytest.fixture
def chain():
    """A chain whose block time only moves when a test moves it."""
    return Chain(clock=lambda: GENESIS_TIMESTAMP)


@pytest.fixture
def superowner(make_account):
    return make_account()


@pytest.fixture
def alice(make_account):
    return make_account()


@pytest.fixture
def bob(make_account):
    return make_account()


@pytest.fixture
def registry(chain, superowner):
    """Address of a ProjectRegistry deployed by ``superowner``."""
    return chain.deploy(ProjectRegistry, superowner, LISTING_FEE).contract


@pytest.fixture(autouse=True)
def clear_rate_limits():
    rate_limiter.reset()
    yield
    rate_limiter.reset()
