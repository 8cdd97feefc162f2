"""
Fixed-Price Token Pricing

Token sales in the registry are fixed-price primary issuance: the cost of a purchase
is always ``amount * token_price`` in lamports, and the buyer must attach exactly that
value. This module holds that calculation together with the unit conversions and
display helpers used by the server layer.
"""
from mcp_ico_registry.config import LAMPORTS_PER_SOL
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


def lamports_to_sol(lamports: int) -> float:
    """Convert lamports to SOL."""
    return lamports / LAMPORTS_PER_SOL


def calculate_purchase_cost(amount: int, token_price: int) -> int:
    """
    Calculates the exact payment, in lamports, for buying ``amount`` tokens.

    Args:
        amount: The number of tokens (in base units).
        token_price: The unit price in lamports.

    Returns:
        The total price in lamports.

    Raises:
        ValueError: If amount or price is negative.
    """
    if amount < 0:
        raise ValueError(f"Token amount cannot be negative: {amount}")
    if token_price < 0:
        raise ValueError(f"Token price cannot be negative: {token_price}")
    cost = amount * token_price
    logger.debug(f"Purchase cost for {amount} tokens at {token_price} lamports each: {cost} lamports")
    return cost


def format_lamports(lamports: int) -> str:
    """Format a lamport amount as SOL for display."""
    return f"{lamports_to_sol(lamports):.9f} SOL"
