import pytest

from mcp_ico_registry import pricing


def test_calculate_purchase_cost():
    assert pricing.calculate_purchase_cost(10, 1_000) == 10_000
    assert pricing.calculate_purchase_cost(0, 1_000) == 0
    assert pricing.calculate_purchase_cost(7, 0) == 0


def test_calculate_purchase_cost_is_exact_for_large_values():
    assert pricing.calculate_purchase_cost(10**24, 10**12) == 10**36


@pytest.mark.parametrize("amount, price", [(-1, 1), (1, -1)])
def test_calculate_purchase_cost_rejects_negatives(amount, price):
    with pytest.raises(ValueError):
        pricing.calculate_purchase_cost(amount, price)


def test_unit_conversions():
    assert pricing.lamports_to_sol(2_500_000_000) == 2.5
    assert pricing.format_lamports(100_000_000) == "0.100000000 SOL"
