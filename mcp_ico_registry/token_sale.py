"""
TokenSale Contract

One TokenSale is deployed per ICO project. It holds a fixed supply minted entirely to
its initial owner at deployment and sells it at a fixed unit price: a buyer attaches
exactly ``amount * token_price`` lamports, the tokens move from the initial owner to
the buyer, the purchase is appended to the sale's ledger, and the payment is forwarded
to the initial owner. Only the initial owner may reprice the sale.

Holders can also move tokens between themselves with the standard ERC20 transfer,
approve and transfer_from calls; those carry no sale-price semantics and are not
recorded in the purchase ledger.

The sale keeps its project id only as a correlating number, so it can be deployed and
used with no registry present.
"""
from typing import Dict, List

from mcp_ico_registry.chain import ZERO_ADDRESS, Blueprint, Context, public, to_address, view
from mcp_ico_registry.errors import (
    ContractRevert,
    ERC20InsufficientAllowance,
    ERC20InsufficientBalance,
    ERC20InvalidReceiver,
    ValidationError,
)
from mcp_ico_registry.pricing import calculate_purchase_cost
from mcp_ico_registry.schemas import (
    Address,
    Approval,
    TokenPriceUpdated,
    TokenPurchase,
    TokensPurchased,
    Transfer,
)
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

TOKEN_DECIMALS = 18


class TokenSaleErrors:
    """Revert reasons"""

    ONLY_INITIAL_OWNER = "Only the initial owner can call this function"
    INCORRECT_PAYMENT = "Incorrect payment amount"
    NOT_ENOUGH_TOKENS = "Not enough tokens available for sale"
    INVALID_AMOUNT = "Amount must be greater than zero"
    INVALID_SUPPLY = "Total supply cannot be negative"
    INVALID_PRICE = "Token price cannot be negative"


class TokenSale(Blueprint):
    """Fixed-supply token sold by its initial owner at a fixed unit price."""

    # Token metadata
    token_name: str
    token_symbol: str
    supply: int

    # Sale configuration
    owner: Address  # Receives the whole supply and every payment
    origin_project_id: int  # Registry project this sale was minted for
    price: int  # Lamports per token

    # Token state
    balances: Dict[Address, int]
    allowances: Dict[Address, Dict[Address, int]]
    transactions: List[TokenPurchase]  # Purchase ledger, append-only

    @public
    def initialize(
        self,
        ctx: Context,
        name: str,
        symbol: str,
        total_supply: int,
        initial_owner: Address,
        project_id: int,
        token_price: int,
    ) -> None:
        """Mint the entire supply to the initial owner and open the sale."""
        if total_supply < 0:
            raise ContractRevert(TokenSaleErrors.INVALID_SUPPLY)
        if token_price < 0:
            raise ContractRevert(TokenSaleErrors.INVALID_PRICE)
        initial_owner = to_address(initial_owner)

        self.token_name = name
        self.token_symbol = symbol
        self.supply = total_supply
        self.owner = initial_owner
        self.origin_project_id = project_id
        self.price = token_price
        self.balances = {initial_owner: total_supply}
        self.allowances = {}
        self.transactions = []

        self.syscall.emit_event(Transfer(sender=None, to=initial_owner, value=total_supply))
        logger.info(f"TokenSale {symbol} initialized for project {project_id}: "
                    f"supply={total_supply}, price={token_price} lamports, owner={initial_owner}")

    # --- Sale ---

    @public(payable=True)
    def buy_tokens(self, ctx: Context, amount: int) -> None:
        """Buy ``amount`` tokens from the initial owner, paying exactly ``amount * token_price``."""
        if amount <= 0:
            raise ContractRevert(TokenSaleErrors.INVALID_AMOUNT)
        cost = calculate_purchase_cost(amount, self.price)
        if ctx.value != cost:
            raise ContractRevert(TokenSaleErrors.INCORRECT_PAYMENT)
        if self.balances.get(self.owner, 0) < amount:
            raise ContractRevert(TokenSaleErrors.NOT_ENOUGH_TOKENS)

        self._update(self.owner, ctx.caller, amount)
        self.transactions.append(TokenPurchase(to=ctx.caller, amount=amount, timestamp=ctx.timestamp))
        self.syscall.emit_event(TokensPurchased(buyer=ctx.caller, amount=amount, cost=cost))

        # Balances and ledger are final before the payment leaves
        self.syscall.transfer(self.owner, cost)
        logger.info(f"{ctx.caller} bought {amount} {self.token_symbol} for {cost} lamports")

    @public
    def update_token_price(self, ctx: Context, new_price: int) -> None:
        self._check_initial_owner(ctx)
        if new_price < 0:
            raise ContractRevert(TokenSaleErrors.INVALID_PRICE)
        old_price = self.price
        self.price = new_price
        self.syscall.emit_event(TokenPriceUpdated(old_price=old_price, new_price=new_price))
        logger.info(f"{self.token_symbol} price updated from {old_price} to {new_price} lamports")

    # --- ERC20 ---

    @public
    def transfer(self, ctx: Context, to: Address, value: int) -> bool:
        self._update(ctx.caller, self._receiver(to), value)
        return True

    @public
    def approve(self, ctx: Context, spender: Address, value: int) -> bool:
        spender = to_address(spender)
        if value < 0:
            raise ContractRevert(TokenSaleErrors.INVALID_AMOUNT)
        self.allowances.setdefault(ctx.caller, {})[spender] = value
        self.syscall.emit_event(Approval(owner=ctx.caller, spender=spender, value=value))
        return True

    @public
    def transfer_from(self, ctx: Context, owner: Address, to: Address, value: int) -> bool:
        owner = to_address(owner)
        to = self._receiver(to)
        current = self.allowance(owner, ctx.caller)
        if current < value:
            raise ERC20InsufficientAllowance(ctx.caller, current, value)
        self._update(owner, to, value)
        self.allowances.setdefault(owner, {})[ctx.caller] = current - value
        return True

    # --- Views ---

    @view
    def name(self) -> str:
        return self.token_name

    @view
    def symbol(self) -> str:
        return self.token_symbol

    @view
    def decimals(self) -> int:
        return TOKEN_DECIMALS

    @view
    def total_supply(self) -> int:
        return self.supply

    @view
    def balance_of(self, account: Address) -> int:
        return self.balances.get(to_address(account), 0)

    @view
    def allowance(self, owner: Address, spender: Address) -> int:
        return self.allowances.get(to_address(owner), {}).get(to_address(spender), 0)

    @view
    def token_price(self) -> int:
        return self.price

    @view
    def initial_owner(self) -> Address:
        return self.owner

    @view
    def project_id(self) -> int:
        return self.origin_project_id

    @view
    def get_contract_balance(self) -> int:
        """Native balance held by the sale; payments are forwarded, so normally 0."""
        return self.syscall.get_current_balance()

    @view
    def get_all_transactions(self) -> List[TokenPurchase]:
        return [purchase.model_copy() for purchase in self.transactions]

    # --- Internal methods ---

    def _check_initial_owner(self, ctx: Context) -> None:
        if ctx.caller != self.owner:
            raise ContractRevert(TokenSaleErrors.ONLY_INITIAL_OWNER)

    def _receiver(self, to: Address) -> Address:
        try:
            to = to_address(to)
        except ValidationError:
            raise ERC20InvalidReceiver(to)
        if to == ZERO_ADDRESS:
            raise ERC20InvalidReceiver(to)
        return to

    def _update(self, sender: Address, to: Address, value: int) -> None:
        if value < 0:
            raise ContractRevert(TokenSaleErrors.INVALID_AMOUNT)
        balance = self.balances.get(sender, 0)
        if balance < value:
            raise ERC20InsufficientBalance(sender, balance, value)
        self.balances[sender] = balance - value
        self.balances[to] = self.balances.get(to, 0) + value
        self.syscall.emit_event(Transfer(sender=sender, to=to, value=value))
