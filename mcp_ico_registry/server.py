"""
ICO Registry Server - MCP Server Implementation

This module exposes the ProjectRegistry and its TokenSale contracts as MCP tools. Every
tool runs against the process-wide deployment (see ``deployment``): one simulated chain
with one ProjectRegistry, restored from and saved to the configured state file.

Key Features:
- Project listing, closing and token minting on behalf of a caller address
- Fixed-price token purchases with the exact payment computed from the current price
- Platform administration (listing fee, fee withdrawal) for the SUPEROWNER
- Read tools for registry info, project status and details, balances and purchase ledgers
- Per-caller rate limiting of state-changing tools

Callers are identified by base58 addresses passed as tool arguments; the simulated chain
performs no signature checks. Contract failures are returned as messages naming the
revert reason or custom error, so clients can correct their arguments and retry.
"""

import json
import time
from typing import Annotated, Optional

from pydantic import Field

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_ico_registry import config
from mcp_ico_registry import deployment
from mcp_ico_registry import pricing
from mcp_ico_registry import rate_limiter
from mcp_ico_registry.chain import to_address
from mcp_ico_registry.errors import (
    ContractCustomError,
    ContractExecutionError,
    ContractRevert,
    PersistenceError,
    RateLimitExceededError,
    ValidationError,
)

# Constants
MAX_TEXT_LENGTH = 1000
MAX_TOKEN_AMOUNT = 10**30

logger = get_logger(__name__)

# --- Server Setup ---
mcp = FastMCP(name="ICO Registry Server")


# --- Helper Functions ---

def validate_caller(caller: str) -> str:
    """Validates a caller address and returns its normalized form."""
    if not caller or not isinstance(caller, str):
        raise ValidationError("Caller must be a non-empty address string")
    return to_address(caller.strip())


def validate_amount(name: str, value: int, allow_zero: bool = True) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f"{name} must be {'non-negative' if allow_zero else 'positive'}")
    if value > MAX_TOKEN_AMOUNT:
        raise ValidationError(f"{name} is too large")


def validate_text(name: str, value: str) -> None:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    if len(value) > MAX_TEXT_LENGTH:
        raise ValidationError(f"{name} is too long (max {MAX_TEXT_LENGTH} characters)")


def describe_failure(operation: str, error: Exception) -> str:
    """Turns a rejected call into the message returned to the client."""
    if isinstance(error, ContractCustomError):
        return f"{operation} reverted with custom error {error}"
    if isinstance(error, ContractRevert):
        return f"{operation} reverted: {error.reason}"
    if isinstance(error, ContractExecutionError):
        return f"{operation} failed: {error}"
    if isinstance(error, RateLimitExceededError):
        return str(error)
    if isinstance(error, PersistenceError):
        return f"{operation} was not saved: {error}"
    return f"Error: {error}"


def log_operation_error(operation: str, error: Exception, caller: str, duration: float) -> None:
    logger.error(f"{operation} failed: {error}, caller: {caller}, duration: {duration:.3f}s")


# --- MCP Tools: Projects ---

@mcp.tool()
async def list_new_project(
    context: Context,
    caller: str = Field(..., description="Address of the account listing the project."),
    name: str = Field(..., description="Project name."),
    description: str = Field(..., description="Project description."),
    opening_date: int = Field(..., description="Opening date (Unix timestamp)."),
    closing_date: int = Field(..., description="Closing date (Unix timestamp)."),
    payment_lamports: Annotated[
        Optional[int], Field(description="Listing payment in lamports; defaults to the current listing fee.")
    ] = None,
) -> str:
    """Lists a new ICO project, paying the listing fee from the caller's balance."""
    start_time = time.time()
    try:
        caller = validate_caller(caller)
        validate_text("Project name", name)
        validate_text("Project description", description)
        if payment_lamports is None:
            payment_lamports = deployment.call_view("get_listing_fee")
        validate_amount("Payment", payment_lamports)

        receipt = deployment.execute(caller, "list_new_project", name, description, opening_date, closing_date,
                          value=payment_lamports)
        logger.info(f"Project {receipt.return_value} listed by {caller} in {time.time() - start_time:.3f}s")
        return (f"Project {receipt.return_value} '{name}' listed by {caller}. "
                f"Fee paid: {pricing.format_lamports(payment_lamports)} (txid: {receipt.tx_hash})")
    except (ContractExecutionError, PersistenceError, RateLimitExceededError, ValidationError) as e:
        log_operation_error("Project listing", e, caller, time.time() - start_time)
        return describe_failure("Project listing", e)
    except Exception as e:
        logger.exception(f"Unexpected error listing project: {e}")
        return "An unexpected server error occurred while listing the project."


@mcp.tool()
async def close_project(
    context: Context,
    caller: str = Field(..., description="Address of the project owner."),
    project_id: int = Field(..., description="The project ID."),
) -> str:
    """Closes a listed project. Only its owner can close it."""
    start_time = time.time()
    try:
        caller = validate_caller(caller)
        receipt = deployment.execute(caller, "close_project", project_id)
        return f"Project {project_id} closed (txid: {receipt.tx_hash})"
    except (ContractExecutionError, PersistenceError, RateLimitExceededError, ValidationError) as e:
        log_operation_error("Project closing", e, caller, time.time() - start_time)
        return describe_failure("Project closing", e)
    except Exception as e:
        logger.exception(f"Unexpected error closing project {project_id}: {e}")
        return "An unexpected server error occurred while closing the project."


@mcp.tool()
async def create_new_erc20_token(
    context: Context,
    caller: str = Field(..., description="Address of the project owner."),
    project_id: int = Field(..., description="The project ID."),
    token_name: str = Field(..., description="Token name."),
    token_symbol: str = Field(..., description="Token symbol."),
    total_supply: int = Field(..., description="Fixed total supply (in base units)."),
    token_price_lamports: int = Field(..., description="Unit price in lamports."),
) -> str:
    """Mints the project's token sale. Each project can have exactly one token."""
    start_time = time.time()
    try:
        caller = validate_caller(caller)
        validate_text("Token name", token_name)
        validate_text("Token symbol", token_symbol)
        validate_amount("Total supply", total_supply)
        validate_amount("Token price", token_price_lamports)

        receipt = deployment.execute(caller, "create_new_erc20_token", project_id, token_name, token_symbol,
                          total_supply, token_price_lamports)
        return (f"Token {token_symbol} created for project {project_id} at {receipt.return_value}. "
                f"Supply: {total_supply} {token_symbol}, price: {pricing.format_lamports(token_price_lamports)} per unit "
                f"(txid: {receipt.tx_hash})")
    except (ContractExecutionError, PersistenceError, RateLimitExceededError, ValidationError) as e:
        log_operation_error("Token creation", e, caller, time.time() - start_time)
        return describe_failure("Token creation", e)
    except Exception as e:
        logger.exception(f"Unexpected error creating token for project {project_id}: {e}")
        return "An unexpected server error occurred while creating the token."


@mcp.tool()
async def get_project_status(
    context: Context,
    project_id: int = Field(..., description="The project ID."),
) -> str:
    """Gets a project's status label (PROJECT_LISTED, PROJECT_CLOSED or PROJECT_TOKEN_MINTED)."""
    try:
        return deployment.call_view("get_project_status", project_id)
    except ContractExecutionError as e:
        return describe_failure("Status lookup", e)
    except Exception as e:
        logger.exception(f"Unexpected error getting status of project {project_id}: {e}")
        return "An unexpected error occurred while retrieving the project status."


@mcp.tool()
async def get_project_details(
    context: Context,
    project_id: int = Field(..., description="The project ID."),
) -> str:
    """Gets a project's details together with its token's name, symbol and price."""
    try:
        project = deployment.call_view("get_project", project_id)
        details = deployment.call_view("get_project_details_by_id", project_id)
        result = details.model_dump(mode="json")
        result.update(
            project_id=project.id,
            status=project.status.label,
            opening_date=project.opening_date,
            closing_date=project.closing_date,
        )
        return json.dumps(result, indent=2)
    except ContractExecutionError as e:
        return describe_failure("Details lookup", e)
    except Exception as e:
        logger.exception(f"Unexpected error getting details of project {project_id}: {e}")
        return "An unexpected error occurred while retrieving project details."


# --- MCP Tools: Token Sales ---

@mcp.tool()
async def buy_tokens(
    context: Context,
    caller: str = Field(..., description="Address of the buyer."),
    project_id: int = Field(..., description="The project whose token to buy."),
    amount: int = Field(..., description="The number of tokens to purchase (in base units)."),
    payment_lamports: Annotated[
        Optional[int], Field(description="Payment in lamports; defaults to amount times the current price.")
    ] = None,
) -> str:
    """
    Buys tokens from a project's token sale at its fixed price.

    The sale only accepts a payment of exactly ``amount * token_price``; when no payment
    is given, that exact amount is attached. Tokens come out of the initial owner's
    balance and the payment is forwarded to the initial owner.
    """
    start_time = time.time()
    try:
        caller = validate_caller(caller)
        validate_amount("Amount", amount, allow_zero=False)
        token_contract = deployment.get_token_contract(project_id)
        if payment_lamports is None:
            token_price = deployment.call_view("token_price", address=token_contract)
            payment_lamports = pricing.calculate_purchase_cost(amount, token_price)
        validate_amount("Payment", payment_lamports)

        receipt = deployment.execute(caller, "buy_tokens", amount, value=payment_lamports, address=token_contract)
        symbol = deployment.call_view("symbol", address=token_contract)
        logger.info(f"Token purchase completed for project {project_id}: amount={amount} {symbol}, "
                    f"cost={payment_lamports} lamports, tx={receipt.tx_hash[:8]}..., "
                    f"duration={time.time() - start_time:.3f}s, caller={caller}")
        return (f"Successfully purchased {amount} {symbol} "
                f"for {pricing.format_lamports(payment_lamports)} (txid: {receipt.tx_hash})")
    except (ContractExecutionError, PersistenceError, RateLimitExceededError, ValidationError) as e:
        log_operation_error("Token purchase", e, caller, time.time() - start_time)
        return describe_failure("Token purchase", e)
    except Exception as e:
        logger.exception(f"Unexpected error buying tokens of project {project_id}: {e}")
        return "An unexpected server error occurred"


@mcp.tool()
async def update_token_price(
    context: Context,
    caller: str = Field(..., description="Address of the token's initial owner."),
    project_id: int = Field(..., description="The project whose token to reprice."),
    new_price_lamports: int = Field(..., description="New unit price in lamports."),
) -> str:
    """Reprices a project's token sale. Only the token's initial owner can do this."""
    start_time = time.time()
    try:
        caller = validate_caller(caller)
        validate_amount("Token price", new_price_lamports)
        token_contract = deployment.get_token_contract(project_id)
        receipt = deployment.execute(caller, "update_token_price", new_price_lamports, address=token_contract)
        return (f"Token price for project {project_id} updated to "
                f"{pricing.format_lamports(new_price_lamports)} (txid: {receipt.tx_hash})")
    except (ContractExecutionError, PersistenceError, RateLimitExceededError, ValidationError) as e:
        log_operation_error("Price update", e, caller, time.time() - start_time)
        return describe_failure("Price update", e)
    except Exception as e:
        logger.exception(f"Unexpected error updating token price of project {project_id}: {e}")
        return "An unexpected server error occurred while updating the token price."


@mcp.tool()
async def get_token_transactions(
    context: Context,
    project_id: int = Field(..., description="The project ID."),
) -> str:
    """Gets every purchase recorded by a project's token sale, oldest first."""
    try:
        token_contract = deployment.get_token_contract(project_id)
        transactions = deployment.call_view("get_all_transactions", address=token_contract)
        return json.dumps([purchase.model_dump(mode="json") for purchase in transactions], indent=2)
    except (ContractExecutionError, ValidationError) as e:
        return describe_failure("Transaction lookup", e)
    except Exception as e:
        logger.exception(f"Unexpected error getting transactions of project {project_id}: {e}")
        return "An unexpected error occurred while retrieving transactions."


@mcp.tool()
async def get_token_balance(
    context: Context,
    project_id: int = Field(..., description="The project ID."),
    account: str = Field(..., description="Address of the token holder."),
) -> str:
    """Gets an account's balance of a project's token."""
    try:
        account = validate_caller(account)
        token_contract = deployment.get_token_contract(project_id)
        balance = deployment.call_view("balance_of", account, address=token_contract)
        symbol = deployment.call_view("symbol", address=token_contract)
        return f"{account} holds {balance} {symbol}"
    except (ContractExecutionError, ValidationError) as e:
        return describe_failure("Balance lookup", e)
    except Exception as e:
        logger.exception(f"Unexpected error getting token balance for project {project_id}: {e}")
        return "An unexpected error occurred while retrieving the token balance."


# --- MCP Tools: Platform ---

@mcp.tool()
async def get_registry_info(context: Context) -> str:
    """Gets the registry address, platform owner, listing fee, collected fees and project count."""
    try:
        _, registry_address = deployment.get_platform()
        info = {
            "registry": registry_address,
            "superowner": deployment.call_view("get_superowner"),
            "listing_fee": deployment.call_view("get_listing_fee"),
            "contract_balance": deployment.call_view("get_contract_balance"),
            "projects": deployment.call_view("get_projects_count"),
        }
        return json.dumps(info, indent=2)
    except Exception as e:
        logger.exception(f"Unexpected error getting registry info: {e}")
        return "An unexpected error occurred while retrieving registry information."


@mcp.tool()
async def update_listing_fee(
    context: Context,
    caller: str = Field(..., description="Address of the platform owner."),
    new_fee_lamports: int = Field(..., description="New listing fee in lamports."),
) -> str:
    """Sets the listing fee. Only the platform owner can do this."""
    start_time = time.time()
    try:
        caller = validate_caller(caller)
        validate_amount("Listing fee", new_fee_lamports)
        receipt = deployment.execute(caller, "update_listing_fee", new_fee_lamports)
        return f"Listing fee updated to {pricing.format_lamports(new_fee_lamports)} (txid: {receipt.tx_hash})"
    except (ContractExecutionError, PersistenceError, RateLimitExceededError, ValidationError) as e:
        log_operation_error("Listing fee update", e, caller, time.time() - start_time)
        return describe_failure("Listing fee update", e)
    except Exception as e:
        logger.exception(f"Unexpected error updating listing fee: {e}")
        return "An unexpected server error occurred while updating the listing fee."


@mcp.tool()
async def withdraw_contract_balance(
    context: Context,
    caller: str = Field(..., description="Address of the platform owner."),
) -> str:
    """Withdraws all collected listing fees to the platform owner."""
    start_time = time.time()
    try:
        caller = validate_caller(caller)
        receipt = deployment.execute(caller, "withdraw_contract_balance")
        return f"Withdrew {pricing.format_lamports(receipt.return_value)} to {caller} (txid: {receipt.tx_hash})"
    except (ContractExecutionError, PersistenceError, RateLimitExceededError, ValidationError) as e:
        log_operation_error("Withdrawal", e, caller, time.time() - start_time)
        return describe_failure("Withdrawal", e)
    except Exception as e:
        logger.exception(f"Unexpected error withdrawing registry balance: {e}")
        return "An unexpected server error occurred while withdrawing the balance."


@mcp.tool()
async def get_account_balance(
    context: Context,
    account: str = Field(..., description="Address of the account."),
) -> str:
    """Gets an account's native balance."""
    try:
        account = validate_caller(account)
        return f"{account} holds {pricing.format_lamports(deployment.get_chain().get_balance(account))}"
    except ValidationError as e:
        return describe_failure("Balance lookup", e)


@mcp.tool()
async def fund_account(
    context: Context,
    account: str = Field(..., description="Address of the account to fund."),
    lamports: int = Field(..., description="Amount to credit in lamports."),
) -> str:
    """Credits native currency to an account on the simulated chain (development faucet)."""
    try:
        if not config.FAUCET_ENABLED:
            return "The faucet is disabled on this server."
        account = validate_caller(account)
        validate_amount("Funding amount", lamports)
        rate_limiter.enforce_rate_limit(account)
        balance = deployment.fund(account, lamports)
        return f"Funded {account} with {pricing.format_lamports(lamports)}. Balance: {pricing.format_lamports(balance)}"
    except (PersistenceError, RateLimitExceededError, ValidationError) as e:
        return describe_failure("Funding", e)


# --- Main Execution ---
def main() -> None:
    startup_start = time.time()
    logger.info("Starting ICO Registry MCP Server...")

    chain, registry_address = deployment.get_platform()
    project_count = chain.call_view_method(registry_address, "get_projects_count")
    logger.info(f"Server startup completed in {time.time() - startup_start:.3f}s, "
                f"registry {registry_address} holds {project_count} project(s).")

    try:
        mcp.run(transport="stdio")
    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user")
    finally:
        logger.info("ICO Registry MCP Server stopped.")


if __name__ == "__main__":
    main()
