import os
from typing import Any, Dict, Tuple

from flask import Flask, jsonify, request

from mcp_ico_registry import config
from mcp_ico_registry import deployment
from mcp_ico_registry import pricing
from mcp_ico_registry.chain import to_address
from mcp_ico_registry.errors import (
    ContractExecutionError,
    ContractNotFoundError,
    ContractRevert,
    InsufficientFundsError,
    PersistenceError,
    RateLimitExceededError,
    ValidationError,
)
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


app = Flask(__name__)

# --- Action Metadata ---
ACTION_TITLE = "Token Purchase"
ACTION_LABEL = "Buy Tokens"
MAX_PURCHASE_AMOUNT = 10**30


def get_cors_headers(origin: str) -> Dict[str, str]:
    """Get CORS headers with origin validation."""
    allowed_origins = config.CORS_ALLOWED_ORIGINS
    allowed_origin = "*"
    if "*" not in allowed_origins:
        if origin in allowed_origins:
            allowed_origin = origin
        else:
            allowed_origin = allowed_origins[0] if allowed_origins else "null"

    return {
        'Access-Control-Allow-Origin': allowed_origin,
        'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
        'Access-Control-Allow-Headers': 'Content-Type, Authorization',
        'Access-Control-Max-Age': '3600',
        'Access-Control-Allow-Credentials': 'false'
    }


def _is_integer(value: Any) -> bool:
    """JSON integers only; bools and floats such as 10.9 or 1e3 are rejected, not truncated."""
    return isinstance(value, int) and not isinstance(value, bool)


def _error_status(error: Exception) -> int:
    if isinstance(error, RateLimitExceededError):
        return 429
    if isinstance(error, InsufficientFundsError):
        return 402
    if isinstance(error, ContractNotFoundError):
        return 404
    if isinstance(error, PersistenceError):
        return 503
    return 400


# --- Flask Routes ---

@app.route('/projects/<int:project_id>', methods=['OPTIONS'])
@app.route('/projects/<int:project_id>/transactions', methods=['OPTIONS'])
@app.route('/projects/<int:project_id>/buy', methods=['OPTIONS'])
def handle_options(project_id: int) -> Tuple[str, int, Dict[str, str]]:
    """Handles CORS preflight requests."""
    origin = request.headers.get('Origin', '*')
    return '', 204, get_cors_headers(origin)


@app.route('/projects/<int:project_id>', methods=['GET'], provide_automatic_options=False)
def get_project_action_metadata(project_id: int) -> Tuple[Any, int, Dict[str, str]]:
    """Describes a project and, once its token exists, the purchase action for it."""
    cors_headers = get_cors_headers(request.headers.get('Origin', '*'))
    try:
        project = deployment.call_view("get_project", project_id)
        details = deployment.call_view("get_project_details_by_id", project_id)
    except ContractExecutionError as e:
        return jsonify({"message": str(e)}), 404, cors_headers

    metadata = {
        "title": f"{ACTION_TITLE}: {details.project_name}",
        "description": details.project_description,
        "status": project.status.label,
        "owner": details.project_owner,
        "opening_date": project.opening_date,
        "closing_date": project.closing_date,
        "disabled": project.token_contract is None,
    }
    if project.token_contract is not None:
        metadata.update(
            label=f"{ACTION_LABEL} ({details.token_symbol})",
            token_contract=project.token_contract,
            token_name=details.token_name,
            token_symbol=details.token_symbol,
            token_price=details.token_price,
            parameters=[
                {"name": "amount", "label": f"Amount of {details.token_symbol} to buy", "required": True}
            ],
        )
    return jsonify(metadata), 200, cors_headers


@app.route('/projects/<int:project_id>/transactions', methods=['GET'], provide_automatic_options=False)
def get_project_transactions(project_id: int) -> Tuple[Any, int, Dict[str, str]]:
    """Lists the purchases recorded by a project's token sale."""
    cors_headers = get_cors_headers(request.headers.get('Origin', '*'))
    try:
        token_contract = deployment.get_token_contract(project_id)
        transactions = deployment.call_view("get_all_transactions", address=token_contract)
    except (ContractExecutionError, ValidationError) as e:
        return jsonify({"message": str(e)}), 404, cors_headers
    return jsonify([purchase.model_dump(mode="json") for purchase in transactions]), 200, cors_headers


@app.route('/projects/<int:project_id>/buy', methods=['POST'], provide_automatic_options=False)
def post_buy_tokens_action(project_id: int) -> Tuple[Any, int, Dict[str, str]]:
    """Buys tokens of a project's sale on behalf of the given account."""
    cors_headers = get_cors_headers(request.headers.get('Origin', '*'))

    if not request.is_json:
        return jsonify({"message": "Content-Type must be application/json"}), 415, cors_headers

    payload = request.get_json(silent=True)
    if not payload or not isinstance(payload, dict):
        return jsonify({"message": "Empty or invalid JSON payload"}), 400, cors_headers

    account_str = payload.get("account")
    if not isinstance(account_str, str) or not account_str.strip():
        return jsonify({"message": "Account must be a non-empty string"}), 400, cors_headers
    try:
        account = to_address(account_str.strip())
    except ValidationError:
        logger.warning(f"Invalid user account address: {account_str}")
        return jsonify({"message": f"Invalid user account address: {account_str}"}), 400, cors_headers

    amount = payload.get("amount")
    if not _is_integer(amount):
        return jsonify({"message": "Amount must be a valid integer"}), 400, cors_headers
    if amount <= 0:
        return jsonify({"message": "Amount must be positive"}), 400, cors_headers
    if amount > MAX_PURCHASE_AMOUNT:
        return jsonify({"message": "Amount is too large"}), 400, cors_headers

    payment = payload.get("payment_lamports")
    if payment is not None:
        if not _is_integer(payment):
            return jsonify({"message": "Payment must be a valid integer"}), 400, cors_headers
        if payment < 0:
            return jsonify({"message": "Payment cannot be negative"}), 400, cors_headers

    try:
        token_contract = deployment.get_token_contract(project_id)
        if payment is None:
            token_price = deployment.call_view("token_price", address=token_contract)
            payment = pricing.calculate_purchase_cost(amount, token_price)
        receipt = deployment.execute(account, "buy_tokens", amount, value=payment, address=token_contract)
    except (ContractExecutionError, PersistenceError, RateLimitExceededError, ValidationError) as e:
        logger.warning(f"Token purchase through action API failed for project {project_id}: {e}")
        message = e.reason if isinstance(e, ContractRevert) else str(e)
        return jsonify({"message": message}), _error_status(e), cors_headers
    except Exception as e:
        logger.exception(f"Unexpected error in post_buy_tokens_action: {e}")
        return jsonify({"message": "An unexpected server error occurred"}), 500, cors_headers

    symbol = deployment.call_view("symbol", address=token_contract)
    logger.info(f"Action API purchase for project {project_id}: {amount} {symbol} by {account}")
    response_body = {
        "transaction": receipt.tx_hash,
        "message": f"Purchased {amount} {symbol} for {pricing.format_lamports(payment)}",
    }
    return jsonify(response_body), 200, cors_headers


# --- Main Execution (for running Flask app directly) ---
if __name__ == '__main__':
    chain, registry_address = deployment.get_platform()
    port = config.ACTIONS_PORT
    logger.info(f"Starting Flask Action API server on port {port} for registry {registry_address}...")
    app.run(debug=os.getenv("FLASK_DEBUG", "False").lower() == "true", port=port, host="0.0.0.0")
