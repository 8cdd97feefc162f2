import os
import logging
from typing import Optional
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from dotenv import load_dotenv

# Import custom errors
from mcp_ico_registry.errors import ConfigurationError

"""
Configuration Management for the ICO Registry

This module handles configuration loading and validation for the simulated chain,
the ProjectRegistry deployment and the MCP / HTTP servers in front of it. Settings
come from environment variables (optionally from a .env file) with defaults that
match the platform's reference deployment.

Environment Variables:
    DEFAULT_LISTING_FEE_LAMPORTS: Listing fee set when the registry is deployed
    SUPEROWNER_WALLET_SEED: Comma-separated seed bytes for the platform owner wallet
    CONTRACT_PROGRAM_ID: Base58 key used to derive deployed contract addresses
    GENESIS_LAMPORTS: Native balance credited to the platform owner at genesis
    FAUCET_ENABLED: Whether the fund_account tool may credit native currency
    STATE_FILE: JSON file the chain state is loaded from and saved to (empty disables)
    STATE_LOCK_TIMEOUT: Seconds to wait for the state file lock held by another process
    RATE_LIMIT_PER_MINUTE: Rate limit per caller address
    CORS_ALLOWED_ORIGINS: Comma-separated allowed CORS origins
    ACTIONS_PORT: Port for the HTTP action API
"""

# Set up logger
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()


def _get_env_str(key: str, default: str, required: bool = False) -> str:
    """Get environment variable as string with validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ConfigurationError(f"Required environment variable {key} is not set")
    return value


def _get_env_int(key: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    """Get environment variable as integer with validation."""
    try:
        value = int(os.getenv(key, str(default)))
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a valid integer")
    if min_val is not None and value < min_val:
        raise ConfigurationError(f"Environment variable {key} must be >= {min_val}")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"Environment variable {key} must be <= {max_val}")
    return value


def _get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean with validation."""
    value = os.getenv(key, str(default)).strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Environment variable {key} must be a boolean")


def _get_env_pubkey(key: str, default: str) -> Pubkey:
    """Get environment variable as Pubkey with validation."""
    try:
        value = os.getenv(key, default)
        return Pubkey.from_string(value)
    except Exception as e:
        raise ConfigurationError(f"Environment variable {key} must be a valid public key: {e}")


def _load_superowner_wallet() -> Keypair:
    """Load the platform owner wallet from environment with validation."""
    seed_str = os.getenv("SUPEROWNER_WALLET_SEED", ",".join(["1"] * 32))

    try:
        seed_parts = [x.strip() for x in seed_str.split(",")]
        if len(seed_parts) != 32:
            raise ValueError(f"SUPEROWNER_WALLET_SEED must contain exactly 32 comma-separated integers, got {len(seed_parts)}")

        seed_bytes = bytes([int(x) for x in seed_parts])
        wallet = Keypair.from_seed(seed_bytes)
        logger.info(f"Successfully loaded SUPEROWNER wallet: {wallet.pubkey()}")
        return wallet

    except (ValueError, TypeError) as e:
        logger.warning(f"Error loading SUPEROWNER_WALLET_SEED: {e}. Using a default insecure seed for development.")
        return Keypair.from_seed(bytes([1] * 32))


try:
    # --- Native Currency ---
    LAMPORTS_PER_SOL = 10**9

    # --- Registry Deployment ---
    # 0.1 native units, the fee the platform was launched with
    DEFAULT_LISTING_FEE_LAMPORTS = _get_env_int("DEFAULT_LISTING_FEE_LAMPORTS", LAMPORTS_PER_SOL // 10, min_val=0)
    SUPEROWNER_WALLET = _load_superowner_wallet()
    CONTRACT_PROGRAM_ID = _get_env_pubkey("CONTRACT_PROGRAM_ID", "11111111111111111111111111111111")
    GENESIS_LAMPORTS = _get_env_int("GENESIS_LAMPORTS", 1000 * LAMPORTS_PER_SOL, min_val=0)
    FAUCET_ENABLED = _get_env_bool("FAUCET_ENABLED", True)

    # --- Persistence ---
    STATE_FILE = _get_env_str("STATE_FILE", "")
    STATE_LOCK_TIMEOUT = _get_env_int("STATE_LOCK_TIMEOUT", 10, min_val=1, max_val=600)

    # --- Rate Limiting ---
    RATE_LIMIT_PER_MINUTE = _get_env_int("RATE_LIMIT_PER_MINUTE", 10, min_val=1, max_val=1000)

    # --- Action API Configuration ---
    ACTIONS_PORT = _get_env_int("ACTIONS_PORT", 5000, min_val=1024, max_val=65535)
    CORS_ALLOWED_ORIGINS = [origin.strip() for origin in _get_env_str("CORS_ALLOWED_ORIGINS", "*").split(",")]

    logger.info("Configuration loaded successfully")

except ConfigurationError as e:
    logger.error(f"Configuration error: {e}")
    raise
