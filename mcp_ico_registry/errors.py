"""
Custom Exception Classes for the ICO Registry

This module defines the exceptions raised when a contract call is rejected by the
ProjectRegistry or TokenSale contracts, by the simulated execution environment, or
by the service layer (MCP server and HTTP actions) sitting in front of them.

Exception Categories:
- Reverts: plain descriptive failures of a contract precondition ("Project does not exist")
- Custom errors: named error kinds carrying structured arguments, used for
  authorization failures and ERC20 balance/allowance failures
- Execution Environment Errors: unknown contracts, invalid method calls, missing funds
- Service Errors: rate limiting, configuration, input validation and persistence

Every ContractExecutionError means the whole call was rolled back. Callers decide
whether to retry with corrected arguments; nothing in the core retries on its own.
"""
from typing import Any, Tuple


class ContractExecutionError(Exception):
    """Base class for every failure that rejects (and rolls back) a contract call."""


class ContractRevert(ContractExecutionError):
    """Raised when a contract precondition fails with a plain descriptive reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ContractCustomError(ContractExecutionError):
    """
    Base class for named error kinds.

    Subclasses set ``error_name`` and are raised with the error's arguments, which
    stay available on ``args`` for precise assertions.
    """

    error_name = "ContractCustomError"

    @property
    def arguments(self) -> Tuple[Any, ...]:
        return self.args

    def __str__(self) -> str:
        rendered = ", ".join(repr(arg) for arg in self.args)
        return f"{self.error_name}({rendered})"


class NotAuthorizedAsListedProjectOwner(ContractCustomError):
    """Raised when someone other than a project's owner tries to close it."""

    error_name = "ICO_ProjectListing_NotAuthorizedAsListedProjectOwner"


class NotAuthorizedAsSuperOwner(ContractCustomError):
    """Raised when someone other than the platform owner manages fees or withdraws."""

    error_name = "ICO_ProjectListing_NotAuthorizedAsSuperOwner"


class ERC20InsufficientBalance(ContractCustomError):
    """Raised with (sender, balance, needed) when a transfer exceeds the sender's balance."""

    error_name = "ERC20InsufficientBalance"


class ERC20InsufficientAllowance(ContractCustomError):
    """Raised with (spender, allowance, needed) when transfer_from exceeds the allowance."""

    error_name = "ERC20InsufficientAllowance"


class ERC20InvalidReceiver(ContractCustomError):
    """Raised with (receiver,) when tokens would be sent to an unusable address."""

    error_name = "ERC20InvalidReceiver"


class InsufficientFundsError(ContractExecutionError):
    """Raised when an account cannot cover the native-currency value attached to a call."""


class ContractNotFoundError(ContractExecutionError):
    """Raised when a call targets an address with no deployed contract."""


class InvalidMethodCallError(ContractExecutionError):
    """Raised for calls to unknown or non-callable methods, or value sent to a non-payable one."""


class RateLimitExceededError(Exception):
    """Raised when the rate limit is exceeded for a caller."""


class ConfigurationError(Exception):
    """Raised when there are configuration-related errors."""


class ValidationError(Exception):
    """Raised when input validation fails."""


class PersistenceError(Exception):
    """Raised when chain state cannot be saved, or the state file holds newer state than this process."""
