"""
Pydantic Data Models for the ICO Registry

This module defines the records kept in contract storage, the read views returned by
the contracts, the events they emit and the receipts produced by the execution
environment. Addresses are base58 public keys kept as strings so every model
serializes to plain JSON.

Key Components:
- ProjectStatus: project lifecycle states and their external labels
- Project: a listed ICO project as stored by the ProjectRegistry
- TokenPurchase: one entry of a TokenSale's append-only purchase ledger
- ProjectDetails: aggregate project + token read view
- Event models: ProjectListed, ProjectClosedByOwner, TokenListed, ContractBalanceWithdrawn,
  Transfer, Approval, TokensPurchased, TokenPriceUpdated
- Receipt: the outcome of a successful public call

Field order of Project and TokenPurchase is the storage layout read by off-chain
indexers, so fields are only ever appended.
"""
from enum import Enum
from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny

Address = str

EventT = TypeVar("EventT", bound="Event")


class ProjectStatus(str, Enum):
    LISTED = "LISTED"
    CLOSED = "CLOSED"
    TOKEN_MINTED = "TOKEN_MINTED"

    @property
    def label(self) -> str:
        """The label external callers match on, e.g. ``PROJECT_LISTED``."""
        return f"PROJECT_{self.value}"


class Project(BaseModel):
    id: int
    name: str
    description: str
    owner: Address
    opening_date: int
    closing_date: int
    status: ProjectStatus = ProjectStatus.LISTED
    token_contract: Optional[Address] = None


class TokenPurchase(BaseModel):
    to: Address
    amount: int
    timestamp: int


class ProjectDetails(BaseModel):
    project_name: str
    project_description: str
    project_owner: Address
    token_contract: Optional[Address] = None
    token_name: str = ""
    token_symbol: str = ""
    token_price: int = 0


# --- Events ---

class Event(BaseModel):
    """Base class for contract events. ``contract`` is stamped by the chain on emission."""

    contract: Address = ""

    @property
    def event_name(self) -> str:
        return type(self).__name__


class ProjectListed(Event):
    id: int
    name: str
    owner: Address


class ProjectClosedByOwner(Event):
    id: int


class TokenListed(Event):
    project_id: int
    symbol: str
    owner: Address


class ContractBalanceWithdrawn(Event):
    to: Address
    amount: int


class Transfer(Event):
    # None on the sender side marks a mint
    sender: Optional[Address] = Field(default=None, alias="from")
    to: Address
    value: int

    model_config = ConfigDict(populate_by_name=True)


class Approval(Event):
    owner: Address
    spender: Address
    value: int


class TokensPurchased(Event):
    buyer: Address
    amount: int
    cost: int


class TokenPriceUpdated(Event):
    old_price: int
    new_price: int


class Receipt(BaseModel):
    tx_hash: str
    caller: Address
    contract: Address
    method: str
    value: int = 0
    timestamp: int
    return_value: Any = None
    events: List[SerializeAsAny[Event]] = []

    def find_events(self, event_type: Type[EventT]) -> List[EventT]:
        """Returns the events of the given type emitted by this call, in emission order."""
        return [event for event in self.events if isinstance(event, event_type)]
