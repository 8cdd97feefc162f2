"""
Simulated Execution Environment

This module provides the ledger the ICO contracts run on. It stands in for the
on-chain runtime: it keeps native-currency balances, deploys contracts at derived
addresses, hands every public call a Context (caller identity, attached value, block
time) and records the events contracts emit.

Execution Model:
- Every public call runs to completion under a single lock, so calls are totally
  ordered and never interleave
- Before a call runs, balances, nonces and the event log are snapshotted. Contract
  storage is copied lazily, the first time the call reaches a contract (its target, or
  one fetched through ``syscall.get_contract``). If the call raises, the snapshot is
  restored in place and the exception propagates, so a failed call leaves no trace
  besides the caller's nonce
- Contracts must reach each other through ``syscall``; a reference kept from outside
  the call is not tracked and its changes would survive a revert
- Value attached to a call moves from the caller to the contract before the method
  body runs; contracts pay out through ``self.syscall.transfer``
- Calls made from inside a call (a contract deploying or reading another one) run
  within the outer call's boundary and roll back with it

Contracts subclass ``Blueprint``, mark their entry points with ``@public`` (optionally
``payable=True``) or ``@view``, and set their storage in ``initialize``, which runs once
at deployment. Everything a contract needs from the environment goes through its
``syscall`` accessor.

Addresses are base58 public keys. Contract addresses are derived with
``Pubkey.create_with_seed`` from the deployer and its nonce, and transaction hashes are
SHA-256 hashes of the call's identity.
"""
import copy
import threading
import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple, Type, TypeVar, Union

from solders.hash import Hash
from solders.pubkey import Pubkey

from mcp_ico_registry import config
from mcp_ico_registry.errors import (
    ContractNotFoundError,
    InsufficientFundsError,
    InvalidMethodCallError,
    ValidationError,
)
from mcp_ico_registry.schemas import Address, Event, Receipt
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

EventT = TypeVar("EventT", bound=Event)

_PUBLIC_ATTR = "__public_method__"
_PAYABLE_ATTR = "__payable_method__"
_VIEW_ATTR = "__view_method__"

INITIALIZE_METHOD = "initialize"

# The all-zero key; tokens sent here would be unrecoverable
ZERO_ADDRESS: Address = str(Pubkey.default())


def public(method: Optional[Callable] = None, *, payable: bool = False) -> Callable:
    """Marks a contract method as a state-changing entry point taking a Context first."""

    def decorator(fn: Callable) -> Callable:
        setattr(fn, _PUBLIC_ATTR, True)
        setattr(fn, _PAYABLE_ATTR, payable)
        return fn

    if method is not None:
        return decorator(method)
    return decorator


def view(method: Callable) -> Callable:
    """Marks a contract method as a read-only entry point."""
    setattr(method, _VIEW_ATTR, True)
    return method


def to_address(value: Union[str, Pubkey]) -> Address:
    """Normalizes a Pubkey or base58 string into a validated address string."""
    if isinstance(value, Pubkey):
        return str(value)
    try:
        return str(Pubkey.from_string(value))
    except Exception as e:
        raise ValidationError(f"Invalid address {value!r}: {e}")


class Context:
    """The caller-supplied part of a public call."""

    def __init__(self, caller: Address, value: int, timestamp: int):
        self.caller = caller
        self.value = value
        self.timestamp = timestamp

    def __repr__(self) -> str:
        return f"Context(caller={self.caller!r}, value={self.value}, timestamp={self.timestamp})"


class SysCall:
    """A contract's handle on the chain it is deployed on."""

    def __init__(self, chain: "Chain", address: Address):
        self._chain = chain
        self._address = address

    def get_contract_id(self) -> Address:
        return self._address

    def get_current_balance(self) -> int:
        return self._chain.get_balance(self._address)

    def get_contract(self, address: Address) -> "Blueprint":
        """Returns another contract; changes made to it roll back with the current call."""
        contract = self._chain.get_contract(address)
        self._chain._touch(to_address(address))
        return contract

    def call_view_method(self, address: Address, method_name: str, *args: Any) -> Any:
        return self._chain.call_view_method(address, method_name, *args)

    def transfer(self, to: Address, amount: int) -> None:
        """Pays ``amount`` lamports from this contract to ``to``."""
        self._chain._require_active_call("transfer")
        self._chain._move(self._address, to, amount)

    def emit_event(self, event: Event) -> None:
        self._chain._require_active_call("emit_event")
        self._chain._emit(self._address, event)

    def create_contract(self, blueprint_cls: Type["Blueprint"], *args: Any) -> Tuple[Address, "Blueprint"]:
        """Deploys a contract with this contract as deployer."""
        self._chain._require_active_call("create_contract")
        return self._chain._create_contract(blueprint_cls, self._address, args)


class Blueprint:
    """Base class for contracts deployed on a Chain."""

    _ENVIRONMENT_ATTRS = ("syscall",)

    syscall: SysCall

    @public
    def initialize(self, ctx: Context, *args: Any) -> None:
        raise NotImplementedError

    def get_storage(self) -> Dict[str, Any]:
        """The contract's persistent fields, without its environment handles."""
        return {key: value for key, value in vars(self).items() if key not in self._ENVIRONMENT_ATTRS}

    def set_storage(self, storage: Dict[str, Any]) -> None:
        for key in list(vars(self)):
            if key not in self._ENVIRONMENT_ATTRS:
                delattr(self, key)
        for key, value in storage.items():
            setattr(self, key, value)


class _Snapshot(NamedTuple):
    balances: Dict[Address, int]
    nonces: Dict[Address, int]
    event_count: int
    existing: frozenset
    # Filled as contracts are touched during the call
    storage: Dict[Address, Dict[str, Any]]


class Chain:
    """
    An in-process ledger executing contract calls atomically.

    Args:
        clock: Source of block time in seconds; ``time.time`` by default.
        program_id: Key contract addresses are derived under.
    """

    def __init__(self, clock: Callable[[], float] = time.time, program_id: Pubkey = config.CONTRACT_PROGRAM_ID):
        self._lock = threading.RLock()
        self._clock = clock
        self._pinned_timestamp: Optional[int] = None
        self._minimum_timestamp = 0
        self._call_timestamp: Optional[int] = None
        self.program_id = program_id
        self._balances: Dict[Address, int] = {}
        self._nonces: Dict[Address, int] = {}
        self._contracts: Dict[Address, Blueprint] = {}
        self._events: List[Event] = []
        self._active_snapshot: Optional[_Snapshot] = None

    # --- Block time ---

    @property
    def timestamp(self) -> int:
        if self._call_timestamp is not None:
            return self._call_timestamp
        if self._pinned_timestamp is not None:
            return self._pinned_timestamp
        return max(int(self._clock()), self._minimum_timestamp)

    def set_timestamp(self, timestamp: int) -> None:
        """Pins block time; every following call sees this timestamp."""
        self._pinned_timestamp = timestamp

    def advance_time(self, seconds: int) -> int:
        self._pinned_timestamp = self.timestamp + seconds
        return self._pinned_timestamp

    def set_minimum_timestamp(self, timestamp: int) -> None:
        """Keeps block time from running backwards, e.g. past the time of a restored snapshot."""
        self._minimum_timestamp = timestamp

    # --- Accounts ---

    def fund(self, account: Union[str, Pubkey], lamports: int) -> int:
        """Credits native currency to an account out of thin air (genesis / faucet)."""
        if lamports < 0:
            raise ValidationError("Funding amount cannot be negative")
        account = to_address(account)
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + lamports
            logger.debug(f"Funded {account} with {lamports} lamports")
            return self._balances[account]

    def get_balance(self, account: Union[str, Pubkey]) -> int:
        return self._balances.get(to_address(account), 0)

    def get_nonce(self, account: Union[str, Pubkey]) -> int:
        return self._nonces.get(to_address(account), 0)

    @property
    def balances(self) -> Dict[Address, int]:
        return dict(self._balances)

    @property
    def nonces(self) -> Dict[Address, int]:
        return dict(self._nonces)

    # --- Contracts ---

    @property
    def lock(self) -> threading.RLock:
        """Held by every call; hold it to read a consistent view across several accessors."""
        return self._lock

    @property
    def contracts(self) -> Dict[Address, Blueprint]:
        return dict(self._contracts)

    def is_contract(self, address: Union[str, Pubkey]) -> bool:
        return to_address(address) in self._contracts

    def get_contract(self, address: Union[str, Pubkey]) -> Blueprint:
        address = to_address(address)
        contract = self._contracts.get(address)
        if contract is None:
            raise ContractNotFoundError(f"No contract deployed at {address}")
        return contract

    def get_events(self, contract: Optional[Union[str, Pubkey]] = None,
                   event_type: Optional[Type[EventT]] = None) -> List[Event]:
        """Returns emitted events, optionally filtered by emitting contract and type."""
        events = list(self._events)
        if contract is not None:
            contract = to_address(contract)
            events = [event for event in events if event.contract == contract]
        if event_type is not None:
            events = [event for event in events if isinstance(event, event_type)]
        return events

    def load_state(self, balances: Dict[Address, int], nonces: Dict[Address, int],
                   contracts: Dict[Address, Blueprint]) -> None:
        """Replaces the whole world state, e.g. with a snapshot read from disk."""
        with self._lock:
            self._balances = dict(balances)
            self._nonces = dict(nonces)
            self._contracts = {}
            self._events = []
            for address, contract in contracts.items():
                self._attach(address, contract)

    # --- Calls ---

    def deploy(self, blueprint_cls: Type[Blueprint], caller: Union[str, Pubkey], *args: Any, value: int = 0) -> Receipt:
        """
        Deploys ``blueprint_cls`` and runs its ``initialize`` with ``args``.

        The new contract's address is the receipt's ``contract`` and ``return_value``.
        """
        caller = to_address(caller)

        def run() -> Tuple[Address, Any]:
            address, _ = self._create_contract(blueprint_cls, caller, args, value)
            return address, address

        return self._transact(caller, INITIALIZE_METHOD, value, run)

    def call_public_method(self, address: Union[str, Pubkey], method_name: str, caller: Union[str, Pubkey],
                           *args: Any, value: int = 0) -> Receipt:
        """Runs a ``@public`` method as one atomic call from ``caller``."""
        caller = to_address(caller)
        address = to_address(address)

        def run() -> Tuple[Address, Any]:
            contract = self.get_contract(address)
            self._touch(address)
            method = self._resolve_public_method(contract, method_name, value)
            ctx = self._enter(caller, address, value)
            return address, method(ctx, *args)

        return self._transact(caller, method_name, value, run)

    def call_view_method(self, address: Union[str, Pubkey], method_name: str, *args: Any) -> Any:
        """Runs a ``@view`` method; views never change state."""
        with self._lock:
            contract = self.get_contract(address)
            method = getattr(contract, method_name, None)
            if method is None or not getattr(method, _VIEW_ATTR, False):
                raise InvalidMethodCallError(f"{type(contract).__name__}.{method_name} is not a view method")
            return method(*args)

    # --- Internals ---

    def _transact(self, caller: Address, method_name: str, value: int,
                  run: Callable[[], Tuple[Address, Any]]) -> Receipt:
        with self._lock:
            timestamp = self.timestamp
            nonce = self._nonces.get(caller, 0)
            self._nonces[caller] = nonce + 1
            snapshot = self._snapshot()
            outer_snapshot, outer_timestamp = self._active_snapshot, self._call_timestamp
            self._active_snapshot = snapshot
            self._call_timestamp = timestamp
            try:
                address, result = run()
            except Exception as e:
                self._restore(snapshot)
                logger.warning(f"Call {method_name} from {caller} reverted: {e}")
                raise
            finally:
                self._active_snapshot = outer_snapshot
                self._call_timestamp = outer_timestamp

            tx_hash = Hash.hash(f"{caller}:{nonce}:{address}:{method_name}:{value}".encode())
            receipt = Receipt(
                tx_hash=str(tx_hash),
                caller=caller,
                contract=address,
                method=method_name,
                value=value,
                timestamp=timestamp,
                return_value=result,
                events=self._events[snapshot.event_count:],
            )
            logger.debug(f"Call {method_name} on {address} from {caller} succeeded, tx: {receipt.tx_hash}")
            return receipt

    def _require_active_call(self, operation: str) -> None:
        if self._call_timestamp is None:
            raise InvalidMethodCallError(f"{operation} is only available inside a public call")

    def _resolve_public_method(self, contract: Blueprint, method_name: str, value: int) -> Callable:
        contract_name = type(contract).__name__
        if method_name == INITIALIZE_METHOD:
            raise InvalidMethodCallError(f"{contract_name} is already initialized")
        method = getattr(contract, method_name, None)
        if method is None or not getattr(method, _PUBLIC_ATTR, False):
            raise InvalidMethodCallError(f"{contract_name}.{method_name} is not a public method")
        if value and not getattr(method, _PAYABLE_ATTR, False):
            raise InvalidMethodCallError(f"{contract_name}.{method_name} is not payable")
        return method

    def _enter(self, caller: Address, address: Address, value: int) -> Context:
        if value < 0:
            raise InvalidMethodCallError("Attached value cannot be negative")
        if value:
            self._move(caller, address, value)
        return Context(caller, value, self.timestamp)

    def _attach(self, address: Address, contract: Blueprint) -> None:
        contract.syscall = SysCall(self, address)
        self._contracts[address] = contract

    def _create_contract(self, blueprint_cls: Type[Blueprint], deployer: Address, args: tuple,
                         value: int = 0) -> Tuple[Address, Blueprint]:
        if value and not getattr(blueprint_cls.initialize, _PAYABLE_ATTR, False):
            raise InvalidMethodCallError(f"{blueprint_cls.__name__}.initialize is not payable")
        nonce = self._nonces.get(deployer, 0)
        if deployer in self._contracts:
            # Contracts never send outer calls, so deployments are what bump their nonce
            self._nonces[deployer] = nonce + 1
        address = str(Pubkey.create_with_seed(Pubkey.from_string(deployer), f"contract:{nonce}", self.program_id))
        if address in self._contracts:
            raise InvalidMethodCallError(f"A contract is already deployed at {address}")

        contract = blueprint_cls()
        self._attach(address, contract)
        ctx = self._enter(deployer, address, value)
        contract.initialize(ctx, *args)
        logger.info(f"Deployed {blueprint_cls.__name__} at {address} (deployer: {deployer})")
        return address, contract

    def _move(self, source: Address, destination: Address, amount: int) -> None:
        if amount < 0:
            raise InvalidMethodCallError("Transfer amount cannot be negative")
        available = self._balances.get(source, 0)
        if available < amount:
            raise InsufficientFundsError(
                f"Insufficient funds in {source}. Required: {amount} lamports. Available: {available} lamports"
            )
        self._balances[source] = available - amount
        self._balances[destination] = self._balances.get(destination, 0) + amount

    def _emit(self, address: Address, event: Event) -> None:
        self._events.append(event.model_copy(update={"contract": address}))

    def _snapshot(self) -> _Snapshot:
        return _Snapshot(
            balances=dict(self._balances),
            nonces=dict(self._nonces),
            event_count=len(self._events),
            existing=frozenset(self._contracts),
            storage={},
        )

    def _touch(self, address: Address) -> None:
        """Copies a contract's storage into the active snapshot the first time a call reaches it."""
        snapshot = self._active_snapshot
        if snapshot is None or address not in snapshot.existing or address in snapshot.storage:
            return
        snapshot.storage[address] = copy.deepcopy(self._contracts[address].get_storage())

    def _restore(self, snapshot: _Snapshot) -> None:
        self._balances = snapshot.balances
        self._nonces = snapshot.nonces
        del self._events[snapshot.event_count:]
        for address in list(self._contracts):
            if address not in snapshot.existing:
                del self._contracts[address]
            elif address in snapshot.storage:
                # In place, so references handed out before the call stay valid
                self._contracts[address].set_storage(snapshot.storage[address])
