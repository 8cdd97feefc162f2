"""
Chain State Persistence

Saves and restores the full world state of a Chain as a JSON document: native
balances, nonces and the typed storage of every deployed contract. The storage models
below list contract fields in their storage order; that layout is what off-chain
indexers read, so fields are only ever appended.

The event log is not part of a snapshot. Events are notifications for whoever watched
the calls that emitted them, not state.

Each saved snapshot carries a sequence number one above the snapshot it was built on,
so a process can tell whether the file holds state it has not seen yet. A snapshot is
taken under the chain's lock and written to a unique temporary file next to the target,
which then replaces the target.
"""
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, ValidationError

from mcp_ico_registry.chain import Blueprint, Chain
from mcp_ico_registry.errors import ConfigurationError, PersistenceError
from mcp_ico_registry.project_registry import ProjectRegistry
from mcp_ico_registry.schemas import Address, Project, TokenPurchase
from mcp_ico_registry.token_sale import TokenSale
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

SNAPSHOT_VERSION = 1


class RegistryStorage(BaseModel):
    superowner: Address
    listing_fee: int
    projects: List[Project] = []


class TokenSaleStorage(BaseModel):
    token_name: str
    token_symbol: str
    supply: int
    owner: Address
    origin_project_id: int
    price: int
    balances: Dict[Address, int] = {}
    allowances: Dict[Address, Dict[Address, int]] = {}
    transactions: List[TokenPurchase] = []


BLUEPRINT_STORAGE: Dict[str, Tuple[Type[Blueprint], Type[BaseModel]]] = {
    ProjectRegistry.__name__: (ProjectRegistry, RegistryStorage),
    TokenSale.__name__: (TokenSale, TokenSaleStorage),
}


class ContractSnapshot(BaseModel):
    address: Address
    blueprint: str
    storage: Dict[str, Any]


class ChainSnapshot(BaseModel):
    version: int = SNAPSHOT_VERSION
    sequence: int = 0
    timestamp: int
    balances: Dict[Address, int] = {}
    nonces: Dict[Address, int] = {}
    contracts: List[ContractSnapshot] = []


def dump_chain(chain: Chain, sequence: int = 0) -> ChainSnapshot:
    """Captures the chain's world state between calls."""
    with chain.lock:
        contracts = []
        for address, contract in chain.contracts.items():
            blueprint = type(contract).__name__
            if blueprint not in BLUEPRINT_STORAGE:
                raise ConfigurationError(f"No storage layout registered for blueprint {blueprint}")
            _, storage_model = BLUEPRINT_STORAGE[blueprint]
            storage = storage_model.model_validate(contract.get_storage())
            contracts.append(ContractSnapshot(address=address, blueprint=blueprint, storage=storage.model_dump(mode="json")))

        return ChainSnapshot(
            sequence=sequence,
            timestamp=chain.timestamp,
            balances=chain.balances,
            nonces=chain.nonces,
            contracts=contracts,
        )


def restore_chain(snapshot: ChainSnapshot, clock: Callable[[], float] = time.time) -> Chain:
    """Builds a new Chain holding the snapshot's world state."""
    if snapshot.version != SNAPSHOT_VERSION:
        raise ConfigurationError(f"Unsupported snapshot version {snapshot.version}")

    contracts: Dict[Address, Blueprint] = {}
    for entry in snapshot.contracts:
        if entry.blueprint not in BLUEPRINT_STORAGE:
            raise ConfigurationError(f"Unknown blueprint {entry.blueprint} at {entry.address}")
        blueprint_cls, storage_model = BLUEPRINT_STORAGE[entry.blueprint]
        storage = storage_model.model_validate(entry.storage)
        contract = blueprint_cls()
        contract.set_storage(dict(storage))
        contracts[entry.address] = contract

    chain = Chain(clock=clock)
    chain.load_state(snapshot.balances, snapshot.nonces, contracts)
    chain.set_minimum_timestamp(snapshot.timestamp)
    logger.info(f"Restored chain with {len(contracts)} contract(s) and {len(snapshot.balances)} account(s)")
    return chain


def save_chain(chain: Chain, path: Union[str, Path], sequence: int = 0) -> ChainSnapshot:
    """
    Writes the chain's snapshot to ``path``, replacing any previous file.

    Returns the snapshot written. Raises PersistenceError when the file cannot be written;
    the previous file, if any, is left untouched.
    """
    file_path = Path(path)
    tmp_name = None
    # Held through the write so saves land in the order their snapshots were taken
    with chain.lock:
        snapshot = dump_chain(chain, sequence=sequence)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=file_path.parent, prefix=f".{file_path.name}.", suffix=".tmp", delete=False
            ) as f:
                tmp_name = f.name
                json.dump(snapshot.model_dump(mode="json"), f, indent=4)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, file_path)
        except OSError as e:
            logger.error(f"Error saving chain state to {file_path}: {e}")
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"Could not save chain state to {file_path}: {e}") from e

    logger.debug(f"Saved chain state to {file_path} (sequence {sequence})")
    return snapshot


def read_snapshot(path: Union[str, Path]) -> Optional[ChainSnapshot]:
    """Reads the snapshot stored at ``path``; returns None when there is no file yet."""
    file_path = Path(path)
    if not file_path.is_file():
        logger.info(f"No chain state found at {file_path}")
        return None

    try:
        with open(file_path, "r") as f:
            snapshot = ChainSnapshot.model_validate(json.load(f))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Chain state file {file_path} is not valid JSON: {e}")
    except ValidationError as e:
        raise ConfigurationError(f"Invalid chain state in {file_path}: {e}")

    logger.info(f"Loading chain state from {file_path.resolve()} (sequence {snapshot.sequence})")
    return snapshot


def load_chain(path: Union[str, Path], clock: Callable[[], float] = time.time) -> Optional[Chain]:
    """Reads a chain snapshot from ``path``; returns None when there is no file yet."""
    snapshot = read_snapshot(path)
    if snapshot is None:
        return None
    return restore_chain(snapshot, clock=clock)
