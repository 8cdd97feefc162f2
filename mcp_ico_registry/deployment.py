"""
Platform Deployment

Holds the chain and ProjectRegistry this process serves. With ``STATE_FILE`` set,
several processes (the MCP server and the action API) can serve the same platform:
every state change runs under an inter-process lock on the file, reloads the saved
state first when another process has written newer state, and saves before the lock
is released. A change that cannot be saved is reported as a failure and dropped from
memory, so nothing is acknowledged that is not on disk.
"""
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from filelock import FileLock, Timeout

from mcp_ico_registry import config
from mcp_ico_registry import rate_limiter
from mcp_ico_registry import state_store
from mcp_ico_registry.chain import Chain
from mcp_ico_registry.errors import PersistenceError, ValidationError
from mcp_ico_registry.project_registry import ProjectRegistry
from mcp_ico_registry.schemas import Address, Receipt
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

# The chain and registry served by this process
_chain: Optional[Chain] = None
_registry_address: Optional[Address] = None
# Sequence number of the snapshot the chain was loaded from or last saved as
_sequence = 0
# (inode, mtime, size) of the state file when this process last read or wrote it
_file_stamp: Optional[Tuple[int, int, int]] = None
_lock = threading.RLock()
_file_locks: Dict[str, FileLock] = {}


def _find_registry(chain: Chain) -> Optional[Address]:
    for address, contract in chain.contracts.items():
        if isinstance(contract, ProjectRegistry):
            return address
    return None


def _platform_from(snapshot: Optional[state_store.ChainSnapshot], source: str) -> Tuple[Chain, Address]:
    chain = state_store.restore_chain(snapshot) if snapshot is not None else None
    if chain is not None:
        registry_address = _find_registry(chain)
        if registry_address is not None:
            logger.info(f"Using ProjectRegistry at {registry_address} from {source}")
            return chain, registry_address
        logger.warning(f"No ProjectRegistry found in {source}, deploying a new one")
    else:
        chain = Chain()

    superowner = config.SUPEROWNER_WALLET.pubkey()
    chain.fund(superowner, config.GENESIS_LAMPORTS)
    receipt = chain.deploy(ProjectRegistry, superowner, config.DEFAULT_LISTING_FEE_LAMPORTS)
    logger.info(f"Deployed ProjectRegistry at {receipt.contract} with SUPEROWNER {superowner}")
    return chain, receipt.contract


def bootstrap(state_file: Optional[str] = None) -> Tuple[Chain, Address]:
    """
    Loads the platform chain from ``state_file`` or starts a fresh one.

    A fresh chain credits the SUPEROWNER wallet with the genesis balance and deploys
    the ProjectRegistry from it, which makes that wallet the registry's platform owner.
    """
    if state_file is None:
        state_file = config.STATE_FILE
    snapshot = state_store.read_snapshot(state_file) if state_file else None
    return _platform_from(snapshot, state_file)


# --- State file coordination ---

def _stat_state_file(state_file: str) -> Optional[Tuple[int, int, int]]:
    try:
        stat = os.stat(state_file)
    except FileNotFoundError:
        return None
    return stat.st_ino, stat.st_mtime_ns, stat.st_size


@contextmanager
def _state_file_locked(state_file: str) -> Iterator[None]:
    """Holds the inter-process lock guarding ``state_file``; reentrant within a thread."""
    lock = _file_locks.get(state_file)
    if lock is None:
        Path(state_file).parent.mkdir(parents=True, exist_ok=True)
        lock = _file_locks[state_file] = FileLock(f"{state_file}.lock")
    try:
        lock.acquire(timeout=config.STATE_LOCK_TIMEOUT)
    except Timeout as e:
        raise PersistenceError(f"Timed out waiting for the lock on {state_file}") from e
    try:
        yield
    finally:
        lock.release()


def _sync(state_file: str) -> None:
    """Reloads the platform when the state file holds state this process has not seen."""
    global _chain, _registry_address, _sequence, _file_stamp
    stamp = _stat_state_file(state_file)
    if _chain is not None and stamp == _file_stamp:
        return
    snapshot = state_store.read_snapshot(state_file) if stamp is not None else None
    if _chain is None or (snapshot is not None and snapshot.sequence != _sequence):
        if _chain is not None:
            logger.info(f"{state_file} moved to sequence {snapshot.sequence}, reloading (was {_sequence})")
        _chain, _registry_address = _platform_from(snapshot, state_file)
        _sequence = snapshot.sequence if snapshot is not None else 0
    _file_stamp = stamp


def _discard() -> None:
    global _chain, _registry_address, _file_stamp
    _chain, _registry_address, _file_stamp = None, None, None


@contextmanager
def _transaction() -> Iterator[Tuple[Chain, Address]]:
    """Hands out the current platform for one state change and saves it afterwards."""
    state_file = config.STATE_FILE
    with _lock:
        if not state_file:
            yield get_platform()
            return
        with _state_file_locked(state_file):
            _sync(state_file)
            try:
                yield _chain, _registry_address
            finally:
                # Reverted calls still bump the caller's nonce
                try:
                    save_state()
                except PersistenceError:
                    _discard()
                    raise


# --- Public API ---

def get_platform() -> Tuple[Chain, Address]:
    """Returns the process-wide chain and registry address, bootstrapping on first use."""
    global _chain, _registry_address
    with _lock:
        state_file = config.STATE_FILE
        if state_file:
            with _state_file_locked(state_file):
                _sync(state_file)
        elif _chain is None:
            _chain, _registry_address = bootstrap(state_file="")
        return _chain, _registry_address


def get_chain() -> Chain:
    return get_platform()[0]


def get_registry_address() -> Address:
    return get_platform()[1]


def save_state() -> bool:
    """
    Persists the platform chain when a state file is configured.

    Raises PersistenceError when the file cannot be written, or when another process
    saved newer state since this one last read the file; that state is never overwritten.
    """
    global _sequence, _file_stamp
    state_file = config.STATE_FILE
    if not state_file:
        return False
    with _lock, _state_file_locked(state_file):
        if _chain is None:
            return False
        stamp = _stat_state_file(state_file)
        if stamp is not None and stamp != _file_stamp:
            on_disk = state_store.read_snapshot(state_file)
            if on_disk is not None and on_disk.sequence != _sequence:
                raise PersistenceError(
                    f"{state_file} holds state at sequence {on_disk.sequence}, "
                    f"this process is at sequence {_sequence}; refusing to overwrite it"
                )
        snapshot = state_store.save_chain(_chain, state_file, sequence=_sequence + 1)
        _sequence = snapshot.sequence
        _file_stamp = _stat_state_file(state_file)
    return True


def reset_platform(chain: Optional[Chain] = None, registry_address: Optional[Address] = None) -> None:
    """Replaces (or, with no arguments, forgets) the process-wide platform."""
    global _chain, _registry_address, _sequence, _file_stamp
    with _lock:
        _chain = chain
        _registry_address = registry_address
        _sequence = 0
        _file_stamp = None
    logger.debug("Platform state reset")


def execute(caller: str, method_name: str, *args: Any, value: int = 0, address: Optional[str] = None) -> Receipt:
    """Runs a public method (on the registry unless ``address`` is given) for a rate-limited caller."""
    rate_limiter.enforce_rate_limit(caller)
    with _transaction() as (chain, registry_address):
        return chain.call_public_method(address or registry_address, method_name, caller, *args, value=value)


def fund(account: str, lamports: int) -> int:
    """Credits native currency to ``account`` and saves, like any other state change."""
    with _transaction() as (chain, _):
        return chain.fund(account, lamports)


def call_view(method_name: str, *args: Any, address: Optional[str] = None) -> Any:
    chain, registry_address = get_platform()
    return chain.call_view_method(address or registry_address, method_name, *args)


def get_token_contract(project_id: int) -> Address:
    """Resolves a project's TokenSale address through the registry."""
    project = call_view("get_project", project_id)
    if project.token_contract is None:
        raise ValidationError(f"Project {project_id} has no token yet")
    return project.token_contract
