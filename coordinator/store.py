"""Contract and signature storage for the cosign coordinator.

In-memory, session scoped. Contract metadata is first-writer-wins; signatures
are last-write-wins per pubkey. Nothing is ever removed.
"""

import copy
import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)

EVENT_CONTRACT = "contract"
EVENT_SIGNATURE = "signature"


class ContractStore:
    """Keyed registry of contract records and collected signatures."""

    def __init__(self):
        self._contracts: dict[str, dict] = {}
        self._signatures: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()
        self._listeners: list[Callable[[str, str], None]] = []

    def add_listener(self, callback: Callable[[str, str], None]) -> None:
        """Register callback(event, file_hash), called after every mutation."""
        self._listeners.append(callback)

    def _notify(self, event: str, file_hash: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, file_hash)
            except Exception:
                logger.exception("store listener failed on %s %s", event, file_hash)

    def upsert_contract(self, file_hash: str, record: dict) -> bool:
        """Store a record unless one already exists. Returns True if stored."""
        with self._lock:
            if file_hash in self._contracts:
                return False
            self._contracts[file_hash] = copy.deepcopy(record)
        self._notify(EVENT_CONTRACT, file_hash)
        return True

    def record_signature(self, file_hash: str, pubkey: str, signature: str) -> None:
        """Store a signature. Works for contracts not seen yet."""
        with self._lock:
            self._signatures.setdefault(file_hash, {})[pubkey] = signature
        self._notify(EVENT_SIGNATURE, file_hash)

    def get_contract(self, file_hash: str) -> dict | None:
        with self._lock:
            record = self._contracts.get(file_hash)
            return copy.deepcopy(record) if record is not None else None

    def get_signatures(self, file_hash: str) -> dict[str, str]:
        with self._lock:
            return dict(self._signatures.get(file_hash, {}))

    def list_contracts(self) -> list[str]:
        """File hashes of every known contract, in arrival order."""
        with self._lock:
            return list(self._contracts)

    def __contains__(self, file_hash: str) -> bool:
        with self._lock:
            return file_hash in self._contracts
