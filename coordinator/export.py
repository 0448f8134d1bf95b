"""Completion checks and signed-contract export.

A contract is complete only when every listed client and arbitrator has
signed. arbitratorsQuorum governs escrow spending, not export.
"""

import logging
import os

from contract import (
    dump_contract, export_filename, merge_signatures, participants,
    validate_signed_contract, verify_signature,
)
from protocol import SchemaValidationError, UnknownContract

logger = logging.getLogger(__name__)


def is_signed_by(store, file_hash: str, pubkey: str) -> bool:
    return pubkey in store.get_signatures(file_hash)


def missing_signers(store, file_hash: str) -> list[str]:
    """Listed parties with no signature yet, in contract order."""
    record = store.get_contract(file_hash)
    if record is None:
        raise UnknownContract(file_hash)
    signatures = store.get_signatures(file_hash)
    return [k for k in participants(record) if k not in signatures]


def is_complete(store, file_hash: str) -> bool:
    record = store.get_contract(file_hash)
    signatures = store.get_signatures(file_hash)
    if record is None or not signatures:
        return False
    return all(k in signatures for k in participants(record))


def document_matches(store, file_hash: str, local_document_hash: str) -> bool:
    """True iff a local document hashes to the contract's committed hash."""
    record = store.get_contract(file_hash)
    if record is None:
        return False
    return record["document"]["fileHash"] == local_document_hash


def verify_signatures(store, file_hash: str) -> dict[str, bool]:
    """Check every recorded signature from a listed party against the record."""
    record = store.get_contract(file_hash)
    if record is None:
        raise UnknownContract(file_hash)
    signatures = store.get_signatures(file_hash)
    return {
        k: verify_signature(record, k, signatures[k])
        for k in participants(record) if k in signatures
    }


def export_contract(store, file_hash: str, schema: dict | None = None) -> dict:
    """Merge a record with its signatures and validate the result.

    Raises:
        UnknownContract: no record for file_hash.
        SchemaValidationError: merged contract did not validate; carries the
            diagnostics in .errors.
    """
    record = store.get_contract(file_hash)
    if record is None:
        raise UnknownContract(file_hash)
    artifact = merge_signatures(record, store.get_signatures(file_hash))
    errors = validate_signed_contract(artifact, schema)
    if errors:
        logger.warning("export of %s refused: %d schema errors", file_hash[:16], len(errors))
        raise SchemaValidationError(errors)
    return artifact


def write_export(artifact: dict, document_path: str, out_dir: str | None = None) -> str:
    """Write `<documentBaseName>.json` next to the document (or into out_dir)."""
    directory = out_dir if out_dir is not None else os.path.dirname(os.path.abspath(document_path))
    path = os.path.join(directory, export_filename(document_path))
    if os.path.abspath(path) == os.path.abspath(document_path):
        raise ValueError(f"Export would overwrite the document itself: {path}")
    with open(path, "w") as f:
        f.write(dump_contract(artifact))
    logger.info("wrote signed contract to %s", path)
    return path
