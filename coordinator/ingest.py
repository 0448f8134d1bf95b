"""Event ingestion: encrypted envelopes in, store updates out.

One bad message never stops the ones after it. Decrypt, decode and
derivation failures are logged and the message is dropped.
"""

import logging

from contract import build_contract_record
from messages import decode_payload
from protocol import (
    DecodeError, InvalidKeyMaterial, InvalidQuorum, MessageKind, UnsupportedNetwork,
)

logger = logging.getLogger(__name__)


def apply_contract_request(store, payload: dict) -> bool:
    """Build a record from a decoded contract-request and upsert it.

    The escrow address is always derived here from the payload's keys,
    never copied from the sender. Returns True if a new record was stored.

    Raises InvalidKeyMaterial, UnsupportedNetwork or InvalidQuorum, in which
    case nothing is stored.
    """
    file_hash = payload["fileHash"]
    record = build_contract_record(
        file_hash,
        clients=payload["clientPubkeys"],
        arbitrators=payload["arbitratorPubkeys"],
        quorum=payload["arbitratorsQuorum"],
        network=payload["network"],
    )
    stored = store.upsert_contract(file_hash, record)
    if stored:
        logger.info("contract %s: escrow %s on %s",
                    file_hash[:16], record["collateral"]["multisigAddress"], payload["network"])
    else:
        logger.debug("contract %s already known, request ignored", file_hash[:16])
    return stored


def apply_contract_approval(store, sender: str, payload: dict) -> None:
    """Record the sender's signature for a decoded contract-approval."""
    store.record_signature(payload["fileHash"], sender, payload["signature"])
    logger.info("contract %s: signature from %s...", payload["fileHash"][:16], sender[:16])


async def ingest_envelope(store, transport, envelope) -> str | None:
    """Decrypt, decode and apply one envelope.

    Returns the applied message kind, or None if the message was dropped.
    """
    try:
        plaintext = await transport.decrypt(envelope)
        payload = decode_payload(envelope.kind, plaintext)
    except DecodeError as e:
        logger.warning("dropped message %s from %s...: %s", envelope.seq, envelope.sender[:16], e)
        return None

    kind = MessageKind(envelope.kind)
    if kind is MessageKind.CONTRACT_APPROVAL:
        apply_contract_approval(store, envelope.sender, payload)
        return kind.value

    try:
        apply_contract_request(store, payload)
    except (InvalidKeyMaterial, UnsupportedNetwork, InvalidQuorum) as e:
        logger.warning("rejected contract-request %s from %s...: %s",
                       payload["fileHash"][:16], envelope.sender[:16], e)
        return None
    return kind.value
