"""Approval controller: sign a contract and fan the approval out.

Also emits contract-requests, the other half of the conversation.
Delivery is one message per recipient; a failed recipient is logged and
skipped, never fatal to the rest.
"""

import logging
from dataclasses import dataclass, field

from address import derive_escrow_address
from contract import participants, signable_data
from messages import encode_contract_approval, encode_contract_request
from protocol import DeliveryError, MessageKind, NoSigner, UnknownContract

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    """Per-recipient outcome of a fan-out."""
    file_hash: str
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)  # pubkey -> error

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class ApprovalResult(DeliveryReport):
    signature: str = ""


async def _fan_out(transport, recipients, kind, plaintext, report):
    for recipient in recipients:
        try:
            await transport.send(recipient, kind, plaintext)
        except DeliveryError as e:
            logger.warning("%s for %s not delivered to %s...: %s",
                           kind, report.file_hash[:16], recipient[:16], e)
            report.failed[recipient] = str(e)
        else:
            report.delivered.append(recipient)


async def approve(store, signer, transport, file_hash: str,
                  record_locally: bool = False) -> ApprovalResult:
    """Sign a contract and send the approval to every party.

    The caller is responsible for checking the local document against
    file_hash first (see export.document_matches).

    Args:
        store: ContractStore holding the record.
        signer: crypto.Signer for the contract's network.
        transport: client.Transport to deliver through.
        file_hash: Contract key.
        record_locally: Also write our own signature into the store instead
            of waiting for the transport to echo it back.

    Raises:
        UnknownContract: no record for file_hash.
        NoSigner: signer has no key for the contract's network.
    """
    record = store.get_contract(file_hash)
    if record is None:
        raise UnknownContract(file_hash)

    network = record["collateral"]["network"]
    if not signer.can_sign(network):
        raise NoSigner(f"No signing key for network {network!r}")
    signature = signer.sign(network, signable_data(record))

    result = ApprovalResult(file_hash=file_hash, signature=signature)
    plaintext = encode_contract_approval(file_hash, signature)
    # Our own key is in the list too: peers and we ourselves see the same stream
    await _fan_out(transport, participants(record), MessageKind.CONTRACT_APPROVAL.value,
                   plaintext, result)

    if record_locally:
        # Filed under the key that made it, which need not be the transport's
        store.record_signature(file_hash, signer.pubkey(network), signature)

    logger.info("approved %s: %d delivered, %d failed",
                file_hash[:16], len(result.delivered), len(result.failed))
    return result


async def propose(transport, file_hash: str, clients: list[str], arbitrators: list[str],
                  quorum: int, network: str) -> DeliveryReport:
    """Send a contract-request to every party, the sender included.

    The escrow address is derived first so that bad keys or quorums fail here
    rather than being silently dropped by every receiver.
    """
    address = derive_escrow_address(network, clients, arbitrators, quorum)
    logger.info("proposing %s with escrow %s", file_hash[:16], address)

    report = DeliveryReport(file_hash=file_hash)
    plaintext = encode_contract_request(file_hash, clients, arbitrators, quorum, network)
    recipients = []
    for key in list(clients) + list(arbitrators):
        if key not in recipients:
            recipients.append(key)
    await _fan_out(transport, recipients, MessageKind.CONTRACT_REQUEST.value, plaintext, report)
    return report
