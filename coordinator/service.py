"""CosignService: one identity, one transport, one session's worth of contracts.

Replaces process-wide login/subscription state with an explicit object:

    service = CosignService(privkey, RelayTransport(privkey))
    service.start()          # background subscription loop
    ...
    await service.approve(file_hash)
    await service.stop()
"""

import asyncio
import logging

from coordinator import approval, export
from coordinator.ingest import ingest_envelope
from coordinator.store import ContractStore
from crypto import KeySigner, Signer, normalize_privkey, privkey_to_pubkey
from protocol import ALL_KINDS

logger = logging.getLogger(__name__)


class CosignService:
    """Coordinator for a single local identity."""

    def __init__(self, privkey_bytes: bytes, transport, store: ContractStore | None = None,
                 signer: Signer | None = None):
        privkey_bytes = normalize_privkey(privkey_bytes)
        self.identity = privkey_to_pubkey(privkey_bytes)
        if transport.identity != self.identity:
            raise ValueError("Transport identity does not match the service key")
        self.transport = transport
        self.store = store if store is not None else ContractStore()
        self.signer = signer if signer is not None else KeySigner.for_all_networks(privkey_bytes)
        self._cursor = 0
        self._task: asyncio.Task | None = None

    # --- Subscription ---

    async def _handle(self, envelope) -> str | None:
        self._cursor = max(self._cursor, envelope.seq)
        return await ingest_envelope(self.store, self.transport, envelope)

    async def run(self) -> None:
        """Consume the subscription until cancelled."""
        async for envelope in self.transport.subscribe(ALL_KINDS, since=self._cursor, follow=True):
            await self._handle(envelope)

    async def sync(self) -> int:
        """Process everything waiting in the inbox, then return.

        Returns the number of messages applied.
        """
        applied = 0
        async for envelope in self.transport.subscribe(ALL_KINDS, since=self._cursor, follow=False):
            if await self._handle(envelope):
                applied += 1
        return applied

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the subscription loop on the running event loop."""
        if self.running:
            raise RuntimeError("CosignService already started")
        self._task = asyncio.get_running_loop().create_task(self.run())
        self._task.add_done_callback(self._on_done)
        logger.info("listening as %s", self.identity)

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("subscription loop stopped: %r", exc)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    # --- Actions ---

    async def approve(self, file_hash: str, record_locally: bool = False):
        return await approval.approve(self.store, self.signer, self.transport, file_hash,
                                      record_locally=record_locally)

    async def propose(self, file_hash: str, clients: list[str], arbitrators: list[str],
                      quorum: int, network: str):
        return await approval.propose(self.transport, file_hash, clients, arbitrators,
                                      quorum, network)

    # --- Queries ---

    def is_signed_by(self, file_hash: str, pubkey: str) -> bool:
        return export.is_signed_by(self.store, file_hash, pubkey)

    def is_complete(self, file_hash: str) -> bool:
        return export.is_complete(self.store, file_hash)

    def document_matches(self, file_hash: str, local_document_hash: str) -> bool:
        return export.document_matches(self.store, file_hash, local_document_hash)

    def export(self, file_hash: str, schema: dict | None = None) -> dict:
        return export.export_contract(self.store, file_hash, schema)
