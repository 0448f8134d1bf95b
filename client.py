"""Encrypted pub/sub transport for the cosign protocol.

Thin client with a pluggable transport interface.
Default transport: an HTTP mailbox relay with signed requests.

Messages are encrypted end to end between identities; the relay only ever
sees ciphertext, the sender's pubkey and the message kind.
"""

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from crypto import decrypt_message, encrypt_message, normalize_privkey, privkey_to_pubkey, sign_request
from protocol import (
    DEFAULT_POLL_INTERVAL, RELAY_PAGE_SIZE, RELAY_URL, DeliveryError, InvalidKeyMaterial,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Envelope:
    """One encrypted message as delivered by the transport."""
    sender: str
    recipient: str
    kind: str
    ciphertext: str
    seq: int = 0


class Transport(ABC):
    """Override this to use Nostr, Matrix, carrier pigeons, whatever."""

    @property
    @abstractmethod
    def identity(self) -> str:
        """x-only pubkey of the local identity."""
        ...

    @abstractmethod
    def subscribe(self, kinds: list[str] | None = None, since: int = 0,
                  follow: bool = True) -> AsyncIterator[Envelope]:
        """Envelopes addressed to the local identity.

        With follow=True the iterator never ends. With follow=False it stops
        once everything currently stored has been yielded.
        """
        ...

    @abstractmethod
    async def decrypt(self, envelope: Envelope) -> str:
        """Plaintext of an envelope. Raises DecodeError."""
        ...

    @abstractmethod
    async def send(self, recipient: str, kind: str, plaintext: str) -> None:
        """Encrypt and deliver to one recipient. Raises DeliveryError."""
        ...


class RelayTransport(Transport):
    """Default. Talks to a cosign mailbox relay over HTTP."""

    def __init__(
        self,
        privkey_bytes: bytes,
        base_url: str = RELAY_URL,
        http_client: httpx.AsyncClient | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.base_url = base_url.rstrip("/")
        # The relay rebuilds our key with the even-Y prefix
        self.privkey_bytes = normalize_privkey(privkey_bytes)
        self.pubkey_hex = privkey_to_pubkey(self.privkey_bytes)
        self.poll_interval = poll_interval
        self._http = http_client

    @property
    def identity(self) -> str:
        return self.pubkey_hex

    @contextlib.asynccontextmanager
    async def _session(self):
        if self._http is not None:
            yield self._http
        else:
            async with httpx.AsyncClient() as client:
                yield client

    def _headers(self, method: str, path: str, body: str = "") -> dict:
        h = {"Content-Type": "application/json"}
        h.update(sign_request(self.privkey_bytes, method, path, body))
        return h

    async def send(self, recipient: str, kind: str, plaintext: str) -> None:
        try:
            ciphertext = encrypt_message(self.privkey_bytes, recipient, plaintext)
        except InvalidKeyMaterial as e:
            raise DeliveryError(f"cannot encrypt for {recipient}: {e}") from None

        path = "/messages"
        body = json.dumps({"recipient": recipient, "kind": kind, "ciphertext": ciphertext})
        try:
            async with self._session() as client:
                resp = await client.post(
                    f"{self.base_url}{path}",
                    content=body,
                    headers=self._headers("POST", path, body),
                    timeout=30.0,
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(f"delivery to {recipient[:16]}... failed: {e}") from e

    async def _fetch(self, after: int) -> list[dict]:
        path = "/messages"
        async with self._session() as client:
            resp = await client.get(
                f"{self.base_url}{path}",
                params={"after": after, "limit": RELAY_PAGE_SIZE},
                headers=self._headers("GET", path),
                timeout=30.0,
            )
            resp.raise_for_status()
            return resp.json()["messages"]

    async def subscribe(self, kinds: list[str] | None = None, since: int = 0,
                        follow: bool = True) -> AsyncIterator[Envelope]:
        cursor = since
        while True:
            try:
                batch = await self._fetch(cursor)
            except httpx.HTTPError as e:
                if not follow:
                    raise
                logger.warning("relay poll failed, retrying in %.1fs: %s", self.poll_interval, e)
                await asyncio.sleep(self.poll_interval)
                continue

            for m in batch:
                cursor = max(cursor, m["seq"])
                if kinds and m["kind"] not in kinds:
                    continue
                yield Envelope(
                    sender=m["sender"],
                    recipient=m["recipient"],
                    kind=m["kind"],
                    ciphertext=m["ciphertext"],
                    seq=m["seq"],
                )

            if len(batch) >= RELAY_PAGE_SIZE:
                continue
            if not follow:
                return
            await asyncio.sleep(self.poll_interval)

    async def decrypt(self, envelope: Envelope) -> str:
        return decrypt_message(self.privkey_bytes, envelope.sender, envelope.ciphertext)
