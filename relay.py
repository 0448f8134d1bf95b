"""Mailbox relay for cosign transports.

Stores encrypted direct messages and hands each identity its own inbox.
Every request is signed by the caller's identity key; the authenticated key
becomes the sender of posted messages and selects the inbox on reads.
The relay never holds plaintext.
"""

import logging
import threading
import time

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from crypto import (
    HEADER_PUBKEY, HEADER_SIGNATURE, HEADER_TIMESTAMP, ReplayGuard, compressed_pubkey, verify_request,
)
from protocol import ALL_KINDS, RELAY_PAGE_SIZE, InvalidKeyMaterial

logger = logging.getLogger(__name__)

MAX_CIPHERTEXT_LEN = 64 * 1024


class PostMessageRequest(BaseModel):
    recipient: str
    kind: str
    ciphertext: str


class Mailbox:
    """In-memory message log, sequenced across all recipients."""

    def __init__(self):
        self._messages: list[dict] = []
        self._lock = threading.Lock()

    def append(self, sender: str, recipient: str, kind: str, ciphertext: str) -> int:
        with self._lock:
            seq = len(self._messages) + 1
            self._messages.append({
                "seq": seq,
                "sender": sender,
                "recipient": recipient,
                "kind": kind,
                "ciphertext": ciphertext,
                "created_at": time.time(),
            })
            return seq

    def inbox(self, recipient: str, after: int = 0, limit: int = RELAY_PAGE_SIZE) -> list[dict]:
        with self._lock:
            # seq n lives at index n-1
            out = []
            for m in self._messages[max(after, 0):]:
                if m["recipient"] == recipient:
                    out.append(dict(m))
                    if len(out) >= limit:
                        break
            return out

    def __len__(self):
        return len(self._messages)


async def _authenticate(request: Request) -> str:
    """Verify the signed request headers. Returns the caller's pubkey."""
    timestamp = request.headers.get(HEADER_TIMESTAMP, "")
    signature = request.headers.get(HEADER_SIGNATURE, "")
    pubkey_hex = request.headers.get(HEADER_PUBKEY, "")

    if not (timestamp and signature and pubkey_hex):
        raise HTTPException(
            401, f"Signed request required ({HEADER_TIMESTAMP}, {HEADER_SIGNATURE}, {HEADER_PUBKEY})")

    body = (await request.body()).decode("utf-8", errors="replace")
    ok, err = verify_request(request.method, request.url.path, body, timestamp, signature, pubkey_hex)
    if not ok:
        logger.debug("rejected %s %s from %s...: %s", request.method, request.url.path, pubkey_hex[:12], err)
        raise HTTPException(401, f"Authentication failed: {err}")

    if not request.app.state.replay_guard.check_and_record(signature):
        raise HTTPException(401, "Replay detected")
    return pubkey_hex


def create_app(mailbox: Mailbox | None = None) -> FastAPI:
    """Create the relay app with an injected mailbox."""
    app = FastAPI(title="cosign relay", version="1.0")
    app.state.mailbox = mailbox if mailbox is not None else Mailbox()
    app.state.replay_guard = ReplayGuard()

    @app.get("/health")
    async def health():
        return {"status": "ok", "messages": len(app.state.mailbox)}

    @app.post("/messages")
    async def post_message(req: PostMessageRequest, request: Request):
        sender = await _authenticate(request)
        if req.kind not in ALL_KINDS:
            raise HTTPException(400, f"Unknown message kind: {req.kind}")
        try:
            compressed_pubkey(req.recipient)
        except InvalidKeyMaterial as e:
            raise HTTPException(400, f"Invalid recipient: {e}")
        if len(req.ciphertext) > MAX_CIPHERTEXT_LEN:
            raise HTTPException(413, "Ciphertext too large")

        seq = app.state.mailbox.append(sender, req.recipient, req.kind, req.ciphertext)
        logger.info("message %d: %s... -> %s... (%s)", seq, sender[:12], req.recipient[:12], req.kind)
        return {"seq": seq}

    @app.get("/messages")
    async def get_messages(request: Request, after: int = 0, limit: int = RELAY_PAGE_SIZE):
        recipient = await _authenticate(request)
        limit = max(1, min(limit, RELAY_PAGE_SIZE))
        return {"messages": app.state.mailbox.inbox(recipient, after, limit)}

    return app
