import sys
import os
import asyncio

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from client import Envelope, Transport
from coordinator.store import ContractStore
from crypto import CURVE_ORDER, decrypt_message, encrypt_message, generate_keypair, privkey_to_pubkey
from messages import encode_contract_approval, encode_contract_request
from protocol import DeliveryError, MessageKind


# Pre-generated identities: two clients, two arbitrators, one outsider
C1_PRIV, C1 = generate_keypair()
C2_PRIV, C2 = generate_keypair()
A1_PRIV, A1 = generate_keypair()
A2_PRIV, A2 = generate_keypair()
X_PRIV, X = generate_keypair()

FILE_HASH = "abc123"

REQUEST = MessageKind.CONTRACT_REQUEST.value
APPROVAL = MessageKind.CONTRACT_APPROVAL.value


class MemoryHub:
    """Shared in-memory mailbox standing in for a relay."""

    def __init__(self):
        self.messages: list[Envelope] = []

    def post(self, sender, recipient, kind, ciphertext):
        env = Envelope(sender=sender, recipient=recipient, kind=kind,
                       ciphertext=ciphertext, seq=len(self.messages) + 1)
        self.messages.append(env)
        return env

    def inbox(self, recipient, after=0):
        return [m for m in self.messages[after:] if m.recipient == recipient]


class MemoryTransport(Transport):
    """Transport over a MemoryHub. Recipients in fail_for raise DeliveryError."""

    def __init__(self, hub, privkey_bytes, fail_for=()):
        self.hub = hub
        self.privkey_bytes = privkey_bytes
        self.pubkey_hex = privkey_to_pubkey(privkey_bytes)
        self.fail_for = set(fail_for)
        self.sent = []

    @property
    def identity(self):
        return self.pubkey_hex

    async def send(self, recipient, kind, plaintext):
        if recipient in self.fail_for:
            raise DeliveryError(f"unreachable: {recipient[:8]}")
        self.sent.append((recipient, kind, plaintext))
        ciphertext = encrypt_message(self.privkey_bytes, recipient, plaintext)
        self.hub.post(self.pubkey_hex, recipient, kind, ciphertext)

    async def subscribe(self, kinds=None, since=0, follow=True):
        cursor = since
        while True:
            for env in self.hub.inbox(self.pubkey_hex, cursor):
                cursor = max(cursor, env.seq)
                if kinds and env.kind not in kinds:
                    continue
                yield env
            if not follow:
                return
            await asyncio.sleep(0.01)

    async def decrypt(self, envelope):
        return decrypt_message(self.privkey_bytes, envelope.sender, envelope.ciphertext)


def make_envelope(sender_priv, recipient, kind, plaintext, seq=1):
    """Encrypt plaintext from sender_priv to recipient, as the transport would."""
    return Envelope(
        sender=privkey_to_pubkey(sender_priv),
        recipient=recipient,
        kind=kind,
        ciphertext=encrypt_message(sender_priv, recipient, plaintext),
        seq=seq,
    )


def request_text(file_hash=FILE_HASH, clients=None, arbitrators=None, quorum=1, network="liquid"):
    return encode_contract_request(
        file_hash,
        clients if clients is not None else [C1, C2],
        arbitrators if arbitrators is not None else [A1],
        quorum,
        network,
    )


def approval_text(signature="aa" * 8, file_hash=FILE_HASH):
    return encode_contract_approval(file_hash, signature)


@pytest.fixture
def store():
    return ContractStore()


@pytest.fixture
def hub():
    return MemoryHub()


def odd_y_key():
    """A private key whose public point has odd Y (the negation of an even one)."""
    priv, _ = generate_keypair()
    return (CURVE_ORDER - int.from_bytes(priv, "big")).to_bytes(32, "big")
