"""Shared crypto utilities for the cosign protocol.

Provides:
- SHA-256 hashing (documents, witness programs)
- Canonical JSON for signing
- secp256k1 identities addressed by 64-hex x-only public keys
- ECDSA signing/verification of contract data
- ECDH + AES-GCM encryption for direct messages
- Signed relay requests with replay protection
- The local signing service

Dependencies: hashlib, json, os, cryptography
"""

import base64
import hashlib
import json
import os
import threading
import time as _time
from abc import ABC, abstractmethod

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from protocol import (
    PUBKEY_HEX_LEN, DecodeError, InvalidKeyMaterial, NoKeyForNetwork, Network,
    parse_network,
)

# secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

EVEN_Y_PREFIX = b"\x02"


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def sha256_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def hash_file(path: str, chunk_size: int = 65536) -> str:
    """SHA-256 hex digest of a file's contents."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


# ---------------------------------------------------------------------------
# Canonical JSON -- deterministic serialization for signing
# ---------------------------------------------------------------------------

def canonical_json(obj: dict) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


# ---------------------------------------------------------------------------
# secp256k1 identity
# ---------------------------------------------------------------------------

def _private_key(privkey_bytes: bytes) -> ec.EllipticCurvePrivateKey:
    if len(privkey_bytes) != 32:
        raise InvalidKeyMaterial(f"Expected 32-byte private key, got {len(privkey_bytes)} bytes")
    d = int.from_bytes(privkey_bytes, "big")
    if not 0 < d < CURVE_ORDER:
        raise InvalidKeyMaterial("Private key out of range")
    return ec.derive_private_key(d, ec.SECP256K1())


def normalize_privkey(privkey_bytes: bytes) -> bytes:
    """Negate the key if needed so its public point has an even Y.

    Identities travel as x-only keys and are rebuilt with the even-Y prefix,
    so a local key must always sit on the even side.
    """
    key = _private_key(privkey_bytes)
    if key.public_key().public_numbers().y % 2 == 0:
        return privkey_bytes
    d = int.from_bytes(privkey_bytes, "big")
    return (CURVE_ORDER - d).to_bytes(32, "big")


def generate_keypair() -> tuple[bytes, str]:
    """Generate a new identity. Returns (privkey_bytes, xonly_pubkey_hex)."""
    key = ec.generate_private_key(ec.SECP256K1())
    priv = key.private_numbers().private_value.to_bytes(32, "big")
    priv = normalize_privkey(priv)
    return priv, privkey_to_pubkey(priv)


def privkey_to_pubkey(privkey_bytes: bytes) -> str:
    """x-only public key (64 hex chars) for a private key."""
    x = _private_key(privkey_bytes).public_key().public_numbers().x
    return x.to_bytes(32, "big").hex()


def compressed_pubkey(xonly_hex: str) -> bytes:
    """Rebuild the 33-byte compressed key for an x-only key.

    Always assumes even Y. Keys whose real point has odd Y come back as the
    negated point.
    """
    if not isinstance(xonly_hex, str) or len(xonly_hex) != PUBKEY_HEX_LEN:
        raise InvalidKeyMaterial(f"Public key must be {PUBKEY_HEX_LEN} hex chars: {xonly_hex!r}")
    try:
        x = bytes.fromhex(xonly_hex)
    except ValueError:
        raise InvalidKeyMaterial(f"Public key is not hex: {xonly_hex!r}") from None
    encoded = EVEN_Y_PREFIX + x
    # Round-trip through the curve to reject x values with no point
    _public_key(encoded)
    return encoded


def _public_key(encoded: bytes) -> ec.EllipticCurvePublicKey:
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), encoded)
    except ValueError:
        raise InvalidKeyMaterial(f"Not a point on secp256k1: {encoded.hex()}") from None


def public_key_from_xonly(xonly_hex: str) -> ec.EllipticCurvePublicKey:
    return _public_key(compressed_pubkey(xonly_hex))


def privkey_to_compressed(privkey_hex: str) -> bytes:
    """33-byte compressed public key for a hex-encoded private key."""
    try:
        priv = bytes.fromhex(privkey_hex)
    except (ValueError, TypeError):
        raise InvalidKeyMaterial(f"Private key is not hex: {privkey_hex!r}") from None
    return _private_key(priv).public_key().public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.CompressedPoint,
    )


def load_key(path: str) -> bytes:
    """Load a 32-byte raw private key from file."""
    with open(path, "rb") as f:
        data = f.read()
    if len(data) != 32:
        raise ValueError(f"Expected 32-byte key, got {len(data)} bytes")
    return normalize_privkey(data)


def save_key(path: str, key: bytes) -> None:
    """Save a 32-byte raw private key to file (mode 0600)."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, key)
    finally:
        os.close(fd)


# ---------------------------------------------------------------------------
# ECDSA signatures
# ---------------------------------------------------------------------------

def ecdsa_sign(privkey_bytes: bytes, data: bytes) -> str:
    """Sign data with ECDSA/SHA-256. Returns DER signature as hex."""
    sig = _private_key(privkey_bytes).sign(data, ec.ECDSA(hashes.SHA256()))
    return sig.hex()


def ecdsa_verify(xonly_hex: str, data: bytes, sig_hex: str) -> bool:
    """Verify an ECDSA signature against an x-only key. Returns True if valid."""
    try:
        pubkey = public_key_from_xonly(xonly_hex)
        pubkey.verify(bytes.fromhex(sig_hex), data, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------------------------------------------------------
# Direct message encryption: ECDH(secp256k1) -> SHA-256 -> AES-256-GCM
# ---------------------------------------------------------------------------

NONCE_LEN = 12


def shared_key(privkey_bytes: bytes, peer_xonly_hex: str) -> bytes:
    """Symmetric key shared between two identities.

    ECDH only depends on the peer's x coordinate, so the even-Y assumption
    does not matter here.
    """
    secret = _private_key(privkey_bytes).exchange(ec.ECDH(), public_key_from_xonly(peer_xonly_hex))
    return hashlib.sha256(secret).digest()


def encrypt_message(privkey_bytes: bytes, peer_xonly_hex: str, plaintext: str) -> str:
    """Encrypt for a peer. Returns base64(nonce || ciphertext)."""
    key = shared_key(privkey_bytes, peer_xonly_hex)
    nonce = os.urandom(NONCE_LEN)
    ct = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + ct).decode("ascii")


def decrypt_message(privkey_bytes: bytes, peer_xonly_hex: str, ciphertext: str) -> str:
    """Decrypt a message from a peer. Raises DecodeError on any failure."""
    try:
        raw = base64.b64decode(ciphertext, validate=True)
    except (ValueError, TypeError) as e:
        raise DecodeError(f"ciphertext is not base64: {e}") from None
    if len(raw) <= NONCE_LEN:
        raise DecodeError("ciphertext too short")
    try:
        key = shared_key(privkey_bytes, peer_xonly_hex)
        pt = AESGCM(key).decrypt(raw[:NONCE_LEN], raw[NONCE_LEN:], None)
        return pt.decode("utf-8")
    except InvalidKeyMaterial as e:
        raise DecodeError(f"bad sender key: {e}") from None
    except (InvalidTag, UnicodeDecodeError):
        raise DecodeError("decryption failed") from None


# ---------------------------------------------------------------------------
# Request signing -- relay authentication
# ---------------------------------------------------------------------------

REQUEST_MAX_AGE = 300  # seconds
MAX_CLOCK_SKEW = 30    # seconds a timestamp may run ahead of ours
_REPLAY_PRUNE_AT = 1024

HEADER_TIMESTAMP = "X-Cosign-Timestamp"
HEADER_SIGNATURE = "X-Cosign-Signature"
HEADER_PUBKEY = "X-Cosign-Pubkey"


class ReplayGuard:
    """Remembers request signatures until they would have expired anyway."""

    def __init__(self, ttl: int = REQUEST_MAX_AGE):
        self.ttl = ttl
        self._expiry: dict[str, float] = {}
        self._lock = threading.Lock()

    def check_and_record(self, sig_hex: str) -> bool:
        """True the first time a signature is seen within the TTL."""
        now = _time.time()
        with self._lock:
            if self._expiry.get(sig_hex, 0.0) > now:
                return False
            if len(self._expiry) >= _REPLAY_PRUNE_AT:
                self._expiry = {s: t for s, t in self._expiry.items() if t > now}
            self._expiry[sig_hex] = now + self.ttl
            return True


def _request_payload(method: str, path: str, timestamp: str, body: str) -> bytes:
    return "\n".join((method, path, timestamp, body)).encode("utf-8")


def sign_request(
    privkey_bytes: bytes,
    method: str,
    path: str,
    body: str = "",
    timestamp: float | None = None,
) -> dict:
    """Headers authenticating one relay request as the key's identity.

    The signature covers METHOD, PATH, TIMESTAMP and BODY, newline separated.
    """
    ts = str(int(_time.time() if timestamp is None else timestamp))
    return {
        HEADER_TIMESTAMP: ts,
        HEADER_SIGNATURE: ecdsa_sign(privkey_bytes, _request_payload(method, path, ts, body)),
        HEADER_PUBKEY: privkey_to_pubkey(privkey_bytes),
    }


def verify_request(
    method: str,
    path: str,
    body: str,
    timestamp: str,
    signature: str,
    pubkey_hex: str,
) -> tuple[bool, str]:
    """Check a signed relay request. Returns (ok, error_message)."""
    try:
        skew = int(timestamp) - _time.time()
    except (ValueError, TypeError):
        return False, "invalid timestamp"

    if skew > MAX_CLOCK_SKEW:
        return False, f"request timestamp is {int(skew)}s in the future"
    if -skew > REQUEST_MAX_AGE:
        return False, f"request expired ({int(-skew)}s old, limit {REQUEST_MAX_AGE}s)"

    if not ecdsa_verify(pubkey_hex, _request_payload(method, path, timestamp, body), signature):
        return False, "invalid signature"
    return True, ""


# ---------------------------------------------------------------------------
# Signing service
# ---------------------------------------------------------------------------

class Signer(ABC):
    """Signs canonical contract data for a network."""

    @abstractmethod
    def can_sign(self, network: str) -> bool:
        ...

    @abstractmethod
    def sign(self, network: str, data: bytes) -> str:
        """Return a hex signature, or raise NoKeyForNetwork."""
        ...

    @abstractmethod
    def pubkey(self, network: str) -> str:
        """x-only pubkey whose signatures sign() produces for network."""
        ...


class KeySigner(Signer):
    """Holds raw private keys per network."""

    def __init__(self, keys: dict[str, bytes] | None = None):
        self._keys: dict[Network, bytes] = {}
        for name, key in (keys or {}).items():
            self._keys[parse_network(name)] = normalize_privkey(key)

    @classmethod
    def for_all_networks(cls, privkey_bytes: bytes) -> "KeySigner":
        return cls({n.value: privkey_bytes for n in Network})

    def can_sign(self, network: str) -> bool:
        try:
            return parse_network(network) in self._keys
        except ValueError:
            return False

    def sign(self, network: str, data: bytes) -> str:
        if not self.can_sign(network):
            raise NoKeyForNetwork(f"No signing key for network {network!r}")
        return ecdsa_sign(self._keys[parse_network(network)], data)

    def pubkey(self, network: str) -> str:
        if not self.can_sign(network):
            raise NoKeyForNetwork(f"No signing key for network {network!r}")
        return privkey_to_pubkey(self._keys[parse_network(network)])
