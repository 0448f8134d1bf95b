"""Wire payloads for the two cosign message kinds.

Every inbound payload is parsed and validated against a JSON Schema before
anything reads it. Shape problems surface as DecodeError.
"""

import json

from jsonschema import Draft202012Validator

from contract import HEX_PATTERN, PUBKEY_PATTERN
from protocol import DecodeError, MessageKind, Network

_PUBKEY_LIST = {
    "type": "array",
    "items": {"type": "string", "pattern": PUBKEY_PATTERN},
    "minItems": 1,
    "uniqueItems": True,
}

CONTRACT_REQUEST_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "fileHash": {"type": "string", "minLength": 1, "pattern": HEX_PATTERN},
        "arbitratorsQuorum": {"type": "integer", "minimum": 1},
        "arbitratorPubkeys": _PUBKEY_LIST,
        "clientPubkeys": _PUBKEY_LIST,
        "network": {"enum": [n.value for n in Network]},
    },
    "required": ["fileHash", "arbitratorsQuorum", "arbitratorPubkeys", "clientPubkeys", "network"],
}

CONTRACT_APPROVAL_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "signature": {"type": "string", "minLength": 1, "pattern": HEX_PATTERN},
        "fileHash": {"type": "string", "minLength": 1, "pattern": HEX_PATTERN},
    },
    "required": ["signature", "fileHash"],
}

SCHEMAS = {
    MessageKind.CONTRACT_REQUEST: CONTRACT_REQUEST_SCHEMA,
    MessageKind.CONTRACT_APPROVAL: CONTRACT_APPROVAL_SCHEMA,
}

_VALIDATORS = {kind: Draft202012Validator(schema) for kind, schema in SCHEMAS.items()}

_HEX_FIELDS = ("fileHash", "signature")
_PUBKEY_FIELDS = ("arbitratorPubkeys", "clientPubkeys")


def _lowercase_hex(payload):
    """Accept upper-case hex from peers; records and keys are stored lower-case."""
    out = dict(payload)
    for name in _HEX_FIELDS:
        if isinstance(out.get(name), str):
            out[name] = out[name].lower()
    for name in _PUBKEY_FIELDS:
        if isinstance(out.get(name), list):
            out[name] = [k.lower() if isinstance(k, str) else k for k in out[name]]
    return out


def decode_payload(kind, plaintext):
    """Parse and validate a decrypted payload.

    Args:
        kind: MessageKind or its string value.
        plaintext: Decrypted JSON text.

    Returns:
        The payload dict, restricted to the fields its schema names.
    """
    try:
        kind = MessageKind(kind)
    except ValueError:
        raise DecodeError(f"unknown message kind: {kind!r}") from None
    try:
        payload = json.loads(plaintext)
    except (ValueError, TypeError, RecursionError) as e:
        # ValueError also covers over-long integer literals
        raise DecodeError(f"payload is not JSON: {e}") from None

    if isinstance(payload, dict):
        payload = _lowercase_hex(payload)

    errors = [
        f"{error.json_path}: {error.message}"
        for error in _VALIDATORS[kind].iter_errors(payload)
    ]
    if errors:
        raise DecodeError(f"invalid {kind.value} payload: " + "; ".join(errors))

    # Anything else the sender put in (a claimed multisigAddress, say) is dropped
    known = SCHEMAS[kind]["properties"]
    return {k: v for k, v in payload.items() if k in known}


def encode_contract_request(file_hash, clients, arbitrators, quorum, network):
    return json.dumps({
        "fileHash": file_hash,
        "arbitratorsQuorum": quorum,
        "arbitratorPubkeys": list(arbitrators),
        "clientPubkeys": list(clients),
        "network": network,
    })


def encode_contract_approval(file_hash, signature):
    return json.dumps({"signature": signature, "fileHash": file_hash})
