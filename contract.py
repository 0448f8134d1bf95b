"""Contract record builder and validator for cosign.

Builds, validates, and exports contract records. A record commits to a
document by its content hash and to a multisig escrow whose address is
always derived locally from the participant keys.
"""

import copy
import json
import os

from jsonschema import Draft202012Validator

from address import derive_escrow_address
from crypto import canonical_json, ecdsa_verify
from protocol import (
    CONTRACT_VERSION, DEFAULT_BLINDING_KEY, CollateralType, CommunicationType, Network,
)

HEX_PATTERN = "^[0-9a-f]+$"
PUBKEY_PATTERN = "^[0-9a-f]{64}$"

_PUBKEY_LIST = {
    "type": "array",
    "items": {"type": "string", "pattern": PUBKEY_PATTERN},
    "minItems": 1,
    "uniqueItems": True,
}

_PUBKEY_SETS = {
    "type": "object",
    "properties": {"clients": _PUBKEY_LIST, "arbitrators": _PUBKEY_LIST},
    "required": ["clients", "arbitrators"],
    "additionalProperties": False,
}

CONTRACT_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "cosign contract",
    "type": "object",
    "properties": {
        "version": {"const": CONTRACT_VERSION},
        "collateral": {
            "type": "object",
            "properties": {
                "arbitratorsQuorum": {"type": "integer", "minimum": 1},
                "multisigAddress": {"type": "string", "minLength": 1},
                "network": {"enum": [n.value for n in Network]},
                "privateBlindingKey": {"type": "string", "pattern": PUBKEY_PATTERN},
                "pubkeys": _PUBKEY_SETS,
                "type": {"enum": [t.value for t in CollateralType]},
            },
            "required": [
                "arbitratorsQuorum", "multisigAddress", "network",
                "privateBlindingKey", "pubkeys", "type",
            ],
        },
        "communication": {
            "type": "object",
            "properties": {
                "identifiers": _PUBKEY_SETS,
                "type": {"enum": [t.value for t in CommunicationType]},
            },
            "required": ["identifiers", "type"],
        },
        "document": {
            "type": "object",
            "properties": {
                "pubkeys": _PUBKEY_SETS,
                "fileHash": {"type": "string", "minLength": 1, "pattern": HEX_PATTERN},
            },
            "required": ["pubkeys", "fileHash"],
        },
    },
    "required": ["version", "collateral", "communication", "document"],
}

SIGNED_CONTRACT_SCHEMA = copy.deepcopy(CONTRACT_SCHEMA)
SIGNED_CONTRACT_SCHEMA["title"] = "cosign signed contract"
SIGNED_CONTRACT_SCHEMA["properties"]["signatures"] = {
    "type": "object",
    "propertyNames": {"pattern": PUBKEY_PATTERN},
    "additionalProperties": {"type": "string", "minLength": 1, "pattern": HEX_PATTERN},
    "minProperties": 1,
}
SIGNED_CONTRACT_SCHEMA["required"] = CONTRACT_SCHEMA["required"] + ["signatures"]


# --- Builder ---

def build_contract_record(file_hash, clients, arbitrators, quorum, network,
                          private_blinding_key=DEFAULT_BLINDING_KEY):
    """Build a contract record with a locally derived escrow address.

    Args:
        file_hash: Hex content hash of the governed document.
        clients: Ordered client x-only pubkeys.
        arbitrators: Ordered arbitrator x-only pubkeys.
        quorum: Arbitrator quorum for the escrow script.
        network: Network name.

    Returns:
        Contract record dict.

    Raises:
        UnsupportedNetwork, InvalidKeyMaterial, InvalidQuorum from the resolver.
    """
    address = derive_escrow_address(network, clients, arbitrators, quorum, private_blinding_key)

    def pubkeys():
        # Each section gets its own lists; they are copies of the same sets
        return {"clients": list(clients), "arbitrators": list(arbitrators)}

    return {
        "version": CONTRACT_VERSION,
        "collateral": {
            "arbitratorsQuorum": quorum,
            "multisigAddress": address,
            "network": network,
            "privateBlindingKey": private_blinding_key,
            "pubkeys": pubkeys(),
            "type": CollateralType.P2WSH_ESCROW.value,
        },
        "communication": {
            "identifiers": pubkeys(),
            "type": CommunicationType.RELAY.value,
        },
        "document": {
            "pubkeys": pubkeys(),
            "fileHash": file_hash,
        },
    }


def participants(record):
    """Clients then arbitrators from the document section, duplicates dropped."""
    pubkeys = record["document"]["pubkeys"]
    seen = []
    for key in pubkeys["clients"] + pubkeys["arbitrators"]:
        if key not in seen:
            seen.append(key)
    return seen


def signable_data(record):
    """Canonical bytes that every party signs: the record without signatures."""
    unsigned = {k: v for k, v in record.items() if k != "signatures"}
    return canonical_json(unsigned)


# --- Validators ---

def validate_against_schema(obj, schema):
    """Return a list of schema error messages (empty if valid)."""
    validator = Draft202012Validator(schema)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]


def validate_contract_record(record, file_hash=None):
    """Validate a contract record.

    Returns:
        (True, []) if valid, (False, [errors]) otherwise.
    """
    if not isinstance(record, dict):
        return False, ["contract is not a dict"]

    errors = validate_against_schema(record, CONTRACT_SCHEMA)
    if errors:
        return False, errors

    if file_hash is not None and record["document"]["fileHash"] != file_hash:
        errors.append("document.fileHash does not match the contract key")

    doc_keys = record["document"]["pubkeys"]
    if record["collateral"]["pubkeys"] != doc_keys:
        errors.append("collateral.pubkeys differ from document.pubkeys")
    if record["communication"]["identifiers"] != doc_keys:
        errors.append("communication.identifiers differ from document.pubkeys")

    quorum = record["collateral"]["arbitratorsQuorum"]
    if quorum > len(doc_keys["arbitrators"]):
        errors.append(
            f"collateral.arbitratorsQuorum {quorum} exceeds {len(doc_keys['arbitrators'])} arbitrators"
        )

    return (len(errors) == 0, errors)


def validate_signed_contract(artifact, schema=None):
    """Validate a merged contract for export.

    Schema errors first, then a check that every listed party has signed.
    Returns a list of error messages (empty if valid).
    """
    errors = validate_against_schema(artifact, schema or SIGNED_CONTRACT_SCHEMA)
    if errors:
        return errors
    signatures = artifact.get("signatures", {})
    for key in participants(artifact):
        if key not in signatures:
            errors.append(f"$.signatures: missing signature from {key}")
    return errors


# --- Merge / export ---

def merge_signatures(record, signatures):
    """Combine a record with the signatures of its listed parties.

    Signatures from keys outside the contract are left out.
    """
    merged = copy.deepcopy(record)
    listed = participants(record)
    merged["signatures"] = {k: signatures[k] for k in listed if k in signatures}
    return merged


def verify_signature(record, pubkey, signature):
    """Check one party's signature over the record's signable data."""
    return ecdsa_verify(pubkey, signable_data(record), signature)


def export_filename(document_path):
    """`<documentBaseName>.json` for a document path."""
    base = os.path.splitext(os.path.basename(document_path))[0]
    return f"{base}.json"


def dump_contract(artifact):
    """Pretty JSON for a signed contract file."""
    return json.dumps(artifact, indent=2, sort_keys=True) + "\n"
