"""Escrow address derivation for cosign contracts.

The escrow is a P2WSH output with two spending paths:

    OP_IF
        <all clients>                               (n-of-n)
    OP_ELSE
        <arbitratorsQuorum of arbitrators> VERIFY   (q-of-m)
        <any one client>                            (1-of-n)
    OP_ENDIF

Bitcoin networks get a plain bech32 address. Liquid networks get a
confidential blech32 address carrying the blinding public key in front of the
witness program. Keys are used in the order received; sorting them would
change the script and so the address.
"""

import hashlib

from crypto import compressed_pubkey, privkey_to_compressed
from protocol import (
    CONFIDENTIAL_HRP, DEFAULT_BLINDING_KEY, MAX_MULTISIG_KEYS, SEGWIT_HRP,
    ChainFamily, InvalidQuorum, chain_family, parse_network,
)

# Script opcodes
OP_IF = 0x63
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_CHECKMULTISIG = 0xAE
OP_CHECKMULTISIGVERIFY = 0xAF
_OP_1_BASE = 0x50  # OP_n = 0x50 + n

WITNESS_VERSION = 0

# Bech32 alphabet (BIP-173)
_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

_BECH32_GEN = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]

# Blech32 (Elements): 60-bit generator, 12-character checksum
_BLECH32_GEN = [
    0x7D52FBA40BD886, 0x5E8DBF1A03950C, 0x1C3A3C74072A18,
    0x385D72FA0E5139, 0x7093E5A608865B,
]


# ---------------------------------------------------------------------------
# Script construction
# ---------------------------------------------------------------------------

def _small_int(n: int) -> int:
    if not 1 <= n <= 16:
        raise InvalidQuorum(f"Multisig count out of range: {n}")
    return _OP_1_BASE + n


def _push(data: bytes) -> bytes:
    # Every push here is a 33-byte key, well under OP_PUSHDATA1
    return bytes([len(data)]) + data


def multisig_script(required: int, pubkeys: list[bytes], verify: bool = False) -> bytes:
    """`<required> <keys...> <n> OP_CHECKMULTISIG[VERIFY]` in the given key order."""
    if not pubkeys or len(pubkeys) > MAX_MULTISIG_KEYS:
        raise InvalidQuorum(f"Multisig needs 1..{MAX_MULTISIG_KEYS} keys, got {len(pubkeys)}")
    if required > len(pubkeys):
        raise InvalidQuorum(f"Cannot require {required} of {len(pubkeys)} keys")
    script = bytes([_small_int(required)])
    for key in pubkeys:
        script += _push(key)
    script += bytes([_small_int(len(pubkeys))])
    script += bytes([OP_CHECKMULTISIGVERIFY if verify else OP_CHECKMULTISIG])
    return script


def escrow_script(client_keys: list[str], arbitrator_keys: list[str], quorum: int) -> bytes:
    """Build the escrow witness script from x-only keys."""
    if isinstance(quorum, bool) or not isinstance(quorum, int):
        raise InvalidQuorum(f"Quorum must be an integer, got {quorum!r}")
    if quorum < 1:
        raise InvalidQuorum(f"Quorum must be at least 1, got {quorum}")
    clients = [compressed_pubkey(k) for k in client_keys]
    arbitrators = [compressed_pubkey(k) for k in arbitrator_keys]

    script = bytes([OP_IF])
    script += multisig_script(len(clients), clients)
    script += bytes([OP_ELSE])
    script += multisig_script(quorum, arbitrators, verify=True)
    script += multisig_script(1, clients)
    script += bytes([OP_ENDIF])
    return script


def witness_program(script: bytes) -> bytes:
    """P2WSH program: SHA-256 of the witness script."""
    return hashlib.sha256(script).digest()


# ---------------------------------------------------------------------------
# Bech32 / blech32 encoding
# ---------------------------------------------------------------------------

def _polymod(values: list[int], generator: list[int], top_shift: int) -> int:
    mask = (1 << top_shift) - 1
    chk = 1
    for v in values:
        top = chk >> top_shift
        chk = ((chk & mask) << 5) ^ v
        for i in range(5):
            if (top >> i) & 1:
                chk ^= generator[i]
    return chk


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convertbits(data: bytes, frombits: int, tobits: int) -> list[int]:
    """Regroup bits, padding the final group with zeros."""
    acc = 0
    bits = 0
    out = []
    maxv = (1 << tobits) - 1
    for value in data:
        acc = (acc << frombits) | value
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            out.append((acc >> bits) & maxv)
    if bits:
        out.append((acc << (tobits - bits)) & maxv)
    return out


def _encode(hrp: str, data: list[int], generator: list[int], top_shift: int, checksum_len: int) -> str:
    values = _hrp_expand(hrp) + data
    polymod = _polymod(values + [0] * checksum_len, generator, top_shift) ^ 1
    checksum = [(polymod >> 5 * (checksum_len - 1 - i)) & 31 for i in range(checksum_len)]
    return hrp + "1" + "".join(_BECH32_CHARSET[d] for d in data + checksum)


def segwit_address(hrp: str, program: bytes) -> str:
    """Version 0 segwit address (bech32)."""
    data = [WITNESS_VERSION] + _convertbits(program, 8, 5)
    return _encode(hrp, data, _BECH32_GEN, 25, 6)


def confidential_address(hrp: str, blinding_pubkey: bytes, program: bytes) -> str:
    """Version 0 confidential segwit address (blech32)."""
    data = [WITNESS_VERSION] + _convertbits(blinding_pubkey + program, 8, 5)
    return _encode(hrp, data, _BLECH32_GEN, 55, 12)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

def blinding_pubkey(private_blinding_key: str = DEFAULT_BLINDING_KEY) -> bytes:
    """Compressed blinding public key for a hex private blinding key."""
    return privkey_to_compressed(private_blinding_key)


def derive_escrow_address(
    network: str,
    client_keys: list[str],
    arbitrator_keys: list[str],
    quorum: int,
    private_blinding_key: str = DEFAULT_BLINDING_KEY,
) -> str:
    """Escrow address for the given keys and quorum.

    Raises UnsupportedNetwork, InvalidKeyMaterial or InvalidQuorum.
    """
    net = parse_network(network)
    program = witness_program(escrow_script(client_keys, arbitrator_keys, quorum))
    if chain_family(net) is ChainFamily.LIQUID:
        return confidential_address(
            CONFIDENTIAL_HRP[net], blinding_pubkey(private_blinding_key), program,
        )
    return segwit_address(SEGWIT_HRP[net], program)


def unconfidential_address(
    network: str,
    client_keys: list[str],
    arbitrator_keys: list[str],
    quorum: int,
) -> str:
    """Escrow address without the blinding key (bech32 on every network)."""
    net = parse_network(network)
    program = witness_program(escrow_script(client_keys, arbitrator_keys, quorum))
    return segwit_address(SEGWIT_HRP[net], program)
