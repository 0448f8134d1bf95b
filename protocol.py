"""Shared constants, enums and errors for the cosign protocol.

All modules import from here to avoid circular dependencies.
"""

import os
from enum import Enum

# --- Protocol Constants ---

CONTRACT_VERSION = 1

# Placeholder confidentiality key for Liquid escrow addresses. Not derived per
# contract: every confidential escrow shares the same blinding key.
DEFAULT_BLINDING_KEY = "1" * 64

# Multisig scripts top out at OP_16
MAX_MULTISIG_KEYS = 16

PUBKEY_HEX_LEN = 64

# Relay defaults
DEFAULT_RELAY_URL = "http://localhost:8700"
DEFAULT_POLL_INTERVAL = 2.0  # seconds between inbox polls
RELAY_PAGE_SIZE = 100

# --- Environment configuration ---

RELAY_URL = os.environ.get("COSIGN_RELAY_URL", DEFAULT_RELAY_URL)
KEY_FILE = os.environ.get("COSIGN_KEY_FILE", os.path.expanduser("~/.cosign/key"))
DEFAULT_NETWORK = os.environ.get("COSIGN_NETWORK", "liquid")


# --- Networks ---

class ChainFamily(Enum):
    BITCOIN = "bitcoin"        # plain UTXO
    LIQUID = "liquid"          # confidential assets


class Network(Enum):
    BITCOIN = "bitcoin"
    TESTNET = "testnet"
    REGTEST = "regtest"
    LIQUID = "liquid"
    LIQUID_TESTNET = "liquidtestnet"
    LIQUID_REGTEST = "liquidregtest"


NETWORK_FAMILY = {
    Network.BITCOIN: ChainFamily.BITCOIN,
    Network.TESTNET: ChainFamily.BITCOIN,
    Network.REGTEST: ChainFamily.BITCOIN,
    Network.LIQUID: ChainFamily.LIQUID,
    Network.LIQUID_TESTNET: ChainFamily.LIQUID,
    Network.LIQUID_REGTEST: ChainFamily.LIQUID,
}

# Segwit HRPs. Liquid networks carry both the confidential (blech32) and the
# unconfidential (bech32) prefix.
SEGWIT_HRP = {
    Network.BITCOIN: "bc",
    Network.TESTNET: "tb",
    Network.REGTEST: "bcrt",
    Network.LIQUID: "ex",
    Network.LIQUID_TESTNET: "tex",
    Network.LIQUID_REGTEST: "ert",
}

CONFIDENTIAL_HRP = {
    Network.LIQUID: "lq",
    Network.LIQUID_TESTNET: "tlq",
    Network.LIQUID_REGTEST: "el",
}


class CollateralType(Enum):
    P2WSH_ESCROW = "p2wsh-escrow"


class CommunicationType(Enum):
    RELAY = "relay"


# --- Message kinds ---

class MessageKind(Enum):
    CONTRACT_REQUEST = "contract-request"
    CONTRACT_APPROVAL = "contract-approval"


ALL_KINDS = [MessageKind.CONTRACT_REQUEST.value, MessageKind.CONTRACT_APPROVAL.value]


# --- Errors ---

class CosignError(Exception):
    """Base class for every error raised by the coordinator."""


class DecodeError(CosignError):
    """Inbound message could not be decrypted, parsed or validated."""


class InvalidKeyMaterial(CosignError, ValueError):
    """A public or private key could not be parsed."""


class UnsupportedNetwork(CosignError, ValueError):
    """Network name does not map to a known chain family."""


class InvalidQuorum(CosignError, ValueError):
    """Quorum or key counts cannot form an escrow script."""


class NoSigner(CosignError):
    """No signing key is available for a contract's network."""


class NoKeyForNetwork(NoSigner):
    """Raised by the signing service itself."""


class UnknownContract(CosignError, KeyError):
    """No contract record exists for the given file hash."""


class DeliveryError(CosignError):
    """Transport failed to deliver a message to one recipient."""


class SchemaValidationError(CosignError):
    """Merged contract failed export schema validation."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "schema validation failed")


def parse_network(name: str) -> Network:
    """Map a network name to a Network, raising UnsupportedNetwork."""
    try:
        return Network(name)
    except ValueError:
        raise UnsupportedNetwork(f"Unsupported network: {name!r}") from None


def chain_family(network: str | Network) -> ChainFamily:
    if not isinstance(network, Network):
        network = parse_network(network)
    return NETWORK_FAMILY[network]
