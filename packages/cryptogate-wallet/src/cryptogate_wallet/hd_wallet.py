"""
HD (Hierarchical Deterministic) key derivation for CryptoGate.

Implements BIP-39 seeds, BIP-32/BIP-44 paths and SLIP-10 for ed25519
chains. Every deposit address is a pure function of
(seed, chain symbol, address index):

    BTC   m/44'/0'/0'/0/i
    LTC   m/44'/2'/0'/0/i
    ETH   m/44'/60'/0'/0/i     (ERC-20 tokens reuse 60)
    XMR   m/44'/128'/0'/0/i
    SOL   m/44'/501'/0'/0'/i'  (ed25519, hardened only)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from mnemonic import Mnemonic

from cryptogate_core.exceptions import GatewayConfigurationError, UnsupportedChainError

from .bip32 import HARDENED_OFFSET, Curve, ExtendedKey, derive_path, master_key
from .encoders import encode_address

logger = logging.getLogger(__name__)

MAX_INDEX = HARDENED_OFFSET - 1


class HDPathPurpose(int, Enum):
    """BIP purpose values for HD derivation."""
    BIP44 = 44


class CoinType(int, Enum):
    """SLIP-44 coin type values."""
    BITCOIN = 0
    LITECOIN = 2
    ETHEREUM = 60
    MONERO = 128
    SOLANA = 501


# Chain symbol to coin type mapping
CHAIN_COIN_TYPES: Dict[str, int] = {
    "BTC": CoinType.BITCOIN,
    "LTC": CoinType.LITECOIN,
    "ETH": CoinType.ETHEREUM,
    "XMR": CoinType.MONERO,
    "SOL": CoinType.SOLANA,
    "USDT": CoinType.ETHEREUM,
    "USDC": CoinType.ETHEREUM,
    "LINK": CoinType.ETHEREUM,
    "UNI": CoinType.ETHEREUM,
}

# Tokens derive and encode exactly like their host chain
TOKEN_HOSTS: Dict[str, str] = {
    "USDT": "ETH",
    "USDC": "ETH",
    "LINK": "ETH",
    "UNI": "ETH",
}

ED25519_CHAINS = frozenset({"SOL"})


@dataclass
class HDPathComponent:
    """A single component of an HD derivation path."""
    index: int
    hardened: bool = False

    def __str__(self) -> str:
        suffix = "'" if self.hardened else ""
        return f"{self.index}{suffix}"

    @property
    def value(self) -> int:
        return self.index + HARDENED_OFFSET if self.hardened else self.index

    @classmethod
    def from_string(cls, s: str) -> "HDPathComponent":
        s = s.strip()
        hardened = s.endswith("'") or s.endswith("h") or s.endswith("H")
        index_str = s.rstrip("'hH")
        return cls(index=int(index_str), hardened=hardened)


@dataclass
class HDPath:
    """
    A BIP-44 derivation path.

    Format: m / purpose' / coin_type' / account' / change / address_index
    """
    purpose: int
    coin_type: int
    account: int = 0
    change: int = 0
    address_index: int = 0

    purpose_hardened: bool = True
    coin_type_hardened: bool = True
    account_hardened: bool = True
    change_hardened: bool = False
    address_hardened: bool = False

    def __str__(self) -> str:
        return "/".join(["m"] + [str(c) for c in self.components()])

    def components(self) -> List[HDPathComponent]:
        return [
            HDPathComponent(self.purpose, self.purpose_hardened),
            HDPathComponent(self.coin_type, self.coin_type_hardened),
            HDPathComponent(self.account, self.account_hardened),
            HDPathComponent(self.change, self.change_hardened),
            HDPathComponent(self.address_index, self.address_hardened),
        ]

    def to_list(self) -> List[Tuple[int, bool]]:
        """Convert to list of (index, hardened) tuples."""
        return [(c.index, c.hardened) for c in self.components()]

    def indexes(self) -> List[int]:
        """Child numbers with the hardened offset applied."""
        return [c.value for c in self.components()]

    @classmethod
    def parse(cls, path_string: str) -> "HDPath":
        """Parse "m/44'/60'/0'/0/0" into an HDPath."""
        path_string = path_string.strip().lower()
        if path_string.startswith("m/"):
            path_string = path_string[2:]
        elif path_string.startswith("m"):
            path_string = path_string[1:]

        parts = path_string.split("/")
        if len(parts) != 5:
            raise ValueError(f"Invalid HD path: expected 5 components, got {len(parts)}")

        components = [HDPathComponent.from_string(p) for p in parts]
        return cls(
            purpose=components[0].index,
            coin_type=components[1].index,
            account=components[2].index,
            change=components[3].index,
            address_index=components[4].index,
            purpose_hardened=components[0].hardened,
            coin_type_hardened=components[1].hardened,
            account_hardened=components[2].hardened,
            change_hardened=components[3].hardened,
            address_hardened=components[4].hardened,
        )

    @classmethod
    def for_chain(cls, chain: str, address_index: int = 0, account: int = 0) -> "HDPath":
        """Deposit path for a chain symbol.

        Raises:
            UnsupportedChainError: If the symbol has no coin type
        """
        coin_type = CHAIN_COIN_TYPES.get(chain)
        if coin_type is None:
            raise UnsupportedChainError(chain)

        all_hardened = chain in ED25519_CHAINS
        return cls(
            purpose=HDPathPurpose.BIP44,
            coin_type=int(coin_type),
            account=account,
            address_index=address_index,
            change_hardened=all_hardened,
            address_hardened=all_hardened,
        )

    def validate(self) -> List[str]:
        errors = []
        if self.purpose != HDPathPurpose.BIP44:
            errors.append(f"Non-standard purpose: {self.purpose}")
        if not (self.purpose_hardened and self.coin_type_hardened and self.account_hardened):
            errors.append("Purpose, coin type and account must be hardened")
        if not 0 <= self.address_index <= MAX_INDEX:
            errors.append("Address index out of range")
        if not 0 <= self.account <= MAX_INDEX:
            errors.append("Account index out of range")
        return errors


@dataclass(frozen=True)
class DerivedKey:
    """Output of one derivation."""
    chain: str
    address_index: int
    address: str
    derivation_path: str
    public_key: str
    private_key: bytes = field(repr=False)

    def to_dict(self) -> Dict[str, object]:
        """Public fields only."""
        return {
            "chain": self.chain,
            "address_index": self.address_index,
            "address": self.address,
            "derivation_path": self.derivation_path,
            "public_key": self.public_key,
        }


def generate_mnemonic(strength: int = 256) -> str:
    """Generate a BIP-39 English mnemonic."""
    if strength not in (128, 160, 192, 224, 256):
        raise ValueError("Strength must be one of: 128, 160, 192, 224, 256")
    return Mnemonic("english").generate(strength=strength)


def validate_mnemonic(phrase: str) -> bool:
    return Mnemonic("english").check(phrase)


def seed_from_mnemonic(phrase: str, passphrase: str = "") -> bytes:
    """64-byte BIP-39 seed.

    Raises:
        GatewayConfigurationError: If the phrase fails the BIP-39 checksum
    """
    if not validate_mnemonic(phrase):
        raise GatewayConfigurationError("Invalid BIP-39 mnemonic")
    return Mnemonic.to_seed(phrase, passphrase)


class KeyDerivationEngine:
    """Deterministic (seed, chain, index) -> address derivation. No I/O."""

    def __init__(
        self,
        testnet: bool = False,
        token_hosts: Optional[Dict[str, str]] = None,
    ) -> None:
        self._testnet = testnet
        self._token_hosts = dict(TOKEN_HOSTS)
        if token_hosts:
            self._token_hosts.update(token_hosts)

    def encoding_chain(self, chain: str) -> str:
        """Base chain whose coin type and encoder a symbol uses."""
        return self._token_hosts.get(chain, chain)

    def path_for(self, chain: str, address_index: int) -> HDPath:
        base = self.encoding_chain(chain)
        path = HDPath.for_chain(base, address_index=address_index)
        errors = path.validate()
        if errors:
            raise ValueError(f"Invalid derivation path {path}: {'; '.join(errors)}")
        return path

    def derive(self, seed: bytes, chain: str, address_index: int) -> DerivedKey:
        """Derive the deposit key for ``chain`` at ``address_index``.

        Raises:
            UnsupportedChainError: If no coin type or encoder exists for the symbol
        """
        base = self.encoding_chain(chain)
        path = self.path_for(chain, address_index)
        curve = Curve.ED25519 if base in ED25519_CHAINS else Curve.SECP256K1

        node = derive_path(master_key(seed, curve), path.indexes())
        encoded = encode_address(base, node, self._testnet)

        return DerivedKey(
            chain=chain,
            address_index=address_index,
            address=encoded.address,
            derivation_path=str(path),
            public_key=encoded.public_key.hex(),
            private_key=node.private_key,
        )

    def account_node(self, seed: bytes, chain: str = "BTC") -> ExtendedKey:
        """m/44'/<coin>'/0' for ``chain``."""
        path = self.path_for(chain, 0)
        return derive_path(master_key(seed), path.indexes()[:3])

    def master_public_key(self, seed: bytes) -> str:
        """Account-level xpub stored alongside the wallet."""
        return self.account_node(seed).to_xpub()


__all__ = [
    "HDPathPurpose",
    "CoinType",
    "CHAIN_COIN_TYPES",
    "TOKEN_HOSTS",
    "HDPathComponent",
    "HDPath",
    "DerivedKey",
    "KeyDerivationEngine",
    "generate_mnemonic",
    "validate_mnemonic",
    "seed_from_mnemonic",
]
