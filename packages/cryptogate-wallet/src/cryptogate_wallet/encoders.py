"""
Per-chain address encoders.

Every chain symbol maps to one encoder taking a derived key node. ERC-20
tokens share the Ethereum encoder. Lookups for unknown symbols raise
:class:`UnsupportedChainError`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import base58
import bech32
from eth_utils import is_checksum_address, keccak, to_checksum_address
from nacl.bindings import (
    crypto_core_ed25519_scalar_reduce,
    crypto_scalarmult_ed25519_base_noclamp,
)

from cryptogate_core.exceptions import UnsupportedChainError

from .bip32 import ExtendedKey, hash160


@dataclass(frozen=True)
class EncodedAddress:
    address: str
    public_key: bytes


# =============================================================================
# UTXO (Bitcoin family)
# =============================================================================

SEGWIT_HRP: Dict[Tuple[str, bool], str] = {
    ("BTC", False): "bc",
    ("BTC", True): "tb",
    ("LTC", False): "ltc",
    ("LTC", True): "tltc",
}

P2PKH_VERSION: Dict[Tuple[str, bool], int] = {
    ("BTC", False): 0x00,
    ("BTC", True): 0x6F,
    ("LTC", False): 0x30,
    ("LTC", True): 0x6F,
}


def encode_p2wpkh(public_key: bytes, hrp: str) -> str:
    """Native SegWit v0 address for a compressed public key."""
    address = bech32.encode(hrp, 0, hash160(public_key))
    if address is None:
        raise ValueError(f"Cannot bech32-encode witness program for hrp {hrp}")
    return address


def encode_p2pkh(public_key: bytes, version: int) -> str:
    """Legacy base58check pay-to-pubkey-hash address."""
    return base58.b58encode_check(bytes([version]) + hash160(public_key)).decode()


def is_valid_p2wpkh(address: str, hrp: str) -> bool:
    witver, witprog = bech32.decode(hrp, address.lower())
    return witver is not None and witprog is not None


def is_valid_p2pkh(address: str, versions: Tuple[int, ...]) -> bool:
    try:
        payload = base58.b58decode_check(address)
    except ValueError:
        return False
    return len(payload) == 21 and payload[0] in versions


# =============================================================================
# Account (Ethereum family)
# =============================================================================

_HEX_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")


def encode_ethereum(uncompressed_public_key: bytes) -> str:
    """EIP-55 address: last 20 bytes of keccak256(X || Y)."""
    digest = keccak(uncompressed_public_key[1:])
    return to_checksum_address("0x" + digest[-20:].hex())


def is_valid_ethereum(address: str) -> bool:
    if not _HEX_ADDRESS.match(address):
        return False
    body = address[2:]
    if body.islower() or body.isupper():
        return True
    return is_checksum_address(address)


# =============================================================================
# Solana
# =============================================================================

def encode_solana(public_key: bytes) -> str:
    return base58.b58encode(public_key).decode()


def is_valid_solana(address: str) -> bool:
    try:
        return len(base58.b58decode(address)) == 32
    except ValueError:
        return False


# =============================================================================
# Monero
# =============================================================================

MONERO_NETWORK_BYTE = {False: 0x12, True: 0x35}

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_FULL_BLOCK_SIZE = 8
_FULL_ENCODED_BLOCK_SIZE = 11
_ENCODED_BLOCK_SIZES = [0, 2, 3, 5, 6, 7, 9, 10, 11]


def _encode_block(block: bytes) -> str:
    num = int.from_bytes(block, "big")
    chars = []
    while num > 0:
        num, rem = divmod(num, 58)
        chars.append(_B58_ALPHABET[rem])
    size = _ENCODED_BLOCK_SIZES[len(block)]
    return "".join(reversed(chars)).rjust(size, _B58_ALPHABET[0])


def _decode_block(block: str) -> bytes:
    size = _ENCODED_BLOCK_SIZES.index(len(block))
    num = 0
    for char in block:
        num = num * 58 + _B58_ALPHABET.index(char)
    if num >= 1 << (8 * size):
        raise ValueError("Monero base58 block overflow")
    return num.to_bytes(size, "big")


def monero_b58encode(data: bytes) -> str:
    """Monero's block-wise base58: 8-byte blocks to 11 characters."""
    return "".join(
        _encode_block(data[i:i + _FULL_BLOCK_SIZE])
        for i in range(0, len(data), _FULL_BLOCK_SIZE)
    )


def monero_b58decode(text: str) -> bytes:
    if any(char not in _B58_ALPHABET for char in text):
        raise ValueError("Invalid Monero base58 character")
    if len(text) % _FULL_ENCODED_BLOCK_SIZE not in _ENCODED_BLOCK_SIZES:
        raise ValueError("Invalid Monero base58 length")
    return b"".join(
        _decode_block(text[i:i + _FULL_ENCODED_BLOCK_SIZE])
        for i in range(0, len(text), _FULL_ENCODED_BLOCK_SIZE)
    )


def sc_reduce32(data: bytes) -> bytes:
    """Reduce a 32-byte value modulo the ed25519 group order."""
    return crypto_core_ed25519_scalar_reduce(data.ljust(64, b"\x00"))


def monero_keys(seed_key: bytes) -> Tuple[bytes, bytes]:
    """(private spend, private view) from 32 bytes of key material."""
    spend = sc_reduce32(keccak(seed_key))
    view = sc_reduce32(keccak(spend))
    return spend, view


def encode_monero(
    public_spend: bytes,
    public_view: bytes,
    testnet: bool = False,
) -> str:
    data = bytes([MONERO_NETWORK_BYTE[testnet]]) + public_spend + public_view
    return monero_b58encode(data + keccak(data)[:4])


def is_valid_monero(address: str, testnet: Optional[bool] = None) -> bool:
    try:
        raw = monero_b58decode(address)
    except ValueError:
        return False
    if len(raw) != 69:
        return False
    networks = MONERO_NETWORK_BYTE.values() if testnet is None else [MONERO_NETWORK_BYTE[testnet]]
    if raw[0] not in networks:
        return False
    return keccak(raw[:65])[:4] == raw[65:]


# =============================================================================
# Dispatch
# =============================================================================

def _utxo_encoder(symbol: str) -> Callable[[ExtendedKey, bool], EncodedAddress]:
    def encode(node: ExtendedKey, testnet: bool) -> EncodedAddress:
        public_key = node.public_key
        return EncodedAddress(encode_p2wpkh(public_key, SEGWIT_HRP[(symbol, testnet)]), public_key)
    return encode


def _ethereum(node: ExtendedKey, testnet: bool) -> EncodedAddress:
    return EncodedAddress(encode_ethereum(node.uncompressed_public_key), node.public_key)


def _solana(node: ExtendedKey, testnet: bool) -> EncodedAddress:
    public_key = node.public_key
    return EncodedAddress(encode_solana(public_key), public_key)


def _monero(node: ExtendedKey, testnet: bool) -> EncodedAddress:
    spend, view = monero_keys(node.private_key)
    public_spend = crypto_scalarmult_ed25519_base_noclamp(spend)
    public_view = crypto_scalarmult_ed25519_base_noclamp(view)
    return EncodedAddress(
        encode_monero(public_spend, public_view, testnet),
        public_spend + public_view,
    )


ADDRESS_ENCODERS: Dict[str, Callable[[ExtendedKey, bool], EncodedAddress]] = {
    "BTC": _utxo_encoder("BTC"),
    "LTC": _utxo_encoder("LTC"),
    "ETH": _ethereum,
    "SOL": _solana,
    "XMR": _monero,
}


def encoder_for(symbol: str) -> Callable[[ExtendedKey, bool], EncodedAddress]:
    try:
        return ADDRESS_ENCODERS[symbol]
    except KeyError:
        raise UnsupportedChainError(symbol) from None


def encode_address(symbol: str, node: ExtendedKey, testnet: bool = False) -> EncodedAddress:
    return encoder_for(symbol)(node, testnet)


def validate_address(symbol: str, address: str, testnet: bool = False) -> bool:
    """Encoding-level validity check for an address on a base chain."""
    if symbol in ("BTC", "LTC"):
        return (
            is_valid_p2wpkh(address, SEGWIT_HRP[(symbol, testnet)])
            or is_valid_p2pkh(address, (P2PKH_VERSION[(symbol, testnet)],))
        )
    if symbol == "ETH":
        return is_valid_ethereum(address)
    if symbol == "SOL":
        return is_valid_solana(address)
    if symbol == "XMR":
        return is_valid_monero(address, testnet)
    raise UnsupportedChainError(symbol)


__all__ = [
    "EncodedAddress",
    "ADDRESS_ENCODERS",
    "encode_p2wpkh",
    "encode_p2pkh",
    "encode_ethereum",
    "encode_solana",
    "encode_monero",
    "monero_b58encode",
    "monero_b58decode",
    "monero_keys",
    "encoder_for",
    "encode_address",
    "validate_address",
    "is_valid_ethereum",
    "is_valid_solana",
    "is_valid_monero",
]
