"""HD key derivation and deposit-address management for CryptoGate."""

from .bip32 import Curve, ExtendedKey
from .encoders import EncodedAddress, encode_address, validate_address
from .hd_wallet import (
    CHAIN_COIN_TYPES,
    CoinType,
    DerivedKey,
    HDPath,
    KeyDerivationEngine,
    generate_mnemonic,
    seed_from_mnemonic,
    validate_mnemonic,
)
from .wallet_service import WalletCreation, WalletService

__all__ = [
    "Curve",
    "ExtendedKey",
    "EncodedAddress",
    "encode_address",
    "validate_address",
    "CHAIN_COIN_TYPES",
    "CoinType",
    "DerivedKey",
    "HDPath",
    "KeyDerivationEngine",
    "generate_mnemonic",
    "seed_from_mnemonic",
    "validate_mnemonic",
    "WalletCreation",
    "WalletService",
]
