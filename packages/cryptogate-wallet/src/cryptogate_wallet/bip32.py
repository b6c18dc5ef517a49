"""
BIP-32 / SLIP-10 child key derivation.

- secp256k1: BIP-32 (hardened and normal children), used by every chain
  except Solana.
- ed25519: SLIP-10, hardened children only, used by Solana.

Curve arithmetic comes from ``ecdsa`` and ``nacl``; only the HMAC-SHA512
chaining is done here.
"""
from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

import base58
from Crypto.Hash import RIPEMD160
from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.ellipticcurve import INFINITY
from nacl.signing import SigningKey as Ed25519SigningKey

HARDENED_OFFSET = 0x80000000
SECP256K1_ORDER = SECP256k1.order

# Mainnet xpub version bytes
XPUB_VERSION = bytes.fromhex("0488b21e")


class Curve(str, Enum):
    SECP256K1 = "secp256k1"
    ED25519 = "ed25519"


_CURVE_SEED_KEYS = {
    Curve.SECP256K1: b"Bitcoin seed",
    Curve.ED25519: b"ed25519 seed",
}


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def secp256k1_public_key(private_key: bytes, compressed: bool = True) -> bytes:
    """Public key for a secp256k1 private key (33 bytes compressed, 65 uncompressed)."""
    vk = SigningKey.from_string(private_key, curve=SECP256k1).get_verifying_key()
    return vk.to_string("compressed" if compressed else "uncompressed")


def ed25519_public_key(private_key: bytes) -> bytes:
    return Ed25519SigningKey(private_key).verify_key.encode()


@dataclass(frozen=True)
class ExtendedKey:
    """A node in a derivation tree."""
    private_key: bytes
    chain_code: bytes
    curve: Curve = Curve.SECP256K1
    depth: int = 0
    index: int = 0
    parent_fingerprint: bytes = b"\x00\x00\x00\x00"

    @property
    def public_key(self) -> bytes:
        if self.curve == Curve.ED25519:
            return ed25519_public_key(self.private_key)
        return secp256k1_public_key(self.private_key)

    @property
    def uncompressed_public_key(self) -> bytes:
        if self.curve != Curve.SECP256K1:
            raise ValueError("Uncompressed public keys exist only on secp256k1")
        return secp256k1_public_key(self.private_key, compressed=False)

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.public_key)[:4]

    def to_xpub(self, version: bytes = XPUB_VERSION) -> str:
        """Serialize the public half as a base58check extended key."""
        public_key = self.public_key
        if self.curve == Curve.ED25519:
            public_key = b"\x00" + public_key
        payload = (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.index.to_bytes(4, "big")
            + self.chain_code
            + public_key
        )
        return base58.b58encode_check(payload).decode()


def master_key(seed: bytes, curve: Curve = Curve.SECP256K1) -> ExtendedKey:
    """Root node from a BIP-39 seed."""
    digest = hmac.new(_CURVE_SEED_KEYS[curve], seed, hashlib.sha512).digest()
    private_key, chain_code = digest[:32], digest[32:]

    if curve == Curve.SECP256K1:
        k = int.from_bytes(private_key, "big")
        if k == 0 or k >= SECP256K1_ORDER:
            raise ValueError("Seed produces an invalid master key")

    return ExtendedKey(private_key=private_key, chain_code=chain_code, curve=curve)


def derive_child(parent: ExtendedKey, index: int) -> ExtendedKey:
    """Derive child ``index`` (add HARDENED_OFFSET for hardened children)."""
    if not 0 <= index <= 0xFFFFFFFF:
        raise ValueError(f"Child index out of range: {index}")

    hardened = index >= HARDENED_OFFSET
    if parent.curve == Curve.ED25519:
        if not hardened:
            raise ValueError("ed25519 supports hardened derivation only")
        data = b"\x00" + parent.private_key + index.to_bytes(4, "big")
        digest = hmac.new(parent.chain_code, data, hashlib.sha512).digest()
        return ExtendedKey(
            private_key=digest[:32],
            chain_code=digest[32:],
            curve=Curve.ED25519,
            depth=parent.depth + 1,
            index=index,
            parent_fingerprint=parent.fingerprint,
        )

    if hardened:
        data = b"\x00" + parent.private_key + index.to_bytes(4, "big")
    else:
        data = parent.public_key + index.to_bytes(4, "big")

    digest = hmac.new(parent.chain_code, data, hashlib.sha512).digest()
    il = int.from_bytes(digest[:32], "big")
    child = (il + int.from_bytes(parent.private_key, "big")) % SECP256K1_ORDER

    if il >= SECP256K1_ORDER or child == 0:
        # Invalid child: BIP-32 proceeds with the next index
        return derive_child(parent, index + 1)

    return ExtendedKey(
        private_key=child.to_bytes(32, "big"),
        chain_code=digest[32:],
        curve=Curve.SECP256K1,
        depth=parent.depth + 1,
        index=index,
        parent_fingerprint=parent.fingerprint,
    )


def derive_path(root: ExtendedKey, indexes: Iterable[int]) -> ExtendedKey:
    node = root
    for index in indexes:
        node = derive_child(node, index)
    return node


def public_child(parent_public_key: bytes, chain_code: bytes, index: int) -> Optional[bytes]:
    """Non-hardened child public key from a compressed parent public key.

    Returns None when the index yields an invalid key.
    """
    if index >= HARDENED_OFFSET:
        raise ValueError("Cannot derive hardened child from a public key")

    data = parent_public_key + index.to_bytes(4, "big")
    digest = hmac.new(chain_code, data, hashlib.sha512).digest()
    il = int.from_bytes(digest[:32], "big")
    if il >= SECP256K1_ORDER:
        return None

    parent_point = VerifyingKey.from_string(parent_public_key, curve=SECP256k1).pubkey.point
    point = SECP256k1.generator * il + parent_point
    if point == INFINITY:
        return None
    return VerifyingKey.from_public_point(point, curve=SECP256k1).to_string("compressed")


__all__ = [
    "HARDENED_OFFSET",
    "Curve",
    "ExtendedKey",
    "hash160",
    "secp256k1_public_key",
    "ed25519_public_key",
    "master_key",
    "derive_child",
    "derive_path",
    "public_child",
]
