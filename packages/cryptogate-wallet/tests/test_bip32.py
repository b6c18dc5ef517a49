"""
Comprehensive tests for BIP-32 and SLIP-10 derivation.

Tests cover:
- BIP-32 test vector 1 (secp256k1)
- SLIP-10 test vector 1 (ed25519)
- Public-only child derivation
- Derivation guards
"""
from __future__ import annotations

import pytest

from cryptogate_wallet.bip32 import (
    HARDENED_OFFSET,
    Curve,
    derive_child,
    derive_path,
    master_key,
    public_child,
)

VECTOR_1_SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")


class TestBip32Vector1:
    """BIP-32 test vector 1."""

    def test_master_xpub(self):
        """Should match chain m."""
        root = master_key(VECTOR_1_SEED)

        assert root.to_xpub() == (
            "xpub661MyMwAqRbcFtXgS5sYJABqqG9YLmC4Q1Rdap9gSE8NqtwybGhePY2gZ29ESFjqJoCu1Rupje8YtGqsefD265TMg7usUDFdp6W1EGMcet8"
        )

    def test_hardened_child_xpub(self):
        """Should match chain m/0H."""
        node = derive_child(master_key(VECTOR_1_SEED), HARDENED_OFFSET)

        assert node.depth == 1
        assert node.to_xpub() == (
            "xpub68Gmy5EdvgibQVfPdqkBBCHxA5htiqg55crXYuXoQRKfDBFA1WEjWgP6LHhwBZeNK1VTsfTFUHCdrfp1bgwQ9xv5ski8PX9rL2dZXvgGDnw"
        )

    def test_normal_child_xpub(self):
        """Should match chain m/0H/1."""
        node = derive_path(master_key(VECTOR_1_SEED), [HARDENED_OFFSET, 1])

        assert node.to_xpub() == (
            "xpub6ASuArnXKPbfEwhqN6e3mwBcDTgzisQN1wXN9BJcM47sSikHjJf3UFHKkNAWbWMiGj7Wf5uMash7SyYq527Hqck2AxYysAA7xmALppuCkwQ"
        )


class TestSlip10Ed25519:
    """SLIP-10 ed25519 test vector 1."""

    def test_master(self):
        """Should match the ed25519 master key and chain code."""
        root = master_key(VECTOR_1_SEED, Curve.ED25519)

        assert root.private_key.hex() == "2b4be7f19ee27bbf30c667b642d5f4aa69fd169872f8fc3059c08ebae2eb19e7"
        assert root.chain_code.hex() == "90046a93de5380a72b5e45010748567d5ea02bbf6522f979e05c0d8d8ca9fffb"

    def test_hardened_child(self):
        """Should match m/0H."""
        node = derive_child(master_key(VECTOR_1_SEED, Curve.ED25519), HARDENED_OFFSET)

        assert node.private_key.hex() == "68e0fe46dfb67e368c75379acec591dad19df3cde26e63b93a8e704f1dade7a3"
        assert len(node.public_key) == 32

    def test_rejects_normal_child(self):
        """Should refuse non-hardened ed25519 derivation."""
        with pytest.raises(ValueError):
            derive_child(master_key(VECTOR_1_SEED, Curve.ED25519), 0)

    def test_no_uncompressed_key(self):
        """Should only expose uncompressed keys on secp256k1."""
        with pytest.raises(ValueError):
            master_key(VECTOR_1_SEED, Curve.ED25519).uncompressed_public_key


class TestPublicChild:
    """Tests for public-only derivation."""

    @pytest.mark.parametrize("index", [0, 1, 7, 1000])
    def test_matches_private_derivation(self, index):
        """Should equal the public key of the privately derived child."""
        parent = derive_child(master_key(VECTOR_1_SEED), HARDENED_OFFSET)

        expected = derive_child(parent, index).public_key

        assert public_child(parent.public_key, parent.chain_code, index) == expected

    def test_rejects_hardened(self):
        """Should refuse hardened indexes."""
        root = master_key(VECTOR_1_SEED)

        with pytest.raises(ValueError):
            public_child(root.public_key, root.chain_code, HARDENED_OFFSET)

    def test_index_out_of_range(self):
        """Should reject indexes beyond 32 bits."""
        with pytest.raises(ValueError):
            derive_child(master_key(VECTOR_1_SEED), 2 ** 32)
