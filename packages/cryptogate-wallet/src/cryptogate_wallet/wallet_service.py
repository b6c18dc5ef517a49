"""
Wallet and deposit-address lifecycle.

A wallet is created once per owner from a BIP-39 mnemonic; its seed is kept
only in encrypted form. Deposit addresses are derived at
``max(existing index) + 1`` per (wallet, chain) and persisted together with
their monitoring job.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from cryptogate_core.config import GatewaySettings
from cryptogate_core.encryption import SeedCipher
from cryptogate_core.exceptions import (
    GatewayConflictError,
    GatewayNotFoundError,
    UnsupportedChainError,
)
from cryptogate_core.ledger import AddressLedger
from cryptogate_core.models import DerivedAddress, Wallet
from cryptogate_core.webhooks import NotificationDispatcher

from .hd_wallet import DerivedKey, KeyDerivationEngine, generate_mnemonic, seed_from_mnemonic

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS_LABEL = "Default Address"


@dataclass
class WalletCreation:
    """Result of creating a wallet.

    ``mnemonic`` is only set when the service generated it and must be shown
    to the owner once for backup; it is never stored.
    """
    wallet: Wallet
    addresses: List[DerivedAddress] = field(default_factory=list)
    mnemonic: Optional[str] = field(default=None, repr=False)


class WalletService:
    """Creates wallets and derives, lists and deactivates deposit addresses."""

    def __init__(
        self,
        ledger: AddressLedger,
        settings: GatewaySettings,
        engine: Optional[KeyDerivationEngine] = None,
        cipher: Optional[SeedCipher] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self._ledger = ledger
        self._settings = settings
        self._engine = engine or KeyDerivationEngine(
            testnet=settings.testnet,
            token_hosts={symbol: token.host_chain for symbol, token in settings.tokens.items()},
        )
        self._cipher = cipher or SeedCipher.from_settings(settings)
        self._dispatcher = dispatcher

    def _ensure_supported(self, chain: str) -> None:
        if chain not in self._settings.networks and chain not in self._settings.tokens:
            raise UnsupportedChainError(chain)

    async def _wallet_for(self, owner_id: str) -> Wallet:
        wallet = await self._ledger.wallets.get_by_owner(owner_id)
        if wallet is None:
            raise GatewayNotFoundError("Wallet", owner_id)
        return wallet

    def _seed(self, wallet: Wallet) -> bytes:
        return self._cipher.decrypt_hex(wallet.encrypted_seed)

    async def create_wallet(
        self,
        owner_id: str,
        mnemonic: Optional[str] = None,
        chains: Optional[Sequence[str]] = None,
    ) -> WalletCreation:
        """Create the owner's wallet and its index-0 addresses.

        Args:
            owner_id: Owner identity
            mnemonic: Existing BIP-39 phrase to import; generated if omitted
            chains: Chains to create a default address for
                (defaults to ``settings.default_wallet_chains``)

        Raises:
            LedgerConflictError: If the owner already has a wallet
        """
        generated = mnemonic is None
        phrase = generate_mnemonic() if generated else mnemonic
        seed = seed_from_mnemonic(phrase)

        wallet = Wallet(
            owner_id=owner_id,
            encrypted_seed=self._cipher.encrypt_hex(seed),
            master_public_key=self._engine.master_public_key(seed),
        )
        await self._ledger.wallets.insert(wallet)
        logger.info(f"Created wallet {wallet.wallet_id} for owner {owner_id}")

        addresses = []
        for chain in chains if chains is not None else self._settings.default_wallet_chains:
            addresses.append(await self.generate_address(owner_id, chain, DEFAULT_ADDRESS_LABEL))

        return WalletCreation(
            wallet=wallet,
            addresses=addresses,
            mnemonic=phrase if generated else None,
        )

    async def get_or_create_wallet(self, owner_id: str) -> Wallet:
        wallet = await self._ledger.wallets.get_by_owner(owner_id)
        if wallet is not None:
            return wallet
        return (await self.create_wallet(owner_id)).wallet

    async def generate_address(
        self,
        owner_id: str,
        chain: str,
        label: Optional[str] = None,
    ) -> DerivedAddress:
        """Derive, persist and announce the next deposit address for ``chain``."""
        self._ensure_supported(chain)
        wallet = await self._wallet_for(owner_id)

        seed = self._seed(wallet)

        def build(index: int) -> DerivedAddress:
            key = self._engine.derive(seed, chain, index)
            return DerivedAddress(
                wallet_id=wallet.wallet_id,
                owner_id=owner_id,
                chain=chain,
                address_index=index,
                address=key.address,
                derivation_path=key.derivation_path,
                public_key=key.public_key,
                encrypted_private_key=(
                    self._cipher.encrypt_hex(key.private_key)
                    if self._settings.store_private_keys else None
                ),
                label=label,
            )

        address, _ = await self._ledger.register_next_address(wallet.wallet_id, chain, build)
        logger.info(
            f"Generated {chain} address #{address.address_index} for owner {owner_id}: "
            f"{address.address}"
        )

        if self._dispatcher is not None:
            try:
                await self._dispatcher.notify_address_generated(address)
            except Exception as e:
                logger.error(f"address_generated notification failed for {address.address_id}: {e}")

        return address

    async def generate_addresses(
        self,
        owner_id: str,
        chain: str,
        labels: Sequence[Optional[str]],
    ) -> List[DerivedAddress]:
        return [await self.generate_address(owner_id, chain, label) for label in labels]

    async def list_addresses(
        self,
        owner_id: str,
        chain: Optional[str] = None,
        active_only: bool = False,
    ) -> List[DerivedAddress]:
        wallet = await self._wallet_for(owner_id)
        return await self._ledger.addresses.list_for_wallet(wallet.wallet_id, chain, active_only)

    async def deactivate_address(self, address_id: str) -> None:
        """Stop monitoring an address. The address and its job are kept."""
        if not await self._ledger.deactivate_address(address_id):
            raise GatewayNotFoundError("DerivedAddress", address_id)
        logger.info(f"Deactivated address {address_id}")

    async def recover_address(self, owner_id: str, chain: str, address_index: int) -> DerivedKey:
        """Re-derive a key from the stored seed.

        Raises:
            GatewayConflictError: If the ledger holds a different address
                for that index
        """
        self._ensure_supported(chain)
        wallet = await self._wallet_for(owner_id)
        key = self._engine.derive(self._seed(wallet), chain, address_index)

        stored = [
            a for a in await self._ledger.addresses.list_for_wallet(wallet.wallet_id, chain)
            if a.address_index == address_index
        ]
        if stored and stored[0].address != key.address:
            raise GatewayConflictError(
                f"Stored {chain} address #{address_index} does not match the wallet seed",
                details={"address_id": stored[0].address_id},
            )
        return key


__all__ = ["WalletService", "WalletCreation", "DEFAULT_ADDRESS_LABEL"]
