"""
Incoming-payment classification, one strategy per transaction model.

A strategy answers three questions about a normalized
:class:`ChainTransaction` and a watched address: is it incoming, how much
arrived (minor units), and does it match an expected amount. Strategies are
composed into a :class:`ChainAdapter`, never subclassed by it.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Optional

from cryptogate_core.exceptions import PrivacyLookupUnsupportedError

from .config import ChainConfig, ChainKind
from .transactions import ChainTransaction


class ClassificationStrategy(ABC):
    """Decides whether a transaction pays a watched address."""

    kind: ChainKind

    def __init__(self, config: ChainConfig) -> None:
        self._config = config

    @abstractmethod
    def is_incoming(self, tx: ChainTransaction, address: str) -> bool:
        ...

    @abstractmethod
    def incoming_minor(self, tx: ChainTransaction, address: str) -> int:
        """Total value received by ``address`` in minor units."""
        ...

    def matches_amount(self, tx: ChainTransaction, address: str, amount_minor: int) -> bool:
        return self.is_incoming(tx, address) and self.incoming_minor(tx, address) == amount_minor

    def sender_of(self, tx: ChainTransaction) -> Optional[str]:
        return tx.sender


class UtxoStrategy(ClassificationStrategy):
    """Scan outputs for the address and sum the matching values."""

    kind = ChainKind.UTXO

    def is_incoming(self, tx: ChainTransaction, address: str) -> bool:
        return bool(tx.outputs_to(address))

    def incoming_minor(self, tx: ChainTransaction, address: str) -> int:
        return sum(o.value_minor for o in tx.outputs_to(address))

    def matches_amount(self, tx: ChainTransaction, address: str, amount_minor: int) -> bool:
        # A single output paying the exact amount
        return any(o.value_minor == amount_minor for o in tx.outputs_to(address))


class AccountStrategy(ClassificationStrategy):
    """Direct, case-insensitive equality on the recipient field."""

    kind = ChainKind.ACCOUNT

    def is_incoming(self, tx: ChainTransaction, address: str) -> bool:
        if not tx.success:
            return False
        if tx.recipient and tx.recipient.lower() == address.lower():
            return True
        # Solana transactions can carry several transfer instructions
        return any(o.address.lower() == address.lower() for o in tx.outputs)

    def incoming_minor(self, tx: ChainTransaction, address: str) -> int:
        if not self.is_incoming(tx, address):
            return 0
        matching = [o.value_minor for o in tx.outputs if o.address.lower() == address.lower()]
        return sum(matching) if matching else tx.value_minor


class TokenStrategy(ClassificationStrategy):
    """Scan transfer events for (recipient, contract)."""

    kind = ChainKind.TOKEN

    def _transfers(self, tx: ChainTransaction, address: str):
        return tx.transfers_to(address, self._config.contract_address)

    def is_incoming(self, tx: ChainTransaction, address: str) -> bool:
        return tx.success and bool(self._transfers(tx, address))

    def incoming_minor(self, tx: ChainTransaction, address: str) -> int:
        if not tx.success:
            return 0
        return sum(t.value_minor for t in self._transfers(tx, address))

    def matches_amount(self, tx: ChainTransaction, address: str, amount_minor: int) -> bool:
        return tx.success and any(
            t.value_minor == amount_minor for t in self._transfers(tx, address)
        )

    def sender_of(self, tx: ChainTransaction) -> Optional[str]:
        for transfer in tx.token_transfers:
            if transfer.contract.lower() == (self._config.contract_address or "").lower():
                return transfer.from_address
        return tx.sender


class PrivacyStrategy(ClassificationStrategy):
    """View-key-only chains: classification is a permanent capability gap."""

    kind = ChainKind.PRIVACY

    def _unsupported(self, operation: str) -> PrivacyLookupUnsupportedError:
        return PrivacyLookupUnsupportedError(self._config.symbol, operation)

    def is_incoming(self, tx: ChainTransaction, address: str) -> bool:
        raise self._unsupported("is_incoming")

    def incoming_minor(self, tx: ChainTransaction, address: str) -> int:
        raise self._unsupported("incoming_amount")

    def matches_amount(self, tx: ChainTransaction, address: str, amount_minor: int) -> bool:
        raise self._unsupported("find_incoming_transaction")

    def sender_of(self, tx: ChainTransaction) -> Optional[str]:
        return None


STRATEGIES: Dict[ChainKind, type] = {
    ChainKind.UTXO: UtxoStrategy,
    ChainKind.ACCOUNT: AccountStrategy,
    ChainKind.TOKEN: TokenStrategy,
    ChainKind.PRIVACY: PrivacyStrategy,
}


def strategy_for(config: ChainConfig) -> ClassificationStrategy:
    return STRATEGIES[config.kind](config)


__all__ = [
    "ClassificationStrategy",
    "UtxoStrategy",
    "AccountStrategy",
    "TokenStrategy",
    "PrivacyStrategy",
    "strategy_for",
]
