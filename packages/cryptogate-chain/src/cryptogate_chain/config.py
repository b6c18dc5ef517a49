"""
Chain registry for cryptogate-chain.

Builds one immutable :class:`ChainConfig` per supported symbol from
:class:`GatewaySettings`: native networks from ``settings.networks`` and
tokens from ``settings.tokens`` (which inherit endpoint and confirmation
threshold from their host chain).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Literal, Optional

from cryptogate_core.config import GatewaySettings
from cryptogate_core.exceptions import UnsupportedChainError
from cryptogate_wallet.hd_wallet import CHAIN_COIN_TYPES, CoinType

logger = logging.getLogger(__name__)


class ChainKind(str, Enum):
    """Transaction model of a chain; selects the classification strategy."""
    UTXO = "utxo"
    ACCOUNT = "account"
    TOKEN = "token"
    PRIVACY = "privacy"


# Transaction model per native symbol
NATIVE_KINDS: Dict[str, ChainKind] = {
    "BTC": ChainKind.UTXO,
    "LTC": ChainKind.UTXO,
    "ETH": ChainKind.ACCOUNT,
    "SOL": ChainKind.ACCOUNT,
    "XMR": ChainKind.PRIVACY,
}

# URI schemes for payment QR payloads
URI_SCHEMES: Dict[str, str] = {
    "BTC": "bitcoin",
    "LTC": "litecoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "XMR": "monero",
}


@dataclass(frozen=True)
class ChainConfig:
    """Configuration for one chain or token symbol."""
    symbol: str
    name: str
    kind: ChainKind
    backend: Literal["blockbook", "solana_rpc"]
    endpoint: str
    decimals: int
    min_confirmations: int
    coin_type: int

    # Tokens only
    contract_address: Optional[str] = None
    host_chain: Optional[str] = None

    # Transport
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    rate_limit_delay: float = 1.0

    @property
    def is_token(self) -> bool:
        return self.kind == ChainKind.TOKEN

    @property
    def base_symbol(self) -> str:
        """Symbol whose address format this chain uses."""
        return self.host_chain or self.symbol

    @property
    def uri_scheme(self) -> Optional[str]:
        return URI_SCHEMES.get(self.symbol)


def build_chain_registry(settings: GatewaySettings) -> Dict[str, ChainConfig]:
    """One ChainConfig per configured network and token."""
    transport = settings.blockbook
    registry: Dict[str, ChainConfig] = {}

    for symbol, network in settings.networks.items():
        kind = NATIVE_KINDS.get(symbol)
        if kind is None:
            logger.warning(f"Skipping network {symbol}: unknown transaction model")
            continue
        registry[symbol] = ChainConfig(
            symbol=symbol,
            name=network.name,
            kind=kind,
            backend=network.backend,
            endpoint=settings.network_url(symbol),
            decimals=network.decimals,
            min_confirmations=network.min_confirmations,
            coin_type=int(CHAIN_COIN_TYPES.get(symbol, CoinType.ETHEREUM)),
            timeout_seconds=transport.timeout,
            retry_attempts=transport.retry_attempts,
            retry_base_delay=transport.retry_base_delay,
            rate_limit_delay=transport.rate_limit_delay,
        )

    for symbol, token in settings.tokens.items():
        host = registry.get(token.host_chain)
        if host is None:
            logger.warning(f"Skipping token {symbol}: host chain {token.host_chain} not configured")
            continue
        registry[symbol] = ChainConfig(
            symbol=symbol,
            name=token.name,
            kind=ChainKind.TOKEN,
            backend=host.backend,
            endpoint=host.endpoint,
            decimals=token.decimals,
            min_confirmations=host.min_confirmations,
            coin_type=host.coin_type,
            contract_address=token.contract_address.lower(),
            host_chain=host.symbol,
            timeout_seconds=host.timeout_seconds,
            retry_attempts=host.retry_attempts,
            retry_base_delay=host.retry_base_delay,
            rate_limit_delay=host.rate_limit_delay,
        )

    return registry


def get_chain_config(registry: Dict[str, ChainConfig], symbol: str) -> ChainConfig:
    """Look up a symbol.

    Raises:
        UnsupportedChainError: If the symbol is not configured
    """
    config = registry.get(symbol.upper())
    if config is None:
        raise UnsupportedChainError(symbol)
    return config


__all__ = [
    "ChainKind",
    "ChainConfig",
    "URI_SCHEMES",
    "build_chain_registry",
    "get_chain_config",
]
