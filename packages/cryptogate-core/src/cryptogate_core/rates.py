"""
USD rate boundary.

Exchange-rate lookup itself is an external collaborator; the gateway only
needs a price per symbol at detection time. A failed lookup never blocks
detection: the USD snapshot is stored as ``None`` and the failure is logged.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Tuple

from .exceptions import RateUnavailableError
from .models import utc_now

logger = logging.getLogger(__name__)

USD_QUANTUM = Decimal("0.01")


class RateProvider(ABC):
    """Abstract interface for USD price sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name."""
        pass

    @abstractmethod
    async def get_rate(self, symbol: str) -> Decimal:
        """USD price of one unit of ``symbol``.

        Raises:
            RateUnavailableError: If the provider has no price for the symbol
        """
        pass


class StaticRateProvider(RateProvider):
    """Fixed rates for development and tests."""

    def __init__(self, rates: Optional[Dict[str, Decimal]] = None) -> None:
        self._rates = {k.upper(): Decimal(str(v)) for k, v in (rates or {}).items()}

    @property
    def name(self) -> str:
        return "static"

    def set_rate(self, symbol: str, rate: Decimal) -> None:
        self._rates[symbol.upper()] = Decimal(str(rate))

    async def get_rate(self, symbol: str) -> Decimal:
        rate = self._rates.get(symbol.upper())
        if rate is None:
            raise RateUnavailableError(symbol)
        return rate


class CachedRateProvider(RateProvider):
    """Caching wrapper to keep one monitoring pass from refetching prices."""

    def __init__(self, provider: RateProvider, cache_ttl_seconds: int = 300) -> None:
        self._provider = provider
        self._cache_ttl = cache_ttl_seconds
        self._cache: Dict[str, Tuple[Decimal, datetime]] = {}

    @property
    def name(self) -> str:
        return f"cached_{self._provider.name}"

    async def get_rate(self, symbol: str) -> Decimal:
        key = symbol.upper()
        cached = self._cache.get(key)
        if cached and cached[1] > utc_now():
            return cached[0]

        rate = await self._provider.get_rate(key)
        self._cache[key] = (rate, utc_now() + timedelta(seconds=self._cache_ttl))
        return rate

    def clear_cache(self) -> None:
        self._cache.clear()


async def usd_value(
    provider: Optional[RateProvider],
    symbol: str,
    amount: Decimal,
) -> Optional[Decimal]:
    """USD snapshot for ``amount`` of ``symbol``, or None if no rate is available."""
    if provider is None:
        return None
    try:
        rate = await provider.get_rate(symbol)
    except Exception as e:
        logger.warning(f"USD rate lookup failed for {symbol} via {provider.name}: {e}")
        return None
    return (amount * rate).quantize(USD_QUANTUM, rounding=ROUND_HALF_UP)


__all__ = [
    "RateProvider",
    "StaticRateProvider",
    "CachedRateProvider",
    "usd_value",
]
