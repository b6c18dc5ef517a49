"""
One-shot, expiring payment requests.

A request reserves a static pool address (not HD-derived), records the
expected amount and an expiry, and is later checked against the chain:

    find tx by (address, amount) -> confirmations -> confirm + callback -> expire

The merchant callback is a single best-effort POST; it is not retried like
subscriber webhooks.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from cryptogate_core.config import GatewaySettings, load_settings
from cryptogate_core.exceptions import (
    AmountOutOfBoundsError,
    ChainError,
    CurrencyInactiveError,
    GatewayNotFoundError,
    InvalidAddressError,
    PoolExhaustedError,
    PrivacyLookupUnsupportedError,
)
from cryptogate_core.ledger import AddressLedger
from cryptogate_core.logging import mask_url
from cryptogate_core.models import (
    PaymentRequest,
    PaymentRequestStatus,
    PoolAddress,
    generate_request_id,
    utc_now,
)
from cryptogate_core.rates import RateProvider, usd_value

from .adapter import AdapterFactory

logger = logging.getLogger(__name__)


def _plain(amount: Decimal) -> str:
    """Decimal without exponent or trailing zeros."""
    return format(amount.normalize(), "f")


class PaymentRequestService:
    """Creates payment requests and drives them to confirmed or expired."""

    def __init__(
        self,
        ledger: AddressLedger,
        adapters: AdapterFactory,
        settings: Optional[GatewaySettings] = None,
        rates: Optional[RateProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._ledger = ledger
        self._adapters = adapters
        self._settings = settings or load_settings()
        self._config = self._settings.payments
        self._rates = rates
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._config.callback_timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "PaymentRequestService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Pool
    # ------------------------------------------------------------------

    async def add_pool_address(self, chain: str, address: str) -> PoolAddress:
        """Register a static receiving address for future requests.

        Raises:
            InvalidAddressError: If the address is malformed for ``chain``
            LedgerConflictError: If the address is already pooled
        """
        adapter = self._adapters.create(chain)
        if not adapter.is_valid_address(address):
            raise InvalidAddressError(address, adapter.symbol)
        pool_address = await self._ledger.pool.add(PoolAddress(chain=adapter.symbol, address=address))
        logger.info(f"Added {adapter.symbol} pool address {address}")
        return pool_address

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_payment_request(
        self,
        chain: str,
        amount: Decimal,
        expires_in_minutes: Optional[int] = None,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        required_confirmations: Optional[int] = None,
        amount_usd: Optional[Decimal] = None,
    ) -> PaymentRequest:
        """Validate, reserve a pool address and persist a pending request.

        Raises:
            UnsupportedChainError: If ``chain`` is not configured
            CurrencyInactiveError: If the currency is not accepting payments
            AmountOutOfBoundsError: If ``amount`` is outside the configured bounds
            PoolExhaustedError: If no unused pool address remains
        """
        symbol = chain.upper()
        adapter = self._adapters.create(symbol)

        currency = self._settings.currencies.get(symbol)
        if currency is None or not currency.is_active:
            raise CurrencyInactiveError(symbol)

        amount = Decimal(str(amount))
        if not currency.min_amount <= amount <= currency.max_amount:
            raise AmountOutOfBoundsError(symbol, amount, currency.min_amount, currency.max_amount)

        request_id = generate_request_id()
        pool_address = await self._ledger.reserve_pool_address(symbol, request_id)
        if pool_address is None:
            raise PoolExhaustedError(symbol)

        if amount_usd is None:
            amount_usd = await usd_value(self._rates, symbol, amount)

        minutes = expires_in_minutes if expires_in_minutes is not None else self._config.default_expiry_minutes
        request = PaymentRequest(
            chain=symbol,
            amount=amount,
            to_address=pool_address.address,
            pool_address_id=pool_address.pool_address_id,
            required_confirmations=(
                required_confirmations
                if required_confirmations is not None
                else adapter.config.min_confirmations
            ),
            expires_at=utc_now() + timedelta(minutes=minutes),
            amount_usd=amount_usd,
            callback_url=callback_url,
            metadata=dict(metadata or {}),
            request_id=request_id,
        )
        await self._ledger.payment_requests.insert(request)

        logger.info(f"Payment request {request.request_id} created: {amount} {symbol} to {request.to_address}")
        return request

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def check_payment_status(self, request: PaymentRequest) -> PaymentRequest:
        """Advance one pending request against the chain and its expiry."""
        if not request.is_pending:
            return request

        adapter = self._adapters.create(request.chain)
        try:
            if not request.tx_hash:
                txid = await adapter.find_incoming_transaction(
                    request.to_address,
                    request.amount,
                    within_hours=self._settings.monitoring.find_window_hours,
                )
                if txid:
                    request.tx_hash = txid
                    logger.info(f"Payment request {request.request_id} matched {txid}")

            if request.tx_hash:
                request.confirmations = await adapter.get_confirmations(request.tx_hash)
                if request.confirmations >= request.required_confirmations and request.mark_confirmed():
                    logger.info(
                        f"Payment request {request.request_id} confirmed "
                        f"({request.confirmations} confirmations)"
                    )
                    await self._send_callback(request)
        except PrivacyLookupUnsupportedError as e:
            logger.info(f"Payment request {request.request_id}: {e}")
        except ChainError as e:
            logger.error(f"Failed to check payment request {request.request_id}: {e}")

        if request.is_pending and request.is_expired():
            request.mark_expired()
            logger.info(f"Payment request {request.request_id} expired")

        request.updated_at = utc_now()
        await self._ledger.payment_requests.save(request)
        return request

    async def _send_callback(self, request: PaymentRequest) -> bool:
        if not request.callback_url or request.callback_sent:
            return False

        payload = {
            "transaction_id": request.request_id,
            "status": request.status.value,
            "amount": str(request.amount),
            "currency": request.chain,
            "blockchain_tx_hash": request.tx_hash,
            "confirmations": request.confirmations,
        }
        client = await self._get_client()
        try:
            response = await client.post(request.callback_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(
                f"Callback for {request.request_id} to {mask_url(request.callback_url)} failed: {e}"
            )
            return False

        if not response.is_success:
            logger.warning(
                f"Callback for {request.request_id} to {mask_url(request.callback_url)} "
                f"returned {response.status_code}"
            )
            return False

        request.callback_sent = True
        logger.info(f"Callback sent for {request.request_id}")
        return True

    async def get_payment_status(self, request_id: str) -> Dict[str, Any]:
        """Refresh and describe a request.

        Raises:
            GatewayNotFoundError: If no such request exists
        """
        request = await self._ledger.payment_requests.get(request_id)
        if request is None:
            raise GatewayNotFoundError("PaymentRequest", request_id)

        request = await self.check_payment_status(request)
        return {
            "transaction_id": request.request_id,
            "status": request.status.value,
            "amount": str(request.amount),
            "amount_usd": str(request.amount_usd) if request.amount_usd is not None else None,
            "currency": request.chain,
            "to_address": request.to_address,
            "confirmations": request.confirmations,
            "required_confirmations": request.required_confirmations,
            "blockchain_tx_hash": request.tx_hash,
            "expires_at": request.expires_at.isoformat(),
            "qr_data": self.qr_payload(request),
        }

    async def monitor_pending(
        self,
        limit: Optional[int] = None,
        timeout: float = 300,
    ) -> Dict[str, int]:
        """Check a batch of pending requests, then expire overdue ones in bulk.

        Returns:
            {"processed", "confirmed", "expired", "errors"}
        """
        results = {"processed": 0, "confirmed": 0, "expired": 0, "errors": 0}
        started = time.monotonic()
        batch = await self._ledger.payment_requests.pending(limit or self._config.request_limit)
        delay = self._settings.monitoring.request_delay_seconds

        for position, request in enumerate(batch):
            if time.monotonic() - started >= timeout:
                logger.warning(f"Payment monitoring budget of {timeout}s spent")
                break
            try:
                request = await self.check_payment_status(request)
                results["processed"] += 1
                if request.status == PaymentRequestStatus.CONFIRMED:
                    results["confirmed"] += 1
                elif request.status == PaymentRequestStatus.EXPIRED:
                    results["expired"] += 1
            except Exception as e:
                results["errors"] += 1
                logger.error(f"Payment monitoring failed for {request.request_id}: {e}")

            if position < len(batch) - 1 and delay > 0:
                await asyncio.sleep(delay)

        results["expired"] += await self._ledger.expire_payment_requests(utc_now())
        logger.info(
            f"Payment monitoring: {results['processed']} processed, {results['confirmed']} confirmed, "
            f"{results['expired']} expired, {results['errors']} errors"
        )
        return results

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def supported_currencies(self) -> List[Dict[str, Any]]:
        currencies = []
        for symbol in self._adapters.symbols:
            currency = self._settings.currencies.get(symbol)
            if currency is None or not currency.is_active:
                continue
            config = self._adapters.create(symbol).config
            currencies.append({
                "symbol": symbol,
                "name": config.name,
                "min_amount": str(currency.min_amount),
                "max_amount": str(currency.max_amount),
                "is_token": config.is_token,
                "contract_address": config.contract_address,
            })
        return currencies

    def qr_payload(self, request: PaymentRequest) -> str:
        """Wallet URI for the request, or the bare address for tokens."""
        amount = _plain(request.amount)
        scheme = self._adapters.create(request.chain).config.uri_scheme
        if scheme is None:
            return request.to_address
        if scheme == "monero":
            return f"monero:{request.to_address}?tx_amount={amount}"
        return f"{scheme}:{request.to_address}?amount={amount}"


__all__ = ["PaymentRequestService"]
