"""
NotificationDispatcher: signed, retried webhook delivery.

Delivery is at-least-once. Every POST carries:

    Content-Type: application/json
    User-Agent: CryptoGate-Webhook/1.0
    X-Webhook-Signature: <hex HMAC-SHA256 of the body>
    X-Webhook-Event: <event kind>
    X-Webhook-Attempt: <n>

The body is canonical JSON (sorted keys, compact separators) and contains a
unix ``timestamp``, so the signature also covers the send time and receivers
can reject replays with :func:`verify_signature`.

For transaction events the attempt count, last error and sent flag are kept
per event kind on the Transaction and written after each POST result is
known, so a failed ``payment_received`` stays eligible for redelivery after
``payment_confirmed`` goes out.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from .config import GatewaySettings
from .exceptions import DeliveryError, GatewayValidationError
from .ledger import AddressLedger
from .logging import mask_url
from .models import (
    DerivedAddress,
    Transaction,
    WebhookEventKind,
    utc_now,
)
from .retry import RetryExhausted, retry_async, webhook_retry_config

logger = logging.getLogger(__name__)


def _serialize(data: Any) -> Any:
    """Serialize data for JSON."""
    if isinstance(data, dict):
        return {k: _serialize(v) for k, v in data.items()}
    elif isinstance(data, (list, tuple)):
        return [_serialize(v) for v in data]
    elif isinstance(data, Decimal):
        return str(data)
    elif isinstance(data, datetime):
        return data.isoformat()
    elif isinstance(data, Enum):
        return data.value
    return data


def canonical_json(payload: Dict[str, Any]) -> str:
    return json.dumps(_serialize(payload), sort_keys=True, separators=(",", ":"))


def sign(body: str, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact body bytes."""
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def verify_signature(
    body: str,
    signature: str,
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    """Verify a delivery signature with replay protection.

    Args:
        body: The raw request body as received
        signature: The X-Webhook-Signature header value
        secret: The subscriber's shared secret
        tolerance_seconds: Maximum age of the body ``timestamp``
        now: Current unix time (defaults to time.time())

    Returns:
        True if the signature matches and the timestamp is fresh
    """
    if not hmac.compare_digest(sign(body, secret), signature):
        return False

    try:
        timestamp = int(json.loads(body)["timestamp"])
    except (ValueError, KeyError, TypeError):
        return False

    current = int(now if now is not None else time.time())
    return abs(current - timestamp) <= tolerance_seconds


@dataclass
class DeliveryAttempt:
    """One POST to a subscriber endpoint."""
    event: str
    url: str
    attempt_number: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: int = 0
    success: bool = False


@dataclass
class DeliveryResult:
    """Outcome of one delivery cycle."""
    event: str
    delivered: bool = False
    skipped: bool = False
    attempts: List[DeliveryAttempt] = field(default_factory=list)

    @property
    def last_error(self) -> Optional[str]:
        for attempt in reversed(self.attempts):
            if attempt.error:
                return attempt.error
        return None


class NotificationDispatcher:
    """Delivers lifecycle events to the owning subscriber's webhook."""

    def __init__(
        self,
        ledger: AddressLedger,
        settings: GatewaySettings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._ledger = ledger
        self._settings = settings
        self._config = settings.webhooks
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._config.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "NotificationDispatcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Payloads
    # ------------------------------------------------------------------

    def _cryptocurrency(self, symbol: str) -> Dict[str, Any]:
        token = self._settings.tokens.get(symbol)
        if token is not None:
            return {
                "symbol": symbol,
                "name": token.name,
                "is_token": True,
                "contract_address": token.contract_address,
            }
        network = self._settings.networks.get(symbol)
        return {
            "symbol": symbol,
            "name": network.name if network else symbol,
            "is_token": False,
            "contract_address": None,
        }

    def _envelope(self, event: WebhookEventKind, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "event": event.value,
            "timestamp": int(utc_now().timestamp()),
            "data": data,
        }

    def build_transaction_payload(
        self,
        transaction: Transaction,
        address: Optional[DerivedAddress],
        event: WebhookEventKind,
    ) -> Dict[str, Any]:
        return self._envelope(event, {
            "transaction_id": transaction.transaction_id,
            "txid": transaction.txid,
            "user_id": transaction.owner_id,
            "cryptocurrency": self._cryptocurrency(transaction.chain),
            "address": {
                "address": transaction.to_address,
                "label": address.label if address else None,
                "derivation_path": address.derivation_path if address else None,
            },
            "amount": {
                "value": transaction.amount,
                "currency": transaction.chain,
                "usd_value": transaction.amount_usd,
            },
            "transaction": {
                "from_address": transaction.from_address,
                "confirmations": transaction.confirmations,
                "required_confirmations": transaction.required_confirmations,
                "status": transaction.status,
                "block_hash": transaction.block_hash,
                "block_height": transaction.block_height,
                "block_time": transaction.block_time,
                "fee": transaction.fee,
            },
            "created_at": transaction.created_at,
            "updated_at": transaction.updated_at,
        })

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(
        self,
        url: str,
        body: str,
        event: WebhookEventKind,
        secret: str,
        max_attempts: int,
        first_attempt_number: int = 1,
        on_attempt: Optional[Callable[[DeliveryAttempt], None]] = None,
    ) -> DeliveryResult:
        """POST ``body`` with doubling backoff until a 2xx or ``max_attempts``."""
        result = DeliveryResult(event=event.value)
        if max_attempts <= 0:
            result.skipped = True
            return result

        client = await self._get_client()
        signature = sign(body, secret)
        attempt_number = first_attempt_number

        async def post_once() -> None:
            nonlocal attempt_number
            headers = {
                "Content-Type": "application/json",
                "User-Agent": self._config.user_agent,
                "X-Webhook-Signature": signature,
                "X-Webhook-Event": event.value,
                "X-Webhook-Attempt": str(attempt_number),
            }
            attempt = DeliveryAttempt(event=event.value, url=url, attempt_number=attempt_number)
            attempt_number += 1
            start_time = time.time()

            try:
                response = await client.post(url, content=body, headers=headers)
            except httpx.HTTPError as e:
                attempt.duration_ms = int((time.time() - start_time) * 1000)
                attempt.error = f"{type(e).__name__}: {e}"
                self._record(result, attempt, on_attempt)
                raise DeliveryError(attempt.error, url=url) from e

            attempt.duration_ms = int((time.time() - start_time) * 1000)
            attempt.status_code = response.status_code
            attempt.success = 200 <= response.status_code < 300
            if not attempt.success:
                attempt.error = f"HTTP {response.status_code}"
            self._record(result, attempt, on_attempt)

            if not attempt.success:
                raise DeliveryError(attempt.error, url=url, status_code=response.status_code)

        config = webhook_retry_config(attempts=max_attempts, base_delay=self._config.base_delay)
        try:
            await retry_async(post_once, config=config)
            result.delivered = True
        except RetryExhausted as e:
            logger.error(
                f"Webhook {event.value} to {mask_url(url)} failed after "
                f"{e.stats.attempts} attempts: {result.last_error}"
            )
        return result

    @staticmethod
    def _record(
        result: DeliveryResult,
        attempt: DeliveryAttempt,
        on_attempt: Optional[Callable[[DeliveryAttempt], None]],
    ) -> None:
        result.attempts.append(attempt)
        if attempt.success:
            logger.info(f"Webhook {attempt.event} delivered to {mask_url(attempt.url)} "
                        f"(attempt {attempt.attempt_number}, {attempt.duration_ms}ms)")
        else:
            logger.warning(f"Webhook {attempt.event} attempt {attempt.attempt_number} "
                           f"to {mask_url(attempt.url)} failed: {attempt.error}")
        if on_attempt is not None:
            on_attempt(attempt)

    def _secret_for(self, subscriber) -> str:
        return subscriber.webhook_secret or self._settings.resolved_webhook_secret()

    async def notify(
        self,
        transaction: Transaction,
        event: WebhookEventKind,
    ) -> Optional[DeliveryResult]:
        """Deliver a transaction event to its owner.

        Returns None when the owner has notifications disabled or is not
        subscribed to ``event``.
        """
        subscriber = await self._ledger.subscriber_for(transaction.owner_id)
        if subscriber is None or not subscriber.wants(event):
            logger.debug(f"Owner {transaction.owner_id} not subscribed to {event.value}")
            return None

        delivery = transaction.delivery(event)
        if delivery.sent:
            logger.debug(f"{event.value} for {transaction.transaction_id} already sent")
            return DeliveryResult(event=event.value, delivered=True, skipped=True)

        remaining = self._config.max_total_attempts - delivery.attempts
        cycle_attempts = min(self._config.max_attempts, remaining)
        if cycle_attempts <= 0:
            logger.debug(f"{event.value} attempts exhausted for {transaction.transaction_id}")
            return DeliveryResult(event=event.value, skipped=True)

        address = await self._ledger.addresses.get(transaction.address_id)
        body = canonical_json(self.build_transaction_payload(transaction, address, event))

        def on_attempt(attempt: DeliveryAttempt) -> None:
            transaction.record_delivery_attempt(event, attempt.error)
            if attempt.success:
                transaction.mark_webhook_sent(event)

        result = await self._deliver(
            subscriber.webhook_url,
            body,
            event,
            self._secret_for(subscriber),
            max_attempts=cycle_attempts,
            first_attempt_number=delivery.attempts + 1,
            on_attempt=on_attempt,
        )
        await self._ledger.transactions.save(transaction)
        return result

    async def _notify_owner(
        self,
        owner_id: str,
        event: WebhookEventKind,
        data: Dict[str, Any],
    ) -> Optional[DeliveryResult]:
        subscriber = await self._ledger.subscriber_for(owner_id)
        if subscriber is None or not subscriber.wants(event):
            return None
        body = canonical_json(self._envelope(event, data))
        return await self._deliver(
            subscriber.webhook_url,
            body,
            event,
            self._secret_for(subscriber),
            max_attempts=self._config.max_attempts,
        )

    async def notify_balance_update(
        self,
        address: DerivedAddress,
        old_balance: Decimal,
        new_balance: Decimal,
    ) -> Optional[DeliveryResult]:
        return await self._notify_owner(address.owner_id, WebhookEventKind.BALANCE_UPDATE, {
            "user_id": address.owner_id,
            "cryptocurrency": self._cryptocurrency(address.chain),
            "address": address.address,
            "old_balance": old_balance,
            "new_balance": new_balance,
            "change": new_balance - old_balance,
        })

    async def notify_address_generated(self, address: DerivedAddress) -> Optional[DeliveryResult]:
        return await self._notify_owner(address.owner_id, WebhookEventKind.ADDRESS_GENERATED, {
            "user_id": address.owner_id,
            "address": {
                "address": address.address,
                "cryptocurrency": address.chain,
                "derivation_path": address.derivation_path,
                "address_index": address.address_index,
                "label": address.label,
            },
        })

    async def send_test(self, owner_id: str) -> DeliveryResult:
        """Send a ``webhook_test`` event regardless of event subscriptions."""
        subscriber = await self._ledger.subscriber_for(owner_id)
        if subscriber is None or not subscriber.webhook_url:
            raise GatewayValidationError("Webhook URL not configured", field="webhook_url")

        event = WebhookEventKind.WEBHOOK_TEST
        body = canonical_json(self._envelope(event, {
            "user_id": owner_id,
            "message": "This is a test webhook from CryptoGate",
            "webhook_url": subscriber.webhook_url,
            "configured_events": list(subscriber.webhook_events),
        }))
        return await self._deliver(
            subscriber.webhook_url,
            body,
            event,
            self._secret_for(subscriber),
            max_attempts=1,
        )

    async def retry_failed(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Redeliver every event whose earlier delivery cycles did not succeed.

        Each undelivered event of a transaction is retried on its own, oldest
        event first, until it is sent or its lifetime attempts run out.

        Returns:
            {"retried", "succeeded", "failed"}
        """
        results = {"retried": 0, "succeeded": 0, "failed": 0}
        max_total = self._config.max_total_attempts
        batch = await self._ledger.transactions_needing_webhook(
            limit or self._config.retry_batch_size,
            max_total,
        )

        for transaction in batch:
            for delivery in transaction.undelivered(max_total):
                try:
                    result = await self.notify(transaction, delivery.event)
                except Exception as e:
                    logger.error(
                        f"Webhook retry of {delivery.event.value} failed for "
                        f"{transaction.transaction_id}: {e}"
                    )
                    results["retried"] += 1
                    results["failed"] += 1
                    continue

                if result is None or result.skipped:
                    continue
                results["retried"] += 1
                if result.delivered:
                    results["succeeded"] += 1
                else:
                    results["failed"] += 1

        logger.info(
            f"Webhook retry pass: {results['retried']} retried, "
            f"{results['succeeded']} succeeded, {results['failed']} failed"
        )
        return results

    async def stats(self, owner_id: str) -> Dict[str, Any]:
        transactions = await self._ledger.transactions.list_for_owner(owner_id)
        total = len(transactions)
        sent = [t for t in transactions if t.webhook_sent]
        failed = [t for t in transactions if t.webhook_failed]
        sent_times = [t.webhook_sent_at for t in sent if t.webhook_sent_at is not None]

        return {
            "total_transactions": total,
            "webhooks_sent": len(sent),
            "webhooks_failed": len(failed),
            "success_rate": round(len(sent) / total * 100, 2) if total else 0.0,
            "last_webhook_sent": max(sent_times).isoformat() if sent_times else None,
        }


__all__ = [
    "NotificationDispatcher",
    "DeliveryAttempt",
    "DeliveryResult",
    "canonical_json",
    "sign",
    "verify_signature",
]
