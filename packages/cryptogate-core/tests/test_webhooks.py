"""
Comprehensive tests for cryptogate_core.webhooks module.

Tests cover:
- Signed delivery headers and canonical body
- Retry with attempt accounting on the transaction
- Lifetime attempt cap across cycles
- Subscription filtering
- Signature verification with replay tolerance
- Retry pass, statistics and test events
"""
from __future__ import annotations

import json
import time
from decimal import Decimal

import httpx
import pytest

from cryptogate_core.exceptions import GatewayValidationError
from cryptogate_core.models import DerivedAddress, Subscriber, Transaction, WebhookEventKind
from cryptogate_core.webhooks import (
    NotificationDispatcher,
    canonical_json,
    sign,
    verify_signature,
)

WEBHOOK_URL = "https://merchant.example/hooks/cryptogate"


class Recorder:
    """MockTransport handler that replays a fixed sequence of status codes."""

    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"ok": status < 300})


def make_dispatcher(ledger, settings, recorder) -> NotificationDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return NotificationDispatcher(ledger, settings, http_client=client)


async def subscribe(ledger, events=None, secret=None) -> Subscriber:
    subscriber = Subscriber(
        owner_id="user_1",
        webhook_url=WEBHOOK_URL,
        webhook_enabled=True,
        webhook_events=events if events is not None else [
            "payment_received", "payment_confirmed", "balance_update", "address_generated",
        ],
        webhook_secret=secret,
    )
    await ledger.subscribers.save(subscriber)
    return subscriber


async def record(ledger, **overrides) -> Transaction:
    fields = dict(
        owner_id="user_1",
        address_id="addr_1",
        chain="BTC",
        txid="f" * 64,
        to_address="bc1qreceiver",
        amount=Decimal("0.001"),
        required_confirmations=3,
    )
    fields.update(overrides)
    transaction, _ = await ledger.record_transaction(Transaction(**fields))
    return transaction


class TestSignatures:
    """Tests for body signing and verification."""

    def test_canonical_json_is_sorted_and_compact(self):
        """Should sort keys and drop whitespace."""
        body = canonical_json({"b": Decimal("1.50"), "a": [1, 2]})

        assert body == '{"a":[1,2],"b":"1.50"}'

    def test_verify_fresh_signature(self):
        """Should accept a matching signature with a fresh timestamp."""
        now = int(time.time())
        body = canonical_json({"event": "payment_received", "timestamp": now})

        assert verify_signature(body, sign(body, "whsec"), "whsec", now=now + 10)

    def test_reject_tampered_body(self):
        """Should reject a body that does not match the signature."""
        body = canonical_json({"timestamp": 1})

        assert not verify_signature(body + " ", sign(body, "whsec"), "whsec", now=1)

    def test_reject_replay(self):
        """Should reject a body older than the tolerance."""
        body = canonical_json({"timestamp": 1_000})

        assert not verify_signature(body, sign(body, "k"), "k", tolerance_seconds=300, now=1_400)
        assert verify_signature(body, sign(body, "k"), "k", tolerance_seconds=300, now=1_300)

    def test_reject_missing_timestamp(self):
        """Should reject a correctly signed body without a timestamp."""
        body = canonical_json({"event": "x"})

        assert not verify_signature(body, sign(body, "k"), "k")


class TestNotify:
    """Tests for transaction event delivery."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self, ledger, settings):
        """Should POST three times on 500, 500, 200 and record the outcome."""
        await subscribe(ledger)
        transaction = await record(ledger)
        recorder = Recorder([500, 500, 200])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            result = await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)

        assert result.delivered is True
        assert len(recorder.requests) == 3
        delivery = transaction.deliveries[WebhookEventKind.PAYMENT_RECEIVED]
        assert transaction.webhook_sent is True
        assert delivery.attempts == 3
        assert delivery.last_error is None
        assert [r.headers["X-Webhook-Attempt"] for r in recorder.requests] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_headers_and_signature(self, ledger, settings):
        """Should sign the exact body with the subscriber secret."""
        await subscribe(ledger, secret="sub_secret")
        transaction = await record(ledger, amount_usd=Decimal("60.12"))
        recorder = Recorder([200])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)

        request = recorder.requests[0]
        body = request.content.decode()
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == "CryptoGate-Webhook/1.0"
        assert request.headers["X-Webhook-Event"] == "payment_received"
        assert request.headers["X-Webhook-Signature"] == sign(body, "sub_secret")
        assert verify_signature(body, request.headers["X-Webhook-Signature"], "sub_secret")

        payload = json.loads(body)
        assert payload["event"] == "payment_received"
        assert payload["data"]["txid"] == transaction.txid
        assert payload["data"]["amount"] == {"value": "0.001", "currency": "BTC", "usd_value": "60.12"}
        assert payload["data"]["cryptocurrency"]["name"] == "Bitcoin"
        assert payload["data"]["transaction"]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_falls_back_to_global_secret(self, ledger, settings):
        """Should sign with the configured webhook secret when the subscriber has none."""
        await subscribe(ledger)
        transaction = await record(ledger)
        recorder = Recorder([200])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)

        request = recorder.requests[0]
        assert request.headers["X-Webhook-Signature"] == sign(request.content.decode(), "whsec_test")

    @pytest.mark.asyncio
    async def test_unsubscribed_event_not_sent(self, ledger, settings):
        """Should return None without any POST for unsubscribed events."""
        await subscribe(ledger, events=["payment_confirmed"])
        transaction = await record(ledger)
        recorder = Recorder([])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            result = await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)

        assert result is None
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_attempt_cap_across_cycles(self, ledger, settings):
        """Should stop after five POSTs in total for one event."""
        await subscribe(ledger)
        transaction = await record(ledger)
        recorder = Recorder([500] * 10)

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            first = await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)
            second = await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)
            third = await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)

        assert first.delivered is False and len(first.attempts) == 3
        assert first.last_error == "HTTP 500"
        assert len(second.attempts) == 2
        assert third.skipped is True
        assert len(recorder.requests) == 5
        delivery = transaction.deliveries[WebhookEventKind.PAYMENT_RECEIVED]
        assert delivery.attempts == 5
        assert delivery.last_error == "HTTP 500"

    @pytest.mark.asyncio
    async def test_new_event_gets_fresh_attempts(self, ledger, settings):
        """Should deliver confirmed even after received exhausted its attempts."""
        await subscribe(ledger)
        transaction = await record(ledger)
        recorder = Recorder([500] * 5 + [200])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)
            await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)
            result = await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_CONFIRMED)

        assert result.delivered is True
        assert transaction.deliveries[WebhookEventKind.PAYMENT_CONFIRMED].attempts == 1
        assert recorder.requests[-1].headers["X-Webhook-Attempt"] == "1"
        received = transaction.deliveries[WebhookEventKind.PAYMENT_RECEIVED]
        assert received.attempts == 5 and received.sent is False

    @pytest.mark.asyncio
    async def test_later_event_keeps_earlier_failure(self, ledger, settings):
        """Should keep a failed received delivery pending after confirmed is sent."""
        await subscribe(ledger)
        transaction = await record(ledger)
        recorder = Recorder([500, 500, 500, 200, 200])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)
            await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_CONFIRMED)

            assert transaction.webhook_sent is False
            assert await ledger.transactions_needing_webhook(10, 5) == [transaction]

            results = await dispatcher.retry_failed()

        assert results == {"retried": 1, "succeeded": 1, "failed": 0}
        assert recorder.requests[-1].headers["X-Webhook-Event"] == "payment_received"
        assert recorder.requests[-1].headers["X-Webhook-Attempt"] == "4"
        assert transaction.webhook_sent is True

    @pytest.mark.asyncio
    async def test_already_sent_not_resent(self, ledger, settings):
        """Should skip an event that was already delivered."""
        await subscribe(ledger)
        transaction = await record(ledger)
        recorder = Recorder([200, 200])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)
            again = await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)

        assert again.skipped is True
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_network_error_recorded(self, ledger, settings):
        """Should count transport failures as attempts."""
        await subscribe(ledger)
        transaction = await record(ledger)

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = NotificationDispatcher(ledger, settings, http_client=client)
        result = await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)
        await client.aclose()

        delivery = transaction.deliveries[WebhookEventKind.PAYMENT_RECEIVED]
        assert result.delivered is False
        assert delivery.attempts == 3
        assert "ConnectError" in delivery.last_error


class TestOwnerEvents:
    """Tests for balance, address and test events."""

    def _address(self) -> DerivedAddress:
        return DerivedAddress(
            wallet_id="wal_1",
            owner_id="user_1",
            chain="ETH",
            address_index=2,
            address="0x" + "ab" * 20,
            derivation_path="m/44'/60'/0'/0/2",
            public_key="02" + "00" * 32,
            label="deposits",
        )

    @pytest.mark.asyncio
    async def test_balance_update_payload(self, ledger, settings):
        """Should report old, new and change."""
        await subscribe(ledger)
        recorder = Recorder([200])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            result = await dispatcher.notify_balance_update(self._address(), Decimal("1"), Decimal("1.25"))

        assert result.delivered is True
        data = json.loads(recorder.requests[0].content)["data"]
        assert data["old_balance"] == "1"
        assert data["new_balance"] == "1.25"
        assert data["change"] == "0.25"

    @pytest.mark.asyncio
    async def test_address_generated_payload(self, ledger, settings):
        """Should describe the new address."""
        await subscribe(ledger)
        recorder = Recorder([200])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            await dispatcher.notify_address_generated(self._address())

        payload = json.loads(recorder.requests[0].content)
        assert payload["event"] == "address_generated"
        assert payload["data"]["address"]["address_index"] == 2
        assert payload["data"]["address"]["label"] == "deposits"

    @pytest.mark.asyncio
    async def test_send_test_ignores_subscriptions(self, ledger, settings):
        """Should send webhook_test once even with no subscribed events."""
        await subscribe(ledger, events=[])
        recorder = Recorder([500])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            result = await dispatcher.send_test("user_1")

        assert result.delivered is False
        assert len(recorder.requests) == 1
        assert recorder.requests[0].headers["X-Webhook-Event"] == "webhook_test"

    @pytest.mark.asyncio
    async def test_send_test_requires_url(self, ledger, settings):
        """Should reject owners without a webhook URL."""
        dispatcher = NotificationDispatcher(ledger, settings, http_client=httpx.AsyncClient())

        with pytest.raises(GatewayValidationError):
            await dispatcher.send_test("user_1")
        await dispatcher._http_client.aclose()


class TestRetryAndStats:
    """Tests for the retry pass and delivery statistics."""

    @pytest.mark.asyncio
    async def test_retry_failed_redelivers(self, ledger, settings):
        """Should retry each undelivered event of a transaction."""
        await subscribe(ledger)
        transaction = await record(ledger)
        recorder = Recorder([500, 500, 500, 200])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            await dispatcher.notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)
            results = await dispatcher.retry_failed()

        assert results == {"retried": 1, "succeeded": 1, "failed": 0}
        assert transaction.webhook_sent is True
        assert transaction.deliveries[WebhookEventKind.PAYMENT_RECEIVED].attempts == 4
        assert recorder.requests[-1].headers["X-Webhook-Attempt"] == "4"

    @pytest.mark.asyncio
    async def test_retry_failed_skips_exhausted(self, ledger, settings):
        """Should not select transactions at the attempt cap."""
        await subscribe(ledger)
        transaction = await record(ledger)
        for _ in range(5):
            transaction.record_delivery_attempt(WebhookEventKind.PAYMENT_RECEIVED, "HTTP 500")
        recorder = Recorder([])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            results = await dispatcher.retry_failed()

        assert results["retried"] == 0
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_retry_batch_not_filled_by_unattempted(self, ledger, settings):
        """Should reach a failed delivery behind older never-attempted transactions."""
        await subscribe(ledger)
        for index in range(3):
            await record(ledger, owner_id="user_2", txid=f"{index}" * 64)
        failing = await record(ledger, txid="e" * 64)
        recorder = Recorder([500, 500, 500, 200])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            await dispatcher.notify(failing, WebhookEventKind.PAYMENT_RECEIVED)
            results = await dispatcher.retry_failed(limit=3)

        assert results == {"retried": 1, "succeeded": 1, "failed": 0}
        assert failing.webhook_sent is True
        assert len(recorder.requests) == 4

    @pytest.mark.asyncio
    async def test_stats(self, ledger, settings):
        """Should summarise sent and failed deliveries per owner."""
        await subscribe(ledger)
        delivered = await record(ledger, txid="a" * 64)
        failing = await record(ledger, txid="b" * 64)
        await record(ledger, txid="c" * 64)
        recorder = Recorder([200, 500, 500, 500])

        async with make_dispatcher(ledger, settings, recorder) as dispatcher:
            await dispatcher.notify(delivered, WebhookEventKind.PAYMENT_RECEIVED)
            await dispatcher.notify(failing, WebhookEventKind.PAYMENT_RECEIVED)
            stats = await dispatcher.stats("user_1")

        assert stats["total_transactions"] == 3
        assert stats["webhooks_sent"] == 1
        assert stats["webhooks_failed"] == 1
        assert stats["success_rate"] == 33.33
        assert stats["last_webhook_sent"] is not None
