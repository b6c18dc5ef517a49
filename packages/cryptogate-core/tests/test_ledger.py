"""
Comprehensive tests for cryptogate_core.ledger module.

Tests cover:
- Address index sequencing
- Uniqueness constraints and conflicts
- Address registration with rollback
- Due job ordering
- Idempotent transaction recording
- Payment request expiry and pool reservation
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from cryptogate_core.exceptions import GatewayNotFoundError, LedgerConflictError
from cryptogate_core.ledger import AddressLedger
from cryptogate_core.models import (
    DerivedAddress,
    PaymentRequest,
    PaymentRequestStatus,
    PoolAddress,
    Transaction,
    TransactionStatus,
    Wallet,
    WebhookEventKind,
    utc_now,
)


def make_address(index: int = 0, **overrides) -> DerivedAddress:
    fields = dict(
        wallet_id="wal_1",
        owner_id="user_1",
        chain="ETH",
        address_index=index,
        address=f"0x{index:040x}",
        derivation_path=f"m/44'/60'/0'/0/{index}",
        public_key="02" + "00" * 32,
    )
    fields.update(overrides)
    return DerivedAddress(**fields)


def make_transaction(**overrides) -> Transaction:
    fields = dict(
        owner_id="user_1",
        address_id="addr_1",
        chain="ETH",
        txid="0x" + "11" * 32,
        to_address="0x" + "00" * 20,
        amount=Decimal("1"),
        required_confirmations=12,
    )
    fields.update(overrides)
    return Transaction(**fields)


class TestWallets:
    """Tests for wallet storage."""

    @pytest.mark.asyncio
    async def test_one_wallet_per_owner(self, ledger):
        """Should reject a second wallet for the same owner."""
        await ledger.wallets.insert(Wallet(owner_id="user_1", encrypted_seed="s", master_public_key="x"))

        with pytest.raises(LedgerConflictError):
            await ledger.wallets.insert(Wallet(owner_id="user_1", encrypted_seed="t", master_public_key="y"))

    @pytest.mark.asyncio
    async def test_get_by_owner(self, ledger):
        """Should find the wallet by owner."""
        wallet = await ledger.wallets.insert(
            Wallet(owner_id="user_2", encrypted_seed="s", master_public_key="x")
        )

        assert await ledger.wallets.get_by_owner("user_2") is wallet
        assert await ledger.wallets.get_by_owner("nobody") is None


class TestAddresses:
    """Tests for derived address storage."""

    @pytest.mark.asyncio
    async def test_next_index_sequence(self, ledger):
        """Should return 0 first, then max + 1."""
        assert await ledger.next_address_index("wal_1", "ETH") == 0

        await ledger.register_address(make_address(0))
        await ledger.register_address(make_address(1))

        assert await ledger.next_address_index("wal_1", "ETH") == 2
        assert await ledger.next_address_index("wal_1", "BTC") == 0

    @pytest.mark.asyncio
    async def test_index_conflict(self, ledger):
        """Should reject a duplicate (wallet, chain, index)."""
        await ledger.register_address(make_address(0))

        with pytest.raises(LedgerConflictError):
            await ledger.addresses.insert(make_address(0, address="0xother"))

    @pytest.mark.asyncio
    async def test_address_owned_by_one_wallet(self, ledger):
        """Should reject the same address string under another wallet."""
        await ledger.register_address(make_address(0))

        with pytest.raises(LedgerConflictError):
            await ledger.addresses.insert(
                make_address(5, wallet_id="wal_2", address=make_address(0).address)
            )

    @pytest.mark.asyncio
    async def test_token_shares_address_within_wallet(self, ledger):
        """Should allow an ETH address to be reused for a token chain."""
        await ledger.register_address(make_address(0))

        await ledger.register_address(make_address(0, chain="USDT"))

        assert await ledger.addresses.find(make_address(0).address, chain="USDT") is not None

    @pytest.mark.asyncio
    async def test_register_creates_job(self, ledger):
        """Should create exactly one monitoring job per address."""
        address, job = await ledger.register_address(make_address(0))

        assert job.address_id == address.address_id
        assert await ledger.jobs.get_for_address(address.address_id) is job

    @pytest.mark.asyncio
    async def test_register_rolls_back_on_job_failure(self):
        """Should remove the address if the job insert fails."""
        ledger = AddressLedger()
        ledger.jobs.insert = AsyncMock(side_effect=LedgerConflictError("MonitoringJob", "x"))
        address = make_address(0)

        with pytest.raises(LedgerConflictError):
            await ledger.register_address(address)

        assert await ledger.addresses.get(address.address_id) is None

    @pytest.mark.asyncio
    async def test_register_next_concurrent(self, ledger):
        """Should hand concurrent callers consecutive indexes."""
        results = await asyncio.gather(*(
            ledger.register_next_address("wal_1", "ETH", make_address) for _ in range(4)
        ))

        assert sorted(address.address_index for address, _ in results) == [0, 1, 2, 3]
        assert await ledger.next_address_index("wal_1", "ETH") == 4

    @pytest.mark.asyncio
    async def test_deactivate(self, ledger):
        """Should deactivate both address and job."""
        address, job = await ledger.register_address(make_address(0))

        assert await ledger.deactivate_address(address.address_id) is True

        assert address.is_active is False
        assert job.is_active is False
        assert await ledger.deactivate_address("missing") is False

    @pytest.mark.asyncio
    async def test_save_unknown_raises(self, ledger):
        """Should refuse to save an address that was never inserted."""
        with pytest.raises(GatewayNotFoundError):
            await ledger.addresses.save(make_address(9))


class TestDueJobs:
    """Tests for monitoring job selection."""

    @pytest.mark.asyncio
    async def test_never_checked_first_then_oldest(self, ledger):
        """Should order never-checked jobs before the oldest checked job."""
        now = utc_now()
        _, old = await ledger.register_address(make_address(0))
        _, older = await ledger.register_address(make_address(1))
        _, fresh = await ledger.register_address(make_address(2))
        _, never = await ledger.register_address(make_address(3))
        old.mark_checked(now - timedelta(minutes=10))
        older.mark_checked(now - timedelta(minutes=20))
        fresh.mark_checked(now)

        due = await ledger.due_jobs(now, timedelta(minutes=5), limit=10)

        assert [j.job_id for j in due] == [never.job_id, older.job_id, old.job_id]

    @pytest.mark.asyncio
    async def test_limit(self, ledger):
        """Should honor the limit."""
        for index in range(4):
            await ledger.register_address(make_address(index))

        assert len(await ledger.due_jobs(utc_now(), timedelta(minutes=5), limit=2)) == 2


class TestTransactions:
    """Tests for idempotent transaction recording."""

    @pytest.mark.asyncio
    async def test_duplicate_is_noop(self, ledger):
        """Should create once and report created=False afterwards."""
        _, created = await ledger.record_transaction(make_transaction())
        _, again = await ledger.record_transaction(make_transaction())

        assert created is True
        assert again is False
        assert len(await ledger.transactions.list_for_owner("user_1")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_inserts_create_one_row(self, ledger):
        """Should create a single row when two passes race."""
        results = await asyncio.gather(
            ledger.record_transaction(make_transaction()),
            ledger.record_transaction(make_transaction()),
        )

        assert sorted(created for _, created in results) == [False, True]

    @pytest.mark.asyncio
    async def test_same_txid_other_address_allowed(self, ledger):
        """Should key on the receiving address as well as the txid."""
        await ledger.record_transaction(make_transaction())
        _, created = await ledger.record_transaction(make_transaction(to_address="0x" + "ff" * 20))

        assert created is True

    @pytest.mark.asyncio
    async def test_pending_and_needing_webhook(self, ledger):
        """Should select pending rows and failed deliveries under the attempt cap."""
        pending = make_transaction()
        confirmed = make_transaction(
            txid="0x02", confirmations=12, status=TransactionStatus.CONFIRMED,
        )
        exhausted = make_transaction(txid="0x03")
        sent = make_transaction(txid="0x04", status=TransactionStatus.CONFIRMED)
        confirmed.record_delivery_attempt(WebhookEventKind.PAYMENT_CONFIRMED, "HTTP 500")
        for _ in range(5):
            exhausted.record_delivery_attempt(WebhookEventKind.PAYMENT_RECEIVED, "HTTP 500")
        sent.record_delivery_attempt(WebhookEventKind.PAYMENT_CONFIRMED)
        sent.mark_webhook_sent(WebhookEventKind.PAYMENT_CONFIRMED)
        for tx in (pending, confirmed, exhausted, sent):
            await ledger.record_transaction(tx)

        assert [t.txid for t in await ledger.pending_transactions(10)] == [pending.txid, exhausted.txid]
        needing = await ledger.transactions_needing_webhook(10, max_attempts=5)
        assert needing == [confirmed]

    @pytest.mark.asyncio
    async def test_needing_webhook_limit_skips_unattempted(self, ledger):
        """Should not let never-attempted rows fill the limit."""
        for index in range(3):
            await ledger.record_transaction(make_transaction(txid=f"0x1{index}"))
        failed = make_transaction(txid="0x20")
        failed.record_delivery_attempt(WebhookEventKind.PAYMENT_RECEIVED, "timeout")
        await ledger.record_transaction(failed)

        assert await ledger.transactions_needing_webhook(3, max_attempts=5) == [failed]


class TestPaymentRequests:
    """Tests for payment request storage and pool reservation."""

    def _request(self, minutes: int) -> PaymentRequest:
        return PaymentRequest(
            chain="BTC",
            amount=Decimal("0.01"),
            to_address="bc1qpool",
            pool_address_id="pool_1",
            required_confirmations=2,
            expires_at=utc_now() + timedelta(minutes=minutes),
        )

    @pytest.mark.asyncio
    async def test_expire_overdue(self, ledger):
        """Should expire only pending, overdue requests."""
        overdue = await ledger.payment_requests.insert(self._request(minutes=5))
        current = await ledger.payment_requests.insert(self._request(minutes=60))
        done = await ledger.payment_requests.insert(self._request(minutes=5))
        done.mark_confirmed()

        expired = await ledger.expire_payment_requests(utc_now() + timedelta(minutes=6))

        assert expired == 1
        assert overdue.status == PaymentRequestStatus.EXPIRED
        assert current.status == PaymentRequestStatus.PENDING
        assert done.status == PaymentRequestStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_pool_reserve_once(self, ledger):
        """Should hand out each pool address once, oldest first."""
        first = await ledger.pool.add(PoolAddress(chain="BTC", address="bc1qfirst"))
        await ledger.pool.add(PoolAddress(chain="BTC", address="bc1qsecond"))

        reserved = await ledger.reserve_pool_address("BTC", "TX_1")

        assert reserved is first
        assert reserved.is_used and reserved.reserved_for == "TX_1"
        assert await ledger.pool.available("BTC") == 1
        assert (await ledger.reserve_pool_address("BTC", "TX_2")).address == "bc1qsecond"
        assert await ledger.reserve_pool_address("BTC", "TX_3") is None

    @pytest.mark.asyncio
    async def test_pool_duplicate(self, ledger):
        """Should reject the same address twice for a chain."""
        await ledger.pool.add(PoolAddress(chain="LTC", address="ltc1qsame"))

        with pytest.raises(LedgerConflictError):
            await ledger.pool.add(PoolAddress(chain="LTC", address="ltc1qsame"))
