"""
Address monitoring for CryptoGate.

Polls due monitoring jobs, records incoming transactions, advances
confirmation counts and expires overdue payment requests. A pass is invoked
by an external scheduler and runs to completion or until its wall-clock
budget is spent:

    1. due jobs, oldest-checked first       -> check_address()
    2. pending transactions                  -> update_pending_transactions()
    3. overdue payment requests              -> sweep_expired_payment_requests()

Errors inside one job are counted and logged; they never abort the pass.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Dict, Optional

from cryptogate_core.config import GatewaySettings, load_settings
from cryptogate_core.exceptions import GatewayNotFoundError
from cryptogate_core.ledger import AddressLedger
from cryptogate_core.models import (
    DerivedAddress,
    MonitoringJob,
    Transaction,
    TransactionStatus,
    WebhookEventKind,
    utc_now,
)
from cryptogate_core.rates import RateProvider, usd_value
from cryptogate_core.webhooks import NotificationDispatcher

from .adapter import AdapterFactory, ChainAdapter
from .config import ChainKind
from .transactions import ChainTransaction

logger = logging.getLogger(__name__)


class TransactionMonitor:
    """
    Detects and tracks inbound payments to derived addresses.

    Features:
    - Idempotent detection keyed on (chain, txid, address)
    - Threshold-derived status at insert time
    - Confirmation events only on an observed pending -> confirmed crossing
    - Cursor advances only after a completed check
    """

    def __init__(
        self,
        ledger: AddressLedger,
        adapters: AdapterFactory,
        dispatcher: Optional[NotificationDispatcher] = None,
        rates: Optional[RateProvider] = None,
        settings: Optional[GatewaySettings] = None,
    ) -> None:
        self._ledger = ledger
        self._adapters = adapters
        self._dispatcher = dispatcher
        self._rates = rates
        self._settings = settings or load_settings()
        self._config = self._settings.monitoring

    @property
    def check_interval(self) -> timedelta:
        return timedelta(minutes=self._config.check_interval_minutes)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_pass(
        self,
        limit: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, int]:
        """Run one monitoring pass.

        Args:
            limit: Maximum number of jobs to check
            timeout: Wall-clock budget in seconds for the whole pass. Job checks
                and confirmation re-checks stop cleanly after the current item
                once it is spent; the expiry sweep makes no upstream calls and
                always runs

        Returns:
            {"checked", "new_transactions", "updated_transactions", "errors"}
        """
        limit = limit or self._config.default_limit
        budget = timeout if timeout is not None else self._config.pass_timeout_seconds
        started = time.monotonic()

        results = {"checked": 0, "new_transactions": 0, "updated_transactions": 0, "errors": 0}
        jobs = await self._ledger.due_jobs(utc_now(), self.check_interval, limit)
        logger.info(f"Monitoring pass: {len(jobs)} address(es) due")

        for position, job in enumerate(jobs):
            if time.monotonic() - started >= budget:
                logger.warning(
                    f"Monitoring pass budget of {budget}s spent; "
                    f"{len(jobs) - position} job(s) left for the next pass"
                )
                break

            try:
                results["new_transactions"] += await self.check_address(job)
                results["checked"] += 1
            except Exception as e:
                results["errors"] += 1
                logger.error(f"Address monitoring failed for {job.chain} {job.address}: {e}")

            if position < len(jobs) - 1 and self._config.request_delay_seconds > 0:
                await asyncio.sleep(self._config.request_delay_seconds)

        remaining = max(0.0, budget - (time.monotonic() - started))
        pending = await self.update_pending_transactions(timeout=remaining)
        results["updated_transactions"] = pending["updated"]
        results["errors"] += pending["errors"]

        await self.sweep_expired_payment_requests()

        logger.info(
            f"Monitoring pass done in {time.monotonic() - started:.1f}s: "
            f"{results['checked']} checked, {results['new_transactions']} new, "
            f"{results['updated_transactions']} updated, {results['errors']} errors"
        )
        return results

    async def monitor_owner_addresses(self, owner_id: str) -> Dict[str, int]:
        """Check every active address of one owner, due or not."""
        results = {"checked": 0, "new_transactions": 0, "errors": 0}
        for job in await self._ledger.jobs.list_for_owner(owner_id, active_only=True):
            try:
                results["new_transactions"] += await self.check_address(job)
                results["checked"] += 1
            except Exception as e:
                results["errors"] += 1
                logger.error(f"Address monitoring failed for {job.chain} {job.address}: {e}")
        return results

    # ------------------------------------------------------------------
    # Single address
    # ------------------------------------------------------------------

    async def check_address(self, job: MonitoringJob) -> int:
        """Refresh balance and record new incoming transactions for one job.

        Returns:
            Number of transactions recorded

        Raises:
            ChainError: If the upstream lookups fail; the job cursor is left as is
        """
        address = await self._ledger.addresses.get(job.address_id)
        if address is None:
            raise GatewayNotFoundError("DerivedAddress", job.address_id)

        adapter = self._adapters.create(job.chain)
        await self._refresh_balance(adapter, address)

        created = 0
        if adapter.kind == ChainKind.PRIVACY:
            logger.debug(f"{job.chain} does not expose incoming transfers; balance only")
        else:
            history = await adapter.list_recent_transactions(
                address.address, page=1, page_size=self._config.history_page_size
            )
            for tx in history:
                if await self._ledger.transactions.exists(job.chain, tx.txid, address.address):
                    continue
                if not adapter.is_incoming(tx, address.address):
                    continue
                if await self._record_incoming(adapter, address, tx):
                    created += 1

        height, block_hash = await adapter.get_chain_tip()
        job.mark_checked(utc_now(), block_hash=block_hash, block_height=height)
        await self._ledger.jobs.save(job)
        return created

    async def _refresh_balance(self, adapter: ChainAdapter, address: DerivedAddress) -> None:
        balance = await adapter.fetch_balance(address.address)
        previous = address.update_balance(balance)
        await self._ledger.addresses.save(address)

        if balance != previous:
            logger.info(f"Balance of {address.chain} {address.address}: {previous} -> {balance}")
            if self._dispatcher is not None:
                try:
                    await self._dispatcher.notify_balance_update(address, previous, balance)
                except Exception as e:
                    logger.error(f"balance_update notification failed for {address.address_id}: {e}")

    async def _record_incoming(
        self,
        adapter: ChainAdapter,
        address: DerivedAddress,
        tx: ChainTransaction,
    ) -> bool:
        amount = adapter.incoming_amount(tx, address.address)
        transaction = Transaction.detected(
            owner_id=address.owner_id,
            address_id=address.address_id,
            chain=address.chain,
            txid=tx.txid,
            to_address=address.address,
            amount=amount,
            amount_usd=await usd_value(self._rates, address.chain, amount),
            required_confirmations=adapter.config.min_confirmations,
            confirmations=tx.confirmations,
            from_address=adapter.sender_of(tx),
            block_hash=tx.block_hash,
            block_height=tx.block_height,
            block_time=tx.block_time,
            fee=adapter.to_decimal(tx.fee_minor) if tx.fee_minor is not None else None,
            raw=tx.raw,
        )

        transaction, created = await self._ledger.record_transaction(transaction)
        if not created:
            return False

        logger.info(
            f"New transaction {tx.txid}: {amount} {address.chain} to {address.address} "
            f"({transaction.confirmations}/{transaction.required_confirmations} confirmations)"
        )
        await self._notify(transaction, WebhookEventKind.PAYMENT_RECEIVED)
        if transaction.status == TransactionStatus.CONFIRMED:
            await self._notify(transaction, WebhookEventKind.PAYMENT_CONFIRMED)
        return True

    # ------------------------------------------------------------------
    # Pending transactions
    # ------------------------------------------------------------------

    async def update_pending_transactions(
        self,
        limit: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, int]:
        """Re-fetch confirmations for a batch of pending transactions.

        Args:
            limit: Maximum number of transactions to re-check
            timeout: Wall-clock budget in seconds; checked before each lookup

        Returns:
            {"updated", "errors"}
        """
        results = {"updated": 0, "errors": 0}
        batch = await self._ledger.pending_transactions(limit or self._config.pending_batch_size)
        started = time.monotonic()

        for position, transaction in enumerate(batch):
            if timeout is not None and time.monotonic() - started >= timeout:
                logger.warning(
                    f"Confirmation re-check budget spent; "
                    f"{len(batch) - position} transaction(s) left for the next pass"
                )
                break

            try:
                if await self._refresh_confirmations(transaction):
                    results["updated"] += 1
            except Exception as e:
                results["errors"] += 1
                logger.error(f"Failed to update confirmations for {transaction.txid}: {e}")

            if position < len(batch) - 1 and self._config.request_delay_seconds > 0:
                await asyncio.sleep(self._config.request_delay_seconds)

        return results

    async def _refresh_confirmations(self, transaction: Transaction) -> bool:
        adapter = self._adapters.create(transaction.chain)
        confirmations = await adapter.fetch_confirmations(transaction.txid)
        if confirmations == transaction.confirmations:
            return False

        previous = transaction.confirmations
        crossed = transaction.apply_confirmations(confirmations)
        await self._ledger.transactions.save(transaction)
        logger.info(f"Transaction {transaction.txid} confirmations {previous} -> {confirmations}")

        if crossed:
            await self._notify(transaction, WebhookEventKind.PAYMENT_CONFIRMED)
        return True

    async def sweep_expired_payment_requests(self) -> int:
        expired = await self._ledger.expire_payment_requests(utc_now())
        if expired:
            logger.info(f"Expired {expired} payment request(s)")
        return expired

    async def _notify(self, transaction: Transaction, event: WebhookEventKind) -> None:
        if self._dispatcher is None:
            return
        try:
            await self._dispatcher.notify(transaction, event)
        except Exception as e:
            logger.error(f"{event.value} notification failed for {transaction.transaction_id}: {e}")


__all__ = ["TransactionMonitor"]
