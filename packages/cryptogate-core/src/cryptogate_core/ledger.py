"""
AddressLedger: persisted state of wallets, addresses, monitoring cursors,
transactions and payment requests.

Each entity has its own repository interface. The in-memory implementations
here are the reference behaviour and what the test-suite runs against; a
database-backed implementation must honour the same uniqueness constraints:

- one Wallet per owner
- DerivedAddress unique on (wallet, chain, address_index)
- an address string belongs to a single wallet
- Transaction unique on (chain, txid, to_address)

Constraint violations raise :class:`LedgerConflictError`. Monitoring flows
treat that as a benign no-op so that two overlapping passes can never create
duplicate rows or duplicate notifications.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from .exceptions import GatewayNotFoundError, LedgerConflictError
from .models import (
    DerivedAddress,
    MonitoringJob,
    PaymentRequest,
    PaymentRequestStatus,
    PoolAddress,
    Subscriber,
    Transaction,
    TransactionStatus,
    Wallet,
    utc_now,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Repository interfaces
# =============================================================================

class WalletRepository(Protocol):
    async def insert(self, wallet: Wallet) -> Wallet: ...

    async def get(self, wallet_id: str) -> Optional[Wallet]: ...

    async def get_by_owner(self, owner_id: str) -> Optional[Wallet]: ...


class AddressRepository(Protocol):
    async def insert(self, address: DerivedAddress) -> DerivedAddress: ...

    async def remove(self, address_id: str) -> None: ...

    async def get(self, address_id: str) -> Optional[DerivedAddress]: ...

    async def find(self, address: str, chain: Optional[str] = None) -> Optional[DerivedAddress]: ...

    async def list_for_wallet(
        self,
        wallet_id: str,
        chain: Optional[str] = None,
        active_only: bool = False,
    ) -> List[DerivedAddress]: ...

    async def max_index(self, wallet_id: str, chain: str) -> Optional[int]: ...

    async def save(self, address: DerivedAddress) -> None: ...


class MonitoringJobRepository(Protocol):
    async def insert(self, job: MonitoringJob) -> MonitoringJob: ...

    async def get(self, job_id: str) -> Optional[MonitoringJob]: ...

    async def get_for_address(self, address_id: str) -> Optional[MonitoringJob]: ...

    async def due(self, now: datetime, interval: timedelta, limit: int) -> List[MonitoringJob]: ...

    async def list_for_owner(self, owner_id: str, active_only: bool = True) -> List[MonitoringJob]: ...

    async def save(self, job: MonitoringJob) -> None: ...


class TransactionRepository(Protocol):
    async def insert(self, transaction: Transaction) -> Transaction: ...

    async def exists(self, chain: str, txid: str, to_address: str) -> bool: ...

    async def get(self, transaction_id: str) -> Optional[Transaction]: ...

    async def save(self, transaction: Transaction) -> None: ...

    async def pending(self, limit: int) -> List[Transaction]: ...

    async def needing_webhook(self, limit: int, max_attempts: int) -> List[Transaction]: ...

    async def list_for_owner(self, owner_id: str) -> List[Transaction]: ...


class PaymentRequestRepository(Protocol):
    async def insert(self, request: PaymentRequest) -> PaymentRequest: ...

    async def get(self, request_id: str) -> Optional[PaymentRequest]: ...

    async def save(self, request: PaymentRequest) -> None: ...

    async def pending(self, limit: int) -> List[PaymentRequest]: ...

    async def expire_overdue(self, now: datetime) -> int: ...


class AddressPoolRepository(Protocol):
    async def add(self, pool_address: PoolAddress) -> PoolAddress: ...

    async def reserve(self, chain: str, request_id: str) -> Optional[PoolAddress]: ...

    async def available(self, chain: str) -> int: ...


class SubscriberRepository(Protocol):
    async def get(self, owner_id: str) -> Optional[Subscriber]: ...

    async def save(self, subscriber: Subscriber) -> None: ...


# =============================================================================
# In-memory implementations
# =============================================================================

class InMemoryWalletRepository:
    def __init__(self) -> None:
        self._wallets: Dict[str, Wallet] = {}
        self._lock = asyncio.Lock()

    async def insert(self, wallet: Wallet) -> Wallet:
        async with self._lock:
            if any(w.owner_id == wallet.owner_id for w in self._wallets.values()):
                raise LedgerConflictError("Wallet", wallet.owner_id)
            self._wallets[wallet.wallet_id] = wallet
        return wallet

    async def get(self, wallet_id: str) -> Optional[Wallet]:
        return self._wallets.get(wallet_id)

    async def get_by_owner(self, owner_id: str) -> Optional[Wallet]:
        for wallet in self._wallets.values():
            if wallet.owner_id == owner_id:
                return wallet
        return None


class InMemoryAddressRepository:
    def __init__(self) -> None:
        self._addresses: Dict[str, DerivedAddress] = {}
        self._lock = asyncio.Lock()

    async def insert(self, address: DerivedAddress) -> DerivedAddress:
        async with self._lock:
            for existing in self._addresses.values():
                if (
                    existing.wallet_id == address.wallet_id
                    and existing.chain == address.chain
                    and existing.address_index == address.address_index
                ):
                    raise LedgerConflictError(
                        "DerivedAddress",
                        (address.wallet_id, address.chain, address.address_index),
                    )
                if existing.address == address.address and (
                    existing.wallet_id != address.wallet_id or existing.chain == address.chain
                ):
                    raise LedgerConflictError("DerivedAddress", address.address)
            self._addresses[address.address_id] = address
        return address

    async def remove(self, address_id: str) -> None:
        async with self._lock:
            self._addresses.pop(address_id, None)

    async def get(self, address_id: str) -> Optional[DerivedAddress]:
        return self._addresses.get(address_id)

    async def find(self, address: str, chain: Optional[str] = None) -> Optional[DerivedAddress]:
        for candidate in self._addresses.values():
            if candidate.address == address and (chain is None or candidate.chain == chain):
                return candidate
        return None

    async def list_for_wallet(
        self,
        wallet_id: str,
        chain: Optional[str] = None,
        active_only: bool = False,
    ) -> List[DerivedAddress]:
        result = [
            a for a in self._addresses.values()
            if a.wallet_id == wallet_id
            and (chain is None or a.chain == chain)
            and (a.is_active or not active_only)
        ]
        return sorted(result, key=lambda a: (a.chain, a.address_index))

    async def max_index(self, wallet_id: str, chain: str) -> Optional[int]:
        indexes = [
            a.address_index for a in self._addresses.values()
            if a.wallet_id == wallet_id and a.chain == chain
        ]
        return max(indexes) if indexes else None

    async def save(self, address: DerivedAddress) -> None:
        if address.address_id not in self._addresses:
            raise GatewayNotFoundError("DerivedAddress", address.address_id)
        self._addresses[address.address_id] = address


class InMemoryMonitoringJobRepository:
    def __init__(self) -> None:
        self._jobs: Dict[str, MonitoringJob] = {}
        self._lock = asyncio.Lock()

    async def insert(self, job: MonitoringJob) -> MonitoringJob:
        async with self._lock:
            if any(j.address_id == job.address_id for j in self._jobs.values()):
                raise LedgerConflictError("MonitoringJob", job.address_id)
            self._jobs[job.job_id] = job
        return job

    async def get(self, job_id: str) -> Optional[MonitoringJob]:
        return self._jobs.get(job_id)

    async def get_for_address(self, address_id: str) -> Optional[MonitoringJob]:
        for job in self._jobs.values():
            if job.address_id == address_id:
                return job
        return None

    async def due(self, now: datetime, interval: timedelta, limit: int) -> List[MonitoringJob]:
        due = [j for j in self._jobs.values() if j.is_due(now, interval)]
        # Never-checked first, then oldest check first
        due.sort(key=lambda j: (
            j.last_checked_at is not None,
            j.last_checked_at or j.created_at,
            j.created_at,
        ))
        return due[:limit]

    async def list_for_owner(self, owner_id: str, active_only: bool = True) -> List[MonitoringJob]:
        return [
            j for j in self._jobs.values()
            if j.owner_id == owner_id and (j.is_active or not active_only)
        ]

    async def save(self, job: MonitoringJob) -> None:
        if job.job_id not in self._jobs:
            raise GatewayNotFoundError("MonitoringJob", job.job_id)
        self._jobs[job.job_id] = job


class InMemoryTransactionRepository:
    def __init__(self) -> None:
        self._transactions: Dict[str, Transaction] = {}
        self._keys: Dict[Tuple[str, str, str], str] = {}
        self._lock = asyncio.Lock()

    async def insert(self, transaction: Transaction) -> Transaction:
        async with self._lock:
            if transaction.key in self._keys:
                raise LedgerConflictError("Transaction", transaction.key)
            self._keys[transaction.key] = transaction.transaction_id
            self._transactions[transaction.transaction_id] = transaction
        return transaction

    async def exists(self, chain: str, txid: str, to_address: str) -> bool:
        return (chain, txid, to_address) in self._keys

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        return self._transactions.get(transaction_id)

    async def save(self, transaction: Transaction) -> None:
        if transaction.transaction_id not in self._transactions:
            raise GatewayNotFoundError("Transaction", transaction.transaction_id)
        self._transactions[transaction.transaction_id] = transaction

    async def pending(self, limit: int) -> List[Transaction]:
        pending = [
            t for t in self._transactions.values()
            if t.status == TransactionStatus.PENDING
        ]
        pending.sort(key=lambda t: t.created_at)
        return pending[:limit]

    async def needing_webhook(self, limit: int, max_attempts: int) -> List[Transaction]:
        # Only events that were attempted and failed; owners without a
        # subscription never get a delivery record.
        result = [t for t in self._transactions.values() if t.undelivered(max_attempts)]
        result.sort(key=lambda t: t.created_at)
        return result[:limit]

    async def list_for_owner(self, owner_id: str) -> List[Transaction]:
        result = [t for t in self._transactions.values() if t.owner_id == owner_id]
        return sorted(result, key=lambda t: t.created_at)


class InMemoryPaymentRequestRepository:
    def __init__(self) -> None:
        self._requests: Dict[str, PaymentRequest] = {}
        self._lock = asyncio.Lock()

    async def insert(self, request: PaymentRequest) -> PaymentRequest:
        async with self._lock:
            if request.request_id in self._requests:
                raise LedgerConflictError("PaymentRequest", request.request_id)
            self._requests[request.request_id] = request
        return request

    async def get(self, request_id: str) -> Optional[PaymentRequest]:
        return self._requests.get(request_id)

    async def save(self, request: PaymentRequest) -> None:
        if request.request_id not in self._requests:
            raise GatewayNotFoundError("PaymentRequest", request.request_id)
        self._requests[request.request_id] = request

    async def pending(self, limit: int) -> List[PaymentRequest]:
        pending = [r for r in self._requests.values() if r.is_pending]
        pending.sort(key=lambda r: r.created_at)
        return pending[:limit]

    async def expire_overdue(self, now: datetime) -> int:
        async with self._lock:
            expired = 0
            for request in self._requests.values():
                if request.status == PaymentRequestStatus.PENDING and request.is_expired(now):
                    request.mark_expired()
                    expired += 1
        return expired


class InMemoryAddressPoolRepository:
    def __init__(self) -> None:
        self._pool: Dict[str, PoolAddress] = {}
        self._lock = asyncio.Lock()

    async def add(self, pool_address: PoolAddress) -> PoolAddress:
        async with self._lock:
            if any(
                p.chain == pool_address.chain and p.address == pool_address.address
                for p in self._pool.values()
            ):
                raise LedgerConflictError("PoolAddress", pool_address.address)
            self._pool[pool_address.pool_address_id] = pool_address
        return pool_address

    async def reserve(self, chain: str, request_id: str) -> Optional[PoolAddress]:
        async with self._lock:
            candidates = sorted(
                (p for p in self._pool.values() if p.chain == chain and not p.is_used),
                key=lambda p: p.created_at,
            )
            if not candidates:
                return None
            pool_address = candidates[0]
            pool_address.is_used = True
            pool_address.used_at = utc_now()
            pool_address.reserved_for = request_id
            return pool_address

    async def available(self, chain: str) -> int:
        return sum(1 for p in self._pool.values() if p.chain == chain and not p.is_used)


class InMemorySubscriberRepository:
    def __init__(self) -> None:
        self._subscribers: Dict[str, Subscriber] = {}

    async def get(self, owner_id: str) -> Optional[Subscriber]:
        return self._subscribers.get(owner_id)

    async def save(self, subscriber: Subscriber) -> None:
        self._subscribers[subscriber.owner_id] = subscriber


# =============================================================================
# Ledger facade
# =============================================================================

@dataclass
class AddressLedger:
    """Composes the per-entity repositories behind the operations the
    monitor, dispatcher and payment flows need."""

    wallets: WalletRepository = field(default_factory=InMemoryWalletRepository)
    addresses: AddressRepository = field(default_factory=InMemoryAddressRepository)
    jobs: MonitoringJobRepository = field(default_factory=InMemoryMonitoringJobRepository)
    transactions: TransactionRepository = field(default_factory=InMemoryTransactionRepository)
    payment_requests: PaymentRequestRepository = field(
        default_factory=InMemoryPaymentRequestRepository
    )
    pool: AddressPoolRepository = field(default_factory=InMemoryAddressPoolRepository)
    subscribers: SubscriberRepository = field(default_factory=InMemorySubscriberRepository)

    def __post_init__(self) -> None:
        self._register_lock = asyncio.Lock()

    async def next_address_index(self, wallet_id: str, chain: str) -> int:
        """max(existing) + 1, or 0 for the first address of a chain."""
        current = await self.addresses.max_index(wallet_id, chain)
        return 0 if current is None else current + 1

    async def register_address(
        self,
        address: DerivedAddress,
    ) -> Tuple[DerivedAddress, MonitoringJob]:
        """Persist an address together with its monitoring job."""
        async with self._register_lock:
            return await self._insert_with_job(address)

    async def register_next_address(
        self,
        wallet_id: str,
        chain: str,
        build: Callable[[int], DerivedAddress],
    ) -> Tuple[DerivedAddress, MonitoringJob]:
        """Assign the next index for (wallet, chain) and persist the address
        ``build(index)`` returns, under one lock so concurrent callers get
        consecutive indexes."""
        async with self._register_lock:
            index = await self.next_address_index(wallet_id, chain)
            return await self._insert_with_job(build(index))

    async def _insert_with_job(
        self,
        address: DerivedAddress,
    ) -> Tuple[DerivedAddress, MonitoringJob]:
        await self.addresses.insert(address)
        job = MonitoringJob(
            address_id=address.address_id,
            owner_id=address.owner_id,
            chain=address.chain,
            address=address.address,
        )
        try:
            await self.jobs.insert(job)
        except Exception:
            await self.addresses.remove(address.address_id)
            raise
        return address, job

    async def deactivate_address(self, address_id: str) -> bool:
        address = await self.addresses.get(address_id)
        if address is None:
            return False
        address.is_active = False
        await self.addresses.save(address)
        job = await self.jobs.get_for_address(address_id)
        if job is not None:
            job.is_active = False
            await self.jobs.save(job)
        return True

    async def due_jobs(self, now: datetime, interval: timedelta, limit: int) -> List[MonitoringJob]:
        return await self.jobs.due(now, interval, limit)

    async def record_transaction(self, transaction: Transaction) -> Tuple[Transaction, bool]:
        """Insert a detected transaction.

        Returns:
            (transaction, created). A duplicate key is a no-op that returns
            the caller's object with ``created=False``.
        """
        try:
            await self.transactions.insert(transaction)
        except LedgerConflictError:
            logger.debug(f"Transaction {transaction.txid} already recorded for {transaction.to_address}")
            return transaction, False
        return transaction, True

    async def pending_transactions(self, limit: int) -> List[Transaction]:
        return await self.transactions.pending(limit)

    async def transactions_needing_webhook(self, limit: int, max_attempts: int) -> List[Transaction]:
        return await self.transactions.needing_webhook(limit, max_attempts)

    async def expire_payment_requests(self, now: Optional[datetime] = None) -> int:
        return await self.payment_requests.expire_overdue(now or utc_now())

    async def reserve_pool_address(self, chain: str, request_id: str) -> Optional[PoolAddress]:
        return await self.pool.reserve(chain, request_id)

    async def subscriber_for(self, owner_id: str) -> Optional[Subscriber]:
        return await self.subscribers.get(owner_id)


__all__ = [
    "WalletRepository",
    "AddressRepository",
    "MonitoringJobRepository",
    "TransactionRepository",
    "PaymentRequestRepository",
    "AddressPoolRepository",
    "SubscriberRepository",
    "InMemoryWalletRepository",
    "InMemoryAddressRepository",
    "InMemoryMonitoringJobRepository",
    "InMemoryTransactionRepository",
    "InMemoryPaymentRequestRepository",
    "InMemoryAddressPoolRepository",
    "InMemorySubscriberRepository",
    "AddressLedger",
]
