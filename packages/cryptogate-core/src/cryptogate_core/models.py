"""
State model for the gateway core.

Wallet owns DerivedAddress; DerivedAddress owns exactly one MonitoringJob and
any number of Transactions. PaymentRequests are bound to pool addresses and
follow their own lifecycle, with expiry enforced independently of
confirmations.

Status transitions are monotonic:
- Transaction: pending -> confirmed | failed (both terminal)
- PaymentRequest: pending -> confirmed | expired | failed (all terminal)
"""
from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:16]}"


class TransactionStatus(str, Enum):
    """Status of a detected inbound transaction."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PaymentRequestStatus(str, Enum):
    """Status of a one-shot payment intent."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    FAILED = "failed"


class WebhookEventKind(str, Enum):
    """Notification event kinds delivered to subscribers."""
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_CONFIRMED = "payment_confirmed"
    BALANCE_UPDATE = "balance_update"
    ADDRESS_GENERATED = "address_generated"
    WEBHOOK_TEST = "webhook_test"


@dataclass(frozen=True)
class Wallet:
    """An owner's HD wallet. Immutable once created."""
    owner_id: str
    encrypted_seed: str
    master_public_key: str
    wallet_id: str = field(default_factory=lambda: _new_id("wal"))
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class DerivedAddress:
    """An HD-derived deposit address."""
    wallet_id: str
    owner_id: str
    chain: str
    address_index: int
    address: str
    derivation_path: str
    public_key: str
    encrypted_private_key: Optional[str] = None
    label: Optional[str] = None
    balance: Decimal = Decimal("0")
    balance_checked_at: Optional[datetime] = None
    is_active: bool = True
    address_id: str = field(default_factory=lambda: _new_id("addr"))
    created_at: datetime = field(default_factory=utc_now)

    def update_balance(self, balance: Decimal, checked_at: Optional[datetime] = None) -> Decimal:
        """Store a new balance and return the previous one."""
        previous = self.balance
        self.balance = balance
        self.balance_checked_at = checked_at or utc_now()
        return previous


@dataclass
class MonitoringJob:
    """Polling cursor for one DerivedAddress. Never deleted, only deactivated."""
    address_id: str
    owner_id: str
    chain: str
    address: str
    last_checked_at: Optional[datetime] = None
    last_block_hash: Optional[str] = None
    last_block_height: Optional[int] = None
    is_active: bool = True
    job_id: str = field(default_factory=lambda: _new_id("job"))
    created_at: datetime = field(default_factory=utc_now)

    def is_due(self, now: datetime, interval: timedelta) -> bool:
        """Active and never checked, or not checked within ``interval``."""
        if not self.is_active:
            return False
        if self.last_checked_at is None:
            return True
        return self.last_checked_at <= now - interval

    def mark_checked(
        self,
        checked_at: Optional[datetime] = None,
        block_hash: Optional[str] = None,
        block_height: Optional[int] = None,
    ) -> None:
        self.last_checked_at = checked_at or utc_now()
        if block_hash is not None:
            self.last_block_hash = block_hash
        if block_height is not None:
            self.last_block_height = block_height


@dataclass
class WebhookDelivery:
    """Delivery state of one event kind for one transaction."""
    event: WebhookEventKind
    sent: bool = False
    attempts: int = 0
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None

    @property
    def failed(self) -> bool:
        """Attempted at least once and not yet delivered."""
        return not self.sent and self.attempts > 0


@dataclass
class Transaction:
    """A detected inbound payment, unique by (chain, txid, to_address)."""
    owner_id: str
    address_id: str
    chain: str
    txid: str
    to_address: str
    amount: Decimal
    required_confirmations: int
    confirmations: int = 0
    status: TransactionStatus = TransactionStatus.PENDING
    from_address: Optional[str] = None
    amount_usd: Optional[Decimal] = None
    block_hash: Optional[str] = None
    block_height: Optional[int] = None
    block_time: Optional[datetime] = None
    fee: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    payment_request_id: Optional[str] = None

    deliveries: Dict[WebhookEventKind, WebhookDelivery] = field(default_factory=dict)

    transaction_id: str = field(default_factory=lambda: _new_id("utx"))
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def detected(cls, **fields: Any) -> "Transaction":
        """Build a newly observed transaction with its status taken from the
        confirmation threshold, so it can be inserted already confirmed."""
        transaction = cls(**fields)
        if transaction.status == TransactionStatus.PENDING and transaction.is_threshold_met:
            transaction.status = TransactionStatus.CONFIRMED
        return transaction

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.chain, self.txid, self.to_address)

    @property
    def is_threshold_met(self) -> bool:
        return self.confirmations >= self.required_confirmations

    @property
    def is_final(self) -> bool:
        return self.status in (TransactionStatus.CONFIRMED, TransactionStatus.FAILED)

    def apply_confirmations(self, confirmations: int) -> bool:
        """Record a new confirmation count.

        Returns:
            True only if this update moved the transaction from pending to
            confirmed. Confirmed and failed transactions never regress.
        """
        self.confirmations = confirmations
        self.updated_at = utc_now()
        if self.status == TransactionStatus.PENDING and self.is_threshold_met:
            self.status = TransactionStatus.CONFIRMED
            return True
        return False

    def mark_failed(self) -> bool:
        if self.status != TransactionStatus.PENDING:
            return False
        self.status = TransactionStatus.FAILED
        self.updated_at = utc_now()
        return True

    def delivery(self, event: WebhookEventKind) -> WebhookDelivery:
        """Delivery record for ``event``, created on first use."""
        record = self.deliveries.get(event)
        if record is None:
            record = self.deliveries[event] = WebhookDelivery(event=event)
        return record

    def undelivered(self, max_attempts: int) -> List[WebhookDelivery]:
        """Events that were attempted, not delivered and still have attempts left."""
        return [
            d for d in self.deliveries.values()
            if d.failed and d.attempts < max_attempts
        ]

    @property
    def webhook_sent(self) -> bool:
        """True once every event attempted so far has been delivered."""
        return bool(self.deliveries) and all(d.sent for d in self.deliveries.values())

    @property
    def webhook_failed(self) -> bool:
        return any(d.failed for d in self.deliveries.values())

    @property
    def webhook_sent_at(self) -> Optional[datetime]:
        sent = [d.sent_at for d in self.deliveries.values() if d.sent_at is not None]
        return max(sent) if sent else None

    def record_delivery_attempt(
        self,
        event: WebhookEventKind,
        error: Optional[str] = None,
    ) -> WebhookDelivery:
        record = self.delivery(event)
        record.attempts += 1
        if error is not None:
            record.last_error = error
        self.updated_at = utc_now()
        return record

    def mark_webhook_sent(
        self,
        event: WebhookEventKind,
        sent_at: Optional[datetime] = None,
    ) -> WebhookDelivery:
        record = self.delivery(event)
        record.sent = True
        record.sent_at = sent_at or utc_now()
        record.last_error = None
        self.updated_at = utc_now()
        return record


def generate_request_id() -> str:
    """Public payment request id: ``TX_`` plus 16 random alphanumerics."""
    alphabet = string.ascii_uppercase + string.digits
    return "TX_" + "".join(secrets.choice(alphabet) for _ in range(16))


@dataclass
class PaymentRequest:
    """A one-shot, expiring payment intent bound to a pool address."""
    chain: str
    amount: Decimal
    to_address: str
    pool_address_id: str
    required_confirmations: int
    expires_at: datetime
    amount_usd: Optional[Decimal] = None
    status: PaymentRequestStatus = PaymentRequestStatus.PENDING
    confirmations: int = 0
    tx_hash: Optional[str] = None
    callback_url: Optional[str] = None
    callback_sent: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=generate_request_id)
    created_at: datetime = field(default_factory=utc_now)
    confirmed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utc_now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) > self.expires_at

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentRequestStatus.PENDING

    def mark_confirmed(self) -> bool:
        if not self.is_pending:
            return False
        self.status = PaymentRequestStatus.CONFIRMED
        self.confirmed_at = utc_now()
        self.updated_at = self.confirmed_at
        return True

    def mark_expired(self) -> bool:
        if not self.is_pending:
            return False
        self.status = PaymentRequestStatus.EXPIRED
        self.updated_at = utc_now()
        return True

    def mark_failed(self) -> bool:
        if not self.is_pending:
            return False
        self.status = PaymentRequestStatus.FAILED
        self.updated_at = utc_now()
        return True


@dataclass
class PoolAddress:
    """A static, non-HD address reserved for a single payment request."""
    chain: str
    address: str
    is_used: bool = False
    used_at: Optional[datetime] = None
    reserved_for: Optional[str] = None
    pool_address_id: str = field(default_factory=lambda: _new_id("pool"))
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Subscriber:
    """An owner's webhook preferences."""
    owner_id: str
    webhook_url: Optional[str] = None
    webhook_enabled: bool = False
    webhook_events: List[str] = field(default_factory=list)
    webhook_secret: Optional[str] = None

    def wants(self, event: WebhookEventKind | str) -> bool:
        """Enabled, has a URL and subscribed to ``event``."""
        if not self.webhook_url or not self.webhook_enabled:
            return False
        kind = event.value if isinstance(event, WebhookEventKind) else event
        return kind in self.webhook_events
