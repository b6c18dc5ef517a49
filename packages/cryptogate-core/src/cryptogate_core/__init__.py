"""Core domain primitives shared across CryptoGate services."""

from .config import GatewaySettings, load_settings
from .exceptions import (
    GatewayException,
    GatewayValidationError,
    GatewayNotFoundError,
    GatewayConflictError,
    GatewayConfigurationError,
    LedgerConflictError,
    UnsupportedChainError,
    ChainError,
    TransientChainError,
    PermanentChainError,
    ChainOperationUnsupportedError,
    PrivacyLookupUnsupportedError,
    DeliveryError,
)
from .models import (
    Wallet,
    DerivedAddress,
    MonitoringJob,
    Transaction,
    TransactionStatus,
    PaymentRequest,
    PaymentRequestStatus,
    PoolAddress,
    Subscriber,
    WebhookDelivery,
    WebhookEventKind,
)
from .ledger import AddressLedger
from .encryption import SeedCipher
from .rates import RateProvider, StaticRateProvider, CachedRateProvider
from .webhooks import NotificationDispatcher, DeliveryResult, verify_signature

__all__ = [
    "GatewaySettings",
    "load_settings",
    "GatewayException",
    "GatewayValidationError",
    "GatewayNotFoundError",
    "GatewayConflictError",
    "GatewayConfigurationError",
    "LedgerConflictError",
    "UnsupportedChainError",
    "ChainError",
    "TransientChainError",
    "PermanentChainError",
    "ChainOperationUnsupportedError",
    "PrivacyLookupUnsupportedError",
    "DeliveryError",
    "Wallet",
    "DerivedAddress",
    "MonitoringJob",
    "Transaction",
    "TransactionStatus",
    "PaymentRequest",
    "PaymentRequestStatus",
    "PoolAddress",
    "Subscriber",
    "WebhookDelivery",
    "WebhookEventKind",
    "AddressLedger",
    "SeedCipher",
    "RateProvider",
    "StaticRateProvider",
    "CachedRateProvider",
    "NotificationDispatcher",
    "DeliveryResult",
    "verify_signature",
]
