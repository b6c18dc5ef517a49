"""
Centralized constants and configuration defaults for CryptoGate.

Values here are the fallbacks used when no explicit settings are injected.
Runtime configuration lives in :mod:`cryptogate_core.config`.

Usage:
    from cryptogate_core.constants import Timeouts, RetryDefaults, EventKinds
"""
from __future__ import annotations

from typing import Final


# =============================================================================
# Timeout Constants (in seconds unless specified)
# =============================================================================

class Timeouts:
    """Network timeout configuration."""

    HTTP_DEFAULT: Final[float] = 30.0
    HTTP_CONNECT: Final[float] = 10.0

    UPSTREAM_REQUEST: Final[float] = 30.0
    WEBHOOK_DELIVERY: Final[float] = 30.0
    PAYMENT_CALLBACK: Final[float] = 30.0


# =============================================================================
# Retry Configuration
# =============================================================================

class RetryDefaults:
    """Retry configuration for outbound calls."""

    DEFAULT_MAX_RETRIES: Final[int] = 3
    DEFAULT_BASE_DELAY: Final[float] = 1.0
    DEFAULT_MAX_DELAY: Final[float] = 60.0
    DEFAULT_EXPONENTIAL_BASE: Final[float] = 2.0
    DEFAULT_JITTER: Final[float] = 0.1

    # Upstream chain APIs: 3 attempts total, linear backoff
    UPSTREAM_ATTEMPTS: Final[int] = 3
    UPSTREAM_BASE_DELAY: Final[float] = 1.0
    UPSTREAM_RATE_LIMIT_DELAY: Final[float] = 1.0

    # Webhook delivery: 3 attempts per cycle, 1s/2s/4s
    WEBHOOK_ATTEMPTS: Final[int] = 3
    WEBHOOK_BASE_DELAY: Final[float] = 1.0
    WEBHOOK_MAX_TOTAL_ATTEMPTS: Final[int] = 5


# =============================================================================
# Monitoring
# =============================================================================

class MonitoringDefaults:
    """Defaults for monitoring passes."""

    CHECK_INTERVAL_MINUTES: Final[int] = 5
    PASS_LIMIT: Final[int] = 100
    PENDING_BATCH_SIZE: Final[int] = 50
    HISTORY_PAGE_SIZE: Final[int] = 25
    FIND_WINDOW_HOURS: Final[int] = 24
    REQUEST_DELAY_SECONDS: Final[float] = 0.2
    PASS_TIMEOUT_SECONDS: Final[float] = 300.0

    WEBHOOK_RETRY_BATCH_SIZE: Final[int] = 50
    PAYMENT_REQUEST_LIMIT: Final[int] = 50
    PAYMENT_EXPIRY_MINUTES: Final[int] = 30


# =============================================================================
# Webhook event kinds
# =============================================================================

class EventKinds:
    """Wire names of notification events."""

    PAYMENT_RECEIVED: Final[str] = "payment_received"
    PAYMENT_CONFIRMED: Final[str] = "payment_confirmed"
    BALANCE_UPDATE: Final[str] = "balance_update"
    ADDRESS_GENERATED: Final[str] = "address_generated"
    WEBHOOK_TEST: Final[str] = "webhook_test"

    USER_AGENT: Final[str] = "CryptoGate-Webhook/1.0"
    SIGNATURE_TOLERANCE_SECONDS: Final[int] = 300


# =============================================================================
# Logging
# =============================================================================

class LoggingConfig:
    """Logging-related constants."""

    # Sensitive fields to mask in logs
    SENSITIVE_FIELDS: Final[frozenset[str]] = frozenset({
        "password",
        "secret",
        "token",
        "api_key",
        "apiKey",
        "private_key",
        "privateKey",
        "encrypted_private_key",
        "secret_key",
        "encryption_key",
        "webhook_secret",
        "mnemonic",
        "seed",
        "encrypted_seed",
        "authorization",
        "credential",
        "credentials",
    })

    # Query parameters in upstream URLs that carry credentials
    SENSITIVE_QUERY_PARAMS: Final[frozenset[str]] = frozenset({
        "api_key",
        "apikey",
        "key",
        "token",
        "access_token",
    })

    MASK_PATTERN: Final[str] = "***REDACTED***"

    MAX_LOG_MESSAGE_LENGTH: Final[int] = 10000
    MAX_RESPONSE_BODY_LOG_LENGTH: Final[int] = 500
