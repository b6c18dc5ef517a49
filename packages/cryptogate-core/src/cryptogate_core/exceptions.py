"""Unified exception hierarchy for CryptoGate.

All CryptoGate-specific exceptions inherit from GatewayException, enabling:
- Consistent error handling across packages
- Retry decisions driven by exception type (``retryable``), never by message text
- Structured error payloads with machine-readable codes

Usage:
    from cryptogate_core.exceptions import (
        GatewayException,
        TransientChainError,
        PrivacyLookupUnsupportedError,
    )

    try:
        balance = await adapter.get_balance(address)
    except TransientChainError:
        ...  # retried upstream already, safe to try again next pass

All exceptions have:
- error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
- http_status: Status code a hosting API layer should map the error to
- retryable: Whether a bounded retry can fix the failure
- details: Optional additional context dictionary
- to_dict(): Convert to a response payload
"""
from __future__ import annotations

from typing import Any, Optional


class GatewayException(Exception):
    """Base exception for all CryptoGate errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "GATEWAY_ERROR"
    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation Errors (terminal, never retried)
# =============================================================================

class GatewayValidationError(GatewayException):
    """Invalid input data or parameters."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class InvalidAddressError(GatewayValidationError):
    """Address is malformed for the target chain."""

    error_code = "INVALID_ADDRESS"

    def __init__(self, address: str, chain: str) -> None:
        super().__init__(
            f"Invalid {chain} address: {address}",
            field="address",
            details={"chain": chain},
        )


class CurrencyInactiveError(GatewayValidationError):
    """Currency is configured but not accepting payments."""

    error_code = "CURRENCY_INACTIVE"

    def __init__(self, symbol: str) -> None:
        super().__init__(
            f"Currency {symbol} is not active",
            field="currency",
            details={"currency": symbol},
        )


class AmountOutOfBoundsError(GatewayValidationError):
    """Requested amount is outside the configured bounds."""

    error_code = "AMOUNT_OUT_OF_BOUNDS"

    def __init__(self, symbol: str, amount: Any, minimum: Any, maximum: Any) -> None:
        super().__init__(
            f"Amount {amount} {symbol} must be between {minimum} and {maximum}",
            field="amount",
            details={
                "currency": symbol,
                "amount": str(amount),
                "min_amount": str(minimum),
                "max_amount": str(maximum),
            },
        )


class GatewayNotFoundError(GatewayException):
    """Requested resource not found."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


# =============================================================================
# Persistence Conflicts (benign no-ops inside batch flows)
# =============================================================================

class GatewayConflictError(GatewayException):
    """Resource conflict (duplicate or concurrent modification)."""

    error_code = "CONFLICT"
    http_status = 409


class LedgerConflictError(GatewayConflictError):
    """A ledger uniqueness constraint rejected an insert."""

    error_code = "LEDGER_CONFLICT"

    def __init__(self, entity: str, key: Any) -> None:
        super().__init__(
            f"{entity} already exists for key {key}",
            details={"entity": entity, "key": str(key)},
        )
        self.entity = entity
        self.key = key


# =============================================================================
# Configuration Errors
# =============================================================================

class GatewayConfigurationError(GatewayException):
    """Service configuration error."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


class UnsupportedChainError(GatewayConfigurationError):
    """No configuration, coin type or encoder exists for the chain symbol."""

    error_code = "UNSUPPORTED_CHAIN"
    http_status = 400

    def __init__(self, chain: str) -> None:
        super().__init__(
            f"Unsupported chain: {chain}",
            details={"chain": chain},
        )
        self.chain = chain


class PoolExhaustedError(GatewayException):
    """No unused pool address is available for a payment request."""

    error_code = "ADDRESS_POOL_EXHAUSTED"
    http_status = 503

    def __init__(self, chain: str) -> None:
        super().__init__(
            f"No available pool address for {chain}",
            details={"chain": chain},
        )
        self.chain = chain



class RateUnavailableError(GatewayException):
    """No exchange rate is available for a symbol."""

    error_code = "RATE_UNAVAILABLE"
    http_status = 503

    def __init__(self, symbol: str) -> None:
        super().__init__(
            f"No USD rate available for {symbol}",
            details={"symbol": symbol},
        )
        self.symbol = symbol


# =============================================================================
# Chain Errors
# =============================================================================

class ChainError(GatewayException):
    """Base class for blockchain upstream errors."""

    error_code = "CHAIN_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if chain:
            details["chain"] = chain
        super().__init__(message, details=details)
        self.chain = chain


class TransientChainError(ChainError):
    """Upstream failure that a bounded retry may resolve."""

    error_code = "CHAIN_TRANSIENT_ERROR"
    retryable = True


class UpstreamTimeoutError(TransientChainError):
    """Upstream request timed out."""

    error_code = "UPSTREAM_TIMEOUT"
    http_status = 504


class UpstreamServerError(TransientChainError):
    """Upstream answered with a 5xx status."""

    error_code = "UPSTREAM_SERVER_ERROR"

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, chain=chain, details={"status_code": status_code})
        self.status_code = status_code


class RateLimitedError(TransientChainError):
    """Upstream answered 429 Too Many Requests."""

    error_code = "UPSTREAM_RATE_LIMITED"
    http_status = 429


class PermanentChainError(ChainError):
    """Upstream failure that retrying cannot fix."""

    error_code = "CHAIN_PERMANENT_ERROR"


class UpstreamRequestError(PermanentChainError):
    """Upstream rejected the request (4xx or JSON-RPC error object)."""

    error_code = "UPSTREAM_REQUEST_ERROR"

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        status_code: Optional[int] = None,
        rpc_code: Optional[int] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if rpc_code is not None:
            details["rpc_code"] = rpc_code
        super().__init__(message, chain=chain, details=details)
        self.status_code = status_code
        self.rpc_code = rpc_code


class ChainOperationUnsupportedError(PermanentChainError):
    """The chain's transaction model has no such operation."""

    error_code = "CHAIN_OPERATION_UNSUPPORTED"
    http_status = 501

    def __init__(self, chain: str, operation: str) -> None:
        super().__init__(
            f"{operation} is not supported on {chain}",
            chain=chain,
            details={"operation": operation},
        )
        self.operation = operation


class PrivacyLookupUnsupportedError(PermanentChainError):
    """Chain hides amounts and recipients; lookup needs a view key."""

    error_code = "PRIVACY_LOOKUP_UNSUPPORTED"
    http_status = 501

    def __init__(self, chain: str, operation: str) -> None:
        super().__init__(
            f"{operation} is not supported on {chain}: transactions are only "
            f"readable with the wallet's view key",
            chain=chain,
            details={"operation": operation},
        )
        self.operation = operation


# =============================================================================
# Delivery Errors
# =============================================================================

class DeliveryError(GatewayException):
    """Webhook or callback delivery failed (non-2xx or network failure)."""

    error_code = "DELIVERY_FAILED"
    http_status = 502
    retryable = True

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)
        self.url = url
        self.status_code = status_code


__all__ = [
    "GatewayException",
    "GatewayValidationError",
    "InvalidAddressError",
    "CurrencyInactiveError",
    "AmountOutOfBoundsError",
    "GatewayNotFoundError",
    "GatewayConflictError",
    "LedgerConflictError",
    "GatewayConfigurationError",
    "UnsupportedChainError",
    "PoolExhaustedError",
    "RateUnavailableError",
    "ChainError",
    "TransientChainError",
    "UpstreamTimeoutError",
    "UpstreamServerError",
    "RateLimitedError",
    "PermanentChainError",
    "UpstreamRequestError",
    "ChainOperationUnsupportedError",
    "PrivacyLookupUnsupportedError",
    "DeliveryError",
]
