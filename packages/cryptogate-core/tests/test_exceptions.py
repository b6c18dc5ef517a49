"""
Tests for the CryptoGate exception hierarchy.
"""
from __future__ import annotations

from decimal import Decimal

from cryptogate_core.exceptions import (
    AmountOutOfBoundsError,
    ChainError,
    ChainOperationUnsupportedError,
    GatewayException,
    GatewayNotFoundError,
    GatewayValidationError,
    PermanentChainError,
    PrivacyLookupUnsupportedError,
    RateLimitedError,
    TransientChainError,
    UnsupportedChainError,
    UpstreamRequestError,
    UpstreamServerError,
)


class TestHierarchy:

    def test_transient_errors_are_retryable(self):
        """Should flag timeouts, 5xx and 429 as retryable."""
        assert UpstreamServerError("x", chain="BTC").retryable
        assert RateLimitedError("x", chain="BTC").retryable
        assert isinstance(RateLimitedError("x"), TransientChainError)

    def test_permanent_errors_are_not_retryable(self):
        """Should never retry 4xx or privacy gaps."""
        assert not UpstreamRequestError("x", status_code=404).retryable
        assert isinstance(PrivacyLookupUnsupportedError("XMR", "is_incoming"), PermanentChainError)
        assert isinstance(PrivacyLookupUnsupportedError("XMR", "is_incoming"), ChainError)

    def test_unsupported_operation(self):
        """Should report the chain and operation as a permanent 501."""
        error = ChainOperationUnsupportedError("ETH", "unspent_outputs")

        assert isinstance(error, PermanentChainError)
        assert not error.retryable
        assert error.http_status == 501
        assert error.details == {"operation": "unspent_outputs", "chain": "ETH"}

    def test_validation_errors(self):
        """Should map validation errors to 400."""
        error = AmountOutOfBoundsError("BTC", Decimal("500"), Decimal("0.00001"), Decimal("100"))

        assert isinstance(error, GatewayValidationError)
        assert error.http_status == 400
        assert error.details["field"] == "amount"


class TestToDict:

    def test_payload(self):
        """Should expose code, message and details."""
        payload = GatewayNotFoundError("Wallet", "user_1").to_dict()

        assert payload["error"] == "NOT_FOUND"
        assert "user_1" in payload["message"]

    def test_chain_in_details(self):
        """Should carry the chain symbol for upstream errors."""
        error = UpstreamRequestError("bad", chain="ETH", status_code=400, rpc_code=-32602)

        assert error.to_dict()["details"] == {"status_code": 400, "rpc_code": -32602, "chain": "ETH"}
        assert error.rpc_code == -32602

    def test_unsupported_chain(self):
        """Should report the unsupported symbol."""
        error = UnsupportedChainError("DOGE")

        assert error.chain == "DOGE"
        assert error.error_code == "UNSUPPORTED_CHAIN"

    def test_custom_error_code(self):
        """Should allow overriding the error code per instance."""
        assert GatewayException("boom", error_code="CUSTOM").to_dict() == {
            "error": "CUSTOM",
            "message": "boom",
        }
