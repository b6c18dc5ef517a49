"""
Pytest configuration for cryptogate-core tests.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("CRYPTOGATE_ENVIRONMENT", "dev")

from cryptogate_core.config import GatewaySettings, MonitoringSettings, WebhookSettings  # noqa: E402
from cryptogate_core.ledger import AddressLedger  # noqa: E402


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def settings():
    """Settings with zero backoff so retry tests run instantly."""
    return GatewaySettings(
        secret_key="test-secret-key-for-testing-only-0123456789",
        webhook_secret="whsec_test",
        webhooks=WebhookSettings(base_delay=0.0),
        monitoring=MonitoringSettings(request_delay_seconds=0.0),
    )


@pytest.fixture
def ledger():
    return AddressLedger()
