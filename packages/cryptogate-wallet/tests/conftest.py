"""
Pytest configuration for cryptogate-wallet tests.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Add cross-package imports
packages_dir = Path(__file__).parent.parent.parent
for pkg in ["cryptogate-core"]:
    pkg_path = packages_dir / pkg / "src"
    if pkg_path.exists() and str(pkg_path) not in sys.path:
        sys.path.insert(0, str(pkg_path))

# Set test environment
os.environ.setdefault("CRYPTOGATE_ENVIRONMENT", "dev")

from cryptogate_core.config import GatewaySettings  # noqa: E402
from cryptogate_core.ledger import AddressLedger  # noqa: E402


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def test_mnemonic():
    """BIP-39 test phrase with well-known derived addresses."""
    return " ".join(["abandon"] * 11 + ["about"])


@pytest.fixture
def settings():
    return GatewaySettings(secret_key="test-secret-key-for-testing-only-0123456789")


@pytest.fixture
def ledger():
    return AddressLedger()
