"""
Pytest configuration for cryptogate-chain tests.

Upstream APIs are replaced by :class:`FakeUpstream`, an ``httpx.MockTransport``
handler that serves Blockbook REST routes and Solana JSON-RPC methods.
"""
from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Add cross-package imports
packages_dir = Path(__file__).parent.parent.parent
for pkg in ["cryptogate-core", "cryptogate-wallet"]:
    pkg_path = packages_dir / pkg / "src"
    if pkg_path.exists() and str(pkg_path) not in sys.path:
        sys.path.insert(0, str(pkg_path))

# Set test environment
os.environ.setdefault("CRYPTOGATE_ENVIRONMENT", "dev")

from cryptogate_core.config import (  # noqa: E402
    BlockbookSettings,
    GatewaySettings,
    MonitoringSettings,
    WebhookSettings,
)
from cryptogate_core.ledger import AddressLedger  # noqa: E402
from cryptogate_chain.adapter import AdapterFactory  # noqa: E402

SOL_HOST = "api.mainnet-beta.solana.com"

# Default senders for payload builders
BTC_SENDER = "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2"
ETH_SENDER = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"


class FakeUpstream:
    """Routes requests by (host, path) and Solana RPC by method."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.rpc: Dict[str, Any] = {}
        self.requests: List[httpx.Request] = []

    def route(self, host: str, path: str, response: Any) -> None:
        """``response`` is a JSON body, an HTTP status code, or ``f(request)``."""
        self.routes[(host, path)] = response

    def address(
        self,
        host: str,
        address: str,
        balance: Any = "0",
        transactions: Optional[List[Dict[str, Any]]] = None,
        tokens: Optional[List[Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """Serve ``/api/v2/address``; returns the live transaction list."""
        transactions = transactions if transactions is not None else []

        def respond(request: httpx.Request) -> httpx.Response:
            body: Dict[str, Any] = {"address": address, "balance": str(balance)}
            details = request.url.params.get("details")
            if details == "txs":
                body["transactions"] = list(transactions)
            elif details == "tokenBalances":
                body["tokens"] = list(tokens or [])
            return httpx.Response(200, json=body)

        self.route(host, f"/api/v2/address/{address}", respond)
        return transactions

    def status(self, host: str, height: int, block_hash: str = "00" * 32) -> None:
        self.route(host, "/api/v2", {
            "blockbook": {"bestHeight": height},
            "backend": {"blocks": height, "bestBlockHash": block_hash},
        })

    def paths(self, host: Optional[str] = None) -> List[str]:
        return [r.url.path for r in self.requests if host is None or r.url.host == host]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.method == "POST" and request.url.host == SOL_HOST:
            payload = json.loads(request.content)
            if payload["method"] not in self.rpc:
                return httpx.Response(200, json={
                    "jsonrpc": "2.0", "id": 1,
                    "error": {"code": -32601, "message": "Method not found"},
                })
            result = self.rpc[payload["method"]]
            if callable(result):
                result = result(payload["params"])
            if isinstance(result, httpx.Response):
                return result
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})

        route = self.routes.get((request.url.host, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(route):
            return route(request)
        if isinstance(route, int):
            return httpx.Response(route, json={"error": f"HTTP {route}"})
        return httpx.Response(200, json=route)


def blockbook_utxo_tx(
    txid: str,
    outputs: List[Tuple[str, int]],
    confirmations: int = 0,
    block_time: Optional[int] = None,
    sender: str = BTC_SENDER,
    fees: int = 1_000,
) -> Dict[str, Any]:
    """Blockbook UTXO-flavour transaction payload."""
    return {
        "txid": txid,
        "vin": [{"n": 0, "addresses": [sender], "value": "100000000"}],
        "vout": [
            {"n": n, "addresses": [address], "value": str(value)}
            for n, (address, value) in enumerate(outputs)
        ],
        "blockHash": "00" * 32 if confirmations else None,
        "blockHeight": 800_000 if confirmations else -1,
        "confirmations": confirmations,
        "blockTime": block_time,
        "fees": str(fees),
    }


def blockbook_eth_tx(
    txid: str,
    to: str,
    value_wei: int,
    confirmations: int = 0,
    block_time: Optional[int] = None,
    sender: str = ETH_SENDER,
    status: int = 1,
    token_transfers: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Blockbook Ethereum-flavour transaction payload."""
    return {
        "txid": txid,
        "vin": [{"n": 0, "addresses": [sender]}],
        "vout": [{"n": 0, "addresses": [to], "value": str(value_wei)}],
        "blockHash": "0x" + "ab" * 32,
        "blockHeight": 19_000_000,
        "confirmations": confirmations,
        "blockTime": block_time,
        "value": str(value_wei),
        "fees": "420000000000000",
        "tokenTransfers": token_transfers or [],
        "ethereumSpecific": {"status": status, "nonce": 7, "gasLimit": 21000},
    }


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def settings():
    """Settings with zero backoff everywhere."""
    return GatewaySettings(
        secret_key="test-secret-key-for-testing-only-0123456789",
        webhook_secret="whsec_test",
        blockbook=BlockbookSettings(retry_base_delay=0.0, rate_limit_delay=0.0),
        webhooks=WebhookSettings(base_delay=0.0),
        monitoring=MonitoringSettings(request_delay_seconds=0.0),
    )


@pytest.fixture
def ledger():
    return AddressLedger()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest_asyncio.fixture
async def http_client(upstream):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    yield client
    await client.aclose()


@pytest.fixture
def factory(settings, http_client):
    return AdapterFactory.from_settings(settings, http_client=http_client)


@pytest.fixture
def utxo_tx() -> Callable[..., Dict[str, Any]]:
    return blockbook_utxo_tx


@pytest.fixture
def eth_tx() -> Callable[..., Dict[str, Any]]:
    return blockbook_eth_tx
