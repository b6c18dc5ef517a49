"""
Tests for the chain registry built from GatewaySettings.
"""
from __future__ import annotations

import pytest

from cryptogate_core.config import GatewaySettings, TokenSettings
from cryptogate_core.exceptions import UnsupportedChainError
from cryptogate_chain.config import ChainKind, build_chain_registry, get_chain_config


@pytest.fixture
def registry(settings):
    return build_chain_registry(settings)


class TestBuildRegistry:

    def test_all_symbols(self, registry):
        """Should register every default network and token."""
        assert set(registry) == {"BTC", "LTC", "ETH", "XMR", "SOL", "USDT", "USDC", "LINK", "UNI"}

    @pytest.mark.parametrize("symbol,kind", [
        ("BTC", ChainKind.UTXO),
        ("LTC", ChainKind.UTXO),
        ("ETH", ChainKind.ACCOUNT),
        ("SOL", ChainKind.ACCOUNT),
        ("XMR", ChainKind.PRIVACY),
        ("USDT", ChainKind.TOKEN),
    ])
    def test_kinds(self, registry, symbol, kind):
        """Should assign the transaction model per symbol."""
        assert registry[symbol].kind == kind

    def test_token_inherits_host(self, registry):
        """Should give tokens the Ethereum endpoint, threshold and coin type."""
        usdt = registry["USDT"]
        eth = registry["ETH"]

        assert usdt.is_token
        assert usdt.endpoint == eth.endpoint
        assert usdt.min_confirmations == eth.min_confirmations == 12
        assert usdt.coin_type == eth.coin_type == 60
        assert usdt.decimals == 6
        assert usdt.base_symbol == "ETH"
        assert usdt.uri_scheme is None

    def test_contract_lowercased(self):
        """Should normalize contract addresses."""
        settings = GatewaySettings(
            secret_key="test-secret-key-for-testing-only-0123456789",
            tokens={"DAI": TokenSettings(name="Dai", contract_address="0x6B175474E89094C44Da98b954EedeAC495271d0F")},
        )

        assert build_chain_registry(settings)["DAI"].contract_address == (
            "0x6b175474e89094c44da98b954eedeac495271d0f"
        )

    def test_token_without_host_skipped(self):
        """Should skip tokens whose host chain is not configured."""
        settings = GatewaySettings(
            secret_key="test-secret-key-for-testing-only-0123456789",
            tokens={"FOO": TokenSettings(name="Foo", host_chain="TRX", contract_address="0xabc")},
        )

        assert "FOO" not in build_chain_registry(settings)

    def test_transport_settings(self, registry):
        """Should carry the shared transport settings."""
        assert registry["BTC"].retry_base_delay == 0.0
        assert registry["USDC"].rate_limit_delay == 0.0

    def test_native_metadata(self, registry):
        """Should expose backend, decimals and URI scheme."""
        assert registry["SOL"].backend == "solana_rpc"
        assert registry["XMR"].decimals == 12
        assert registry["BTC"].uri_scheme == "bitcoin"
        assert registry["BTC"].endpoint == "https://btc1.trezor.io"

    def test_testnet_endpoint(self):
        """Should switch to testnet URLs where configured."""
        settings = GatewaySettings(
            secret_key="test-secret-key-for-testing-only-0123456789",
            testnet=True,
        )
        registry = build_chain_registry(settings)

        assert registry["BTC"].endpoint == "https://tbtc1.trezor.io"
        assert registry["LTC"].endpoint == "https://ltc1.trezor.io"


class TestGetChainConfig:

    def test_case_insensitive(self, registry):
        """Should accept lowercase symbols."""
        assert get_chain_config(registry, "btc").symbol == "BTC"

    def test_unsupported(self, registry):
        """Should raise UnsupportedChainError."""
        with pytest.raises(UnsupportedChainError):
            get_chain_config(registry, "DOGE")
