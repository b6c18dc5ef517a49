"""Canonical configuration surface for CryptoGate services."""
from __future__ import annotations

import base64
import hashlib
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from .constants import EventKinds, MonitoringDefaults, RetryDefaults, Timeouts


class BlockbookSettings(BaseModel):
    """HTTP behaviour shared by all Blockbook-backed chains."""
    timeout: float = Timeouts.UPSTREAM_REQUEST
    retry_attempts: int = RetryDefaults.UPSTREAM_ATTEMPTS
    retry_base_delay: float = RetryDefaults.UPSTREAM_BASE_DELAY
    rate_limit_delay: float = RetryDefaults.UPSTREAM_RATE_LIMIT_DELAY


class NetworkSettings(BaseModel):
    """Native chain network configuration."""
    name: str
    backend: Literal["blockbook", "solana_rpc"] = "blockbook"
    url: str
    testnet_url: Optional[str] = None
    min_confirmations: int = 6
    decimals: int = 8


class TokenSettings(BaseModel):
    """Token hosted on an account chain."""
    name: str
    host_chain: str = "ETH"
    contract_address: str
    decimals: int = 18


class CurrencySettings(BaseModel):
    """Payment acceptance bounds for one currency."""
    is_active: bool = True
    min_amount: Decimal
    max_amount: Decimal


class MonitoringSettings(BaseModel):
    check_interval_minutes: int = MonitoringDefaults.CHECK_INTERVAL_MINUTES
    default_limit: int = MonitoringDefaults.PASS_LIMIT
    pending_batch_size: int = MonitoringDefaults.PENDING_BATCH_SIZE
    history_page_size: int = MonitoringDefaults.HISTORY_PAGE_SIZE
    find_window_hours: int = MonitoringDefaults.FIND_WINDOW_HOURS
    request_delay_seconds: float = MonitoringDefaults.REQUEST_DELAY_SECONDS
    pass_timeout_seconds: float = MonitoringDefaults.PASS_TIMEOUT_SECONDS


class WebhookSettings(BaseModel):
    timeout: float = Timeouts.WEBHOOK_DELIVERY
    max_attempts: int = RetryDefaults.WEBHOOK_ATTEMPTS
    max_total_attempts: int = RetryDefaults.WEBHOOK_MAX_TOTAL_ATTEMPTS
    base_delay: float = RetryDefaults.WEBHOOK_BASE_DELAY
    retry_batch_size: int = MonitoringDefaults.WEBHOOK_RETRY_BATCH_SIZE
    user_agent: str = EventKinds.USER_AGENT
    signature_tolerance_seconds: int = EventKinds.SIGNATURE_TOLERANCE_SECONDS


class PaymentSettings(BaseModel):
    default_expiry_minutes: int = MonitoringDefaults.PAYMENT_EXPIRY_MINUTES
    callback_timeout: float = Timeouts.PAYMENT_CALLBACK
    request_limit: int = MonitoringDefaults.PAYMENT_REQUEST_LIMIT


def _default_networks() -> Dict[str, NetworkSettings]:
    return {
        "BTC": NetworkSettings(
            name="Bitcoin",
            url="https://btc1.trezor.io",
            testnet_url="https://tbtc1.trezor.io",
            min_confirmations=3,
            decimals=8,
        ),
        "LTC": NetworkSettings(
            name="Litecoin",
            url="https://ltc1.trezor.io",
            min_confirmations=6,
            decimals=8,
        ),
        "ETH": NetworkSettings(
            name="Ethereum",
            url="https://eth1.trezor.io",
            min_confirmations=12,
            decimals=18,
        ),
        "XMR": NetworkSettings(
            name="Monero",
            url="https://xmr1.trezor.io",
            min_confirmations=10,
            decimals=12,
        ),
        "SOL": NetworkSettings(
            name="Solana",
            backend="solana_rpc",
            url="https://api.mainnet-beta.solana.com",
            testnet_url="https://api.testnet.solana.com",
            min_confirmations=32,
            decimals=9,
        ),
    }


def _default_tokens() -> Dict[str, TokenSettings]:
    return {
        "USDT": TokenSettings(
            name="Tether USD",
            contract_address="0xdac17f958d2ee523a2206206994597c13d831ec7",
            decimals=6,
        ),
        "USDC": TokenSettings(
            name="USD Coin",
            contract_address="0xa0b86a33e6cc3b38c941fb2d6ad2c9c0b301ff53",
            decimals=6,
        ),
        "LINK": TokenSettings(
            name="Chainlink",
            contract_address="0x514910771af9ca656af840dff83e8264ecf986ca",
            decimals=18,
        ),
        "UNI": TokenSettings(
            name="Uniswap",
            contract_address="0x1f9840a85d5af5bf1d1762f925bdaddc4201f984",
            decimals=18,
        ),
    }


def _default_currencies() -> Dict[str, CurrencySettings]:
    bounds = {
        "BTC": ("0.00001", "100"),
        "LTC": ("0.001", "1000"),
        "ETH": ("0.001", "100"),
        "XMR": ("0.01", "1000"),
        "SOL": ("0.01", "10000"),
        "USDT": ("1", "100000"),
        "USDC": ("1", "100000"),
        "LINK": ("0.1", "10000"),
        "UNI": ("0.1", "10000"),
    }
    return {
        symbol: CurrencySettings(min_amount=Decimal(lo), max_amount=Decimal(hi))
        for symbol, (lo, hi) in bounds.items()
    }


class GatewaySettings(BaseSettings):
    """Main CryptoGate configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"
    testnet: bool = False

    # Security
    secret_key: str = Field(default="", validate_default=True)
    encryption_key: str = Field(default="", validate_default=True)
    webhook_secret: str = ""
    store_private_keys: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Chains
    blockbook: BlockbookSettings = Field(default_factory=BlockbookSettings)
    networks: Dict[str, NetworkSettings] = Field(default_factory=_default_networks)
    tokens: Dict[str, TokenSettings] = Field(default_factory=_default_tokens)
    currencies: Dict[str, CurrencySettings] = Field(default_factory=_default_currencies)

    # Chains whose index-0 address is created together with a wallet
    default_wallet_chains: List[str] = Field(default_factory=lambda: ["BTC", "ETH"])

    # Pipelines
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    payments: PaymentSettings = Field(default_factory=PaymentSettings)

    class Config:
        env_prefix = "CRYPTOGATE_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("default_wallet_chains", mode="before")
    @classmethod
    def parse_chains(cls, v):
        """Parse comma-separated chain symbols from env var."""
        if isinstance(v, str):
            return [c.strip().upper() for c in v.split(",") if c.strip()]
        return [c.upper() for c in v]

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        env = os.getenv("CRYPTOGATE_ENVIRONMENT", "dev")
        if env != "dev" and (not v or len(v) < 32):
            raise ValueError(
                "SECRET_KEY must be at least 32 characters outside dev. "
                "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
            )
        return v or "dev-only-secret-key-not-for-production"

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        env = os.getenv("CRYPTOGATE_ENVIRONMENT", "dev")
        if env != "dev" and not v:
            raise ValueError(
                "ENCRYPTION_KEY is required outside dev. "
                "Generate with: python -c \"from cryptography.fernet import Fernet; "
                "print(Fernet.generate_key().decode())\""
            )
        return v

    def resolved_encryption_key(self) -> bytes:
        """Fernet key for seeds and private keys; derived from secret_key in dev."""
        if self.encryption_key:
            return self.encryption_key.encode()
        digest = hashlib.sha256(self.secret_key.encode()).digest()
        return base64.urlsafe_b64encode(digest)

    def resolved_webhook_secret(self) -> str:
        return self.webhook_secret or self.secret_key

    def network_url(self, symbol: str) -> Optional[str]:
        network = self.networks.get(symbol)
        if network is None:
            return None
        if self.testnet and network.testnet_url:
            return network.testnet_url
        return network.url


@lru_cache
def load_settings(env_file: str | None = None) -> GatewaySettings:
    """Load GatewaySettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return GatewaySettings(_env_file=env_path)
