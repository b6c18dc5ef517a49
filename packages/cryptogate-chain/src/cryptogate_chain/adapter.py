"""
ChainAdapter: one interface over every supported chain.

An adapter is composed, not subclassed:

    ChainConfig        symbol, decimals, thresholds, endpoint
    ChainBackend       how to talk to the upstream API (Blockbook REST or Solana JSON-RPC)
    ClassificationStrategy   how to decide a transaction pays an address

Read calls (balance, confirmations, single transaction, fee, block height)
degrade to a safe default and log the failure. ``list_recent_transactions``,
``list_utxos`` and ``broadcast`` propagate errors instead. Privacy chains
raise :class:`PrivacyLookupUnsupportedError` for amount/destination lookups.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Pattern, Tuple

import httpx

from cryptogate_core.config import GatewaySettings
from cryptogate_core.exceptions import (
    ChainError,
    ChainOperationUnsupportedError,
    PrivacyLookupUnsupportedError,
    UnsupportedChainError,
)
from cryptogate_core.models import utc_now
from cryptogate_wallet.encoders import (
    SEGWIT_HRP,
    is_valid_ethereum,
    is_valid_monero,
    is_valid_p2pkh,
    is_valid_p2wpkh,
    is_valid_solana,
)

from .config import ChainConfig, ChainKind, build_chain_registry, get_chain_config
from .strategies import ClassificationStrategy, strategy_for
from .transactions import (
    ChainTransaction,
    UnspentOutput,
    parse_blockbook_transaction,
    parse_blockbook_utxo,
    parse_monero_transaction,
    parse_solana_transaction,
)
from .transport import BlockbookClient, HttpTransport, JsonRpcClient

logger = logging.getLogger(__name__)

# Failures a read call absorbs: typed upstream errors and malformed payloads
_READ_ERRORS = (ChainError, KeyError, TypeError, ValueError)

# Solana charges a flat fee per signature
LAMPORTS_PER_SIGNATURE = 5000


# =============================================================================
# Address formats
# =============================================================================

_B58 = "[a-km-zA-HJ-NP-Z1-9]"

ADDRESS_PATTERNS: Dict[Tuple[str, bool], List[Pattern[str]]] = {
    ("BTC", False): [
        re.compile(rf"^[13]{_B58}{{25,34}}$"),
        re.compile(r"^bc1[a-z0-9]{39,59}$"),
    ],
    ("BTC", True): [
        re.compile(rf"^[mn2]{_B58}{{25,34}}$"),
        re.compile(r"^tb1[a-z0-9]{39,59}$"),
    ],
    ("LTC", False): [
        re.compile(rf"^[LM3]{_B58}{{26,33}}$"),
        re.compile(r"^ltc1[a-z0-9]{39,59}$"),
    ],
    ("LTC", True): [
        re.compile(rf"^[mnQ2]{_B58}{{25,34}}$"),
        re.compile(r"^tltc1[a-z0-9]{39,59}$"),
    ],
    ("XMR", False): [re.compile(r"^[48][0-9AB][1-9A-HJ-NP-Za-km-z]{93}$")],
    ("XMR", True): [re.compile(r"^[9A][0-9a-zA-Z][1-9A-HJ-NP-Za-km-z]{93}$")],
    ("ETH", False): [re.compile(r"^0x[a-fA-F0-9]{40}$")],
    ("ETH", True): [re.compile(r"^0x[a-fA-F0-9]{40}$")],
    ("SOL", False): [re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")],
    ("SOL", True): [re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")],
}

# Base58check version bytes accepted for P2PKH and P2SH
BASE58_VERSIONS: Dict[Tuple[str, bool], Tuple[int, ...]] = {
    ("BTC", False): (0x00, 0x05),
    ("BTC", True): (0x6F, 0xC4),
    ("LTC", False): (0x30, 0x32, 0x05),
    ("LTC", True): (0x6F, 0x3A, 0xC4),
}


def _encoding_valid(symbol: str, address: str, testnet: bool) -> bool:
    if symbol in ("BTC", "LTC"):
        return (
            is_valid_p2wpkh(address, SEGWIT_HRP[(symbol, testnet)])
            or is_valid_p2pkh(address, BASE58_VERSIONS[(symbol, testnet)])
        )
    if symbol == "ETH":
        return is_valid_ethereum(address)
    if symbol == "SOL":
        return is_valid_solana(address)
    if symbol == "XMR":
        return is_valid_monero(address, testnet)
    return False


# =============================================================================
# Backends
# =============================================================================

class ChainBackend(ABC):
    """Upstream API access for one chain, in minor units."""

    def __init__(self, config: ChainConfig, transport: HttpTransport) -> None:
        self._config = config
        self._transport = transport

    @abstractmethod
    async def balance_minor(self, address: str) -> int:
        pass

    @abstractmethod
    async def transaction(self, txid: str) -> Optional[ChainTransaction]:
        pass

    @abstractmethod
    async def history(self, address: str, page: int, page_size: int) -> List[ChainTransaction]:
        pass

    @abstractmethod
    async def candidates(self, address: str, since: datetime) -> List[ChainTransaction]:
        """Recent transactions for amount matching, newest first."""
        pass

    @abstractmethod
    async def chain_tip(self) -> Tuple[Optional[int], Optional[str]]:
        """(best block height, best block hash)."""
        pass

    @abstractmethod
    async def fee_minor(self, blocks: int) -> Optional[int]:
        pass

    async def unspent_outputs(self, address: str) -> List[UnspentOutput]:
        raise ChainOperationUnsupportedError(self._config.symbol, "unspent_outputs")

    @abstractmethod
    async def broadcast(self, raw_transaction: str) -> str:
        """Submit a signed transaction; returns its id."""
        pass

    async def confirmations(self, txid: str) -> int:
        tx = await self.transaction(txid)
        return tx.confirmations if tx is not None else 0

    async def close(self) -> None:
        await self._transport.close()


class BlockbookBackend(ChainBackend):
    """Blockbook v2 REST: BTC, LTC, ETH, ERC-20 tokens and XMR."""

    _transport: BlockbookClient

    def _parse(self, data: Dict[str, Any]) -> ChainTransaction:
        if self._config.kind == ChainKind.PRIVACY:
            return parse_monero_transaction(data)
        return parse_blockbook_transaction(data)

    async def balance_minor(self, address: str) -> int:
        if not self._config.is_token:
            info = await self._transport.address_info(address, details="basic")
            return int(info.get("balance") or 0)

        info = await self._transport.address_info(address, details="tokenBalances")
        for token in info.get("tokens") or []:
            contract = (token.get("contract") or "").lower()
            if contract == self._config.contract_address:
                return int(token.get("balance") or 0)
        return 0

    async def transaction(self, txid: str) -> Optional[ChainTransaction]:
        data = await self._transport.transaction(txid)
        if not data:
            return None
        return self._parse(data)

    async def history(self, address: str, page: int, page_size: int) -> List[ChainTransaction]:
        info = await self._transport.address_info(
            address,
            page=page,
            page_size=page_size,
            details="txs",
            contract=self._config.contract_address,
        )
        return [self._parse(tx) for tx in info.get("transactions") or []]

    async def candidates(self, address: str, since: datetime) -> List[ChainTransaction]:
        page_size = 25 if self._config.is_token else 50
        recent = await self.history(address, page=1, page_size=page_size)
        # Mempool entries have no block time yet and are always candidates
        return [tx for tx in recent if tx.block_time is None or tx.block_time >= since]

    async def chain_tip(self) -> Tuple[Optional[int], Optional[str]]:
        status = await self._transport.status()
        blockbook = status.get("blockbook") or {}
        backend = status.get("backend") or {}
        height = blockbook.get("bestHeight", backend.get("blocks"))
        return (int(height) if height is not None else None, backend.get("bestBlockHash"))

    async def unspent_outputs(self, address: str) -> List[UnspentOutput]:
        if self._config.kind != ChainKind.UTXO:
            return await super().unspent_outputs(address)
        return [parse_blockbook_utxo(entry) for entry in await self._transport.utxos(address) or []]

    async def broadcast(self, raw_transaction: str) -> str:
        data = await self._transport.send_transaction(raw_transaction)
        return str(data["result"])

    async def fee_minor(self, blocks: int) -> Optional[int]:
        data = await self._transport.estimate_fee(blocks)
        result = data.get("result") if isinstance(data, dict) else None
        if result is None:
            return None
        # Blockbook reports coin units per kB
        return int(Decimal(str(result)) * (Decimal(10) ** self._config.decimals))


class SolanaBackend(ChainBackend):
    """Solana JSON-RPC (``jsonParsed`` transactions)."""

    _transport: JsonRpcClient

    async def _slot(self) -> int:
        return int(await self._transport.call("getSlot"))

    async def balance_minor(self, address: str) -> int:
        result = await self._transport.call("getBalance", [address])
        if isinstance(result, dict):
            return int(result.get("value") or 0)
        return int(result or 0)

    async def _fetch(self, signature: str, current_slot: Optional[int]) -> Optional[ChainTransaction]:
        data = await self._transport.call(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
        )
        if not data:
            return None
        return parse_solana_transaction(signature, data, current_slot)

    async def transaction(self, txid: str) -> Optional[ChainTransaction]:
        return await self._fetch(txid, await self._slot())

    async def _signatures(self, address: str, limit: int) -> List[Dict[str, Any]]:
        return await self._transport.call(
            "getSignaturesForAddress", [address, {"limit": limit}]
        ) or []

    async def _load(self, entries: List[Dict[str, Any]]) -> List[ChainTransaction]:
        if not entries:
            return []
        current_slot = await self._slot()
        transactions = []
        for entry in entries:
            tx = await self._fetch(entry["signature"], current_slot)
            if tx is not None:
                transactions.append(tx)
        return transactions

    async def history(self, address: str, page: int, page_size: int) -> List[ChainTransaction]:
        entries = await self._signatures(address, page * page_size)
        return await self._load(entries[(page - 1) * page_size:])

    async def candidates(self, address: str, since: datetime) -> List[ChainTransaction]:
        cutoff = int(since.timestamp())
        entries = [
            e for e in await self._signatures(address, 50)
            if e.get("blockTime") is None or e["blockTime"] >= cutoff
        ]
        return await self._load(entries)

    async def chain_tip(self) -> Tuple[Optional[int], Optional[str]]:
        return await self._slot(), None

    async def fee_minor(self, blocks: int) -> Optional[int]:
        return LAMPORTS_PER_SIGNATURE

    async def broadcast(self, raw_transaction: str) -> str:
        return await self._transport.call(
            "sendTransaction", [raw_transaction, {"encoding": "base64"}]
        )


# =============================================================================
# Adapter
# =============================================================================

class ChainAdapter:
    """Uniform chain access: balances, confirmations and incoming-payment classification."""

    def __init__(
        self,
        config: ChainConfig,
        backend: ChainBackend,
        strategy: Optional[ClassificationStrategy] = None,
        testnet: bool = False,
    ) -> None:
        self._config = config
        self._backend = backend
        self._strategy = strategy or strategy_for(config)
        self._testnet = testnet
        self._scale = Decimal(10) ** config.decimals

    @property
    def config(self) -> ChainConfig:
        return self._config

    @property
    def symbol(self) -> str:
        return self._config.symbol

    @property
    def kind(self) -> ChainKind:
        return self._config.kind

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    def to_decimal(self, minor: int) -> Decimal:
        """Minor units (satoshi, wei, lamports, piconero, token units) to a coin amount."""
        return Decimal(int(minor)) / self._scale

    def to_minor(self, amount: Decimal) -> int:
        value = Decimal(str(amount)) * self._scale
        return int(value.to_integral_value(rounding=ROUND_HALF_UP))

    # ------------------------------------------------------------------
    # Reads (degrade to defaults)
    # ------------------------------------------------------------------

    async def fetch_balance(self, address: str) -> Decimal:
        """Current balance; upstream errors propagate."""
        return self.to_decimal(await self._backend.balance_minor(address))

    async def fetch_confirmations(self, txid: str) -> int:
        """Current confirmation count; upstream errors propagate."""
        return await self._backend.confirmations(txid)

    async def get_balance(self, address: str) -> Decimal:
        try:
            return await self.fetch_balance(address)
        except _READ_ERRORS as e:
            logger.error(f"{self.symbol} balance lookup failed for {address}: {e}")
            return Decimal("0")

    async def get_confirmations(self, txid: str) -> int:
        try:
            return await self.fetch_confirmations(txid)
        except _READ_ERRORS as e:
            logger.error(f"{self.symbol} confirmation lookup failed for {txid}: {e}")
            return 0

    async def get_transaction(self, txid: str) -> Optional[ChainTransaction]:
        try:
            return await self._backend.transaction(txid)
        except _READ_ERRORS as e:
            logger.error(f"{self.symbol} transaction lookup failed for {txid}: {e}")
            return None

    async def get_chain_tip(self) -> Tuple[Optional[int], Optional[str]]:
        try:
            return await self._backend.chain_tip()
        except _READ_ERRORS as e:
            logger.error(f"{self.symbol} chain tip lookup failed: {e}")
            return None, None

    async def get_block_height(self) -> Optional[int]:
        height, _ = await self.get_chain_tip()
        return height

    async def estimate_fee(self, blocks: int = 6) -> Optional[Decimal]:
        try:
            fee = await self._backend.fee_minor(blocks)
        except _READ_ERRORS as e:
            logger.error(f"{self.symbol} fee estimate failed: {e}")
            return None
        return self.to_decimal(fee) if fee is not None else None

    async def find_incoming_transaction(
        self,
        address: str,
        amount: Decimal,
        within_hours: int = 24,
    ) -> Optional[str]:
        """Txid of a recent transaction paying exactly ``amount`` to ``address``.

        Raises:
            PrivacyLookupUnsupportedError: On view-key-only chains
        """
        if self.kind == ChainKind.PRIVACY:
            raise PrivacyLookupUnsupportedError(self.symbol, "find_incoming_transaction")

        target = self.to_minor(amount)
        since = utc_now() - timedelta(hours=within_hours)
        try:
            candidates = await self._backend.candidates(address, since)
        except _READ_ERRORS as e:
            logger.error(f"{self.symbol} transaction search failed for {address}: {e}")
            return None

        for tx in candidates:
            if self._strategy.matches_amount(tx, address, target):
                logger.info(f"Found {amount} {self.symbol} payment to {address}: {tx.txid}")
                return tx.txid
        return None

    # ------------------------------------------------------------------
    # History, UTXOs and broadcast (propagate)
    # ------------------------------------------------------------------

    async def list_recent_transactions(
        self,
        address: str,
        page: int = 1,
        page_size: int = 25,
    ) -> List[ChainTransaction]:
        """Most recent page of transactions touching ``address``.

        Raises:
            ChainError: On upstream failure, after retries
        """
        return await self._backend.history(address, page, page_size)

    async def list_utxos(self, address: str) -> List[UnspentOutput]:
        """Unspent outputs of ``address``, for sweeping UTXO deposits.

        Raises:
            ChainOperationUnsupportedError: On account, token and privacy chains
            ChainError: On upstream failure, after retries
        """
        return await self._backend.unspent_outputs(address)

    async def utxo_balance(self, address: str, min_confirmations: int = 0) -> Decimal:
        """Sum of unspent outputs with at least ``min_confirmations``."""
        outputs = await self.list_utxos(address)
        return self.to_decimal(sum(
            o.value_minor for o in outputs if o.confirmations >= min_confirmations
        ))

    async def broadcast(self, raw_transaction: str) -> str:
        """Submit a signed transaction (hex for Blockbook, base64 for Solana).

        Returns:
            The transaction id reported by the upstream node.
        """
        txid = await self._backend.broadcast(raw_transaction)
        logger.info(f"{self.symbol} transaction broadcast: {txid}")
        return txid

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def is_valid_address(self, address: str) -> bool:
        base = self._config.base_symbol
        patterns = ADDRESS_PATTERNS.get((base, self._testnet), [])
        if not any(p.match(address) for p in patterns):
            return False
        return _encoding_valid(base, address, self._testnet)

    def is_incoming(self, tx: ChainTransaction, address: str) -> bool:
        return self._strategy.is_incoming(tx, address)

    def incoming_amount(self, tx: ChainTransaction, address: str) -> Decimal:
        return self.to_decimal(self._strategy.incoming_minor(tx, address))

    def sender_of(self, tx: ChainTransaction) -> Optional[str]:
        return self._strategy.sender_of(tx)

    async def close(self) -> None:
        await self._backend.close()


# =============================================================================
# Factory
# =============================================================================

class AdapterFactory:
    """Builds and caches one ChainAdapter per configured symbol."""

    def __init__(
        self,
        registry: Dict[str, ChainConfig],
        settings: Optional[GatewaySettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._registry = registry
        self._testnet = settings.testnet if settings is not None else False
        self._http_client = http_client
        self._adapters: Dict[str, ChainAdapter] = {}

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "AdapterFactory":
        return cls(build_chain_registry(settings), settings, http_client)

    @property
    def symbols(self) -> List[str]:
        return sorted(self._registry)

    def _backend(self, config: ChainConfig) -> ChainBackend:
        options = dict(
            chain=config.symbol,
            base_url=config.endpoint,
            timeout=config.timeout_seconds,
            retry_attempts=config.retry_attempts,
            retry_base_delay=config.retry_base_delay,
            rate_limit_delay=config.rate_limit_delay,
            http_client=self._http_client,
        )
        if config.backend == "solana_rpc":
            return SolanaBackend(config, JsonRpcClient(**options))
        if config.backend == "blockbook":
            return BlockbookBackend(config, BlockbookClient(**options))
        raise UnsupportedChainError(config.symbol)

    def create(self, symbol: str) -> ChainAdapter:
        """Adapter for ``symbol``.

        Raises:
            UnsupportedChainError: If the symbol is not configured
        """
        config = get_chain_config(self._registry, symbol)
        adapter = self._adapters.get(config.symbol)
        if adapter is None:
            adapter = ChainAdapter(config, self._backend(config), testnet=self._testnet)
            self._adapters[config.symbol] = adapter
            logger.debug(f"Created {config.kind.value} adapter for {config.symbol}")
        return adapter

    def register(self, adapter: ChainAdapter) -> None:
        """Install a prebuilt adapter, replacing any cached one."""
        self._adapters[adapter.symbol] = adapter

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()


__all__ = [
    "ADDRESS_PATTERNS",
    "ChainBackend",
    "BlockbookBackend",
    "SolanaBackend",
    "ChainAdapter",
    "AdapterFactory",
]
