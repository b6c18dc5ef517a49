"""Chain adapters, transaction monitoring and payment requests."""

from .adapter import AdapterFactory, BlockbookBackend, ChainAdapter, SolanaBackend
from .config import ChainConfig, ChainKind, build_chain_registry, get_chain_config
from .monitor import TransactionMonitor
from .payment_requests import PaymentRequestService
from .strategies import (
    AccountStrategy,
    ClassificationStrategy,
    PrivacyStrategy,
    TokenStrategy,
    UtxoStrategy,
)
from .transactions import ChainTransaction
from .transport import BlockbookClient, JsonRpcClient

__all__ = [
    "AdapterFactory",
    "BlockbookBackend",
    "ChainAdapter",
    "SolanaBackend",
    "ChainConfig",
    "ChainKind",
    "build_chain_registry",
    "get_chain_config",
    "TransactionMonitor",
    "PaymentRequestService",
    "AccountStrategy",
    "ClassificationStrategy",
    "PrivacyStrategy",
    "TokenStrategy",
    "UtxoStrategy",
    "ChainTransaction",
    "BlockbookClient",
    "JsonRpcClient",
]
