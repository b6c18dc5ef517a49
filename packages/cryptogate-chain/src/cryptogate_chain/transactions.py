"""
Normalized transaction view over the upstream payload formats.

Blockbook (UTXO and Ethereum flavours), Solana ``jsonParsed`` and Monero
payloads all parse into one :class:`ChainTransaction`, so classification
strategies never touch raw JSON. Amounts stay in minor units here; the
adapter owns the decimal conversion.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_SIGNATURE = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


@dataclass(frozen=True)
class ChainOutput:
    """One transaction output (UTXO) or the single value leg of an account transfer."""
    address: str
    value_minor: int


@dataclass(frozen=True)
class TokenTransfer:
    """A decoded ERC-20 ``Transfer`` event."""
    from_address: str
    to_address: str
    contract: str
    value_minor: int


@dataclass(frozen=True)
class UnspentOutput:
    """One unspent output held by a UTXO-chain address."""
    txid: str
    vout: int
    value_minor: int
    confirmations: int = 0
    block_height: Optional[int] = None


@dataclass
class ChainTransaction:
    """Chain-agnostic transaction snapshot."""
    txid: str
    confirmations: int = 0
    block_hash: Optional[str] = None
    block_height: Optional[int] = None
    block_time: Optional[datetime] = None
    fee_minor: Optional[int] = None
    inputs: List[str] = field(default_factory=list)
    outputs: List[ChainOutput] = field(default_factory=list)
    sender: Optional[str] = None
    recipient: Optional[str] = None
    value_minor: int = 0
    token_transfers: List[TokenTransfer] = field(default_factory=list)
    success: bool = True
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def outputs_to(self, address: str) -> List[ChainOutput]:
        return [o for o in self.outputs if o.address == address]

    def transfers_to(self, address: str, contract: Optional[str] = None) -> List[TokenTransfer]:
        address = address.lower()
        contract = contract.lower() if contract else None
        return [
            t for t in self.token_transfers
            if t.to_address.lower() == address
            and (contract is None or t.contract.lower() == contract)
        ]


def _int(value: Any, default: int = 0) -> int:
    """Parse decimal strings, ``0x`` hex strings and plain numbers."""
    if value is None or value == "":
        return default
    if isinstance(value, str) and value.startswith(("0x", "0X")):
        return int(value, 16)
    return int(value)


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _height(value: Any) -> Optional[int]:
    """Blockbook reports -1 for mempool transactions."""
    height = _int(value, default=-1)
    return height if height >= 0 else None


def _first_address(entry: Dict[str, Any]) -> Optional[str]:
    addresses = entry.get("addresses") or []
    if addresses:
        return addresses[0]
    return entry.get("scriptpubkey_address") or entry.get("address")


# =============================================================================
# Blockbook
# =============================================================================

def parse_token_transfers(entries: Iterable[Dict[str, Any]]) -> List[TokenTransfer]:
    """Blockbook ``tokenTransfers`` entries (``contract`` or legacy ``token`` key)."""
    transfers = []
    for entry in entries or []:
        contract = entry.get("contract") or entry.get("token")
        if not contract or not entry.get("to"):
            continue
        transfers.append(
            TokenTransfer(
                from_address=entry.get("from", ""),
                to_address=entry["to"],
                contract=contract,
                value_minor=_int(entry.get("value")),
            )
        )
    return transfers


def parse_transfer_logs(logs: Iterable[Dict[str, Any]]) -> List[TokenTransfer]:
    """Decode raw ERC-20 ``Transfer`` logs; other events are ignored."""
    transfers = []
    for log in logs or []:
        topics = log.get("topics") or []
        if len(topics) < 3 or topics[0].lower() != TRANSFER_EVENT_SIGNATURE:
            continue
        data = log.get("data") or "0x0"
        transfers.append(
            TokenTransfer(
                from_address="0x" + topics[1][-40:],
                to_address="0x" + topics[2][-40:],
                contract=log.get("address", ""),
                value_minor=_int(data if data != "0x" else "0x0"),
            )
        )
    return transfers


def parse_blockbook_transaction(data: Dict[str, Any]) -> ChainTransaction:
    """Parse a Blockbook v2 transaction (UTXO or Ethereum flavour)."""
    vin = data.get("vin") or []
    vout = data.get("vout") or []

    inputs = [a for a in (_first_address(v) for v in vin) if a]
    outputs = []
    for entry in vout:
        value = _int(entry.get("value"))
        for address in entry.get("addresses") or []:
            outputs.append(ChainOutput(address=address, value_minor=value))
        if not entry.get("addresses") and entry.get("scriptpubkey_address"):
            outputs.append(ChainOutput(address=entry["scriptpubkey_address"], value_minor=value))

    ethereum = data.get("ethereumSpecific") or {}
    success = ethereum.get("status", 1) != 0

    token_transfers = parse_token_transfers(data.get("tokenTransfers") or [])
    if not token_transfers and ethereum.get("parsedLogs"):
        token_transfers = parse_transfer_logs(ethereum["parsedLogs"])

    sender = data.get("from") or (inputs[0] if inputs else None)
    recipient = data.get("to") or (outputs[0].address if outputs else None)
    value = data.get("value")

    return ChainTransaction(
        txid=data.get("txid") or data.get("hash", ""),
        confirmations=_int(data.get("confirmations")),
        block_hash=data.get("blockHash"),
        block_height=_height(data.get("blockHeight")),
        block_time=_timestamp(data.get("blockTime")),
        fee_minor=_int(data["fees"]) if data.get("fees") is not None else None,
        inputs=inputs,
        outputs=outputs,
        sender=sender,
        recipient=recipient,
        value_minor=_int(value),
        token_transfers=token_transfers,
        success=success,
        raw=data,
    )


def parse_blockbook_utxo(data: Dict[str, Any]) -> UnspentOutput:
    """One entry of ``/api/v2/utxo/<address>``; mempool outputs have no height."""
    return UnspentOutput(
        txid=data["txid"],
        vout=_int(data.get("vout")),
        value_minor=_int(data.get("value")),
        confirmations=_int(data.get("confirmations")),
        block_height=_height(data.get("height")),
    )


def parse_monero_transaction(data: Dict[str, Any]) -> ChainTransaction:
    """Monero payloads expose no outputs or recipients; block metadata only."""
    return ChainTransaction(
        txid=data.get("txid") or data.get("hash", ""),
        confirmations=_int(data.get("confirmations")),
        block_hash=data.get("blockHash"),
        block_height=_height(data.get("blockHeight")),
        block_time=_timestamp(data.get("blockTime")),
        fee_minor=_int(data["fees"]) if data.get("fees") is not None else None,
        raw=data,
    )


# =============================================================================
# Solana
# =============================================================================

def _instructions(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    message = (data.get("transaction") or {}).get("message") or {}
    instructions = list(message.get("instructions") or [])
    for inner in (data.get("meta") or {}).get("innerInstructions") or []:
        instructions.extend(inner.get("instructions") or [])
    return instructions


def parse_solana_transaction(
    signature: str,
    data: Dict[str, Any],
    current_slot: Optional[int] = None,
) -> ChainTransaction:
    """Parse ``getTransaction`` with ``encoding=jsonParsed``.

    System-program ``transfer`` instructions become outputs; the first one
    also sets sender, recipient and value.
    """
    meta = data.get("meta") or {}
    slot = data.get("slot")

    outputs = []
    senders = []
    for instruction in _instructions(data):
        parsed = instruction.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
            continue
        info = parsed.get("info") or {}
        if "lamports" not in info or not info.get("destination"):
            continue
        outputs.append(ChainOutput(address=info["destination"], value_minor=_int(info["lamports"])))
        if info.get("source"):
            senders.append(info["source"])

    confirmations = 0
    if current_slot is not None and slot is not None:
        confirmations = max(0, current_slot - slot)

    return ChainTransaction(
        txid=signature,
        confirmations=confirmations,
        block_height=slot,
        block_time=_timestamp(data.get("blockTime")),
        fee_minor=_int(meta["fee"]) if meta.get("fee") is not None else None,
        inputs=senders,
        outputs=outputs,
        sender=senders[0] if senders else None,
        recipient=outputs[0].address if outputs else None,
        value_minor=outputs[0].value_minor if outputs else 0,
        success=meta.get("err") is None,
        raw=data,
    )


__all__ = [
    "TRANSFER_EVENT_SIGNATURE",
    "ChainOutput",
    "TokenTransfer",
    "ChainTransaction",
    "UnspentOutput",
    "parse_token_transfers",
    "parse_transfer_logs",
    "parse_blockbook_transaction",
    "parse_blockbook_utxo",
    "parse_monero_transaction",
    "parse_solana_transaction",
]
