"""
Logging utilities for CryptoGate with sensitive data masking.

Seeds, mnemonics, private keys, webhook secrets and API keys embedded in
upstream URLs must never reach a log line. Modules log through the standard
library (``logging.getLogger(__name__)``) and pass anything that may carry
secrets through the helpers below first.

Usage:
    from cryptogate_core.logging import mask_sensitive_data, mask_url

    logger.debug(f"GET {mask_url(url)}")
    logger.info(f"Settings loaded: {mask_sensitive_data(settings.model_dump())}")
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .constants import LoggingConfig


# =============================================================================
# Sensitive Data Masking
# =============================================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """Mask a sensitive value, optionally showing first/last characters.

    Args:
        value: The value to mask
        show_chars: Number of characters to show at start and end

    Returns:
        Masked string
    """
    if not value or len(value) <= show_chars * 2:
        return LoggingConfig.MASK_PATTERN

    return f"{value[:show_chars]}...{value[-show_chars:]}"


def is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates sensitive data."""
    key_lower = key.lower().replace("-", "_")
    return key_lower in LoggingConfig.SENSITIVE_FIELDS or any(
        sensitive in key_lower
        for sensitive in ("secret", "password", "private", "mnemonic", "seed", "credential")
    )


def mask_sensitive_data(
    data: Any,
    additional_fields: Optional[Sequence[str]] = None,
    mask_pattern: str = LoggingConfig.MASK_PATTERN,
    _depth: int = 0,
    _max_depth: int = 10,
) -> Any:
    """Recursively mask sensitive data in a data structure.

    Args:
        data: The data structure to mask (dict, list, or scalar)
        additional_fields: Additional field names to mask
        mask_pattern: Pattern to replace sensitive values with

    Returns:
        Copy of data with sensitive values masked
    """
    if _depth > _max_depth:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_sensitive_key(str(key)):
                result[key] = mask_pattern
            elif additional_fields and key in additional_fields:
                result[key] = mask_pattern
            else:
                result[key] = mask_sensitive_data(
                    value,
                    additional_fields,
                    mask_pattern,
                    _depth + 1,
                    _max_depth,
                )
        return result

    elif isinstance(data, (list, tuple)):
        return type(data)(
            mask_sensitive_data(
                item,
                additional_fields,
                mask_pattern,
                _depth + 1,
                _max_depth,
            )
            for item in data
        )

    elif isinstance(data, str):
        return _mask_inline_patterns(data)

    return data


def _mask_inline_patterns(text: str) -> str:
    """Mask credentials embedded in free text (URLs, bearer tokens)."""
    if len(text) > LoggingConfig.MAX_LOG_MESSAGE_LENGTH:
        text = text[: LoggingConfig.MAX_LOG_MESSAGE_LENGTH] + "...[truncated]"

    patterns = [
        (r'(Bearer\s+)[a-zA-Z0-9._-]+', r'\1***'),
        (r'(https?://)[^:/\s]+:[^@/\s]+@', r'\1***:***@'),
    ]
    for pattern, replacement in patterns:
        text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)

    return text


def mask_url(url: str) -> str:
    """Mask credentials and API-key query parameters in an upstream URL."""
    parts = urlsplit(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = "***:***@" + netloc.split("@", 1)[1]

    query = parts.query
    if query:
        pairs = [
            (k, LoggingConfig.MASK_PATTERN if k.lower() in LoggingConfig.SENSITIVE_QUERY_PARAMS else v)
            for k, v in parse_qsl(query, keep_blank_values=True)
        ]
        query = urlencode(pairs, safe="*")

    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Mask sensitive HTTP headers."""
    sensitive_headers = {
        "authorization",
        "x-api-key",
        "cookie",
        "x-webhook-signature",
    }

    return {
        key: LoggingConfig.MASK_PATTERN if key.lower() in sensitive_headers else value
        for key, value in headers.items()
    }


# =============================================================================
# JSON Formatter for Production
# =============================================================================

class JsonFormatter(logging.Formatter):
    """JSON log formatter for log aggregators."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "data") and record.data:
            log_data["data"] = mask_sensitive_data(record.data)

        return json.dumps(log_data, default=str)


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure root logging for a process hosting the gateway core.

    Args:
        level: Logging level (int or name such as "INFO")
        json_format: Whether to use JSON formatting
        log_file: Optional file path for logging
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    if json_format:
        console_handler.setFormatter(JsonFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(JsonFormatter())  # Always JSON for files
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)


__all__ = [
    "mask_sensitive_data",
    "mask_value",
    "mask_url",
    "mask_headers",
    "is_sensitive_key",
    "configure_logging",
    "JsonFormatter",
]
