"""
HTTP transports for chain backends.

Both clients share one outcome mapping:

    timeout / connection failure -> UpstreamTimeoutError / TransientChainError
    HTTP 5xx                     -> UpstreamServerError
    HTTP 429                     -> RateLimitedError
    other HTTP 4xx               -> UpstreamRequestError
    JSON-RPC error object        -> UpstreamRequestError (RateLimitedError for -32005)

and retry with :func:`cryptogate_core.retry.upstream_retry_config`. When
retries run out the last typed error is raised, not ``RetryExhausted``.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from cryptogate_core.constants import LoggingConfig, RetryDefaults, Timeouts
from cryptogate_core.exceptions import (
    RateLimitedError,
    TransientChainError,
    UpstreamRequestError,
    UpstreamServerError,
    UpstreamTimeoutError,
)
from cryptogate_core.logging import mask_url
from cryptogate_core.retry import RetryConfig, RetryExhausted, retry_async, upstream_retry_config

logger = logging.getLogger(__name__)

# JSON-RPC error codes providers use for throttling
RPC_RATE_LIMIT_CODES = frozenset({-32005, 429})


class HttpTransport:
    """Lazily created ``httpx.AsyncClient`` plus typed, retried requests."""

    def __init__(
        self,
        chain: str,
        base_url: str,
        timeout: float = Timeouts.UPSTREAM_REQUEST,
        retry_attempts: int = RetryDefaults.UPSTREAM_ATTEMPTS,
        retry_base_delay: float = RetryDefaults.UPSTREAM_BASE_DELAY,
        rate_limit_delay: float = RetryDefaults.UPSTREAM_RATE_LIMIT_DELAY,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self._chain = chain
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self._retry_config = retry_config or upstream_retry_config(
            attempts=retry_attempts,
            base_delay=retry_base_delay,
            rate_limit_delay=rate_limit_delay,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=Timeouts.HTTP_CONNECT),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
            self._owns_client = True
        return self._http_client

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
    ) -> Any:
        """One attempt. Returns decoded JSON or raises a typed chain error."""
        url = f"{self._base_url}{path}"
        client = await self._get_client()

        try:
            response = await client.request(method, url, params=params, json=json_body)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(
                f"Timeout calling {mask_url(url)}", chain=self._chain
            ) from e
        except httpx.TransportError as e:
            raise TransientChainError(
                f"Connection to {mask_url(url)} failed: {type(e).__name__}", chain=self._chain
            ) from e

        status = response.status_code
        if status == 429:
            raise RateLimitedError(f"Rate limited by {mask_url(url)}", chain=self._chain)
        if status >= 500:
            raise UpstreamServerError(
                f"{mask_url(url)} returned {status}", chain=self._chain, status_code=status
            )
        if status >= 400:
            body = response.text[:LoggingConfig.MAX_RESPONSE_BODY_LOG_LENGTH]
            raise UpstreamRequestError(
                f"{mask_url(url)} returned {status}: {body}",
                chain=self._chain,
                status_code=status,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamRequestError(
                f"Invalid JSON from {mask_url(url)}", chain=self._chain, status_code=status
            ) from e

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
    ) -> Any:
        logger.debug(f"{method} {mask_url(self._base_url + path)}")
        try:
            return await retry_async(
                self._send, method, path, params, json_body, config=self._retry_config
            )
        except RetryExhausted as e:
            logger.error(
                f"{self._chain} upstream call {method} {path} failed after "
                f"{e.stats.attempts} attempts: {e.original_exception}"
            )
            raise e.original_exception

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class BlockbookClient(HttpTransport):
    """REST client for a Blockbook v2 indexer."""

    async def status(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/v2")

    async def address_info(
        self,
        address: str,
        page: int = 1,
        page_size: int = 25,
        details: str = "txs",
        contract: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page": page, "pageSize": page_size, "details": details}
        if contract:
            params["contract"] = contract
        return await self._request("GET", f"/api/v2/address/{address}", params=params)

    async def transaction(self, txid: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/v2/tx/{txid}")

    async def utxos(self, address: str) -> List[Dict[str, Any]]:
        return await self._request("GET", f"/api/v2/utxo/{address}")

    async def estimate_fee(self, blocks: int = 6) -> Dict[str, Any]:
        return await self._request("GET", f"/api/v2/estimatefee/{blocks}")

    async def send_transaction(self, raw_hex: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/v2/sendtx/{raw_hex}")


class JsonRpcClient(HttpTransport):
    """JSON-RPC 2.0 client (``{"jsonrpc", "id": 1, "method", "params"}``)."""

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params or [],
        }
        logger.debug(f"RPC {method} -> {mask_url(self._base_url)}")
        try:
            return await retry_async(self._call_once, payload, config=self._retry_config)
        except RetryExhausted as e:
            logger.error(
                f"{self._chain} RPC {method} failed after {e.stats.attempts} attempts: "
                f"{e.original_exception}"
            )
            raise e.original_exception

    async def _call_once(self, payload: Dict[str, Any]) -> Any:
        result = await self._send("POST", "", json_body=payload)
        if not isinstance(result, dict):
            raise UpstreamRequestError(
                f"Malformed RPC response for {payload['method']}", chain=self._chain
            )

        error = result.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            if code in RPC_RATE_LIMIT_CODES:
                raise RateLimitedError(f"RPC rate limited: {message}", chain=self._chain)
            raise UpstreamRequestError(
                f"RPC {payload['method']} error: {message}",
                chain=self._chain,
                rpc_code=code,
            )
        return result.get("result")


__all__ = [
    "HttpTransport",
    "BlockbookClient",
    "JsonRpcClient",
]
