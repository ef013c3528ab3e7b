"""Async JSON-RPC 2.0 over httpx, and the base for adapters built on it."""

from __future__ import annotations

import itertools
import logging
from typing import Any, Optional

import httpx

from agent_wallet.errors import (
    NotConnectedError,
    NotImplementedFeatureError,
    ProviderConnectionError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    ValidationError,
)
from agent_wallet.wallet.models import (
    Balance,
    ProviderConfig,
    SignedTransaction,
    Transaction,
    TransactionRequest,
)
from agent_wallet.wallet.providers.base import WalletProvider

logger = logging.getLogger("agent_wallet.wallet.providers.rpc")


class JsonRpcClient:
    """POSTs JSON-RPC requests to one endpoint.

    *transport* lets tests substitute ``httpx.MockTransport``.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        """Send one request and return its ``result``.

        HTTP 429 raises :class:`RateLimitedError`, transport failures raise
        :class:`ProviderConnectionError`, and a JSON-RPC ``error`` member
        raises :class:`ProviderError`.
        """
        if self._client is None:
            raise NotConnectedError("JSON-RPC client is not open")

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        try:
            resp = await self._client.post(self.url, json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"{method} timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderConnectionError(f"{method} failed: {exc}") from exc

        if resp.status_code == 429:
            raise RateLimitedError(
                f"{method} rate limited by {self.url}",
                {"retry_after": resp.headers.get("Retry-After")},
            )
        if resp.status_code >= 400:
            raise ProviderConnectionError(
                f"{method} returned HTTP {resp.status_code}: {resp.text[:200]}"
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise ProviderError(f"{method} returned invalid JSON") from exc

        if body.get("error"):
            error = body["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise ProviderError(f"{method} failed: {message}", {"error": error})
        logger.debug(f"{method} -> ok")
        return body.get("result")


class JsonRpcProvider(WalletProvider):
    """Shared plumbing for the httpx-backed adapters (Polkadot, Solana).

    These adapters are partial: only connectivity and block height talk to
    the node. Balances read as zero, fees are the chain's documented
    default, and signing raises :class:`NotImplementedFeatureError`.
    """

    health_method: str = ""
    block_method: str = ""

    def __init__(
        self,
        config: ProviderConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(config)
        self._transport = transport
        self._rpc: Optional[JsonRpcClient] = None

    @property
    def rpc(self) -> JsonRpcClient:
        self._require_connected()
        assert self._rpc is not None
        return self._rpc

    async def connect(self) -> None:
        if self._connected:
            return
        client = JsonRpcClient(self.rpc_url, self.config.timeout, self._transport)
        await client.open()
        try:
            health = await self._call(client.call(self.health_method), self.health_method)
        except ProviderError as exc:
            await client.close()
            raise ProviderConnectionError(
                f"Failed to connect to {self.chain.value} network: {exc}"
            ) from exc
        self._rpc = client
        self._connected = True
        logger.info(f"Connected to {self.chain.value} via {self.rpc_url} ({health})")

    async def disconnect(self) -> None:
        client, self._rpc = self._rpc, None
        self._connected = False
        if client is not None:
            await client.close()

    def _parse_block_number(self, result: Any) -> int:
        return int(result)

    async def get_block_number(self) -> int:
        result = await self._call(self.rpc.call(self.block_method), self.block_method)
        return self._parse_block_number(result)

    def _check_address(self, address: str) -> None:
        if not self.validate_address(address):
            raise ValidationError(f"Invalid {self.chain.value} address: {address!r}")

    async def get_balance(self, address: str) -> Balance:
        self._require_connected()
        self._check_address(address)
        return Balance(
            amount="0",
            denomination=self.spec.native_symbol,
            chain=self.chain,
            address=address,
        )

    async def estimate_fee(self, request: TransactionRequest) -> str:
        self._require_connected()
        return self.spec.default_fee or "0"

    async def sign_transaction(
        self,
        tx: dict[str, Any],
        private_key: str,
        request: Optional[TransactionRequest] = None,
    ) -> SignedTransaction:
        raise NotImplementedFeatureError(
            f"Transaction signing is not implemented for {self.chain.value} yet"
        )

    async def send_transaction(
        self, from_address: str, request: TransactionRequest, private_key: str
    ) -> Transaction:
        self._require_connected()
        raise NotImplementedFeatureError(
            f"Sending transactions is not implemented for {self.chain.value} yet"
        )

    async def get_transaction_history(self, address: str) -> list[Transaction]:
        self._require_connected()
        self._check_address(address)
        return []

    async def get_transaction(self, tx_hash: str) -> Optional[Transaction]:
        self._require_connected()
        return None
