"""Common contract for chain providers."""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Optional, TypeVar

from agent_wallet.errors import (
    AgentWalletError,
    NotConnectedError,
    ProviderError,
    ProviderTimeoutError,
)
from agent_wallet.wallet.chains import CHAINS, ChainSpec, ChainType
from agent_wallet.wallet.models import (
    Balance,
    ProviderConfig,
    SignedTransaction,
    Transaction,
    TransactionRequest,
)

logger = logging.getLogger("agent_wallet.wallet.providers")

T = TypeVar("T")

API_KEY_PLACEHOLDER = "YOUR-API-KEY"


class WalletProvider(ABC):
    """One chain adapter.

    ``connect`` / ``disconnect`` toggle the connected flag. Every networked
    method calls :meth:`_require_connected` first, so using a provider
    before ``connect()`` fails immediately with
    :class:`~agent_wallet.errors.NotConnectedError`. ``validate_address``
    is synchronous and works on an unconnected provider.
    """

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config
        self._connected = False
        self._rpc_url: Optional[str] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def chain(self) -> ChainType:
        return self.config.chain

    @property
    def spec(self) -> ChainSpec:
        return CHAINS[self.config.chain]

    @property
    def is_testnet(self) -> bool:
        return self.config.is_testnet

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def rpc_url(self) -> str:
        if self._rpc_url is None:
            self._rpc_url = self.resolve_rpc_url()
        return self._rpc_url

    def resolve_rpc_url(self) -> str:
        """Pick the endpoint: config, then env var, then Infura (EVM), then public."""
        configured = self.config.rpc_url
        if configured and API_KEY_PLACEHOLDER not in configured:
            return configured

        spec = self.spec
        env_var = spec.testnet_rpc_env if self.is_testnet else spec.mainnet_rpc_env
        env_url = os.environ.get(env_var)
        if env_url:
            return env_url

        infura_url = self._infura_url()
        if infura_url:
            return infura_url

        public_url = spec.testnet_rpc_url if self.is_testnet else spec.mainnet_rpc_url
        logger.warning(
            f"Using public RPC endpoint {public_url} for {self.chain.value}. "
            f"Set {env_var} for better reliability."
        )
        return public_url

    def _infura_url(self) -> Optional[str]:
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_connected(self) -> None:
        if not self._connected:
            raise NotConnectedError(
                f"{self.chain.value} provider is not connected; call connect() first"
            )

    async def _call(
        self,
        awaitable: Awaitable[T],
        what: str,
        passthrough: tuple[type[BaseException], ...] = (),
    ) -> T:
        """Await an RPC call bounded by ``config.timeout``.

        Library errors other than *passthrough* are wrapped in
        :class:`~agent_wallet.errors.ProviderError`.
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(
                f"{self.chain.value} {what} timed out after {self.config.timeout}s"
            ) from None
        except AgentWalletError:
            raise
        except passthrough:
            raise
        except Exception as exc:
            raise ProviderError(f"{self.chain.value} {what} failed: {exc}") from exc

    async def __aenter__(self) -> "WalletProvider":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    def __repr__(self) -> str:
        state = "connected" if self._connected else "disconnected"
        return f"<{type(self).__name__} {self.chain.value} testnet={self.is_testnet} {state}>"

    # ------------------------------------------------------------------
    # Capability set
    # ------------------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...

    @abstractmethod
    async def get_balance(self, address: str) -> Balance:
        ...

    @abstractmethod
    async def send_transaction(
        self, from_address: str, request: TransactionRequest, private_key: str
    ) -> Transaction:
        """Build, sign and broadcast a transfer; the result is ``pending``."""

    @abstractmethod
    async def sign_transaction(
        self,
        tx: dict[str, Any],
        private_key: str,
        request: Optional[TransactionRequest] = None,
    ) -> SignedTransaction:
        """Sign a chain-native unsigned transaction. Never logs *private_key*."""

    @abstractmethod
    async def get_transaction_history(self, address: str) -> list[Transaction]:
        ...

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        ...

    @abstractmethod
    async def estimate_fee(self, request: TransactionRequest) -> str:
        """Fee in whole native units as a decimal string."""

    @abstractmethod
    async def get_block_number(self) -> int:
        ...

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> Optional[Transaction]:
        ...
