"""Bounded-concurrency execution of actions across many wallets and chains."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from agent_wallet.config import DispatcherSettings
from agent_wallet.errors import ProviderTimeoutError, ValidationError
from agent_wallet.storage.models import Wallet
from agent_wallet.wallet.chains import ChainType, get_chain
from agent_wallet.wallet.manager import ProviderFactory, WalletManager
from agent_wallet.wallet.models import Balance, ProviderConfig, Transaction, TransactionRequest
from agent_wallet.wallet.providers import WalletProvider, create_provider, validate_address

logger = logging.getLogger("agent_wallet.wallet.dispatcher")

T = TypeVar("T")

NOT_DISPATCHED = "not dispatched: batch halted after an earlier failure"


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class DispatchConfig:
    max_concurrency: int = 5
    continue_on_error: bool = False
    call_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValidationError(
                f"max_concurrency must be at least 1, got {self.max_concurrency}"
            )
        if self.call_timeout <= 0:
            raise ValidationError(f"call_timeout must be positive, got {self.call_timeout}")

    @classmethod
    def from_settings(cls, settings: DispatcherSettings) -> "DispatchConfig":
        return cls(
            max_concurrency=settings.max_concurrency,
            continue_on_error=settings.continue_on_error,
            call_timeout=settings.call_timeout,
        )


@dataclass(frozen=True)
class MultiChainAction:
    wallet_id: str
    chain: ChainType
    request: TransactionRequest

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MultiChainAction":
        """Build an action from ``{walletId, chain, to, amount, memo?, gasPrice?, gasLimit?}``."""
        if not isinstance(data, dict):
            raise ValidationError(f"Action must be an object, got {type(data).__name__}")
        missing = [k for k in ("walletId", "chain", "to", "amount") if not data.get(k)]
        if missing:
            raise ValidationError(f"Action is missing {', '.join(missing)}")
        chain = get_chain(str(data["chain"])).chain
        try:
            request = TransactionRequest(
                to=str(data["to"]),
                amount=str(data["amount"]),
                chain=chain,
                memo=data.get("memo"),
                gas_price=_optional_str(data.get("gasPrice")),
                gas_limit=_optional_str(data.get("gasLimit")),
            )
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid action for {data['walletId']}: {exc.errors()[0]['msg']}"
            ) from None
        return cls(wallet_id=str(data["walletId"]), chain=chain, request=request)


@dataclass
class ActionResult:
    action: MultiChainAction
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    transaction: Optional[Transaction] = None


@dataclass
class DispatchSummary:
    results: list[ActionResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


@dataclass
class BalanceEntry:
    wallet: Wallet
    balance: Optional[Balance] = None
    error: Optional[str] = None


class CrossChainDispatcher:
    """Runs batches of sends and balance checks for one agent's wallets.

    At most ``config.max_concurrency`` actions touch providers at once,
    across every batch running on this dispatcher. One provider per chain
    is connected lazily and reused; :meth:`close` disconnects them.

    With ``continue_on_error=False`` the first failure stops admission of
    further actions. Work already in flight still finishes and is
    reported; actions never admitted are reported as failed.
    """

    def __init__(
        self,
        manager: WalletManager,
        agent_id: str,
        config: Optional[DispatchConfig] = None,
        provider_configs: Optional[dict[ChainType, ProviderConfig]] = None,
        provider_factory: ProviderFactory = create_provider,
    ) -> None:
        self.manager = manager
        self.agent_id = agent_id
        self.config = config or DispatchConfig()
        self._provider_configs = dict(provider_configs or {})
        self._provider_factory = provider_factory
        self._providers: dict[ChainType, WalletProvider] = {}
        self._connect_locks: dict[ChainType, asyncio.Lock] = {}
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)

    async def __aenter__(self) -> "CrossChainDispatcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        providers, self._providers = self._providers, {}
        for provider in providers.values():
            await provider.disconnect()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _bounded(self, awaitable: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.call_timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(
                f"{what} timed out after {self.config.call_timeout}s"
            ) from None

    async def _provider_for(self, chain: ChainType) -> WalletProvider:
        provider = self._providers.get(chain)
        if provider is not None and provider.is_connected:
            return provider
        lock = self._connect_locks.setdefault(chain, asyncio.Lock())
        async with lock:
            provider = self._providers.get(chain)
            if provider is None or not provider.is_connected:
                config = self._provider_configs.get(chain) or ProviderConfig(chain=chain)
                provider = self._provider_factory(config)
                await self._bounded(provider.connect(), f"{chain.value} connect")
                self._providers[chain] = provider
        return provider

    def _preflight(self, action: MultiChainAction) -> Wallet:
        wallet = self.manager.require_wallet(self.agent_id, action.wallet_id)
        if wallet.chain is not action.chain:
            raise ValidationError(
                f"Wallet {wallet.id} is on {wallet.chain.value}, action targets "
                f"{action.chain.value}"
            )
        if action.request.chain is not action.chain:
            raise ValidationError(
                f"Request chain {action.request.chain.value} does not match action chain "
                f"{action.chain.value}"
            )
        if not validate_address(action.chain, action.request.to):
            raise ValidationError(
                f"Invalid {action.chain.value} destination address: {action.request.to}"
            )
        return wallet

    async def _send(self, action: MultiChainAction) -> Transaction:
        wallet = self._preflight(action)
        provider = await self._provider_for(action.chain)
        private_key = self.manager.resolve_private_key(wallet)
        return await self._bounded(
            provider.send_transaction(wallet.address, action.request, private_key),
            f"{action.chain.value} send from {wallet.id}",
        )

    async def _balance(self, wallet: Wallet) -> Balance:
        provider = await self._provider_for(wallet.chain)
        return await self._bounded(
            provider.get_balance(wallet.address), f"{wallet.chain.value} balance of {wallet.id}"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(self, actions: list[MultiChainAction]) -> DispatchSummary:
        """Send every action; results come back in input order."""
        results: list[Optional[ActionResult]] = [None] * len(actions)
        halted = asyncio.Event()

        async def run(index: int, action: MultiChainAction) -> None:
            async with self._semaphore:
                if halted.is_set():
                    results[index] = ActionResult(action, False, error=NOT_DISPATCHED)
                    return
                try:
                    tx = await self._send(action)
                except Exception as exc:
                    logger.warning(f"Action on {action.wallet_id} failed: {exc}")
                    results[index] = ActionResult(action, False, error=str(exc))
                    if not self.config.continue_on_error:
                        halted.set()
                    return
                results[index] = ActionResult(action, True, tx_hash=tx.hash, transaction=tx)

        await asyncio.gather(*(run(i, action) for i, action in enumerate(actions)))

        summary = DispatchSummary(results=[r for r in results if r is not None])
        logger.info(
            f"Dispatched {summary.total} action(s) for {self.agent_id}: "
            f"{summary.succeeded} succeeded, {summary.failed} failed"
        )
        return summary

    async def get_balance(self, wallet: Wallet) -> Balance:
        async with self._semaphore:
            return await self._balance(wallet)

    async def check_balances(self, wallets: Optional[list[Wallet]] = None) -> list[BalanceEntry]:
        """Fetch balances for *wallets* (default: all of the agent's wallets).

        Every wallet gets an entry; failures are recorded, never raised.
        """
        if wallets is None:
            wallets = self.manager.load_agent_wallets(self.agent_id)

        async def run(wallet: Wallet) -> BalanceEntry:
            try:
                balance = await self.get_balance(wallet)
            except Exception as exc:
                logger.warning(f"Balance of {wallet.id} failed: {exc}")
                return BalanceEntry(wallet, error=str(exc))
            return BalanceEntry(wallet, balance=balance)

        return list(await asyncio.gather(*(run(w) for w in wallets)))
