"""Tests for the cross-chain dispatcher."""

import asyncio

import pytest

from agent_wallet.config import DispatcherSettings
from agent_wallet.errors import ValidationError
from agent_wallet.wallet.chains import ChainType
from agent_wallet.wallet.dispatcher import (
    NOT_DISPATCHED,
    CrossChainDispatcher,
    DispatchConfig,
    MultiChainAction,
)
from agent_wallet.wallet.manager import WalletManager
from agent_wallet.wallet.models import TransactionRequest

from conftest import (
    TEST_ETH_ADDRESS,
    TEST_MNEMONIC,
    FakeProvider,
    FakeProviderFactory,
    InFlight,
    eth_key,
)

FAIL_AMOUNT = "13"


def _action(wallet_id, amount="0.1", to=TEST_ETH_ADDRESS, chain=ChainType.ETHEREUM):
    return MultiChainAction(
        wallet_id=wallet_id,
        chain=chain,
        request=TransactionRequest(to=to, amount=amount, chain=chain),
    )


@pytest.fixture
def tracker():
    return InFlight()


@pytest.fixture
def factory(tracker):
    return FakeProviderFactory(delay=0.05, fail_amounts={FAIL_AMOUNT}, tracker=tracker)


@pytest.fixture
def wallets(store, factory):
    manager = WalletManager(store, provider_factory=factory)
    for n in range(1, 11):
        manager.import_wallet_from_private_key("agent-1", "ethereum", eth_key(n), wallet_id=f"w{n}")
    manager.import_wallet_from_seed("agent-1", "solana", TEST_MNEMONIC, wallet_id="sol")
    return manager


def _dispatcher(manager, factory, **config):
    return CrossChainDispatcher(
        manager, "agent-1", DispatchConfig(**config), provider_factory=factory
    )


class TestDispatchConfig:
    """Limits validation."""

    def test_defaults(self):
        config = DispatchConfig()
        assert config.max_concurrency == 5
        assert config.continue_on_error is False

    def test_from_settings(self):
        config = DispatchConfig.from_settings(DispatcherSettings(max_concurrency=2, call_timeout=3))
        assert config.max_concurrency == 2
        assert config.call_timeout == 3

    @pytest.mark.parametrize("kwargs", [{"max_concurrency": 0}, {"call_timeout": 0}])
    def test_invalid(self, kwargs):
        with pytest.raises(ValidationError):
            DispatchConfig(**kwargs)


class TestActionFromDict:
    """Parsing actions from JSON records."""

    def test_parses_record(self):
        action = MultiChainAction.from_dict(
            {"walletId": "w1", "chain": "cketh", "to": TEST_ETH_ADDRESS, "amount": "0.5", "gasPrice": 10}
        )
        assert action == MultiChainAction(
            wallet_id="w1",
            chain=ChainType.ETHEREUM,
            request=TransactionRequest(
                to=TEST_ETH_ADDRESS, amount="0.5", chain=ChainType.ETHEREUM, gas_price="10"
            ),
        )

    @pytest.mark.parametrize(
        "record",
        [
            "w1",
            {"chain": "ethereum", "to": TEST_ETH_ADDRESS, "amount": "1"},
            {"walletId": "w1", "chain": "ethereum", "to": TEST_ETH_ADDRESS, "amount": "-1"},
        ],
    )
    def test_rejects_bad_records(self, record):
        with pytest.raises(ValidationError):
            MultiChainAction.from_dict(record)


class TestExecute:
    """Batch sends."""

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, wallets, factory, tracker):
        actions = [_action(f"w{n}") for n in range(1, 11)]
        async with _dispatcher(wallets, factory, max_concurrency=3) as dispatcher:
            summary = await dispatcher.execute(actions)
        assert summary.succeeded == 10
        assert tracker.peak == 3
        assert len(factory.created) == 1
        assert factory.created[0].connect_calls == 1
        assert not factory.created[0].is_connected

    @pytest.mark.asyncio
    async def test_results_in_input_order(self, wallets, factory):
        actions = [_action(f"w{n}", amount=str(n)) for n in range(1, 8)]
        async with _dispatcher(wallets, factory, max_concurrency=4) as dispatcher:
            summary = await dispatcher.execute(actions)
        assert [r.action for r in summary.results] == actions
        assert all(r.tx_hash and r.transaction.amount == r.action.request.amount for r in summary.results)
        assert len({r.tx_hash for r in summary.results}) == 7

    @pytest.mark.asyncio
    async def test_halts_after_first_failure(self, wallets, factory):
        actions = [
            _action("w1"),
            _action("w2", amount=FAIL_AMOUNT),
            _action("w3"),
            _action("w4"),
        ]
        async with _dispatcher(wallets, factory, max_concurrency=1) as dispatcher:
            summary = await dispatcher.execute(actions)

        assert [r.success for r in summary.results] == [True, False, False, False]
        assert summary.results[1].error == "insufficient funds"
        assert summary.results[2].error == NOT_DISPATCHED
        assert summary.results[3].error == NOT_DISPATCHED
        assert len(factory.created[0].sent) == 2
        assert summary.total == summary.succeeded + summary.failed == 4

    @pytest.mark.asyncio
    async def test_continue_on_error(self, wallets, factory):
        actions = [_action("w1"), _action("w2", amount=FAIL_AMOUNT), _action("w3")]
        async with _dispatcher(
            wallets, factory, max_concurrency=1, continue_on_error=True
        ) as dispatcher:
            summary = await dispatcher.execute(actions)
        assert [r.success for r in summary.results] == [True, False, True]
        assert (summary.succeeded, summary.failed) == (2, 1)

    @pytest.mark.asyncio
    async def test_preflight_failures(self, wallets, factory):
        actions = [
            _action("missing"),
            _action("w1", to="0xnot-an-address"),
            _action("sol", to=TEST_ETH_ADDRESS),
            _action("w2", chain=ChainType.SOLANA, to="11111111111111111111111111111111"),
        ]
        async with _dispatcher(
            wallets, factory, max_concurrency=2, continue_on_error=True
        ) as dispatcher:
            summary = await dispatcher.execute(actions)
        assert summary.failed == 4
        assert "not found" in summary.results[0].error
        assert "destination" in summary.results[1].error
        assert all(not p.sent for p in factory.created)

    @pytest.mark.asyncio
    async def test_provider_timeout_is_a_failure(self, wallets):
        slow = FakeProviderFactory(delay=1.0)
        async with _dispatcher(wallets, slow, call_timeout=0.05) as dispatcher:
            summary = await dispatcher.execute([_action("w1")])
        assert summary.failed == 1
        assert "timed out" in summary.results[0].error

    @pytest.mark.asyncio
    async def test_mnemonic_wallet_key_is_derived(self, wallets, factory):
        wallets.import_wallet_from_seed("agent-1", "ethereum", TEST_MNEMONIC, wallet_id="seeded")
        async with _dispatcher(wallets, factory) as dispatcher:
            summary = await dispatcher.execute([_action("seeded")])
        assert summary.succeeded == 1
        from_address, _, private_key = factory.created[0].sent[0]
        assert from_address == TEST_ETH_ADDRESS
        assert len(private_key) == 64

    @pytest.mark.asyncio
    async def test_empty_batch(self, wallets, factory):
        async with _dispatcher(wallets, factory) as dispatcher:
            summary = await dispatcher.execute([])
        assert summary.total == 0
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_a_failed_result(self, wallets, tracker):
        factory = FakeProviderFactory(crash_amounts={"7"}, tracker=tracker)
        actions = [_action("w1"), _action("w2", amount="7"), _action("w3")]
        async with _dispatcher(
            wallets, factory, max_concurrency=2, continue_on_error=True
        ) as dispatcher:
            summary = await dispatcher.execute(actions)
        assert [r.success for r in summary.results] == [True, False, True]
        assert summary.results[1].error == "unexpected library failure"
        assert summary.total == len(actions)

    @pytest.mark.asyncio
    async def test_unexpected_exception_halts(self, wallets):
        factory = FakeProviderFactory(crash_amounts={"7"})
        actions = [_action("w1", amount="7"), _action("w2"), _action("w3")]
        async with _dispatcher(wallets, factory, max_concurrency=1) as dispatcher:
            summary = await dispatcher.execute(actions)
        assert [r.error for r in summary.results] == [
            "unexpected library failure",
            NOT_DISPATCHED,
            NOT_DISPATCHED,
        ]


class TestBalances:
    """Concurrent balance checks."""

    @pytest.mark.asyncio
    async def test_check_balances_records_errors(self, store, tracker):
        manager = WalletManager(store)
        sol = manager.import_wallet_from_seed("agent-1", "solana", TEST_MNEMONIC, wallet_id="sol")
        manager.import_wallet_from_private_key("agent-1", "ethereum", eth_key(1), wallet_id="eth")
        factory = FakeProviderFactory(fail_addresses={sol.address}, tracker=tracker)

        async with _dispatcher(manager, factory, max_concurrency=2) as dispatcher:
            entries = await dispatcher.check_balances()

        by_id = {e.wallet.id: e for e in entries}
        assert by_id["eth"].balance.amount == "1.5"
        assert by_id["eth"].error is None
        assert by_id["sol"].balance is None
        assert "balance lookup failed" in by_id["sol"].error
        assert {p.chain for p in factory.created} == {ChainType.ETHEREUM, ChainType.SOLANA}

    @pytest.mark.asyncio
    async def test_unexpected_balance_exception_is_recorded(self, wallets):
        class SolanaBalanceBreaks(FakeProvider):
            async def get_balance(self, address):
                if self.chain is ChainType.SOLANA:
                    raise KeyError("slot")
                return await super().get_balance(address)

        async with _dispatcher(wallets, SolanaBalanceBreaks) as dispatcher:
            entries = await dispatcher.check_balances()
        by_id = {e.wallet.id: e for e in entries}
        assert len(entries) == 11
        assert by_id["sol"].balance is None
        assert "slot" in by_id["sol"].error
        assert by_id["w1"].balance.amount == "1.5"

    @pytest.mark.asyncio
    async def test_balances_share_the_bound(self, wallets, factory, tracker):
        async with _dispatcher(wallets, factory, max_concurrency=2) as dispatcher:
            entries = await dispatcher.check_balances()
        assert len(entries) == 11
        assert tracker.peak <= 2

    @pytest.mark.asyncio
    async def test_concurrent_batches_share_the_bound(self, wallets, factory, tracker):
        async with _dispatcher(wallets, factory, max_concurrency=2) as dispatcher:
            await asyncio.gather(
                dispatcher.execute([_action(f"w{n}") for n in range(1, 6)]),
                dispatcher.execute([_action(f"w{n}") for n in range(6, 11)]),
                dispatcher.check_balances(),
            )
        assert tracker.peak <= 2
