"""Shared fixtures for Agent Wallet tests."""

import asyncio

import pytest

from agent_wallet.errors import NotImplementedFeatureError, ProviderError
from agent_wallet.storage.wallet_store import WalletStore
from agent_wallet.wallet.manager import WalletManager
from agent_wallet.wallet.models import Balance, Transaction
from agent_wallet.wallet.providers import WalletProvider, validate_address

# BIP-39 test vector (all-zero entropy)
TEST_MNEMONIC = " ".join(["abandon"] * 11 + ["about"])
TEST_ETH_ADDRESS = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"


def eth_key(n: int) -> str:
    """A valid secp256k1 private key for small *n*."""
    return f"{n:064x}"


@pytest.fixture
def store(tmp_path):
    return WalletStore(tmp_path / "wallets")


@pytest.fixture
def sealed_store(tmp_path):
    return WalletStore(tmp_path / "sealed", passphrase="store-passphrase")


@pytest.fixture
def manager(store):
    return WalletManager(store)


class InFlight:
    """Counts concurrent provider calls."""

    def __init__(self):
        self.current = 0
        self.peak = 0

    def enter(self):
        self.current += 1
        self.peak = max(self.peak, self.current)

    def exit(self):
        self.current -= 1


class FakeProvider(WalletProvider):
    """In-memory provider: sends succeed unless the amount or address is marked to fail.

    ``crash_amounts`` raise a plain ``RuntimeError`` instead of a provider error.
    """

    def __init__(
        self,
        config,
        delay=0.0,
        fail_amounts=(),
        fail_addresses=(),
        crash_amounts=(),
        tracker=None,
    ):
        super().__init__(config)
        self.delay = delay
        self.fail_amounts = set(fail_amounts)
        self.crash_amounts = set(crash_amounts)
        self.fail_addresses = set(fail_addresses)
        self.tracker = tracker if tracker is not None else InFlight()
        self.connect_calls = 0
        self.sent = []

    async def connect(self):
        self.connect_calls += 1
        self._connected = True

    async def disconnect(self):
        self._connected = False

    async def _work(self):
        self.tracker.enter()
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.tracker.exit()

    async def get_balance(self, address):
        self._require_connected()
        await self._work()
        if address in self.fail_addresses:
            raise ProviderError(f"balance lookup failed for {address}")
        return Balance(
            amount="1.5", denomination=self.spec.native_symbol, chain=self.chain, address=address
        )

    async def send_transaction(self, from_address, request, private_key):
        self._require_connected()
        self.sent.append((from_address, request, private_key))
        tx_hash = f"0x{len(self.sent):064x}"
        await self._work()
        if request.amount in self.fail_amounts:
            raise ProviderError("insufficient funds")
        if request.amount in self.crash_amounts:
            raise RuntimeError("unexpected library failure")
        return Transaction(
            hash=tx_hash,
            from_address=from_address,
            to=request.to,
            amount=request.amount,
            chain=self.chain,
        )

    async def sign_transaction(self, tx, private_key, request=None):
        raise NotImplementedFeatureError("fake provider does not sign")

    async def get_transaction_history(self, address):
        self._require_connected()
        return []

    def validate_address(self, address):
        return validate_address(self.chain, address)

    async def estimate_fee(self, request):
        self._require_connected()
        return "0"

    async def get_block_number(self):
        self._require_connected()
        return 1

    async def get_transaction(self, tx_hash):
        self._require_connected()
        return None


class FakeProviderFactory:
    """Provider factory that remembers what it built."""

    def __init__(self, **provider_kwargs):
        self.provider_kwargs = provider_kwargs
        self.created = []

    def __call__(self, config):
        provider = FakeProvider(config, **self.provider_kwargs)
        self.created.append(provider)
        return provider
