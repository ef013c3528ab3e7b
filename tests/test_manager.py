"""Tests for WalletManager and its connection cache."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from agent_wallet.errors import (
    CorruptWalletError,
    ValidationError,
    WalletExistsError,
    WalletNotFoundError,
)
from agent_wallet.storage import CreationMethod
from agent_wallet.wallet.chains import ChainType
from agent_wallet.wallet.manager import (
    ConnectionCache,
    WalletManager,
    addresses_match,
    next_timestamp,
)
from agent_wallet.wallet.models import ProviderConfig
from agent_wallet.wallet.providers import WalletProvider

from conftest import TEST_ETH_ADDRESS, TEST_MNEMONIC, FakeProvider, FakeProviderFactory, eth_key


class TestCreate:
    """Wallet creation and import."""

    def test_seed_wallet(self, manager):
        wallet = manager.import_wallet_from_seed("agent-1", "ethereum", TEST_MNEMONIC, wallet_id="main")
        assert wallet.id == "main"
        assert wallet.address == TEST_ETH_ADDRESS
        assert wallet.creation_method is CreationMethod.SEED
        assert wallet.private_key is None
        assert wallet.mnemonic.get_secret_value() == TEST_MNEMONIC
        assert wallet.derivation_path == "m/44'/60'/0'/0/0"
        assert manager.get_wallet("agent-1", "main") == wallet

    def test_private_key_wallet_has_no_path(self, manager):
        wallet = manager.import_wallet_from_private_key("agent-1", "eth", "0x" + eth_key(1))
        assert wallet.creation_method is CreationMethod.PRIVATE_KEY
        assert wallet.derivation_path is None
        assert wallet.mnemonic is None
        assert wallet.private_key.get_secret_value() == eth_key(1)
        assert wallet.id.startswith("wallet-")

    def test_mnemonic_method_is_kept(self, manager):
        wallet = manager.import_wallet_from_mnemonic("agent-1", "solana", TEST_MNEMONIC)
        assert wallet.creation_method is CreationMethod.MNEMONIC
        assert wallet.chain is ChainType.SOLANA

    def test_generated_wallet(self, manager):
        wallet = manager.generate_wallet("agent-1", "ethereum", strength=256)
        assert len(wallet.mnemonic.get_secret_value().split()) == 24
        assert manager.resolve_private_key(wallet)

    def test_duplicate_id_rejected(self, manager):
        manager.import_wallet_from_seed("agent-1", "ethereum", TEST_MNEMONIC, wallet_id="main")
        with pytest.raises(WalletExistsError):
            manager.import_wallet_from_private_key("agent-1", "ethereum", eth_key(2), wallet_id="main")

    def test_same_id_for_other_agent_is_fine(self, manager):
        manager.import_wallet_from_seed("agent-1", "ethereum", TEST_MNEMONIC, wallet_id="main")
        manager.import_wallet_from_seed("agent-2", "ethereum", TEST_MNEMONIC, wallet_id="main")
        assert manager.list_agent_wallets("agent-1") == ["main"]
        assert manager.list_agent_wallets("agent-2") == ["main"]

    def test_unknown_chain(self, manager):
        with pytest.raises(ValidationError, match="Unknown chain"):
            manager.import_wallet_from_seed("agent-1", "bitcoin", TEST_MNEMONIC)

    def test_invalid_mnemonic_stores_nothing(self, manager):
        with pytest.raises(ValidationError):
            manager.import_wallet_from_seed("agent-1", "ethereum", "abandon " * 12)
        assert manager.list_agent_wallets("agent-1") == []

    def test_unhardened_solana_path_stores_nothing(self, manager):
        with pytest.raises(ValidationError, match="hardened"):
            manager.import_wallet_from_seed(
                "agent-1", "solana", TEST_MNEMONIC, "m/44'/501'/0'/0/0"
            )
        assert manager.list_agent_wallets("agent-1") == []

    def test_polkadot_default_metadata(self, manager):
        wallet = manager.import_wallet_from_seed("agent-1", "polkadot", TEST_MNEMONIC)
        assert wallet.chain_metadata == {"ss58Format": 0}
        assert wallet.derivation_path == "//hard//stash"

    def test_caller_metadata_merged(self, manager):
        wallet = manager.create_wallet(
            "agent-1",
            "polkadot",
            "seed",
            seed_phrase=TEST_MNEMONIC,
            chain_metadata={"label": "staking"},
        )
        assert wallet.chain_metadata == {"ss58Format": 0, "label": "staking"}


class TestLookup:
    """Reads, listing and bulk removal."""

    def test_missing_wallet(self, manager):
        assert manager.get_wallet("agent-1", "nope") is None
        with pytest.raises(WalletNotFoundError):
            manager.require_wallet("agent-1", "nope")

    def test_load_agent_wallets(self, manager):
        manager.import_wallet_from_private_key("agent-1", "ethereum", eth_key(1), wallet_id="a")
        manager.import_wallet_from_private_key("agent-1", "ethereum", eth_key(2), wallet_id="b")
        assert [w.id for w in manager.load_agent_wallets("agent-1")] == ["a", "b"]
        assert manager.has_wallet("agent-1", "a")
        assert not manager.has_wallet("agent-2", "a")

    def test_clear_agent_wallets(self, manager):
        manager.import_wallet_from_private_key("agent-1", "ethereum", eth_key(1), wallet_id="a")
        manager.cache_wallet_connection("agent-1", "a", FakeProvider(ProviderConfig(chain="ethereum")))
        assert manager.clear_agent_wallets("agent-1") == ["a"]
        assert manager.get_cached_connection("agent-1", "a") is None


class TestResolvePrivateKey:
    """On-demand key derivation."""

    def test_from_mnemonic(self, manager):
        wallet = manager.import_wallet_from_seed("agent-1", "ethereum", TEST_MNEMONIC)
        key = manager.resolve_private_key(wallet)
        assert len(key) == 64
        other = manager.import_wallet_from_private_key("agent-2", "ethereum", key)
        assert other.address == TEST_ETH_ADDRESS

    def test_stored_key_returned(self, manager):
        wallet = manager.import_wallet_from_private_key("agent-1", "ethereum", eth_key(5))
        assert manager.resolve_private_key(wallet) == eth_key(5)

    def test_address_mismatch_is_corruption(self, manager):
        wallet = manager.import_wallet_from_seed("agent-1", "ethereum", TEST_MNEMONIC)
        tampered = wallet.model_copy(update={"derivation_path": "m/44'/60'/0'/0/9"})
        with pytest.raises(CorruptWalletError):
            manager.resolve_private_key(tampered)

    def test_no_key_material(self, manager):
        wallet = manager.import_wallet_from_seed("agent-1", "ethereum", TEST_MNEMONIC)
        empty = wallet.model_copy(update={"mnemonic": None})
        with pytest.raises(CorruptWalletError, match="no key material"):
            manager.resolve_private_key(empty)


class TestUpdateMetadata:
    """Chain metadata edits."""

    def test_merge_bumps_updated_at(self, manager):
        wallet = manager.import_wallet_from_seed("agent-1", "polkadot", TEST_MNEMONIC, wallet_id="dot")
        updated = manager.update_chain_metadata("agent-1", "dot", {"label": "ops"})
        assert updated.chain_metadata == {"ss58Format": 0, "label": "ops"}
        assert updated.updated_at > wallet.updated_at
        assert updated.created_at == wallet.created_at
        assert manager.get_wallet("agent-1", "dot") == updated

    def test_replace(self, manager):
        manager.import_wallet_from_seed("agent-1", "polkadot", TEST_MNEMONIC, wallet_id="dot")
        updated = manager.update_chain_metadata("agent-1", "dot", {"label": "ops"}, replace=True)
        assert updated.chain_metadata == {"label": "ops"}

    def test_missing_wallet(self, manager):
        with pytest.raises(WalletNotFoundError):
            manager.update_chain_metadata("agent-1", "nope", {})


class TestRestoreWallet:
    """Persisting backup entries."""

    def _entry(self, **overrides):
        entry = {
            "id": "restored",
            "chain": "ethereum",
            "address": TEST_ETH_ADDRESS,
            "mnemonic": TEST_MNEMONIC,
            "derivationPath": "m/44'/60'/0'/0/0",
            "creationMethod": "seed",
            "createdAt": 1_600_000_000_000,
            "updatedAt": 1_600_000_000_500,
        }
        entry.update(overrides)
        return entry

    def test_preserves_timestamps(self, manager):
        wallet = manager.restore_wallet("agent-1", self._entry())
        assert wallet.created_at == 1_600_000_000_000
        assert wallet.updated_at == 1_600_000_000_500

    def test_existing_requires_overwrite(self, manager):
        manager.restore_wallet("agent-1", self._entry())
        with pytest.raises(WalletExistsError):
            manager.restore_wallet("agent-1", self._entry())

    def test_overwrite_keeps_created_at(self, manager):
        first = manager.import_wallet_from_private_key(
            "agent-1", "ethereum", eth_key(3), wallet_id="restored"
        )
        wallet = manager.restore_wallet("agent-1", self._entry(), overwrite=True)
        assert wallet.created_at == first.created_at
        assert wallet.updated_at > first.updated_at
        assert wallet.address == TEST_ETH_ADDRESS

    def test_mismatched_address(self, manager):
        with pytest.raises(ValidationError, match="does not match"):
            manager.restore_wallet("agent-1", self._entry(address="0x" + "11" * 20))

    @pytest.mark.parametrize("value", [[1], {"ms": 1}, "yesterday", True])
    def test_malformed_timestamp(self, manager, value):
        with pytest.raises(ValidationError, match="createdAt"):
            manager.restore_wallet("agent-1", self._entry(createdAt=value))
        assert manager.list_agent_wallets("agent-1") == []

    def test_string_timestamp_accepted(self, manager):
        wallet = manager.restore_wallet("agent-1", self._entry(createdAt="1600000000000"))
        assert wallet.created_at == 1_600_000_000_000


class TestTimestamps:
    """Helpers."""

    def test_next_timestamp_is_strictly_later(self):
        far_future = 10**15
        assert next_timestamp(far_future) == far_future + 1

    def test_addresses_match(self):
        assert addresses_match(ChainType.ETHEREUM, TEST_ETH_ADDRESS, TEST_ETH_ADDRESS.lower())
        assert not addresses_match(ChainType.SOLANA, "Abc", "abc")


class TestConnectionCache:
    """Cached provider connections."""

    def test_set_get_pop(self):
        cache = ConnectionCache()
        provider = FakeProvider(ProviderConfig(chain="ethereum"))
        cache.set("agent-1", "w1", provider)
        assert "agent-1:w1" in cache
        assert len(cache) == 1
        assert cache.get("agent-1", "w1") is provider
        assert cache.get("agent-2", "w1") is None
        assert cache.pop("agent-1", "w1") is provider
        assert cache.pop("agent-1", "w1") is None

    @pytest.mark.asyncio
    async def test_close_all_awaits_each_provider(self):
        cache = ConnectionCache()
        providers = [AsyncMock(spec=WalletProvider) for _ in range(3)]
        for n, provider in enumerate(providers):
            cache.set("agent-1", f"w{n}", provider)
        await cache.close_all()
        for provider in providers:
            provider.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_all_disconnects(self):
        cache = ConnectionCache()
        provider = FakeProvider(ProviderConfig(chain="ethereum"))
        await provider.connect()
        cache.set("agent-1", "w1", provider)
        await cache.close_all()
        assert not provider.is_connected
        assert len(cache) == 0

    def test_remove_wallet_evicts_cache(self, manager):
        manager.import_wallet_from_private_key("agent-1", "ethereum", eth_key(1), wallet_id="w1")
        manager.cache_wallet_connection("agent-1", "w1", FakeProvider(ProviderConfig(chain="ethereum")))
        assert manager.remove_wallet("agent-1", "w1") is True
        assert manager.get_cached_connection("agent-1", "w1") is None
        assert manager.remove_wallet("agent-1", "w1") is False

    def test_remove_wallet_disconnects_provider(self, manager):
        manager.import_wallet_from_private_key("agent-1", "ethereum", eth_key(1), wallet_id="w1")
        provider = FakeProvider(ProviderConfig(chain="ethereum"))
        asyncio.run(provider.connect())
        manager.cache_wallet_connection("agent-1", "w1", provider)

        manager.remove_wallet("agent-1", "w1")
        assert not provider.is_connected

    @pytest.mark.asyncio
    async def test_eviction_inside_event_loop(self, manager):
        for n, wallet_id in enumerate(("a", "b"), start=1):
            manager.import_wallet_from_private_key(
                "agent-1", "ethereum", eth_key(n), wallet_id=wallet_id
            )
        providers = [FakeProvider(ProviderConfig(chain="ethereum")) for _ in range(2)]
        for wallet_id, provider in zip(("a", "b"), providers):
            await provider.connect()
            manager.cache_wallet_connection("agent-1", wallet_id, provider)

        assert manager.clear_agent_wallets("agent-1") == ["a", "b"]
        await manager.cache.wait_closed()
        assert len(manager.cache) == 0
        assert not any(p.is_connected for p in providers)

    @pytest.mark.asyncio
    async def test_failed_disconnect_is_logged(self, manager, caplog):
        manager.import_wallet_from_private_key("agent-1", "ethereum", eth_key(1), wallet_id="w1")
        provider = AsyncMock(spec=WalletProvider)
        provider.is_connected = True
        provider.disconnect.side_effect = RuntimeError("socket already closed")
        manager.cache_wallet_connection("agent-1", "w1", provider)

        manager.clear_cached_connection("agent-1", "w1")
        await manager.cache.wait_closed()
        provider.disconnect.assert_awaited_once()
        assert "socket already closed" in caplog.text

    @pytest.mark.asyncio
    async def test_connect_wallet_reuses_connection(self, store):
        factory = FakeProviderFactory()
        manager = WalletManager(store, provider_factory=factory)
        manager.import_wallet_from_seed("agent-1", "solana", TEST_MNEMONIC, wallet_id="sol")

        first = await manager.connect_wallet("agent-1", "sol")
        second = await manager.connect_wallet("agent-1", "sol")
        assert first is second
        assert first.is_connected
        assert len(factory.created) == 1

        await first.disconnect()
        third = await manager.connect_wallet("agent-1", "sol")
        assert third is not first
        assert manager.get_cached_connection("agent-1", "sol") is third

    @pytest.mark.asyncio
    async def test_connect_wallet_chain_mismatch(self, store):
        manager = WalletManager(store, provider_factory=FakeProviderFactory())
        manager.import_wallet_from_seed("agent-1", "solana", TEST_MNEMONIC, wallet_id="sol")
        with pytest.raises(ValidationError):
            await manager.connect_wallet("agent-1", "sol", ProviderConfig(chain="ethereum"))

    @pytest.mark.asyncio
    async def test_connect_missing_wallet(self, store):
        manager = WalletManager(store, provider_factory=FakeProviderFactory())
        with pytest.raises(WalletNotFoundError):
            await manager.connect_wallet("agent-1", "nope")
