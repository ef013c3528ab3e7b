"""High-level wallet manager used by the backup layer, dispatcher and CLI."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from agent_wallet.config import AgentWalletConfig, storage_dir
from agent_wallet.errors import (
    CorruptWalletError,
    ValidationError,
    WalletExistsError,
    WalletNotFoundError,
)
from agent_wallet.storage.models import CreationMethod, Wallet, new_wallet_id
from agent_wallet.storage.wallet_store import WalletStore
from agent_wallet.wallet.chains import CHAINS, ChainType, get_chain
from agent_wallet.wallet.keys import (
    DEFAULT_MNEMONIC_STRENGTH,
    DerivedKey,
    derive_from_mnemonic,
    derive_from_private_key,
    derive_wallet_key,
    ensure_seed_phrase,
    generate_mnemonic,
)
from agent_wallet.wallet.models import ProviderConfig, now_ms
from agent_wallet.wallet.providers import WalletProvider, create_provider

logger = logging.getLogger("agent_wallet.wallet.manager")

ProviderFactory = Callable[[ProviderConfig], WalletProvider]


def next_timestamp(previous: int) -> int:
    """A timestamp strictly after *previous* (ms)."""
    return max(now_ms(), previous + 1)


def addresses_match(chain: ChainType, left: str, right: str) -> bool:
    if chain is ChainType.ETHEREUM:
        return left.lower() == right.lower()
    return left == right


def _entry_timestamp(entry: dict[str, Any], key: str, default: int) -> int:
    value = entry.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(
            f"Backup entry {entry.get('id')!r}: {key} must be epoch milliseconds"
        )
    try:
        return int(value)
    except ValueError:
        raise ValidationError(
            f"Backup entry {entry.get('id')!r}: {key} must be epoch milliseconds"
        ) from None


class ConnectionCache:
    """In-memory map of live providers keyed ``agentId:walletId``.

    Owned by one :class:`WalletManager`; nothing is persisted. Replacing
    an entry is last-writer-wins and does not disconnect the old provider.
    :meth:`evict` drops an entry and disconnects its provider: inside a
    running event loop the disconnect is scheduled (see :meth:`wait_closed`),
    outside one it runs to completion before returning.
    """

    def __init__(self) -> None:
        self._entries: dict[str, WalletProvider] = {}
        self._closing: set[asyncio.Task] = set()

    @staticmethod
    def key(agent_id: str, wallet_id: str) -> str:
        return f"{agent_id}:{wallet_id}"

    def set(self, agent_id: str, wallet_id: str, provider: WalletProvider) -> None:
        self._entries[self.key(agent_id, wallet_id)] = provider

    def get(self, agent_id: str, wallet_id: str) -> Optional[WalletProvider]:
        return self._entries.get(self.key(agent_id, wallet_id))

    def pop(self, agent_id: str, wallet_id: str) -> Optional[WalletProvider]:
        return self._entries.pop(self.key(agent_id, wallet_id), None)

    def evict(self, agent_id: str, wallet_id: str) -> Optional[WalletProvider]:
        """Drop the entry for a wallet and disconnect its provider."""
        provider = self.pop(agent_id, wallet_id)
        if provider is None or not provider.is_connected:
            return provider
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._disconnect(provider))
            return provider
        task = loop.create_task(self._disconnect(provider))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
        return provider

    @staticmethod
    async def _disconnect(provider: WalletProvider) -> None:
        try:
            await provider.disconnect()
        except Exception as exc:
            logger.warning(f"Failed to disconnect evicted {provider!r}: {exc}")

    async def wait_closed(self) -> None:
        """Wait for disconnects scheduled by :meth:`evict`."""
        if self._closing:
            await asyncio.gather(*list(self._closing))

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def close_all(self) -> None:
        """Disconnect and drop every cached provider."""
        entries, self._entries = self._entries, {}
        for provider in entries.values():
            await provider.disconnect()
        await self.wait_closed()


class WalletManager:
    """Orchestrates key derivation, the wallet store and provider connections."""

    def __init__(
        self,
        store: WalletStore,
        cache: Optional[ConnectionCache] = None,
        provider_factory: ProviderFactory = create_provider,
    ) -> None:
        self.store = store
        self.cache = cache if cache is not None else ConnectionCache()
        self._provider_factory = provider_factory

    @classmethod
    def from_config(cls, config: AgentWalletConfig) -> "WalletManager":
        store = WalletStore(storage_dir(config), config.wallet.storage_passphrase)
        return cls(store)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _claim_id(self, agent_id: str, wallet_id: Optional[str]) -> str:
        if wallet_id:
            if self.store.exists(agent_id, wallet_id):
                raise WalletExistsError(
                    f"Wallet {wallet_id} already exists for agent {agent_id}",
                    agent_id=agent_id,
                    wallet_id=wallet_id,
                )
            return wallet_id
        candidate = new_wallet_id()
        while self.store.exists(agent_id, candidate):
            candidate = new_wallet_id()
        return candidate

    def create_wallet(
        self,
        agent_id: str,
        chain: ChainType | str,
        method: CreationMethod | str,
        seed_phrase: Optional[str] = None,
        private_key: Optional[str] = None,
        derivation_path: Optional[str] = None,
        wallet_id: Optional[str] = None,
        chain_metadata: Optional[dict[str, Any]] = None,
    ) -> Wallet:
        """Derive keys for *method* and persist a new wallet.

        Private-key wallets store the key and no derivation path. Seed and
        mnemonic wallets store the phrase; their private key is derived on
        demand by :meth:`resolve_private_key`.
        """
        spec = get_chain(chain)
        method = CreationMethod(method)
        derived = derive_wallet_key(
            method,
            spec.chain,
            seed_phrase=seed_phrase,
            private_key=private_key,
            derivation_path=derivation_path,
        )
        wallet_id = self._claim_id(agent_id, wallet_id)

        timestamp = now_ms()
        wallet = Wallet(
            id=wallet_id,
            agent_id=agent_id,
            chain=spec.chain,
            address=derived.address,
            private_key=derived.private_key if method is CreationMethod.PRIVATE_KEY else None,
            mnemonic=ensure_seed_phrase(seed_phrase) if method is not CreationMethod.PRIVATE_KEY else None,
            derivation_path=derived.derivation_path,
            creation_method=method,
            created_at=timestamp,
            updated_at=timestamp,
            chain_metadata={**spec.default_metadata, **(chain_metadata or {})},
        )
        self.store.save(wallet)
        logger.info(
            f"Created {spec.chain.value} wallet {wallet.id} for {agent_id} "
            f"({method.value}): {wallet.address}"
        )
        return wallet

    def import_wallet_from_private_key(
        self,
        agent_id: str,
        chain: ChainType | str,
        private_key: str,
        wallet_id: Optional[str] = None,
    ) -> Wallet:
        return self.create_wallet(
            agent_id, chain, CreationMethod.PRIVATE_KEY, private_key=private_key, wallet_id=wallet_id
        )

    def import_wallet_from_seed(
        self,
        agent_id: str,
        chain: ChainType | str,
        seed_phrase: str,
        derivation_path: Optional[str] = None,
        wallet_id: Optional[str] = None,
    ) -> Wallet:
        return self.create_wallet(
            agent_id,
            chain,
            CreationMethod.SEED,
            seed_phrase=seed_phrase,
            derivation_path=derivation_path,
            wallet_id=wallet_id,
        )

    def import_wallet_from_mnemonic(
        self,
        agent_id: str,
        chain: ChainType | str,
        mnemonic: str,
        derivation_path: Optional[str] = None,
        wallet_id: Optional[str] = None,
    ) -> Wallet:
        return self.create_wallet(
            agent_id,
            chain,
            CreationMethod.MNEMONIC,
            seed_phrase=mnemonic,
            derivation_path=derivation_path,
            wallet_id=wallet_id,
        )

    def generate_wallet(
        self,
        agent_id: str,
        chain: ChainType | str,
        strength: int = DEFAULT_MNEMONIC_STRENGTH,
        wallet_id: Optional[str] = None,
    ) -> Wallet:
        """Create a wallet from a freshly generated mnemonic."""
        return self.import_wallet_from_seed(
            agent_id, chain, generate_mnemonic(strength), wallet_id=wallet_id
        )

    # ------------------------------------------------------------------
    # Lookup and removal
    # ------------------------------------------------------------------

    def get_wallet(self, agent_id: str, wallet_id: str) -> Optional[Wallet]:
        return self.store.load(agent_id, wallet_id)

    def require_wallet(self, agent_id: str, wallet_id: str) -> Wallet:
        wallet = self.store.load(agent_id, wallet_id)
        if wallet is None:
            raise WalletNotFoundError(
                f"Wallet {wallet_id} not found for agent {agent_id}",
                agent_id=agent_id,
                wallet_id=wallet_id,
            )
        return wallet

    def list_agent_wallets(self, agent_id: str) -> list[str]:
        return self.store.list(agent_id)

    def load_agent_wallets(self, agent_id: str) -> list[Wallet]:
        """Load every wallet of *agent_id* (reads secrets; prefer :meth:`list_agent_wallets`)."""
        wallets = []
        for wallet_id in self.store.list(agent_id):
            wallet = self.store.load(agent_id, wallet_id)
            if wallet is not None:
                wallets.append(wallet)
        return wallets

    def has_wallet(self, agent_id: str, wallet_id: str) -> bool:
        return self.store.exists(agent_id, wallet_id)

    def remove_wallet(self, agent_id: str, wallet_id: str) -> bool:
        """Delete the record and evict any cached connection for it."""
        removed = self.store.delete(agent_id, wallet_id)
        self.cache.evict(agent_id, wallet_id)
        if removed:
            logger.info(f"Removed wallet {wallet_id} for {agent_id}")
        return removed

    def clear_agent_wallets(self, agent_id: str) -> list[str]:
        removed = self.store.clear(agent_id)
        for wallet_id in removed:
            self.cache.evict(agent_id, wallet_id)
        return removed

    # ------------------------------------------------------------------
    # Connection cache
    # ------------------------------------------------------------------

    def cache_wallet_connection(
        self, agent_id: str, wallet_id: str, provider: WalletProvider
    ) -> None:
        self.cache.set(agent_id, wallet_id, provider)

    def get_cached_connection(self, agent_id: str, wallet_id: str) -> Optional[WalletProvider]:
        return self.cache.get(agent_id, wallet_id)

    def clear_cached_connection(self, agent_id: str, wallet_id: str) -> None:
        self.cache.evict(agent_id, wallet_id)

    async def connect_wallet(
        self,
        agent_id: str,
        wallet_id: str,
        provider_config: Optional[ProviderConfig] = None,
    ) -> WalletProvider:
        """Return the cached connected provider for a wallet, connecting one if needed."""
        wallet = self.require_wallet(agent_id, wallet_id)
        cached = self.cache.get(agent_id, wallet_id)
        if cached is not None and cached.is_connected:
            return cached

        config = provider_config or ProviderConfig(chain=wallet.chain)
        if config.chain is not wallet.chain:
            raise ValidationError(
                f"Provider chain {config.chain.value} does not match wallet chain "
                f"{wallet.chain.value}"
            )
        provider = self._provider_factory(config)
        await provider.connect()
        self.cache.set(agent_id, wallet_id, provider)
        return provider

    # ------------------------------------------------------------------
    # Key material and mutation
    # ------------------------------------------------------------------

    def resolve_private_key(self, wallet: Wallet) -> str:
        """Return the wallet's private key, deriving it from the mnemonic if needed."""
        if wallet.private_key is not None:
            return wallet.private_key.get_secret_value()
        if wallet.mnemonic is None:
            raise CorruptWalletError(
                f"Wallet {wallet.id} has no key material",
                agent_id=wallet.agent_id,
                wallet_id=wallet.id,
            )
        derived = derive_from_mnemonic(
            wallet.chain, wallet.mnemonic.get_secret_value(), wallet.derivation_path
        )
        if not addresses_match(wallet.chain, derived.address, wallet.address):
            raise CorruptWalletError(
                f"Wallet {wallet.id} mnemonic does not derive its stored address",
                agent_id=wallet.agent_id,
                wallet_id=wallet.id,
            )
        return derived.private_key

    def update_chain_metadata(
        self,
        agent_id: str,
        wallet_id: str,
        metadata: dict[str, Any],
        replace: bool = False,
    ) -> Wallet:
        """Merge (or with *replace*, swap) the wallet's chain metadata."""
        wallet = self.require_wallet(agent_id, wallet_id)
        merged = dict(metadata) if replace else {**wallet.chain_metadata, **metadata}
        updated = wallet.model_copy(
            update={"chain_metadata": merged, "updated_at": next_timestamp(wallet.updated_at)}
        )
        self.store.save(updated)
        logger.info(f"Updated chain metadata of {wallet_id} for {agent_id}")
        return updated

    def restore_wallet(
        self,
        agent_id: str,
        entry: dict[str, Any],
        wallet_id: Optional[str] = None,
        overwrite: bool = False,
    ) -> Wallet:
        """Persist one backup entry under *agent_id*.

        Key material is re-derived and must reproduce the entry's address.
        With *overwrite* an existing record keeps its ID and ``createdAt``
        and gets a fresh ``updatedAt``; without it an existing ID raises
        :class:`WalletExistsError`.
        """
        chain = get_chain(entry.get("chain", "")).chain
        derived, method, mnemonic = self._derive_entry(chain, entry)
        if not addresses_match(chain, derived.address, str(entry.get("address", ""))):
            raise ValidationError(
                f"Backup entry {entry.get('id')!r}: key material does not match its address"
            )

        target_id = wallet_id or entry["id"]
        existing = self.store.load(agent_id, target_id)
        if existing is not None and not overwrite:
            raise WalletExistsError(
                f"Wallet {target_id} already exists for agent {agent_id}",
                agent_id=agent_id,
                wallet_id=target_id,
            )

        if existing is not None:
            created_at = existing.created_at
            updated_at = next_timestamp(existing.updated_at)
        else:
            created_at = _entry_timestamp(entry, "createdAt", now_ms())
            updated_at = max(_entry_timestamp(entry, "updatedAt", created_at), created_at)

        wallet = Wallet(
            id=target_id,
            agent_id=agent_id,
            chain=chain,
            address=derived.address,
            private_key=derived.private_key if method is CreationMethod.PRIVATE_KEY else None,
            mnemonic=mnemonic,
            derivation_path=derived.derivation_path,
            creation_method=method,
            created_at=created_at,
            updated_at=updated_at,
            chain_metadata=entry.get("chainMetadata") or dict(CHAINS[chain].default_metadata),
        )
        self.store.save(wallet)
        if existing is not None:
            self.cache.evict(agent_id, target_id)
        return wallet

    @staticmethod
    def _derive_entry(
        chain: ChainType, entry: dict[str, Any]
    ) -> tuple[DerivedKey, CreationMethod, Optional[str]]:
        phrase = entry.get("mnemonic")
        if phrase:
            path = (
                entry.get("derivationPath")
                or entry.get("seedDerivationPath")
                or entry.get("derivation_path")
            )
            method = CreationMethod(entry.get("creationMethod") or CreationMethod.SEED)
            if method is CreationMethod.PRIVATE_KEY:
                method = CreationMethod.SEED
            normalized = ensure_seed_phrase(phrase)
            return derive_from_mnemonic(chain, normalized, path), method, normalized

        private_key = entry.get("privateKey")
        if private_key:
            return derive_from_private_key(chain, private_key), CreationMethod.PRIVATE_KEY, None

        raise ValidationError(f"Backup entry {entry.get('id')!r} has no key material")
