"""Chain providers behind one capability contract.

:func:`create_provider` builds the adapter for a :class:`ProviderConfig`;
:func:`validate_address` is the single address check used by the
dispatcher's pre-flight and by backup import.
"""

from __future__ import annotations

from agent_wallet.wallet.chains import ChainType, get_chain
from agent_wallet.wallet.models import ProviderConfig
from agent_wallet.wallet.providers.base import WalletProvider
from agent_wallet.wallet.providers.ethereum import EthereumProvider
from agent_wallet.wallet.providers.polkadot import PolkadotProvider
from agent_wallet.wallet.providers.solana import SolanaProvider

PROVIDER_CLASSES: dict[ChainType, type[WalletProvider]] = {
    ChainType.ETHEREUM: EthereumProvider,
    ChainType.POLKADOT: PolkadotProvider,
    ChainType.SOLANA: SolanaProvider,
}


def create_provider(config: ProviderConfig) -> WalletProvider:
    """Return an unconnected provider for ``config.chain``."""
    return PROVIDER_CLASSES[config.chain](config)


def validate_address(chain: ChainType | str, address: str) -> bool:
    chain_type = get_chain(chain).chain
    return create_provider(ProviderConfig(chain=chain_type)).validate_address(address)


__all__ = [
    "EthereumProvider",
    "PolkadotProvider",
    "SolanaProvider",
    "WalletProvider",
    "create_provider",
    "validate_address",
]
