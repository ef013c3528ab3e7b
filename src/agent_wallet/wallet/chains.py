"""Chain definitions for the supported wallet networks."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agent_wallet.errors import ValidationError


class ChainType(str, Enum):
    """Blockchain families a wallet can belong to."""

    ETHEREUM = "ethereum"
    POLKADOT = "polkadot"
    SOLANA = "solana"

    @classmethod
    def _missing_(cls, value: object) -> "ChainType | None":
        if isinstance(value, str):
            return _ALIASES.get(value.strip().lower())
        return None


_ALIASES: dict[str, ChainType] = {
    "ethereum": ChainType.ETHEREUM,
    "eth": ChainType.ETHEREUM,
    "cketh": ChainType.ETHEREUM,
    "polkadot": ChainType.POLKADOT,
    "dot": ChainType.POLKADOT,
    "solana": ChainType.SOLANA,
    "sol": ChainType.SOLANA,
}


@dataclass(frozen=True)
class ChainSpec:
    """Static facts about one chain family."""

    chain: ChainType
    native_symbol: str
    decimals: int
    default_derivation_path: str
    private_key_lengths: tuple[int, ...]
    mainnet_rpc_url: str
    testnet_rpc_url: str
    mainnet_rpc_env: str
    testnet_rpc_env: str
    explorer_url: str
    mainnet_chain_id: int | None = None
    testnet_chain_id: int | None = None
    default_fee: str | None = None
    default_metadata: dict[str, Any] = field(default_factory=dict)


CHAINS: dict[ChainType, ChainSpec] = {
    ChainType.ETHEREUM: ChainSpec(
        chain=ChainType.ETHEREUM,
        native_symbol="ETH",
        decimals=18,
        default_derivation_path="m/44'/60'/0'/0/0",
        private_key_lengths=(32,),
        mainnet_rpc_url="https://eth.llamarpc.com",
        testnet_rpc_url="https://ethereum-sepolia.publicnode.com",
        mainnet_rpc_env="ETHEREUM_RPC_URL",
        testnet_rpc_env="SEPOLIA_RPC_URL",
        explorer_url="https://etherscan.io",
        mainnet_chain_id=1,
        testnet_chain_id=11155111,
    ),
    ChainType.POLKADOT: ChainSpec(
        chain=ChainType.POLKADOT,
        native_symbol="DOT",
        decimals=10,
        default_derivation_path="//hard//stash",
        private_key_lengths=(32, 64),
        mainnet_rpc_url="https://rpc.polkadot.io",
        testnet_rpc_url="https://westend-rpc.polkadot.io",
        mainnet_rpc_env="POLKADOT_RPC_URL",
        testnet_rpc_env="WESTEND_RPC_URL",
        explorer_url="https://polkadot.subscan.io",
        default_fee="0.01",
        default_metadata={"ss58Format": 0},
    ),
    ChainType.SOLANA: ChainSpec(
        chain=ChainType.SOLANA,
        native_symbol="SOL",
        decimals=9,
        default_derivation_path="m/44'/501'/0'/0'",
        private_key_lengths=(32, 64),
        mainnet_rpc_url="https://api.mainnet-beta.solana.com",
        testnet_rpc_url="https://api.devnet.solana.com",
        mainnet_rpc_env="SOLANA_RPC_URL",
        testnet_rpc_env="SOLANA_DEVNET_RPC_URL",
        explorer_url="https://explorer.solana.com",
        default_fee="0.000005",
    ),
}


def get_chain(name: str | ChainType) -> ChainSpec:
    """Get a chain by name or alias.

    Raises :class:`~agent_wallet.errors.ValidationError` if not found.
    """
    try:
        chain = ChainType(name)
    except ValueError:
        raise ValidationError(
            f"Unknown chain '{name}'. Available: {list_chain_names()}"
        ) from None
    return CHAINS[chain]


def list_chain_names() -> list[str]:
    """Return the names of all supported chains."""
    return [chain.value for chain in CHAINS]
