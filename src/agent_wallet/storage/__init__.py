"""Agent Wallet storage layer -- CBOR wallet records on the local filesystem."""

from agent_wallet.storage.models import CreationMethod, Wallet, new_wallet_id
from agent_wallet.storage.wallet_store import WalletStore

__all__ = [
    "CreationMethod",
    "Wallet",
    "WalletStore",
    "new_wallet_id",
]
