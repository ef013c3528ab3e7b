"""Solana provider (partial: connectivity, slot height and address checks)."""

from __future__ import annotations

from solders.pubkey import Pubkey

from agent_wallet.wallet.providers.rpc import JsonRpcProvider

MIN_ADDRESS_LENGTH = 32
MAX_ADDRESS_LENGTH = 44


class SolanaProvider(JsonRpcProvider):
    health_method = "getSlot"
    block_method = "getSlot"

    def validate_address(self, address: str) -> bool:
        if not isinstance(address, str):
            return False
        if not MIN_ADDRESS_LENGTH <= len(address) <= MAX_ADDRESS_LENGTH:
            return False
        try:
            Pubkey.from_string(address)
        except ValueError:
            return False
        return True
