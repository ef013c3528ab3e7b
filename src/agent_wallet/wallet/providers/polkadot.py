"""Polkadot provider (partial).

Talks to a Substrate node over HTTP JSON-RPC for connectivity and the best
block number. Addresses are checked as SS58 with the configured network
prefix (0 for Polkadot).
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from bip_utils import SS58ChecksumError, SS58Decoder

from agent_wallet.errors import ProviderError
from agent_wallet.wallet.models import ProviderConfig
from agent_wallet.wallet.providers.rpc import JsonRpcProvider

PUBLIC_KEY_LENGTH = 32


class PolkadotProvider(JsonRpcProvider):
    health_method = "system_chain"
    block_method = "chain_getHeader"

    def __init__(
        self,
        config: ProviderConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        ss58_format: Optional[int] = None,
    ) -> None:
        super().__init__(config, transport)
        if ss58_format is None:
            ss58_format = self.spec.default_metadata.get("ss58Format", 0)
        self.ss58_format = ss58_format

    def validate_address(self, address: str) -> bool:
        if not isinstance(address, str) or not address:
            return False
        try:
            prefix, public_key = SS58Decoder.Decode(address)
        except (ValueError, SS58ChecksumError):
            return False
        return prefix == self.ss58_format and len(public_key) == PUBLIC_KEY_LENGTH

    def _parse_block_number(self, result: Any) -> int:
        if not isinstance(result, dict) or "number" not in result:
            raise ProviderError(f"Unexpected chain_getHeader result: {result!r}")
        return int(result["number"], 16)
