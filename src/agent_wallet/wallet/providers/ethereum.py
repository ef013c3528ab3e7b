"""Ethereum (EVM) provider built on web3.py's ``AsyncWeb3``."""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from typing import Any, Optional

from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from agent_wallet.errors import (
    AgentWalletError,
    ProviderConnectionError,
    SigningError,
    ValidationError,
)
from agent_wallet.wallet.keys import normalize_private_key
from agent_wallet.wallet.models import (
    Balance,
    ProviderConfig,
    SignedTransaction,
    Transaction,
    TransactionRequest,
    TransactionStatus,
    now_ms,
)
from agent_wallet.wallet.providers.base import WalletProvider

logger = logging.getLogger("agent_wallet.wallet.providers.ethereum")

INFURA_ENV = "INFURA_API_KEY"
PRIORITY_FEE_GWEI = Decimal("1.5")


def _ether(wei: int) -> str:
    # from_wei returns a plain int for zero
    return format(Decimal(Web3.from_wei(wei, "ether")), "f")


def _parse_int(value: str, field: str) -> int:
    try:
        parsed = int(str(value).strip(), 0)
    except ValueError:
        raise ValidationError(f"{field} must be an integer, got {value!r}") from None
    if parsed < 0:
        raise ValidationError(f"{field} must not be negative")
    return parsed


class EthereumProvider(WalletProvider):
    """Full adapter against any Ethereum JSON-RPC endpoint.

    Pass *web3* to reuse an existing (or mocked) ``AsyncWeb3`` instance
    instead of building one from :attr:`rpc_url`.
    """

    def __init__(self, config: ProviderConfig, web3: Optional[AsyncWeb3] = None) -> None:
        super().__init__(config)
        self._injected = web3
        self._w3: Optional[AsyncWeb3] = None
        spec = self.spec
        self.chain_id: int = (
            spec.testnet_chain_id if config.is_testnet else spec.mainnet_chain_id
        ) or 1

    def _infura_url(self) -> Optional[str]:
        key = self.config.api_key or os.environ.get(INFURA_ENV)
        if not key:
            return None
        network = "sepolia" if self.is_testnet else "mainnet"
        return f"https://{network}.infura.io/v3/{key}"

    @property
    def web3(self) -> AsyncWeb3:
        self._require_connected()
        assert self._w3 is not None
        return self._w3

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._connected:
            return
        if self._injected is not None:
            w3 = self._injected
        else:
            w3 = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(
                    self.rpc_url, request_kwargs={"timeout": self.config.timeout}
                )
            )

        try:
            chain_id = await self._call(w3.eth.chain_id, "chain_id")
        except AgentWalletError as exc:
            raise ProviderConnectionError(
                f"Failed to connect to Ethereum network: {exc}"
            ) from exc

        # Non-mainnet networks may carry POA extra data in block headers
        if chain_id != 1 and self._injected is None:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        self.chain_id = int(chain_id)
        self._w3 = w3
        self._connected = True
        logger.info(f"Connected to Ethereum chain {self.chain_id}")

    async def disconnect(self) -> None:
        w3, self._w3 = self._w3, None
        self._connected = False
        if w3 is not None and self._injected is None:
            await w3.provider.disconnect()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, address: str) -> Balance:
        w3 = self.web3
        checksum = self._checksum(address, "address")
        balance_wei = await self._call(w3.eth.get_balance(checksum), "get_balance")
        block_number = await self._call(w3.eth.block_number, "block_number")
        return Balance(
            amount=_ether(balance_wei),
            denomination=self.spec.native_symbol,
            chain=self.chain,
            address=checksum,
            block_number=int(block_number),
        )

    async def get_block_number(self) -> int:
        return int(await self._call(self.web3.eth.block_number, "block_number"))

    async def get_transaction_history(self, address: str) -> list[Transaction]:
        # Plain JSON-RPC has no per-address index; this needs an explorer API.
        self._require_connected()
        self._checksum(address, "address")
        return []

    async def get_transaction(self, tx_hash: str) -> Optional[Transaction]:
        w3 = self.web3
        try:
            tx = await self._call(
                w3.eth.get_transaction(tx_hash), "get_transaction", (TransactionNotFound,)
            )
        except TransactionNotFound:
            return None

        try:
            receipt = await self._call(
                w3.eth.get_transaction_receipt(tx_hash),
                "get_transaction_receipt",
                (TransactionNotFound,),
            )
        except TransactionNotFound:
            receipt = None

        if receipt is None:
            status = TransactionStatus.PENDING
            gas_price = tx.get("gasPrice") or tx.get("maxFeePerGas") or 0
            fee_wei = gas_price * tx.get("gas", 0)
        else:
            status = (
                TransactionStatus.CONFIRMED if receipt["status"] == 1 else TransactionStatus.FAILED
            )
            price = receipt.get("effectiveGasPrice") or tx.get("gasPrice") or 0
            fee_wei = price * receipt["gasUsed"]

        timestamp = now_ms()
        if tx.get("blockNumber") is not None:
            block = await self._call(w3.eth.get_block(tx["blockNumber"]), "get_block")
            timestamp = int(block["timestamp"]) * 1000

        return Transaction(
            hash=Web3.to_hex(tx["hash"]),
            from_address=tx["from"],
            to=tx.get("to") or "",
            amount=_ether(tx["value"]),
            chain=self.chain,
            timestamp=timestamp,
            status=status,
            fee=_ether(fee_wei),
        )

    def validate_address(self, address: str) -> bool:
        return isinstance(address, str) and Web3.is_address(address)

    def _checksum(self, address: str, field: str) -> str:
        if not self.validate_address(address):
            raise ValidationError(f"Invalid Ethereum {field}: {address!r}")
        return Web3.to_checksum_address(address)

    # ------------------------------------------------------------------
    # Fees and transactions
    # ------------------------------------------------------------------

    async def estimate_fee(self, request: TransactionRequest) -> str:
        w3 = self.web3
        tx = {
            "to": self._checksum(request.to, "recipient"),
            "value": Web3.to_wei(Decimal(request.amount), "ether"),
        }
        if request.gas_limit:
            gas = _parse_int(request.gas_limit, "gas_limit")
        else:
            gas = await self._call(w3.eth.estimate_gas(tx), "estimate_gas")
        if request.gas_price:
            gas_price = _parse_int(request.gas_price, "gas_price")
        else:
            gas_price = await self._call(w3.eth.gas_price, "gas_price")
        return _ether(gas_price * gas)

    async def build_transaction(
        self, from_address: str, request: TransactionRequest
    ) -> dict[str, Any]:
        """Turn a :class:`TransactionRequest` into an unsigned EVM tx dict.

        Uses EIP-1559 fee fields when the latest block carries
        ``baseFeePerGas`` and the request does not pin ``gas_price``;
        legacy ``gasPrice`` otherwise.
        """
        w3 = self.web3
        sender = self._checksum(from_address, "sender")
        nonce = await self._call(
            w3.eth.get_transaction_count(sender, "pending"), "get_transaction_count"
        )
        tx: dict[str, Any] = {
            "from": sender,
            "to": self._checksum(request.to, "recipient"),
            "value": Web3.to_wei(Decimal(request.amount), "ether"),
            "nonce": nonce,
            "chainId": self.chain_id,
        }

        if request.gas_price:
            tx["gasPrice"] = _parse_int(request.gas_price, "gas_price")
        else:
            latest = await self._call(w3.eth.get_block("latest"), "get_block")
            base_fee = latest.get("baseFeePerGas")
            if base_fee is not None:
                priority = Web3.to_wei(PRIORITY_FEE_GWEI, "gwei")
                tx["maxFeePerGas"] = base_fee * 2 + priority
                tx["maxPriorityFeePerGas"] = priority
            else:
                tx["gasPrice"] = await self._call(w3.eth.gas_price, "gas_price")

        if request.gas_limit:
            tx["gas"] = _parse_int(request.gas_limit, "gas_limit")
        else:
            tx["gas"] = await self._call(w3.eth.estimate_gas(tx), "estimate_gas")
        return tx

    async def sign_transaction(
        self,
        tx: dict[str, Any],
        private_key: str,
        request: Optional[TransactionRequest] = None,
    ) -> SignedTransaction:
        key = bytes.fromhex(normalize_private_key(self.chain, private_key))
        try:
            signed = Account.sign_transaction(tx, key)
        except Exception as exc:
            raise SigningError(f"Failed to sign transaction: {exc}") from exc
        return SignedTransaction(
            tx_hash=Web3.to_hex(signed.hash),
            signed_tx=Web3.to_hex(signed.raw_transaction),
            signature=f"0x{signed.r:064x}{signed.s:064x}{signed.v:02x}",
            request=request,
        )

    async def send_transaction(
        self, from_address: str, request: TransactionRequest, private_key: str
    ) -> Transaction:
        w3 = self.web3
        if request.chain is not self.chain:
            raise ValidationError(
                f"Request targets {request.chain.value}, provider is {self.chain.value}"
            )
        tx = await self.build_transaction(from_address, request)
        signed = await self.sign_transaction(tx, private_key, request=request)
        tx_hash = await self._call(
            w3.eth.send_raw_transaction(signed.signed_tx), "send_raw_transaction"
        )
        gas_price = tx.get("gasPrice") or tx["maxFeePerGas"]
        logger.info(f"Broadcast {request.amount} ETH from {tx['from']} to {tx['to']}")
        return Transaction(
            hash=Web3.to_hex(tx_hash),
            from_address=tx["from"],
            to=tx["to"],
            amount=request.amount,
            chain=self.chain,
            status=TransactionStatus.PENDING,
            fee=_ether(gas_price * tx["gas"]),
        )
