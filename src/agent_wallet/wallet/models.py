"""Pydantic models exchanged with chain providers."""

from __future__ import annotations

import time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from agent_wallet.wallet.chains import ChainType


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ProviderConfig(BaseModel):
    """Connection settings for one chain provider."""

    chain: ChainType
    rpc_url: Optional[str] = None
    is_testnet: bool = False
    api_key: Optional[str] = None
    timeout: float = 30.0


class TransactionRequest(BaseModel):
    """Caller-facing description of a native-token transfer."""

    to: str
    amount: str  # decimal string in whole units (ETH, DOT, SOL)
    chain: ChainType
    memo: Optional[str] = None
    gas_price: Optional[str] = None  # wei
    gas_limit: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _amount_is_decimal(cls, value: str) -> str:
        cleaned = value.replace(",", "").strip()
        try:
            parsed = Decimal(cleaned)
        except InvalidOperation:
            raise ValueError(f"amount must be a decimal string, got {value!r}") from None
        if not parsed.is_finite() or parsed < 0:
            raise ValueError(f"amount must be a non-negative number, got {value!r}")
        return cleaned


class Transaction(BaseModel):
    """A transaction as reported back by a provider."""

    hash: str
    from_address: str
    to: str
    amount: str
    chain: ChainType
    timestamp: int = Field(default_factory=now_ms)
    status: TransactionStatus = TransactionStatus.PENDING
    fee: Optional[str] = None
    data: Optional[dict[str, Any]] = None


class Balance(BaseModel):
    amount: str
    denomination: str
    chain: ChainType
    address: str
    block_number: Optional[int] = None


class SignedTransaction(BaseModel):
    tx_hash: str
    signed_tx: str
    signature: Optional[str] = None
    request: Optional[TransactionRequest] = None
