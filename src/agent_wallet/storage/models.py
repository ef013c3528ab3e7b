"""Pydantic models for persisted wallet records."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic.alias_generators import to_camel

from agent_wallet.wallet.chains import ChainType
from agent_wallet.wallet.models import now_ms


class CreationMethod(str, Enum):
    SEED = "seed"
    PRIVATE_KEY = "private-key"
    MNEMONIC = "mnemonic"


def new_wallet_id() -> str:
    """Generate a random wallet ID (128 bits of entropy)."""
    return f"wallet-{uuid.uuid4().hex}"


class Wallet(BaseModel):
    """One stored wallet, scoped to an agent.

    Secrets are held as :class:`~pydantic.SecretStr` so they render as
    ``**********`` in reprs, logs and JSON dumps. Use :meth:`to_record` to get
    the full mapping (secrets included) for persistence.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    agent_id: str
    chain: ChainType
    address: str
    private_key: Optional[SecretStr] = None
    mnemonic: Optional[SecretStr] = None
    derivation_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("derivationPath", "seedDerivationPath", "derivation_path"),
        serialization_alias="derivationPath",
    )
    creation_method: CreationMethod
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    chain_metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", "agent_id", "address")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("chain_metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def key(self) -> str:
        """Cache/lookup key ``agentId:walletId``."""
        return f"{self.agent_id}:{self.id}"

    @property
    def has_secret(self) -> bool:
        return self.private_key is not None or self.mnemonic is not None

    def to_record(self) -> dict[str, Any]:
        """Return a camelCase mapping with secrets revealed.

        Used for the on-disk CBOR record and the plain backup document only.
        """
        data = self.model_dump(by_alias=True, exclude={"private_key", "mnemonic"})
        data["chain"] = self.chain.value
        data["creationMethod"] = self.creation_method.value
        data["privateKey"] = (
            self.private_key.get_secret_value() if self.private_key else None
        )
        data["mnemonic"] = self.mnemonic.get_secret_value() if self.mnemonic else None
        return data

    def public_view(self) -> dict[str, Any]:
        """Secret-free summary for listings and display."""
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "chain": self.chain.value,
            "address": self.address,
            "derivationPath": self.derivation_path,
            "creationMethod": self.creation_method.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "Wallet":
        return cls.model_validate(data)
