"""Configuration system for Agent Wallet.

Loads settings from ``~/.agent-wallet/config.yaml`` (or any YAML file),
supports ``${VAR}`` environment variable expansion, and provides the
per-chain provider configuration consumed by the wallet manager and the
cross-chain dispatcher.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from agent_wallet.wallet.chains import ChainType
from agent_wallet.wallet.models import ProviderConfig


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    validation can catch it later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class WalletSettings(BaseModel):
    """Where wallet records and backups live."""

    storage_dir: Optional[str] = None       # defaults to <root>/wallets
    storage_passphrase: Optional[str] = None  # ${AGENT_WALLET_PASSPHRASE}
    backup_dir: Optional[str] = None        # defaults to <root>/backups


class ProviderSettings(BaseModel):
    """RPC settings for one chain."""

    rpc_url: Optional[str] = None
    is_testnet: bool = False
    api_key: Optional[str] = None
    timeout: float = 30.0


class DispatcherSettings(BaseModel):
    """Limits for cross-chain batch execution."""

    max_concurrency: int = 5
    continue_on_error: bool = False
    call_timeout: float = 30.0


class AgentWalletConfig(BaseModel):
    """Root configuration object."""

    wallet: WalletSettings = Field(default_factory=WalletSettings)
    providers: dict[str, ProviderSettings] = Field(default_factory=dict)
    dispatcher: DispatcherSettings = Field(default_factory=DispatcherSettings)

    def provider_config(self, chain: ChainType | str) -> ProviderConfig:
        """Build the :class:`ProviderConfig` for *chain*, applying defaults."""
        chain_type = ChainType(chain)
        settings = self.providers.get(chain_type.value, ProviderSettings())
        return ProviderConfig(
            chain=chain_type,
            rpc_url=settings.rpc_url,
            is_testnet=settings.is_testnet,
            api_key=settings.api_key,
            timeout=settings.timeout,
        )

    def provider_configs(self) -> dict[ChainType, ProviderConfig]:
        return {chain: self.provider_config(chain) for chain in ChainType}


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def default_root_dir() -> Path:
    """Return the ``~/.agent-wallet/`` root (``$AGENT_WALLET_HOME`` overrides)."""
    override = os.environ.get("AGENT_WALLET_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".agent-wallet"


def default_config_path() -> Path:
    return default_root_dir() / "config.yaml"


def storage_dir(config: AgentWalletConfig) -> Path:
    if config.wallet.storage_dir:
        return Path(config.wallet.storage_dir).expanduser()
    return default_root_dir() / "wallets"


def backup_dir(config: AgentWalletConfig) -> Path:
    if config.wallet.backup_dir:
        return Path(config.wallet.backup_dir).expanduser()
    return default_root_dir() / "backups"


def load_config(path: Path | None = None) -> AgentWalletConfig:
    """Load and validate configuration from a YAML file.

    A missing file yields the defaults. Environment variable placeholders
    (``${VAR}``) are expanded before validation.
    """
    path = path or default_config_path()
    if not path.exists():
        return AgentWalletConfig()
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return AgentWalletConfig.model_validate(expanded)


def save_config(config: AgentWalletConfig, path: Path) -> None:
    """Serialize an :class:`AgentWalletConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
