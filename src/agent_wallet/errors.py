"""Error types raised by the agent wallet library.

Library functions raise these; the CLI is responsible for turning them into
console output and exit codes.
"""

from __future__ import annotations

from typing import Any, Optional


class AgentWalletError(Exception):
    """Root of every error raised by this package."""

    code = "agent_wallet_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.details = details


# ---------------------------------------------------------------------------
# Validation / crypto
# ---------------------------------------------------------------------------


class ValidationError(AgentWalletError, ValueError):
    """Malformed input: address, key, mnemonic, password, backup structure."""

    code = "validation_error"


class DecryptionError(AgentWalletError):
    """Authenticated decryption failed.

    Raised for both a wrong password and corrupted ciphertext; the two are
    not distinguished.
    """

    code = "decryption_failed"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(AgentWalletError):
    """Filesystem-level failure reading or writing wallet records."""

    code = "storage_error"

    def __init__(
        self,
        message: str,
        agent_id: Optional[str] = None,
        wallet_id: Optional[str] = None,
    ):
        super().__init__(message, {"agent_id": agent_id, "wallet_id": wallet_id})
        self.agent_id = agent_id
        self.wallet_id = wallet_id


class WalletNotFoundError(StorageError):
    code = "wallet_not_found"


class WalletExistsError(StorageError):
    code = "wallet_exists"


class CorruptWalletError(StorageError):
    """A record exists on disk but cannot be decoded."""

    code = "wallet_corrupt"


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class ProviderError(AgentWalletError):
    """Failure talking to (or inside) a chain provider."""

    code = "provider_error"


class ProviderConnectionError(ProviderError):
    code = "provider_connection_error"


class NotConnectedError(ProviderError):
    """A networked provider call was made before ``connect()``."""

    code = "provider_not_connected"


class ProviderTimeoutError(ProviderError):
    code = "provider_timeout"


class RateLimitedError(ProviderError):
    code = "provider_rate_limited"


class SigningError(ProviderError):
    code = "signing_error"


class NotImplementedFeatureError(ProviderError, NotImplementedError):
    """The chain adapter does not implement this capability yet."""

    code = "not_implemented"
