"""Agent Wallet - per-agent multi-chain wallets with backups and batch dispatch."""

__version__ = "0.1.0"
