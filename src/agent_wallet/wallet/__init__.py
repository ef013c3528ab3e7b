"""Multi-chain wallet system for Agent Wallet.

Key derivation for Ethereum, Polkadot and Solana, per-agent wallet
management with a live connection cache, password-protected backups, and
a bounded-concurrency dispatcher for batch sends and balance checks.
"""
