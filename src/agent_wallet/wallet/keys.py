"""Key derivation for every supported chain.

Everything in this module is a pure function of its inputs: no storage,
no network. Three entry points matter to callers:

* :func:`derive_from_mnemonic` -- BIP-39 phrase plus an optional path.
* :func:`derive_from_private_key` -- a raw hex private key.
* :func:`derive_wallet_key` -- dispatches on the wallet creation method.

Chain rules:

``ethereum``
    secp256k1 BIP-32 at ``m/44'/60'/0'/0/0``; checksummed ``0x`` address.
``solana``
    SLIP-10 ed25519 at ``m/44'/501'/0'/0'``; base58 public key.
``polkadot``
    Substrate BIP-39 mini-secret, sr25519 junctions (``//hard//stash``);
    SS58 address with network prefix 0.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

from bip_utils import (
    Bip32KeyError,
    Bip32PathError,
    Bip32Slip10Ed25519,
    Bip39SeedGenerator,
    Substrate,
    SubstrateBip39SeedGenerator,
    SubstrateCoins,
    SubstratePathError,
)
from eth_account import Account
from eth_keys import keys as eth_keys
from mnemonic import Mnemonic
from solders.keypair import Keypair

from agent_wallet.errors import ValidationError
from agent_wallet.storage.models import CreationMethod
from agent_wallet.wallet.chains import ChainType, get_chain

Account.enable_unaudited_hdwallet_features()

VALID_WORD_COUNTS = (12, 24)
DEFAULT_MNEMONIC_STRENGTH = 128

_HEX_RE = re.compile(r"^[0-9a-f]*$")
_BIP44_SEGMENT_RE = re.compile(r"^(\d+)('?)$")
_HARDENED_OFFSET = 0x80000000
_SUBSTRATE_PATH_RE = re.compile(r"^(//?[^/]+)+$")

_mnemo = Mnemonic("english")


@dataclass(frozen=True)
class DerivedKey:
    """Keypair material for one chain. ``private_key`` is lowercase hex."""

    chain: ChainType
    address: str
    private_key: str = field(repr=False)
    public_key: str
    derivation_path: Optional[str] = None


@dataclass(frozen=True)
class DerivationPath:
    """Components of a BIP-44 path ``m/purpose'/coin'/account'/change/index``."""

    purpose: int = 44
    coin_type: int = 60
    account: int = 0
    change: int = 0
    index: int = 0


# ---------------------------------------------------------------------------
# Mnemonics
# ---------------------------------------------------------------------------


def _normalize_phrase(phrase: str) -> str:
    return " ".join(phrase.strip().lower().split())


def validate_seed_phrase(phrase: str) -> bool:
    """Return ``True`` for a 12- or 24-word English BIP-39 phrase with a valid checksum."""
    if not isinstance(phrase, str):
        return False
    normalized = _normalize_phrase(phrase)
    if len(normalized.split()) not in VALID_WORD_COUNTS:
        return False
    return _mnemo.check(normalized)


def ensure_seed_phrase(phrase: str) -> str:
    """Validate *phrase* and return its normalized form.

    Raises :class:`~agent_wallet.errors.ValidationError` naming the problem
    (word count, unknown words or checksum). Never echoes the phrase.
    """
    if not isinstance(phrase, str) or not phrase.strip():
        raise ValidationError("Seed phrase is required")
    normalized = _normalize_phrase(phrase)
    words = normalized.split()
    if len(words) not in VALID_WORD_COUNTS:
        raise ValidationError(
            f"Seed phrase must have 12 or 24 words, got {len(words)}"
        )
    unknown = sum(1 for word in words if word not in _mnemo.wordlist)
    if unknown:
        raise ValidationError(
            f"Seed phrase contains {unknown} word(s) outside the BIP-39 English wordlist"
        )
    if not _mnemo.check(normalized):
        raise ValidationError("Seed phrase checksum is invalid")
    return normalized


def generate_mnemonic(strength: int = DEFAULT_MNEMONIC_STRENGTH) -> str:
    """Generate a fresh English mnemonic (128 bits -> 12 words, 256 -> 24)."""
    if strength not in (128, 256):
        raise ValidationError(f"Mnemonic strength must be 128 or 256 bits, got {strength}")
    return _mnemo.generate(strength=strength)


# ---------------------------------------------------------------------------
# Derivation paths
# ---------------------------------------------------------------------------


def parse_derivation_path(path: str) -> DerivationPath:
    """Parse a five-level BIP-44 path. Missing trailing levels default to 0."""
    parts = path.strip().split("/") if isinstance(path, str) else []
    if not parts or parts[0] != "m":
        raise ValidationError(f"Invalid derivation path {path!r}: must start with 'm'")
    levels = parts[1:]
    if not 2 <= len(levels) <= 5:
        raise ValidationError(
            f"Invalid derivation path {path!r}: expected 2 to 5 levels after 'm'"
        )

    values: list[int] = []
    for segment in levels:
        match = _BIP44_SEGMENT_RE.match(segment)
        if not match:
            raise ValidationError(f"Invalid derivation path segment {segment!r} in {path!r}")
        value = int(match.group(1))
        if value >= _HARDENED_OFFSET:
            raise ValidationError(f"Derivation index {value} out of range in {path!r}")
        values.append(value)
    values.extend([0] * (5 - len(values)))
    return DerivationPath(*values)


def build_derivation_path(components: DerivationPath) -> str:
    """Inverse of :func:`parse_derivation_path` for the standard hardening layout."""
    return (
        f"m/{components.purpose}'/{components.coin_type}'/{components.account}'"
        f"/{components.change}/{components.index}"
    )


def default_derivation_path(chain: ChainType | str) -> str:
    return get_chain(chain).default_derivation_path


def _check_path(chain: ChainType, path: str) -> str:
    if chain is ChainType.POLKADOT:
        if not _SUBSTRATE_PATH_RE.match(path):
            raise ValidationError(
                f"Invalid Substrate derivation path {path!r}: use junctions like '//hard/soft'"
            )
        return path
    parse_derivation_path(path)
    path = path.strip()
    if chain is ChainType.SOLANA and not all(s.endswith("'") for s in path.split("/")[1:]):
        # SLIP-10 ed25519 has no public (unhardened) derivation
        raise ValidationError(
            f"Invalid Solana derivation path {path!r}: every level must be hardened"
        )
    return path


# ---------------------------------------------------------------------------
# Private keys
# ---------------------------------------------------------------------------


def normalize_private_key(chain: ChainType | str, private_key: str) -> str:
    """Return the canonical lowercase-hex form of *private_key* for *chain*.

    Accepts an optional ``0x`` prefix. Raises
    :class:`~agent_wallet.errors.ValidationError` for non-hex input or a
    byte length the chain does not accept. The key itself is never echoed.
    """
    spec = get_chain(chain)
    if not isinstance(private_key, str) or not private_key.strip():
        raise ValidationError("Private key is required")
    value = private_key.strip()
    if value[:2] in ("0x", "0X"):
        value = value[2:]
    value = value.lower()
    if not _HEX_RE.match(value) or len(value) % 2:
        raise ValidationError("Private key must be a hex string")
    length = len(value) // 2
    if length not in spec.private_key_lengths:
        allowed = " or ".join(str(n) for n in spec.private_key_lengths)
        raise ValidationError(
            f"{spec.chain.value} private key must be {allowed} bytes, got {length}"
        )
    return value


def _ethereum_from_key(key_hex: str, path: Optional[str]) -> DerivedKey:
    key_bytes = bytes.fromhex(key_hex)
    account = Account.from_key(key_bytes)
    public_key = eth_keys.PrivateKey(key_bytes).public_key.to_hex()
    return DerivedKey(
        chain=ChainType.ETHEREUM,
        address=account.address,
        private_key=key_hex,
        public_key=public_key[2:],
        derivation_path=path,
    )


def _solana_from_key(key_hex: str, path: Optional[str]) -> DerivedKey:
    raw = bytes.fromhex(key_hex)
    seed = raw[:32]
    keypair = Keypair.from_seed(seed)
    pubkey = bytes(keypair.pubkey())
    if len(raw) == 64 and raw[32:] != pubkey:
        raise ValidationError("Solana keypair public half does not match its secret")
    return DerivedKey(
        chain=ChainType.SOLANA,
        address=str(keypair.pubkey()),
        private_key=seed.hex(),
        public_key=pubkey.hex(),
        derivation_path=path,
    )


def _polkadot_from_substrate(ctx: Substrate, path: Optional[str]) -> DerivedKey:
    return DerivedKey(
        chain=ChainType.POLKADOT,
        address=ctx.PublicKey().ToAddress(),
        private_key=ctx.PrivateKey().Raw().ToHex(),
        public_key=ctx.PublicKey().RawCompressed().ToHex(),
        derivation_path=path,
    )


def _polkadot_from_key(key_hex: str, path: Optional[str]) -> DerivedKey:
    raw = bytes.fromhex(key_hex)
    try:
        if len(raw) == 32:
            ctx = Substrate.FromSeed(raw, SubstrateCoins.POLKADOT)
        else:
            ctx = Substrate.FromPrivateKey(raw, SubstrateCoins.POLKADOT)
    except ValueError:
        raise ValidationError("Invalid sr25519 private key") from None
    return _polkadot_from_substrate(ctx, path)


def derive_from_private_key(chain: ChainType | str, private_key: str) -> DerivedKey:
    """Derive the address for a raw private key. No derivation path is recorded."""
    chain_type = get_chain(chain).chain
    key_hex = normalize_private_key(chain_type, private_key)
    if chain_type is ChainType.ETHEREUM:
        try:
            return _ethereum_from_key(key_hex, None)
        except Exception:
            raise ValidationError("Private key is outside the secp256k1 curve order") from None
    if chain_type is ChainType.SOLANA:
        return _solana_from_key(key_hex, None)
    return _polkadot_from_key(key_hex, None)


def derive_from_mnemonic(
    chain: ChainType | str,
    phrase: str,
    derivation_path: Optional[str] = None,
) -> DerivedKey:
    """Derive the keypair for *phrase* on *chain* at *derivation_path*.

    The chain's default path is used when none is given.
    """
    chain_type = get_chain(chain).chain
    normalized = ensure_seed_phrase(phrase)
    path = _check_path(chain_type, derivation_path or default_derivation_path(chain_type))

    if chain_type is ChainType.ETHEREUM:
        account = Account.from_mnemonic(normalized, account_path=path)
        return _ethereum_from_key(account.key.hex().removeprefix("0x"), path)

    if chain_type is ChainType.SOLANA:
        seed = Bip39SeedGenerator(normalized).Generate()
        try:
            node = Bip32Slip10Ed25519.FromSeedAndPath(seed, path)
        except (Bip32KeyError, Bip32PathError) as exc:
            raise ValidationError(f"Invalid Solana derivation path {path!r}: {exc}") from None
        return _solana_from_key(node.PrivateKey().Raw().ToHex(), path)

    seed = SubstrateBip39SeedGenerator(normalized).Generate()
    try:
        ctx = Substrate.FromSeedAndPath(seed, path, SubstrateCoins.POLKADOT)
    except (SubstratePathError, ValueError) as exc:
        raise ValidationError(f"Invalid Substrate derivation path {path!r}: {exc}") from None
    return _polkadot_from_substrate(ctx, path)


def derive_wallet_key(
    method: CreationMethod | str,
    chain: ChainType | str,
    seed_phrase: Optional[str] = None,
    private_key: Optional[str] = None,
    derivation_path: Optional[str] = None,
) -> DerivedKey:
    """Produce ``{address, private_key, derivation_path}`` for a creation method."""
    method = CreationMethod(method)
    if method is CreationMethod.PRIVATE_KEY:
        if not private_key:
            raise ValidationError("Private key is required for private-key import")
        return derive_from_private_key(chain, private_key)
    if not seed_phrase:
        raise ValidationError(f"Seed phrase is required for {method.value} wallets")
    return derive_from_mnemonic(chain, seed_phrase, derivation_path)


def generate_wallet_key(
    chain: ChainType | str,
    strength: int = DEFAULT_MNEMONIC_STRENGTH,
    derivation_path: Optional[str] = None,
) -> tuple[str, DerivedKey]:
    """Generate a new mnemonic and derive its keypair. Returns ``(mnemonic, key)``."""
    phrase = generate_mnemonic(strength)
    return phrase, derive_from_mnemonic(chain, phrase, derivation_path)
