"""Binary wallet record codec.

Layout of a record file::

    MAGIC (4) | flags (1) | body

For a plain record the body is ``CBOR(wallet) | checksum(4)``. For a sealed
record the body is ``salt(16) | nonce(12) | AES-256-GCM(CBOR | checksum)``
with ``agentId:walletId`` bound as associated data.
"""

from __future__ import annotations

import hashlib
import os
from typing import Optional

import cbor2
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError as PydanticValidationError

from agent_wallet.errors import CorruptWalletError
from agent_wallet.storage.models import Wallet

MAGIC = b"AWR1"
FLAG_PLAIN = 0x00
FLAG_SEALED = 0x01
CHECKSUM_LENGTH = 4
SALT_LENGTH = 16
NONCE_LENGTH = 12
KDF_ITERATIONS = 100_000


def _checksum(payload: bytes) -> bytes:
    return hashlib.sha256(payload).digest()[:CHECKSUM_LENGTH]


def _aad(agent_id: str, wallet_id: str) -> bytes:
    return f"{agent_id}:{wallet_id}".encode("utf-8")


def derive_record_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encode_wallet(wallet: Wallet, passphrase: Optional[str] = None) -> bytes:
    """Serialize *wallet* to a record, sealing it when a passphrase is given."""
    payload = cbor2.dumps(wallet.to_record())
    body = payload + _checksum(payload)
    if passphrase is None:
        return MAGIC + bytes([FLAG_PLAIN]) + body

    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)
    key = derive_record_key(passphrase, salt)
    sealed = AESGCM(key).encrypt(nonce, body, _aad(wallet.agent_id, wallet.id))
    return MAGIC + bytes([FLAG_SEALED]) + salt + nonce + sealed


def is_sealed(data: bytes) -> bool:
    return len(data) > len(MAGIC) and data[len(MAGIC)] == FLAG_SEALED


def decode_wallet(
    data: bytes,
    agent_id: str,
    wallet_id: str,
    passphrase: Optional[str] = None,
) -> Wallet:
    """Parse a record produced by :func:`encode_wallet`.

    Raises :class:`CorruptWalletError` for anything that does not decode to
    the wallet stored under ``(agent_id, wallet_id)``.
    """

    def corrupt(reason: str) -> CorruptWalletError:
        return CorruptWalletError(
            f"Invalid wallet data for {agent_id}/{wallet_id}: {reason}",
            agent_id=agent_id,
            wallet_id=wallet_id,
        )

    header = len(MAGIC) + 1
    if len(data) < header + CHECKSUM_LENGTH or not data.startswith(MAGIC):
        raise corrupt("bad header")

    flags = data[len(MAGIC)]
    body = data[header:]
    if flags == FLAG_SEALED:
        if passphrase is None:
            raise corrupt("record is sealed and no storage passphrase is configured")
        if len(body) < SALT_LENGTH + NONCE_LENGTH:
            raise corrupt("truncated sealed record")
        salt = body[:SALT_LENGTH]
        nonce = body[SALT_LENGTH:SALT_LENGTH + NONCE_LENGTH]
        key = derive_record_key(passphrase, salt)
        try:
            body = AESGCM(key).decrypt(
                nonce, body[SALT_LENGTH + NONCE_LENGTH:], _aad(agent_id, wallet_id)
            )
        except InvalidTag:
            raise corrupt("authentication failed (wrong passphrase or tampered record)") from None
    elif flags != FLAG_PLAIN:
        raise corrupt(f"unknown record flags {flags:#04x}")

    payload, checksum = body[:-CHECKSUM_LENGTH], body[-CHECKSUM_LENGTH:]
    if _checksum(payload) != checksum:
        raise corrupt("checksum mismatch")

    try:
        decoded = cbor2.loads(payload)
    except (cbor2.CBORDecodeError, ValueError) as exc:
        raise corrupt(f"decode failed ({exc})") from exc
    if not isinstance(decoded, dict):
        raise corrupt("record is not a map")

    try:
        wallet = Wallet.from_record(decoded)
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        raise corrupt(f"invalid fields {fields}") from None

    if wallet.agent_id != agent_id or wallet.id != wallet_id:
        raise corrupt("record belongs to a different agent or wallet")
    return wallet
