"""Portable wallet backups.

A backup is a JSON document. The plain form carries every wallet of one
agent verbatim, secrets included::

    {"version": "1.0", "agentId": ..., "exportedAt": ..., "format": "plain",
     "wallets": [...]}

The encrypted form wraps that same document, serialized, in AES-256-GCM
under a PBKDF2-HMAC-SHA256 key (100,000 iterations, 16-byte salt, 16-byte
IV). Only opaque fields are left outside the ciphertext::

    {"version": "1.0", "format": "encrypted",
     "encrypted": "<hex ciphertext>.<hex tag>", "iv": ..., "salt": ...}

On import each incoming wallet lands in exactly one bucket: imported,
skipped or failed.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from agent_wallet.errors import (
    DecryptionError,
    StorageError,
    ValidationError,
)
from agent_wallet.wallet.chains import get_chain
from agent_wallet.wallet.manager import WalletManager
from agent_wallet.wallet.providers import validate_address

logger = logging.getLogger("agent_wallet.wallet.backup")

BACKUP_VERSION = "1.0"
KDF_ITERATIONS = 100_000
KEY_LENGTH = 32
SALT_LENGTH = 16
IV_LENGTH = 16
TAG_LENGTH = 16
TAG_DELIMITER = "."
MIN_PASSWORD_LENGTH = 8
RENAME_SUFFIX = "-imported"

PasswordSource = Union[str, Callable[[], str], None]


class BackupFormat(str, Enum):
    PLAIN = "plain"
    ENCRYPTED = "encrypted"

    @classmethod
    def _missing_(cls, value: object) -> "BackupFormat | None":
        if isinstance(value, str) and value.strip().lower() == "json":
            return cls.PLAIN
        return None


class ConflictResolution(str, Enum):
    SKIP = "skip"
    OVERWRITE = "overwrite"
    RENAME = "rename"


class ImportBucket(str, Enum):
    IMPORTED = "imported"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ImportOutcome:
    source_id: str
    bucket: ImportBucket
    wallet_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ImportSummary:
    agent_id: str
    outcomes: list[ImportOutcome] = field(default_factory=list)

    def _count(self, bucket: ImportBucket) -> int:
        return sum(1 for o in self.outcomes if o.bucket is bucket)

    @property
    def imported(self) -> int:
        return self._count(ImportBucket.IMPORTED)

    @property
    def skipped(self) -> int:
        return self._count(ImportBucket.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(ImportBucket.FAILED)

    @property
    def total(self) -> int:
        return len(self.outcomes)


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


def check_password(password: str) -> None:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Backup password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


def derive_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt_payload(plaintext: str, password: str) -> dict[str, str]:
    """Encrypt *plaintext* and return ``{encrypted, iv, salt}`` (all hex)."""
    check_password(password)
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(derive_key(password, salt)).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return {
        "encrypted": f"{ciphertext.hex()}{TAG_DELIMITER}{tag.hex()}",
        "iv": iv.hex(),
        "salt": salt.hex(),
    }


def decrypt_payload(encrypted: str, iv: str, salt: str, password: str) -> str:
    """Inverse of :func:`encrypt_payload`.

    Any failure (wrong password, tampered or malformed blob) raises the same
    :class:`DecryptionError`; the specific cause is only logged at debug level.
    """

    def failed(cause: str) -> DecryptionError:
        logger.debug(f"Backup decryption failed: {cause}")
        return DecryptionError("Decryption failed: wrong password or corrupted backup")

    if not isinstance(password, str) or not password:
        raise failed("empty password")
    try:
        ciphertext_hex, tag_hex = encrypted.split(TAG_DELIMITER)
        ciphertext = bytes.fromhex(ciphertext_hex)
        tag = bytes.fromhex(tag_hex)
        iv_bytes = bytes.fromhex(iv)
        salt_bytes = bytes.fromhex(salt)
    except (AttributeError, TypeError, ValueError):
        raise failed("malformed blob") from None
    if len(tag) != TAG_LENGTH or not iv_bytes or not salt_bytes:
        raise failed("bad tag, iv or salt length")

    try:
        plaintext = AESGCM(derive_key(password, salt_bytes)).decrypt(
            iv_bytes, ciphertext + tag, None
        )
    except InvalidTag:
        raise failed("authentication tag mismatch") from None
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise failed("plaintext is not UTF-8") from None


def is_encrypted_document(document: dict[str, Any]) -> bool:
    return (
        isinstance(document.get("encrypted"), str)
        and bool(document.get("iv"))
        and bool(document.get("salt"))
    )


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def _timestamp(now: Optional[datetime] = None) -> datetime:
    return now or datetime.now(timezone.utc)


def build_backup_document(
    agent_id: str, wallets: list[dict[str, Any]], now: Optional[datetime] = None
) -> dict[str, Any]:
    return {
        "version": BACKUP_VERSION,
        "agentId": agent_id,
        "exportedAt": _timestamp(now).isoformat(),
        "format": BackupFormat.PLAIN.value,
        "wallets": wallets,
    }


def export_wallets(
    manager: WalletManager,
    agent_id: str,
    format: BackupFormat | str = BackupFormat.PLAIN,
    password: Optional[str] = None,
) -> dict[str, Any]:
    """Build the backup document for every wallet of *agent_id*."""
    format = BackupFormat(format)
    if format is BackupFormat.ENCRYPTED:
        check_password(password or "")

    wallets = manager.load_agent_wallets(agent_id)
    if not wallets:
        raise ValidationError(f"No wallets found for agent {agent_id}")

    document = build_backup_document(agent_id, [w.to_record() for w in wallets])
    if format is BackupFormat.PLAIN:
        logger.warning(
            f"Plain backup of {len(wallets)} wallet(s) for {agent_id} contains "
            "unencrypted private keys"
        )
        return document

    sealed = encrypt_payload(json.dumps(document), password or "")
    return {"version": BACKUP_VERSION, "format": BackupFormat.ENCRYPTED.value, **sealed}


def default_backup_filename(
    agent_id: str, format: BackupFormat | str, now: Optional[datetime] = None
) -> str:
    ext = "backup" if BackupFormat(format) is BackupFormat.ENCRYPTED else "json"
    stamp = _timestamp(now).strftime("%Y%m%dT%H%M%SZ")
    return f"agent-wallet-backup-{agent_id}-{stamp}.{ext}"


def write_backup(document: dict[str, Any], path: Path) -> Path:
    """Write *document* as JSON readable only by the owner."""
    path = Path(path).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(document, fh, indent=2)
        os.chmod(path, 0o600)
    except OSError as exc:
        raise StorageError(f"Failed to write backup {path}: {exc}") from exc
    return path


def export_to_file(
    manager: WalletManager,
    agent_id: str,
    destination: Path,
    format: BackupFormat | str = BackupFormat.PLAIN,
    password: Optional[str] = None,
) -> Path:
    """Export to *destination*; a directory gets the default file name."""
    document = export_wallets(manager, agent_id, format, password)
    destination = Path(destination).expanduser()
    if destination.is_dir():
        destination = destination / default_backup_filename(agent_id, format)
    path = write_backup(document, destination)
    logger.info(f"Backup for {agent_id} written to {path} ({BackupFormat(format).value})")
    return path


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def read_backup_file(path: Path) -> dict[str, Any]:
    path = Path(path).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"Cannot read backup {path}: {exc}") from exc
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        raise ValidationError(f"Backup {path} is not valid JSON") from None
    if not isinstance(document, dict):
        raise ValidationError(f"Backup {path} is not a JSON object")
    return document


def validate_backup(document: dict[str, Any]) -> dict[str, Any]:
    """Check the structure of a plain backup document. Returns it unchanged."""
    problems = []
    if not document.get("version"):
        problems.append("missing version")
    if not document.get("agentId"):
        problems.append("missing agentId")
    wallets = document.get("wallets")
    if not isinstance(wallets, list) or not wallets:
        problems.append("wallets must be a non-empty list")
    else:
        for index, entry in enumerate(wallets):
            if not isinstance(entry, dict):
                problems.append(f"wallets[{index}] is not an object")
                continue
            missing = [k for k in ("id", "chain", "address") if not entry.get(k)]
            if missing:
                problems.append(f"wallets[{index}] missing {', '.join(missing)}")
    if problems:
        raise ValidationError(f"Invalid backup: {'; '.join(problems)}")
    return document


def load_backup(
    source: Union[dict[str, Any], Path, str],
    password: PasswordSource = None,
) -> dict[str, Any]:
    """Read, decrypt if needed, and validate a backup.

    *password* may be a string or a zero-argument callable; the callable is
    only invoked when the document is encrypted.
    """
    document = source if isinstance(source, dict) else read_backup_file(Path(source))

    if is_encrypted_document(document):
        secret = password() if callable(password) else password
        if not secret:
            raise ValidationError("This backup is encrypted; a password is required")
        plaintext = decrypt_payload(
            document["encrypted"], document["iv"], document["salt"], secret
        )
        try:
            document = json.loads(plaintext)
        except json.JSONDecodeError:
            raise ValidationError("Decrypted backup is not valid JSON") from None
        if not isinstance(document, dict):
            raise ValidationError("Decrypted backup is not a JSON object")
    elif document.get("format") == BackupFormat.ENCRYPTED.value:
        raise ValidationError("Encrypted backup is missing its encrypted, iv or salt field")

    return validate_backup(document)


def _rename_target(manager: WalletManager, agent_id: str, wallet_id: str) -> str:
    candidate = f"{wallet_id}{RENAME_SUFFIX}"
    attempt = 2
    while manager.has_wallet(agent_id, candidate):
        candidate = f"{wallet_id}{RENAME_SUFFIX}-{attempt}"
        attempt += 1
    return candidate


def _import_entry(
    manager: WalletManager,
    agent_id: str,
    entry: dict[str, Any],
    resolution: ConflictResolution,
) -> ImportOutcome:
    source_id = str(entry["id"])
    if not entry.get("privateKey") and not entry.get("mnemonic"):
        logger.warning(f"Skipping {source_id}: no private key or mnemonic")
        return ImportOutcome(source_id, ImportBucket.SKIPPED, reason="no private key or mnemonic")

    chain = get_chain(entry["chain"]).chain
    if not validate_address(chain, str(entry["address"])):
        raise ValidationError(f"invalid {chain.value} address")

    if not manager.has_wallet(agent_id, source_id):
        wallet = manager.restore_wallet(agent_id, entry)
        return ImportOutcome(source_id, ImportBucket.IMPORTED, wallet.id)

    if resolution is ConflictResolution.SKIP:
        return ImportOutcome(source_id, ImportBucket.SKIPPED, source_id, reason="already exists")
    if resolution is ConflictResolution.OVERWRITE:
        wallet = manager.restore_wallet(agent_id, entry, overwrite=True)
        return ImportOutcome(source_id, ImportBucket.IMPORTED, wallet.id, reason="overwritten")

    target = _rename_target(manager, agent_id, source_id)
    wallet = manager.restore_wallet(agent_id, entry, wallet_id=target)
    return ImportOutcome(source_id, ImportBucket.IMPORTED, wallet.id, reason=f"renamed from {source_id}")


def import_backup(
    manager: WalletManager,
    source: Union[dict[str, Any], Path, str],
    password: PasswordSource = None,
    resolution: ConflictResolution | str = ConflictResolution.SKIP,
    agent_id: Optional[str] = None,
) -> ImportSummary:
    """Restore a backup into *agent_id* (default: the document's agentId).

    Document-level problems (unreadable file, failed decryption, bad
    structure) raise before anything is written. Per-wallet problems are
    recorded in the summary and never abort the run.
    """
    resolution = ConflictResolution(resolution)
    document = load_backup(source, password)
    target_agent = agent_id or str(document["agentId"])
    summary = ImportSummary(agent_id=target_agent)

    for entry in document["wallets"]:
        try:
            outcome = _import_entry(manager, target_agent, entry, resolution)
        except Exception as exc:
            # every entry ends up in exactly one bucket
            logger.warning(f"Failed to import wallet {entry['id']}: {exc}")
            outcome = ImportOutcome(str(entry["id"]), ImportBucket.FAILED, reason=str(exc))
        summary.outcomes.append(outcome)

    logger.info(
        f"Backup import for {target_agent}: {summary.imported} imported, "
        f"{summary.skipped} skipped, {summary.failed} failed"
    )
    return summary
