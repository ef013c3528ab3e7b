"""Per-agent wallet persistence on the local filesystem.

Layout::

    <base_dir>/                 (0700)
        <agent_id>/             (0700)
            <wallet_id>.wallet  (0600, CBOR record, see ``serializer``)

Each agent owns its own directory so that listing or reading one agent's
wallets never touches another's.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from agent_wallet.errors import StorageError, ValidationError
from agent_wallet.storage.models import Wallet
from agent_wallet.storage.serializer import MAGIC, decode_wallet, encode_wallet, is_sealed

logger = logging.getLogger("agent_wallet.storage.wallet_store")

WALLET_SUFFIX = ".wallet"
DIR_MODE = 0o700
FILE_MODE = 0o600

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def _check_id(kind: str, value: str) -> str:
    if not isinstance(value, str) or not _SAFE_ID_RE.match(value) or ".." in value:
        raise ValidationError(
            f"Invalid {kind} {value!r}: use letters, digits, '.', '_' or '-' "
            "(max 128 chars, no path separators)"
        )
    return value


class WalletStore:
    """File-backed wallet store.

    Parameters
    ----------
    base_dir:
        Root directory for all agents. Created with owner-only permissions
        on first write.
    passphrase:
        Optional storage passphrase. When set, every record written is
        sealed with AES-256-GCM; sealed records cannot be read without it.
    """

    def __init__(self, base_dir: Path, passphrase: Optional[str] = None) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self._passphrase = passphrase

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def agent_dir(self, agent_id: str) -> Path:
        return self.base_dir / _check_id("agent id", agent_id)

    def wallet_path(self, agent_id: str, wallet_id: str) -> Path:
        return self.agent_dir(agent_id) / f"{_check_id('wallet id', wallet_id)}{WALLET_SUFFIX}"

    def _ensure_dirs(self, agent_id: str) -> Path:
        agent_dir = self.agent_dir(agent_id)
        try:
            for directory in (self.base_dir, agent_dir):
                directory.mkdir(parents=True, exist_ok=True)
                os.chmod(directory, DIR_MODE)
        except OSError as exc:
            raise StorageError(
                f"Cannot create wallet directory {agent_dir}: {exc}", agent_id=agent_id
            ) from exc
        return agent_dir

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def save(self, wallet: Wallet) -> Path:
        """Write *wallet* atomically, replacing any existing record."""
        agent_dir = self._ensure_dirs(wallet.agent_id)
        path = self.wallet_path(wallet.agent_id, wallet.id)
        data = encode_wallet(wallet, self._passphrase)

        fd, tmp_name = tempfile.mkstemp(dir=agent_dir, prefix=".tmp-", suffix=WALLET_SUFFIX)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, FILE_MODE)
            os.replace(tmp_name, path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(
                f"Failed to write wallet {wallet.id}: {exc}",
                agent_id=wallet.agent_id,
                wallet_id=wallet.id,
            ) from exc

        logger.debug(f"Saved wallet {wallet.agent_id}/{wallet.id} ({len(data)} bytes)")
        return path

    def load(self, agent_id: str, wallet_id: str) -> Wallet | None:
        """Load a wallet, or ``None`` if no record exists.

        A record that exists but cannot be decoded raises
        :class:`~agent_wallet.errors.CorruptWalletError`.
        """
        path = self.wallet_path(agent_id, wallet_id)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(
                f"Failed to read wallet {wallet_id}: {exc}",
                agent_id=agent_id,
                wallet_id=wallet_id,
            ) from exc
        return decode_wallet(data, agent_id, wallet_id, self._passphrase)

    def delete(self, agent_id: str, wallet_id: str) -> bool:
        """Delete a wallet record. Returns ``True`` if one was removed."""
        path = self.wallet_path(agent_id, wallet_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(
                f"Failed to delete wallet {wallet_id}: {exc}",
                agent_id=agent_id,
                wallet_id=wallet_id,
            ) from exc
        logger.debug(f"Deleted wallet {agent_id}/{wallet_id}")
        return True

    def exists(self, agent_id: str, wallet_id: str) -> bool:
        return self.wallet_path(agent_id, wallet_id).is_file()

    def list(self, agent_id: str) -> list[str]:
        """Return the wallet IDs stored for *agent_id* (no secrets are read)."""
        agent_dir = self.agent_dir(agent_id)
        if not agent_dir.is_dir():
            return []
        return sorted(
            p.name[: -len(WALLET_SUFFIX)]
            for p in agent_dir.iterdir()
            if p.is_file() and p.name.endswith(WALLET_SUFFIX) and not p.name.startswith(".")
        )

    def list_agents(self) -> list[str]:
        """Return the IDs of all agents that have a wallet directory."""
        if not self.base_dir.is_dir():
            return []
        return sorted(d.name for d in self.base_dir.iterdir() if d.is_dir())

    def stats(self, agent_id: str, wallet_id: str) -> dict | None:
        """Size, modification time and sealed flag of one record, or ``None``."""
        path = self.wallet_path(agent_id, wallet_id)
        if not path.is_file():
            return None
        st = path.stat()
        with open(path, "rb") as fh:
            header = fh.read(len(MAGIC) + 1)
        return {
            "size": st.st_size,
            "modified": datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            "sealed": is_sealed(header),
        }

    # ------------------------------------------------------------------
    # Agent-scoped bulk operations
    # ------------------------------------------------------------------

    def backup(self, agent_id: str, backup_path: Path) -> Path:
        """Copy every raw record of *agent_id* into ``backup_path/<agent_id>/``."""
        agent_dir = self.agent_dir(agent_id)
        if not agent_dir.is_dir():
            raise StorageError(f"No wallets found for agent: {agent_id}", agent_id=agent_id)

        dest = Path(backup_path) / agent_id
        dest.mkdir(parents=True, exist_ok=True)
        os.chmod(dest, DIR_MODE)
        wallet_ids = self.list(agent_id)
        for wallet_id in wallet_ids:
            shutil.copy2(self.wallet_path(agent_id, wallet_id), dest / f"{wallet_id}{WALLET_SUFFIX}")
        logger.info(f"Copied {len(wallet_ids)} wallet record(s) of {agent_id} to {dest}")
        return dest

    def restore(self, agent_id: str, backup_path: Path) -> list[str]:
        """Copy raw records from *backup_path* into the agent directory.

        Every file is decoded first; records that do not belong to
        *agent_id* are rejected before anything is written.
        """
        src = Path(backup_path)
        if not src.is_dir():
            raise StorageError(f"Backup directory not found: {src}", agent_id=agent_id)

        files = sorted(p for p in src.iterdir() if p.is_file() and p.name.endswith(WALLET_SUFFIX))
        for path in files:
            decode_wallet(path.read_bytes(), agent_id, path.name[: -len(WALLET_SUFFIX)], self._passphrase)

        agent_dir = self._ensure_dirs(agent_id)
        restored = []
        for path in files:
            target = agent_dir / path.name
            shutil.copy2(path, target)
            os.chmod(target, FILE_MODE)
            restored.append(path.name[: -len(WALLET_SUFFIX)])
        logger.info(f"Restored {len(restored)} wallet record(s) for {agent_id}")
        return restored

    def clear(self, agent_id: str) -> list[str]:
        """Delete every wallet of *agent_id*. Returns the removed IDs."""
        removed = [wid for wid in self.list(agent_id) if self.delete(agent_id, wid)]
        if removed:
            logger.info(f"Cleared {len(removed)} wallet(s) for {agent_id}")
        return removed

    def storage_size(self, agent_id: str) -> int:
        """Total bytes used by *agent_id*'s wallet records."""
        agent_dir = self.agent_dir(agent_id)
        if not agent_dir.is_dir():
            return 0
        return sum(
            p.stat().st_size
            for p in agent_dir.iterdir()
            if p.is_file() and p.name.endswith(WALLET_SUFFIX) and not p.name.startswith(".")
        )
