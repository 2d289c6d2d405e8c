# services/backups.py
from __future__ import annotations

import asyncio
import logging
import os
import uuid
import zipfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from exceptions import ConfigurationError, StorageError
from models.fleet import BACKUPS, Backup, utcnow
from utils.config import ServerConfig, settings
from utils.sources import resolve
from utils.store import NamespacedStore

log = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d-%H-%M-%S"


def zip_dir(src: Path, archive: Path) -> None:
    tmp = archive.with_suffix(archive.suffix + ".part")
    try:
        with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for p in sorted(src.rglob("*")):
                if p.is_file():
                    zf.write(p, p.relative_to(src).as_posix())
        os.replace(tmp, archive)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class BackupManager:
    """Creates zipped save snapshots per server and expires them after the retention window.

    A record exists in the ``backups`` bucket exactly when its archive exists under
    ``<root>/<server_id>/``.
    """

    def __init__(
        self,
        store: NamespacedStore,
        root: str | Path | None = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.root = Path(root if root is not None else settings.BACKUP_DIR)
        self._now = now

    def backup_dir(self, server_id: str) -> Path:
        d = self.root / server_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def archive_path(self, backup: Backup) -> Path:
        return self.root / backup.server_id / backup.path

    async def create_backup(self, server: ServerConfig) -> Backup:
        if not server.save.path:
            raise ConfigurationError(f"save path not configured for server {server.id}")

        now = self._now()
        backup_id = str(uuid.uuid4())
        async with resolve(server.save.path, "backup") as directory:
            archive = self._reserve(server.id, now, backup_id)
            try:
                await asyncio.to_thread(zip_dir, directory, archive)
            except OSError as e:
                archive.unlink(missing_ok=True)
                raise StorageError(f"failed to create backup zip {archive}: {e}") from e
            except BaseException:
                archive.unlink(missing_ok=True)
                raise

        backup = Backup(server_id=server.id, backup_id=backup_id, save_time=now, path=archive.name)
        try:
            await self.store.put(BACKUPS, server.id, backup.backup_id, backup)
        except StorageError:
            # the archive stays behind without a record; retention only walks records
            log.error("[backup] record write failed for server %s; orphaned archive %s", server.id, archive)
            raise
        log.info("[backup] server %s -> %s", server.id, archive)
        return backup

    def _reserve(self, server_id: str, now: datetime, backup_id: str) -> Path:
        """Claim the archive name with an exclusive create; two backups never share a file."""
        d = self.backup_dir(server_id)
        stamp = now.strftime(TIME_FORMAT)
        for name in (f"{server_id}_{stamp}.zip", f"{server_id}_{stamp}_{backup_id[:8]}.zip"):
            try:
                (d / name).open("x").close()
            except FileExistsError:
                continue
            return d / name
        raise StorageError(f"backup archive name taken for server {server_id} at {stamp}")

    async def enforce_retention(self, server_id: str, keep_days: int) -> list[Backup]:
        """Delete archive and record of every backup older than ``keep_days``. Returns what was expired."""
        backups = await self.store.list_by_server(BACKUPS, server_id, Backup)
        cutoff = self._now() - timedelta(days=keep_days)

        expired: list[Backup] = []
        for backup in backups:
            if backup.save_time >= cutoff:
                continue
            path = self.archive_path(backup)
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                log.error("[backup] failed to delete old backup file %s: %s", path, e)
            try:
                await self.store.delete(BACKUPS, server_id, backup.backup_id)
            except StorageError as e:
                log.error("[backup] failed to delete backup record %s of server %s: %s", backup.backup_id, server_id, e)
                continue
            expired.append(backup)
        if expired:
            log.info("[backup] expired %d backups of server %s (keep %d days)", len(expired), server_id, keep_days)
        return expired

    # ---- accessors --------------------------------------------------

    async def list_backups(
        self,
        server_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Backup]:
        backups = await self.store.list_by_server(BACKUPS, server_id, Backup)
        if start is not None:
            backups = [b for b in backups if b.save_time > start]
        if end is not None:
            backups = [b for b in backups if b.save_time < end]
        return sorted(backups, key=lambda b: b.save_time)

    async def get_backup(self, server_id: str, backup_id: str) -> Backup:
        return await self.store.get(BACKUPS, server_id, backup_id, Backup)

    async def delete_backup(self, server_id: str, backup_id: str) -> Backup:
        backup = await self.get_backup(server_id, backup_id)
        try:
            self.archive_path(backup).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"failed to delete backup file {backup.path}: {e}") from e
        await self.store.delete(BACKUPS, server_id, backup_id)
        return backup
