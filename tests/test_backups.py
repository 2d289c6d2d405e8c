import asyncio
import zipfile
from datetime import datetime, timedelta, timezone

import pytest

from conftest import server
from exceptions import ConfigurationError, NotFound, SourceUnavailable
from models.fleet import BACKUPS, Backup
from services.backups import BackupManager

pytestmark = pytest.mark.asyncio

NOW = datetime(2024, 5, 20, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def save_dir(tmp_path):
    d = tmp_path / "SaveGames" / "0" / "world"
    (d / "Players").mkdir(parents=True)
    (d / "Level.sav").write_bytes(b"level-data")
    (d / "Players" / "0001.sav").write_bytes(b"player-data")
    return d


async def _seed(store, manager, sid, age_days, name):
    b = Backup(server_id=sid, backup_id=name, save_time=NOW - timedelta(days=age_days), path=f"{name}.zip")
    manager.archive_path(b).parent.mkdir(parents=True, exist_ok=True)
    manager.archive_path(b).write_bytes(b"zip")
    await store.put(BACKUPS, sid, b.backup_id, b)
    return b


async def test_create_backup_writes_archive_and_record(store, tmp_path, save_dir, isolated_tmp):
    manager = BackupManager(store, tmp_path / "backups", now=lambda: NOW)

    backup = await manager.create_backup(server("srv1", save_path=str(save_dir)))

    assert backup.path == "srv1_2024-05-20-12-00-00.zip"
    archive = manager.archive_path(backup)
    assert archive == tmp_path / "backups" / "srv1" / backup.path
    with zipfile.ZipFile(archive) as zf:
        assert sorted(zf.namelist()) == ["Level.sav", "Players/0001.sav"]
    assert (await manager.get_backup("srv1", backup.backup_id)) == backup
    # the resolver's temp copy is gone
    assert list(isolated_tmp.iterdir()) == []


async def test_create_backup_requires_save_path(store, tmp_path):
    manager = BackupManager(store, tmp_path / "backups")
    with pytest.raises(ConfigurationError):
        await manager.create_backup(server("srv1"))
    assert await manager.list_backups("srv1") == []


async def test_unreachable_source_leaves_nothing_behind(store, tmp_path, isolated_tmp):
    manager = BackupManager(store, tmp_path / "backups")
    with pytest.raises(SourceUnavailable):
        await manager.create_backup(server("srv1", save_path=str(tmp_path / "missing")))
    assert await manager.list_backups("srv1") == []
    assert not (tmp_path / "backups" / "srv1").exists() or not any((tmp_path / "backups" / "srv1").iterdir())
    assert list(isolated_tmp.iterdir()) == []


async def test_retention_deletes_only_expired(store, tmp_path):
    manager = BackupManager(store, tmp_path / "backups", now=lambda: NOW)
    b10 = await _seed(store, manager, "srv1", 10, "b10")
    b8 = await _seed(store, manager, "srv1", 8, "b8")
    b6 = await _seed(store, manager, "srv1", 6, "b6")
    other = await _seed(store, manager, "srv2", 30, "old-other")

    expired = await manager.enforce_retention("srv1", 7)

    assert {b.backup_id for b in expired} == {"b10", "b8"}
    assert not manager.archive_path(b10).exists()
    assert not manager.archive_path(b8).exists()
    assert manager.archive_path(b6).exists()
    assert [b.backup_id for b in await manager.list_backups("srv1")] == ["b6"]
    # other servers untouched
    assert manager.archive_path(other).exists()


async def test_retention_tolerates_missing_archive(store, tmp_path):
    manager = BackupManager(store, tmp_path / "backups", now=lambda: NOW)
    b = await _seed(store, manager, "srv1", 9, "gone")
    manager.archive_path(b).unlink()

    expired = await manager.enforce_retention("srv1", 7)

    assert [x.backup_id for x in expired] == ["gone"]
    with pytest.raises(NotFound):
        await manager.get_backup("srv1", "gone")


async def test_list_backups_time_range_sorted(store, tmp_path):
    manager = BackupManager(store, tmp_path / "backups", now=lambda: NOW)
    await _seed(store, manager, "srv1", 1, "b1")
    await _seed(store, manager, "srv1", 3, "b3")
    await _seed(store, manager, "srv1", 5, "b5")

    assert [b.backup_id for b in await manager.list_backups("srv1")] == ["b5", "b3", "b1"]
    ranged = await manager.list_backups("srv1", start=NOW - timedelta(days=4), end=NOW - timedelta(days=2))
    assert [b.backup_id for b in ranged] == ["b3"]


async def test_delete_backup_removes_file_and_record(store, tmp_path):
    manager = BackupManager(store, tmp_path / "backups", now=lambda: NOW)
    b = await _seed(store, manager, "srv1", 1, "b1")

    await manager.delete_backup("srv1", "b1")

    assert not manager.archive_path(b).exists()
    with pytest.raises(NotFound):
        await manager.delete_backup("srv1", "b1")


async def test_backups_in_the_same_second_get_their_own_archive(store, tmp_path, save_dir, isolated_tmp):
    manager = BackupManager(store, tmp_path / "backups", now=lambda: NOW)
    srv = server("srv1", save_path=str(save_dir))

    b1, b2 = await asyncio.gather(manager.create_backup(srv), manager.create_backup(srv))

    assert manager.archive_path(b1) != manager.archive_path(b2)
    await manager.delete_backup("srv1", b1.backup_id)
    assert not manager.archive_path(b1).exists()
    with zipfile.ZipFile(manager.archive_path(b2)) as zf:
        assert "Level.sav" in zf.namelist()
