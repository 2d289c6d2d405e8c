import httpx
import pytest
import pytest_asyncio
from datetime import datetime, timezone
from fastapi import FastAPI

from api import fleet_router
from conftest import StubClient, make_settings, player, server
from models.fleet import BACKUPS, Backup
from services.backups import BackupManager
from services.scheduler import FleetScheduler

pytestmark = pytest.mark.asyncio

AUTH = {"Authorization": "Bearer secret"}


@pytest_asyncio.fixture
async def api(store, tmp_path, monkeypatch):
    monkeypatch.setattr(fleet_router.settings, "API_TOKEN", "secret")
    roster = {"srv1": [player("p1", "Alice", "111"), player("p2", "Bob", "222")]}
    app = FastAPI()
    app.include_router(fleet_router.router)
    app.state.scheduler = FleetScheduler(
        store,
        config=make_settings([server("srv1"), server("off", enabled=False)]),
        backups=BackupManager(store, tmp_path / "backups"),
        client_factory=lambda srv: StubClient(srv, roster.get(srv.id, [])),
    )
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client, app.state.scheduler


async def test_requires_bearer_token(api):
    client, _ = api
    assert (await client.get("/api/servers/srv1/whitelist")).status_code == 401
    r = await client.get("/api/servers/srv1/whitelist", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401
    for header in ("Basic secret", "Bearer", "Bearer  secret", "bearer secret"):
        r = await client.get("/api/servers/srv1/whitelist", headers={"Authorization": header})
        assert r.status_code == 401, header
    assert (await client.get("/api/servers/srv1/whitelist", headers=AUTH)).status_code == 200


async def test_sync_now_and_read_online_players(api):
    client, _ = api
    r = await client.post("/api/servers/srv1/sync", params={"from": "rest", "wait": "true"}, headers=AUTH)
    assert r.status_code == 200 and r.json() == {"success": True}

    r = await client.get("/api/servers/srv1/online_player", headers=AUTH)
    assert sorted(p["nickname"] for p in r.json()) == ["Alice", "Bob"]


async def test_sync_now_failure_indications(api):
    client, _ = api
    r = await client.post("/api/servers/nope/sync", params={"from": "rest"}, headers=AUTH)
    assert r.status_code == 404
    r = await client.post("/api/servers/off/sync", params={"from": "rest"}, headers=AUTH)
    assert r.status_code == 400
    r = await client.post("/api/servers/srv1/sync", params={"from": "sav"}, headers=AUTH)
    assert r.status_code == 400  # no save path
    r = await client.post("/api/servers/srv1/sync", params={"from": "ftp"}, headers=AUTH)
    assert r.status_code == 422


async def test_whitelist_crud(api):
    client, _ = api
    r = await client.post("/api/servers/srv1/whitelist", json={"name": "Alice", "player_uid": "p1"}, headers=AUTH)
    assert r.status_code == 200 and r.json()["server_id"] == "srv1"
    assert (await client.post("/api/servers/srv1/whitelist", json={"name": "x"}, headers=AUTH)).status_code == 422

    r = await client.put("/api/servers/srv1/whitelist", json=[{"steam_id": "222"}, {"player_uid": "p9"}], headers=AUTH)
    assert r.status_code == 200
    ids = sorted(e["steam_id"] or e["player_uid"] for e in (await client.get("/api/servers/srv1/whitelist", headers=AUTH)).json())
    assert ids == ["222", "p9"]

    assert (await client.delete("/api/servers/srv1/whitelist/p9", headers=AUTH)).status_code == 200
    assert len((await client.get("/api/servers/srv1/whitelist", headers=AUTH)).json()) == 1


async def test_backup_list_download_delete(api):
    client, scheduler = api
    manager = scheduler.backups
    b = Backup(server_id="srv1", backup_id="b1", save_time=datetime(2024, 5, 1, tzinfo=timezone.utc), path="b1.zip")
    manager.backup_dir("srv1").joinpath("b1.zip").write_bytes(b"PK-data")
    await scheduler.store.put(BACKUPS, "srv1", "b1", b)

    r = await client.get("/api/servers/srv1/backup", headers=AUTH)
    assert [x["backup_id"] for x in r.json()] == ["b1"]
    r = await client.get("/api/servers/srv1/backup", params={"startTime": 1714608000000}, headers=AUTH)
    assert r.json() == []  # 2024-05-02

    r = await client.get("/api/servers/srv1/backup/b1", headers=AUTH)
    assert r.status_code == 200 and r.content == b"PK-data"

    assert (await client.delete("/api/servers/srv1/backup/b1", headers=AUTH)).status_code == 200
    assert (await client.get("/api/servers/srv1/backup/b1", headers=AUTH)).status_code == 404
    assert not manager.archive_path(b).exists()


async def test_decoder_push_back(api):
    client, scheduler = api
    r = await client.put(
        "/api/servers/srv1/player",
        json=[{"player_uid": "p1", "nickname": "Alice", "level": 12}, {"nickname": "no uid"}],
        headers=AUTH,
    )
    assert r.status_code == 200
    r = await client.put("/api/servers/srv1/guild", json=[{"name": "G", "admin_player_uid": "p1"}], headers=AUTH)
    assert r.status_code == 200

    players = await scheduler.store.list_raw("players", "srv1")
    assert players == [{"player_uid": "p1", "nickname": "Alice", "level": 12, "server_id": "srv1"}]
    assert [g["name"] for g in await scheduler.store.list_raw("guilds", "srv1")] == ["G"]
