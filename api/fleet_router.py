from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import FileResponse

from exceptions import ConfigurationError, FleetError, NotFound, StorageError
from models.fleet import GUILDS, ONLINE_PLAYERS, PLAYERS, Backup, OnlinePlayer, WhitelistEntry
from services import whitelist
from services.scheduler import FleetScheduler
from utils.config import ServerConfig, settings

router = APIRouter(prefix="/api/servers", tags=["fleet"])


async def _require_token(authorization: str | None = Header(default=None)):
    token = settings.API_TOKEN
    scheme, _, supplied = (authorization or "").partition(" ")
    if not token or scheme != "Bearer" or supplied != token:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _scheduler(request: Request) -> FleetScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not ready")
    return scheduler


def _server(server_id: str, scheduler: FleetScheduler) -> ServerConfig:
    server = scheduler.config.get_server(server_id)
    if server is None:
        raise HTTPException(status_code=404, detail="Server not found")
    return server


def _http_error(e: FleetError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, StorageError):
        return HTTPException(status_code=500, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


def _from_ms(ms: int | None) -> datetime | None:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc) if ms else None


Guard = Depends(_require_token)
Sched = Depends(_scheduler)

# ---- sync -------------------------------------------------------------

@router.post("/{server_id}/sync", dependencies=[Guard])
async def sync_server(
    server_id: str,
    source: Literal["rest", "sav"] = Query(alias="from"),
    wait: bool = False,
    scheduler: FleetScheduler = Sched,
):
    try:
        if source == "rest":
            task = scheduler.trigger_player_sync(server_id)
        else:
            task = scheduler.trigger_save_sync(server_id)
        if wait:
            await task
    except FleetError as e:
        raise _http_error(e)
    return {"success": True}

# ---- online players ---------------------------------------------------

@router.get("/{server_id}/online_player", dependencies=[Guard], response_model=list[OnlinePlayer])
async def list_online_players(server_id: str, scheduler: FleetScheduler = Sched):
    _server(server_id, scheduler)
    try:
        return await scheduler.store.list_by_server(ONLINE_PLAYERS, server_id, OnlinePlayer)
    except FleetError as e:
        raise _http_error(e)

# ---- whitelist --------------------------------------------------------

@router.get("/{server_id}/whitelist", dependencies=[Guard], response_model=list[WhitelistEntry])
async def list_whitelist(server_id: str, scheduler: FleetScheduler = Sched):
    _server(server_id, scheduler)
    try:
        return await whitelist.list_whitelist(scheduler.store, server_id)
    except FleetError as e:
        raise _http_error(e)


@router.post("/{server_id}/whitelist", dependencies=[Guard], response_model=WhitelistEntry)
async def add_whitelist(server_id: str, entry: WhitelistEntry, scheduler: FleetScheduler = Sched):
    _server(server_id, scheduler)
    try:
        return await whitelist.add_whitelist(scheduler.store, server_id, entry)
    except FleetError as e:
        raise _http_error(e)


@router.put("/{server_id}/whitelist", dependencies=[Guard])
async def put_whitelist(server_id: str, entries: list[WhitelistEntry], scheduler: FleetScheduler = Sched):
    _server(server_id, scheduler)
    try:
        await whitelist.replace_whitelist(scheduler.store, server_id, entries)
    except FleetError as e:
        raise _http_error(e)
    return {"success": True}


@router.delete("/{server_id}/whitelist/{identifier}", dependencies=[Guard])
async def remove_whitelist(server_id: str, identifier: str, scheduler: FleetScheduler = Sched):
    _server(server_id, scheduler)
    try:
        await whitelist.remove_whitelist(scheduler.store, server_id, identifier)
    except FleetError as e:
        raise _http_error(e)
    return {"success": True}

# ---- backups ----------------------------------------------------------

@router.get("/{server_id}/backup", dependencies=[Guard], response_model=list[Backup])
async def list_backups(
    server_id: str,
    start_time: int | None = Query(default=None, alias="startTime"),
    end_time: int | None = Query(default=None, alias="endTime"),
    scheduler: FleetScheduler = Sched,
):
    _server(server_id, scheduler)
    try:
        return await scheduler.backups.list_backups(server_id, _from_ms(start_time), _from_ms(end_time))
    except FleetError as e:
        raise _http_error(e)


@router.get("/{server_id}/backup/{backup_id}", dependencies=[Guard])
async def download_backup(server_id: str, backup_id: str, scheduler: FleetScheduler = Sched):
    _server(server_id, scheduler)
    try:
        backup = await scheduler.backups.get_backup(server_id, backup_id)
    except FleetError as e:
        raise _http_error(e)
    path = scheduler.backups.archive_path(backup)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Backup file missing")
    return FileResponse(path, filename=backup.path, media_type="application/zip")


@router.delete("/{server_id}/backup/{backup_id}", dependencies=[Guard])
async def delete_backup(server_id: str, backup_id: str, scheduler: FleetScheduler = Sched):
    _server(server_id, scheduler)
    try:
        await scheduler.backups.delete_backup(server_id, backup_id)
    except FleetError as e:
        raise _http_error(e)
    return {"success": True}

# ---- decoder push-back (sav_cli --request .../api/servers/{id}/) ------

@router.put("/{server_id}/player", dependencies=[Guard])
async def put_players(server_id: str, items: list[dict[str, Any]], scheduler: FleetScheduler = Sched):
    _server(server_id, scheduler)
    try:
        for item in items:
            uid = item.get("player_uid")
            if uid:
                await scheduler.store.put(PLAYERS, server_id, str(uid), {**item, "server_id": server_id})
    except FleetError as e:
        raise _http_error(e)
    return {"success": True}


@router.put("/{server_id}/guild", dependencies=[Guard])
async def put_guilds(server_id: str, items: list[dict[str, Any]], scheduler: FleetScheduler = Sched):
    _server(server_id, scheduler)
    try:
        for item in items:
            admin = item.get("admin_player_uid")
            if admin:
                await scheduler.store.put(GUILDS, server_id, str(admin), {**item, "server_id": server_id})
    except FleetError as e:
        raise _http_error(e)
    return {"success": True}
