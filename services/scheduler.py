# services/scheduler.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from exceptions import ConfigurationError, NotFound
from models.fleet import ONLINE_PLAYERS, Backup, OnlinePlayer, snapshot_of
from services.backups import BackupManager
from services.presence import PresenceTracker, announce
from services.whitelist import enforce
from utils.config import ServerConfig, Settings, settings
from utils.game_client import GameClient
from utils.sav_cli import decode_save
from utils.sources import evict_cache, resolve
from utils.store import NamespacedStore

log = logging.getLogger(__name__)

PLAYER_SYNC = "player_sync"
SAVE_SYNC = "save_sync"
BACKUP = "backup"
CACHE_EVICT = "cache_evict"


@dataclass
class Job:
    name: str
    interval: float
    run: Callable[[], Awaitable[None]]
    at_startup: bool = False


class FleetScheduler:
    """Drives player sync, save sync, backups and temp-cache eviction for every enabled server.

    Each timer fire launches its pass as a tracked task and goes back to sleeping.
    A pass walks the servers one after another; a failing server is logged and skipped.
    With OVERLAP_POLICY="skip" a fire is dropped while the previous pass of the same
    job is still running; with "allow" both run and only the presence cache is locked.
    """

    def __init__(
        self,
        store: NamespacedStore,
        *,
        config: Settings = settings,
        backups: BackupManager | None = None,
        tracker: PresenceTracker | None = None,
        client_factory: Callable[[ServerConfig], GameClient] = GameClient,
        decoder: Callable[[ServerConfig, Path], Awaitable[None]] = decode_save,
    ):
        self.store = store
        self.config = config
        self.backups = backups or BackupManager(store, config.BACKUP_DIR)
        self.tracker = tracker or PresenceTracker()
        self._client_factory = client_factory
        self._decoder = decoder
        self._stop = asyncio.Event()
        self._timers: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._running: dict[str, int] = {}

    # ---- lifecycle --------------------------------------------------

    def jobs(self) -> list[Job]:
        c = self.config
        return [
            Job(PLAYER_SYNC, c.TASK_SYNC_INTERVAL, self.player_sync, at_startup=True),
            Job(SAVE_SYNC, c.SAVE_SYNC_INTERVAL, self.save_sync, at_startup=True),
            Job(BACKUP, c.BACKUP_INTERVAL, self.backup_pass),
            Job(CACHE_EVICT, c.CACHE_EVICT_INTERVAL, self.evict_cache),
        ]

    async def start(self) -> None:
        if self._timers:
            return
        self._stop.clear()
        for job in self.jobs():
            if job.interval <= 0:
                log.info("[scheduler] %s disabled (interval=%s)", job.name, job.interval)
                continue
            self._timers.append(asyncio.create_task(self._timer(job), name=f"timer:{job.name}"))
        log.info(
            "[scheduler] started %d timers for %d enabled servers",
            len(self._timers), len(self.config.enabled_servers()),
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop firing, then wait for in-flight passes; whatever outlives ``timeout`` is cancelled."""
        self._stop.set()
        if self._timers:
            await asyncio.gather(*self._timers, return_exceptions=True)
            self._timers.clear()

        pending = set(self._inflight)
        if not pending:
            return
        log.info("[scheduler] waiting for %d in-flight passes", len(pending))
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            log.warning("[scheduler] abandoning %s after %ss", task.get_name(), timeout)
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)

    @property
    def inflight(self) -> set[asyncio.Task]:
        return set(self._inflight)

    async def _timer(self, job: Job) -> None:
        if job.at_startup:
            self._fire(job)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=job.interval)
                break  # stop requested
            except asyncio.TimeoutError:
                self._fire(job)

    def _fire(self, job: Job) -> asyncio.Task | None:
        if self.config.OVERLAP_POLICY == "skip" and self._running.get(job.name):
            log.warning("[scheduler] %s still running; skipping this tick", job.name)
            return None
        return self.launch(job.name, job.run())

    def launch(self, name: str, coro: Awaitable[object]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._inflight.add(task)
        self._running[name] = self._running.get(name, 0) + 1

        def _done(t: asyncio.Task) -> None:
            self._inflight.discard(t)
            self._running[name] -= 1
            if not t.cancelled() and t.exception() is not None:
                log.error("[scheduler] %s failed: %s", name, t.exception())

        task.add_done_callback(_done)
        return task

    # ---- trigger-now ------------------------------------------------

    def _require_server(self, server_id: str) -> ServerConfig:
        server = self.config.get_server(server_id)
        if server is None:
            raise NotFound(f"server {server_id} not found")
        if not server.enabled:
            raise ConfigurationError(f"server {server_id} is disabled")
        return server

    def trigger_player_sync(self, server_id: str) -> asyncio.Task:
        server = self._require_server(server_id)
        return self.launch(f"{PLAYER_SYNC}:{server_id}", self.sync_players(server))

    def trigger_save_sync(self, server_id: str) -> asyncio.Task:
        server = self._require_server(server_id)
        if not server.save.path:
            raise ConfigurationError(f"save path not configured for server {server_id}")
        return self.launch(f"{SAVE_SYNC}:{server_id}", self.sync_save(server))

    # ---- player sync ------------------------------------------------

    async def player_sync(self) -> None:
        log.info("[sync] player sync for all servers")
        for server in self.config.enabled_servers():
            try:
                await self.sync_players(server)
            except Exception as e:
                log.error("[sync] player sync failed for server %s: %s", server.id, e)

    async def sync_players(self, server: ServerConfig) -> list[OnlinePlayer]:
        client = self._client_factory(server)
        players = await client.list_online_players()

        joined, left = await self.tracker.observe(server.id, snapshot_of(players))
        if self.config.PLAYER_LOGGING and (joined or left):
            # paced broadcasts run beside the pass; stop() still awaits them
            self.launch(
                f"announce:{server.id}",
                announce(
                    client,
                    server_id=server.id,
                    server_name=server.display_name,
                    joined=joined,
                    left=left,
                    online_num=len(players),
                    login_template=self.config.PLAYER_LOGIN_MESSAGE,
                    logout_template=self.config.PLAYER_LOGOUT_MESSAGE,
                    delay=self.config.BROADCAST_LINE_DELAY,
                ),
            )

        if self.config.KICK_NON_WHITELIST:
            await enforce(self.store, client, server.id, players)

        await self.store.replace_all_for_server(
            ONLINE_PLAYERS,
            server.id,
            ((p.player_uid or p.steam_id or p.nickname, p.model_copy(update={"server_id": server.id})) for p in players),
        )
        log.info("[sync] server %s: %d online, +%d -%d", server.id, len(players), len(joined), len(left))
        return players

    # ---- save sync --------------------------------------------------

    async def save_sync(self) -> None:
        log.info("[sync] save sync for all servers")
        for server in self.config.enabled_servers():
            if not server.save.path:
                log.warning("[sync] save path not configured for server %s, skipping", server.id)
                continue
            try:
                await self.sync_save(server)
            except Exception as e:
                log.error("[sync] save sync failed for server %s: %s", server.id, e)

    async def sync_save(self, server: ServerConfig) -> None:
        async with resolve(server.save.path, "decode") as directory:
            await self._decoder(server, directory)
        log.info("[sync] save sync done for server %s", server.id)

    # ---- backups ----------------------------------------------------

    async def backup_pass(self) -> None:
        log.info("[backup] backing up all servers")
        for server in self.config.enabled_servers():
            try:
                await self.backup_server(server)
            except Exception as e:
                log.error("[backup] backup failed for server %s: %s", server.id, e)

    async def backup_server(self, server: ServerConfig) -> Backup:
        backup = await self.backups.create_backup(server)
        await self.backups.enforce_retention(server.id, self.config.keep_days_for(server))
        return backup

    # ---- temp cache -------------------------------------------------

    async def evict_cache(self) -> None:
        removed = await asyncio.to_thread(evict_cache, self.config.CACHE_KEEP, self.config.CACHE_MAX_AGE)
        if removed:
            log.info("[scheduler] evicted %d cached save dirs", removed)
