# utils/game_client.py
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

import httpx
from aiomcrcon import Client

from exceptions import ConfigurationError, ProtocolError
from models.fleet import OnlinePlayer
from utils.config import ServerConfig

log = logging.getLogger(__name__)

KICK_MESSAGE = "You are not whitelisted"


def _split_address(address: str, default_port: int = 25575) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, default_port
    try:
        return host, int(port)
    except ValueError as e:
        raise ConfigurationError(f"bad rcon address {address!r}") from e


class GameClient:
    """Console/REST access to one game server.

    REST is used when the server has a REST address, RCON otherwise.
    Every call is bounded by the configured timeout and raises ProtocolError on failure.
    """

    def __init__(self, server: ServerConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.server = server
        self._transport = transport

    @property
    def uses_rest(self) -> bool:
        return bool(self.server.rest.address)

    # ---- rcon (one-shot: connect -> send -> close) ------------------

    async def rcon(self, cmd: str) -> str:
        cfg = self.server.rcon
        if not cfg.address:
            raise ConfigurationError(f"rcon address not configured for server {self.server.id}")
        host, port = _split_address(cfg.address)
        log.debug("[rcon] %s %s:%s -> %s", self.server.id, host, port, cmd)
        c = Client(host, port, cfg.password)
        try:
            await asyncio.wait_for(c.connect(), timeout=cfg.timeout)
            out = await asyncio.wait_for(c.send_cmd(cmd), timeout=cfg.timeout)
        except asyncio.TimeoutError as e:
            raise ProtocolError(f"rcon {self.server.id}: {cmd!r} timed out") from e
        except Exception as e:
            raise ProtocolError(f"rcon {self.server.id}: {cmd!r} failed: {e}") from e
        finally:
            with contextlib.suppress(Exception):
                await c.close()
        # aiomcrcon returns (text, packet_type)
        return out[0] if isinstance(out, tuple) else out

    # ---- rest -------------------------------------------------------

    async def _rest(self, method: str, path: str, payload: dict[str, Any] | None = None) -> httpx.Response:
        cfg = self.server.rest
        try:
            async with httpx.AsyncClient(
                base_url=cfg.address.rstrip("/"),
                auth=(cfg.username, cfg.password),
                timeout=cfg.timeout,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, path, json=payload)
                resp.raise_for_status()
                return resp
        except httpx.HTTPError as e:
            raise ProtocolError(f"rest {self.server.id}: {method} {path} failed: {e}") from e

    # ---- operations -------------------------------------------------

    async def list_online_players(self) -> list[OnlinePlayer]:
        if self.uses_rest:
            resp = await self._rest("GET", "/v1/api/players")
            try:
                rows = resp.json().get("players") or []
            except ValueError as e:
                raise ProtocolError(f"rest {self.server.id}: bad players payload") from e
            return [self._from_rest(r) for r in rows]
        return self._parse_show_players(await self.rcon("ShowPlayers"))

    async def kick(self, steam_id: str, message: str = KICK_MESSAGE) -> None:
        if self.uses_rest:
            await self._rest("POST", "/v1/api/kick", {"userid": f"steam_{steam_id}", "message": message})
        else:
            await self.rcon(f"KickPlayer {steam_id}")

    async def broadcast(self, text: str) -> None:
        if self.uses_rest:
            await self._rest("POST", "/v1/api/announce", {"message": text})
        else:
            await self.rcon(f"Broadcast {text}")

    # ---- parsing ----------------------------------------------------

    def _from_rest(self, row: dict[str, Any]) -> OnlinePlayer:
        return OnlinePlayer(
            server_id=self.server.id,
            player_uid=str(row.get("playerId") or ""),
            steam_id=str(row.get("userId") or "").removeprefix("steam_"),
            nickname=str(row.get("name") or ""),
            ip=str(row.get("ip") or ""),
            ping=float(row.get("ping") or 0),
            location_x=float(row.get("location_x") or 0),
            location_y=float(row.get("location_y") or 0),
            level=int(row.get("level") or 0),
        )

    def _parse_show_players(self, out: str) -> list[OnlinePlayer]:
        # name,playeruid,steamid
        # Alice,1234567,76561198000000000
        players: list[OnlinePlayer] = []
        for line in out.splitlines()[1:]:
            parts = [p.strip() for p in line.split(",")]
            if len(parts) < 3 or not any(parts):
                continue
            name, uid, steam = parts[0], parts[1], parts[2]
            players.append(OnlinePlayer(
                server_id=self.server.id,
                player_uid="" if uid == "00000000" else uid,
                steam_id="" if steam == "00000000" else steam,
                nickname=name,
            ))
        return players
