from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field, model_validator

# store buckets
ONLINE_PLAYERS = "online_players"
WHITELIST = "whitelist"
BACKUPS = "backups"
PLAYERS = "players"
GUILDS = "guilds"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OnlinePlayer(BaseModel):
    server_id: str = ""
    player_uid: str = ""
    steam_id: str = ""
    nickname: str = ""
    ip: str = ""
    ping: float = 0.0
    location_x: float = 0.0
    location_y: float = 0.0
    level: int = 0
    last_online: datetime = Field(default_factory=utcnow)


class WhitelistEntry(BaseModel):
    server_id: str = ""
    name: str = ""
    steam_id: str = ""
    player_uid: str = ""

    @model_validator(mode="after")
    def _require_identifier(self) -> "WhitelistEntry":
        if not self.player_uid and not self.steam_id:
            raise ValueError("whitelist entry needs player_uid or steam_id")
        return self

    @property
    def identifier(self) -> str:
        return self.player_uid or self.steam_id


class Backup(BaseModel):
    server_id: str
    backup_id: str
    save_time: datetime
    path: str  # archive file name, relative to the server's backup dir


def snapshot_of(players: list[OnlinePlayer]) -> dict[str, str]:
    """player_uid -> nickname; players without a uid cannot be tracked."""
    return {p.player_uid: p.nickname for p in players if p.player_uid}
