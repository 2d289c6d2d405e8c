import tempfile

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from exceptions import ProtocolError
from models import records  # noqa: F401
from models.base import Base
from models.fleet import OnlinePlayer
from utils.config import SaveConfig, ServerConfig, Settings
from utils.store import NamespacedStore


class StubClient:
    """Stands in for GameClient; records broadcasts and kicks."""

    def __init__(self, server, players=None, fail=False, fail_kicks=(), fail_broadcasts=()):
        self.server = server
        self.players = list(players or [])
        self.fail = fail
        self.fail_kicks = set(fail_kicks)
        self.fail_broadcasts = set(fail_broadcasts)
        self.broadcasts: list[str] = []
        self.kicked: list[str] = []

    async def list_online_players(self):
        if self.fail:
            raise ProtocolError(f"rest {self.server.id}: timed out")
        return list(self.players)

    async def kick(self, steam_id):
        if steam_id in self.fail_kicks:
            raise ProtocolError("kick refused")
        self.kicked.append(steam_id)

    async def broadcast(self, text):
        if text in self.fail_broadcasts:
            raise ProtocolError("broadcast refused")
        self.broadcasts.append(text)


def player(uid, name, steam=""):
    return OnlinePlayer(player_uid=uid, nickname=name, steam_id=steam)


def make_settings(servers, **kw):
    kw.setdefault("BROADCAST_LINE_DELAY", 0)
    return Settings(SERVERS=servers, **kw)


def server(sid, save_path="", enabled=True, keep_days=0):
    return ServerConfig(
        id=sid,
        name=f"Server {sid}",
        enabled=enabled,
        save=SaveConfig(path=save_path, backup_keep_days=keep_days),
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield NamespacedStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture
def isolated_tmp(tmp_path, monkeypatch):
    """Point tempfile at a private dir so resolver temp dirs can be counted."""
    d = tmp_path / "tmp"
    d.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(d))
    return d
