# services/whitelist.py
from __future__ import annotations

import logging
from typing import Protocol

from exceptions import FleetError
from models.fleet import WHITELIST, OnlinePlayer, WhitelistEntry
from utils.store import NamespacedStore

log = logging.getLogger(__name__)


class Kicker(Protocol):
    async def kick(self, steam_id: str) -> None: ...


def is_whitelisted(player: OnlinePlayer, whitelist: list[WhitelistEntry]) -> bool:
    for entry in whitelist:
        if player.player_uid and player.player_uid == entry.player_uid:
            return True
        if player.steam_id and player.steam_id == entry.steam_id:
            return True
    return False


async def enforce(
    store: NamespacedStore,
    client: Kicker,
    server_id: str,
    players: list[OnlinePlayer],
) -> list[OnlinePlayer]:
    """Kick every online player not on the server's whitelist. Returns who was kicked; never raises."""
    try:
        whitelist = await list_whitelist(store, server_id)
    except FleetError as e:
        log.error("[whitelist] could not load whitelist for server %s: %s", server_id, e)
        return []

    kicked: list[OnlinePlayer] = []
    for player in players:
        if is_whitelisted(player, whitelist):
            continue
        if not player.steam_id:
            log.warning("[whitelist] cannot kick %s on server %s: no steam id", player.nickname, server_id)
            continue
        try:
            await client.kick(player.steam_id)
        except Exception as e:
            log.warning("[whitelist] kick %s failed on server %s: %s", player.nickname, server_id, e)
            continue
        log.warning("[whitelist] kicked %s (%s) from server %s", player.nickname, player.steam_id, server_id)
        kicked.append(player)
    log.info("[whitelist] check done for server %s", server_id)
    return kicked


# ---- management ----------------------------------------------------

async def list_whitelist(store: NamespacedStore, server_id: str) -> list[WhitelistEntry]:
    return await store.list_by_server(WHITELIST, server_id, WhitelistEntry)


async def add_whitelist(store: NamespacedStore, server_id: str, entry: WhitelistEntry) -> WhitelistEntry:
    entry = entry.model_copy(update={"server_id": server_id})
    await store.put(WHITELIST, server_id, entry.identifier, entry)
    return entry


async def remove_whitelist(store: NamespacedStore, server_id: str, identifier: str) -> None:
    await store.delete(WHITELIST, server_id, identifier)


async def replace_whitelist(store: NamespacedStore, server_id: str, entries: list[WhitelistEntry]) -> None:
    entries = [e.model_copy(update={"server_id": server_id}) for e in entries]
    await store.replace_all_for_server(WHITELIST, server_id, ((e.identifier, e) for e in entries))
