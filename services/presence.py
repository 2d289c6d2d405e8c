# services/presence.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping, Protocol

log = logging.getLogger(__name__)

Player = tuple[str, str]  # (player_uid, nickname)


class Broadcaster(Protocol):
    async def broadcast(self, text: str) -> None: ...


@dataclass
class PresenceState:
    ever_polled: bool = False
    last_snapshot: dict[str, str] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class PresenceTracker:
    """Previous online snapshot per server; computes joins/leaves between polls.

    Owned by the scheduler, in memory only. A server's entry is guarded by its own
    lock so overlapping sync passes cannot interleave on it.
    """

    def __init__(self):
        self._states: dict[str, PresenceState] = {}

    def _state(self, server_id: str) -> PresenceState:
        state = self._states.get(server_id)
        if state is None:
            state = self._states[server_id] = PresenceState()
        return state

    def last_snapshot(self, server_id: str) -> dict[str, str]:
        return dict(self._state(server_id).last_snapshot)

    async def observe(self, server_id: str, snapshot: Mapping[str, str]) -> tuple[list[Player], list[Player]]:
        state = self._state(server_id)
        async with state.lock:
            current = dict(snapshot)
            if not state.ever_polled:
                # first poll after startup: everyone "joining" would just be noise
                state.ever_polled = True
                state.last_snapshot = current
                return [], []
            previous = state.last_snapshot
            joined = [(uid, name) for uid, name in current.items() if uid not in previous]
            left = [(uid, name) for uid, name in previous.items() if uid not in current]
            state.last_snapshot = current
            return joined, left


def format_message(template: str, username: str, online_num: int, server_name: str) -> str:
    # plain replace: templates may contain other braces
    return (
        template.replace("{username}", username)
        .replace("{online_num}", str(online_num))
        .replace("{server_name}", server_name)
    )


async def broadcast_lines(client: Broadcaster, server_id: str, message: str, delay: float) -> None:
    # lines sent back to back arrive out of order in game chat; space them out
    for line in message.split("\n"):
        try:
            await client.broadcast(line)
        except Exception as e:
            log.warning("[presence] broadcast failed for server %s: %s", server_id, e)
        await asyncio.sleep(delay)


async def announce(
    client: Broadcaster,
    *,
    server_id: str,
    server_name: str,
    joined: list[Player],
    left: list[Player],
    online_num: int,
    login_template: str,
    logout_template: str,
    delay: float = 1.0,
) -> None:
    """Send login messages for every join, then logout messages for every leave."""
    for _, name in joined:
        if login_template:
            msg = format_message(login_template, name, online_num, server_name)
            await broadcast_lines(client, server_id, msg, delay)
    for _, name in left:
        if logout_template:
            msg = format_message(logout_template, name, online_num, server_name)
            await broadcast_lines(client, server_id, msg, delay)
