# utils/sav_cli.py
from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import sys
from pathlib import Path

from exceptions import ConfigurationError, ProtocolError
from utils.config import ServerConfig, settings
from utils.sources import find_level_file

log = logging.getLogger(__name__)

_PLACEHOLDER = "/path/to/your/sav_cli"


def find_sav_cli(server: ServerConfig) -> str:
    """Per-server decode_path, then SAV_CLI_PATH, then sav_cli next to the app or on PATH."""
    for candidate in (server.save.decode_path, settings.SAV_CLI_PATH):
        if candidate and candidate != _PLACEHOLDER:
            if Path(candidate).is_file():
                return candidate
            raise ConfigurationError(f"sav_cli not found at {candidate}")
    name = "sav_cli.exe" if sys.platform == "win32" else "sav_cli"
    local = Path(sys.argv[0]).resolve().parent / name
    if local.is_file():
        return str(local)
    found = shutil.which(name)
    if not found:
        raise ConfigurationError(f"sav_cli not found for server {server.id}")
    return found


async def decode_save(server: ServerConfig, directory: Path) -> None:
    """Run the external decoder; it pushes players/guilds back through the HTTP API."""
    cli = find_sav_cli(server)
    target = find_level_file(directory) or directory
    request_url = f"{settings.PUBLIC_URL.rstrip('/')}/api/servers/{server.id}/"
    args = [cli, "-f", str(target), "--request", request_url, "--token", settings.API_TOKEN]

    log.info("[decode] %s: %s -f %s", server.id, cli, target)
    proc = await asyncio.create_subprocess_exec(*args)
    try:
        rc = await asyncio.wait_for(proc.wait(), timeout=settings.DECODE_TIMEOUT)
    except asyncio.TimeoutError as e:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise ProtocolError(f"sav_cli timed out for server {server.id}") from e
    if rc != 0:
        raise ProtocolError(f"sav_cli exited with {rc} for server {server.id}")
