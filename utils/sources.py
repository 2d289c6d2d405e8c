# utils/sources.py
from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import tempfile
import time
import zipfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, Literal, Union
from urllib.parse import urlparse

import httpx

from exceptions import InvalidAddress, SourceUnavailable
from utils.config import settings

log = logging.getLogger(__name__)

TEMP_PREFIX = "fleetsav-"

Purpose = Literal["decode", "backup"]

# temp dirs handed out by resolve() and not yet released
_active: set[Path] = set()


@dataclass(frozen=True)
class LocalSource:
    path: str

    async def fetch(self, dest: Path) -> None:
        src = Path(self.path).expanduser()
        if not src.exists():
            raise SourceUnavailable(f"local path does not exist: {src}")
        if src.is_dir():
            await asyncio.to_thread(shutil.copytree, src, dest, dirs_exist_ok=True)
        else:
            await asyncio.to_thread(shutil.copy2, src, dest / src.name)


@dataclass(frozen=True)
class HttpSource:
    url: str

    async def fetch(self, dest: Path) -> None:
        name = PurePosixPath(urlparse(self.url).path).name or "download"
        target = dest / name
        async with _http_client() as client:
            async with client.stream("GET", self.url) as resp:
                resp.raise_for_status()
                with open(target, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
        if zipfile.is_zipfile(target):
            await asyncio.to_thread(_unzip, target, dest)
            target.unlink()


@dataclass(frozen=True)
class K8sSource:
    namespace: str
    pod: str
    container: str
    remote_path: str

    async def fetch(self, dest: Path) -> None:
        local = dest / (PurePosixPath(self.remote_path).name or "save")
        await _run(
            "kubectl", "cp",
            f"{self.namespace}/{self.pod}:{self.remote_path}", str(local),
            "-c", self.container,
        )


@dataclass(frozen=True)
class DockerSource:
    container: str
    remote_path: str

    async def fetch(self, dest: Path) -> None:
        await _run("docker", "cp", f"{self.container}:{self.remote_path}", str(dest))


Source = Union[LocalSource, HttpSource, K8sSource, DockerSource]


def parse_k8s_address(origin: str) -> K8sSource:
    # k8s://namespace/pod/container:remotePath
    body = origin.removeprefix("k8s://")
    head, sep, remote = body.partition(":")
    parts = head.split("/")
    if not sep or not remote or len(parts) != 3 or not all(parts):
        raise InvalidAddress(f"expected k8s://namespace/pod/container:path, got {origin!r}")
    namespace, pod, container = parts
    return K8sSource(namespace, pod, container, remote)


def parse_docker_address(origin: str) -> DockerSource:
    # docker://containerIdOrName:remotePath
    body = origin.removeprefix("docker://")
    container, sep, remote = body.partition(":")
    if not sep or not container or not remote or "/" in container:
        raise InvalidAddress(f"expected docker://container:path, got {origin!r}")
    return DockerSource(container, remote)


def parse_origin(origin: str) -> Source:
    if origin.startswith(("http://", "https://")):
        return HttpSource(origin)
    if origin.startswith("k8s://"):
        return parse_k8s_address(origin)
    if origin.startswith("docker://"):
        return parse_docker_address(origin)
    return LocalSource(origin)


@asynccontextmanager
async def resolve(origin: str, purpose: Purpose) -> AsyncIterator[Path]:
    """Copy the save data behind ``origin`` into a fresh temp dir and yield it.

    The directory is removed when the block exits, whatever happens inside it.
    """
    source = parse_origin(origin)
    tmp = Path(tempfile.mkdtemp(prefix=f"{TEMP_PREFIX}{purpose}-"))
    _active.add(tmp)
    try:
        try:
            await asyncio.wait_for(source.fetch(tmp), timeout=settings.SOURCE_TIMEOUT)
        except SourceUnavailable:
            raise
        except asyncio.TimeoutError as e:
            raise SourceUnavailable(f"{source} timed out after {settings.SOURCE_TIMEOUT}s") from e
        except (OSError, httpx.HTTPError, zipfile.BadZipFile) as e:
            raise SourceUnavailable(f"{source}: {e}") from e
        log.debug("[source] %s resolved to %s", source, tmp)
        yield tmp
    finally:
        await asyncio.to_thread(shutil.rmtree, tmp, True)
        _active.discard(tmp)


def find_level_file(directory: Path) -> Path | None:
    matches = sorted(directory.rglob("Level.sav"))
    return matches[0] if matches else None


def evict_cache(keep: int, max_age: float, now: float | None = None) -> int:
    """Remove leaked resolver temp dirs beyond the newest ``keep`` or older than ``max_age`` seconds.

    Dirs still held by an open ``resolve`` block are never touched.
    """
    now = time.time() if now is None else now
    root = Path(tempfile.gettempdir())
    dirs = []
    for p in root.glob(f"{TEMP_PREFIX}*"):
        with contextlib.suppress(OSError):
            if p.is_dir() and p not in _active:
                dirs.append((p.stat().st_mtime, p))
    dirs.sort(key=lambda d: d[0], reverse=True)

    removed = 0
    for i, (mtime, p) in enumerate(dirs):
        if i < keep and now - mtime <= max_age:
            continue
        try:
            shutil.rmtree(p)
            removed += 1
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("[source] cache eviction failed for %s: %s", p, e)
    return removed


# ---- helpers -------------------------------------------------------

def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.SOURCE_TIMEOUT, follow_redirects=True)


def _unzip(archive: Path, dest: Path) -> None:
    with zipfile.ZipFile(archive) as zf:
        zf.extractall(dest)


async def _run(*cmd: str) -> None:
    log.info("[source] %s", " ".join(cmd))
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, err = await proc.communicate()
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        raise
    if proc.returncode != 0:
        raise SourceUnavailable(
            f"{cmd[0]} exited with {proc.returncode}: {err.decode(errors='replace').strip()}"
        )
