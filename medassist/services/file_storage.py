"""File storage for uploaded document bytes."""

from __future__ import annotations

import asyncio
import os
import re
from pathlib import Path
from typing import Protocol, runtime_checkable

from medassist.core.logging import get_logger

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@runtime_checkable
class FileStorage(Protocol):
    """Storage collaborator: raw bytes addressed by an opaque path."""

    async def save(self, path: str, data: bytes) -> None:
        ...

    async def read(self, path: str) -> bytes:
        ...

    async def delete(self, path: str) -> None:
        ...


def object_path(owner_id: str, object_id: str, filename: str) -> str:
    """Build the storage path {owner_id}/{object_id}/{filename}."""
    safe_name = _UNSAFE_CHARS.sub("_", os.path.basename(filename or "")) or "upload"
    safe_owner = _UNSAFE_CHARS.sub("_", owner_id) or "anonymous"
    return f"{safe_owner}/{object_id}/{safe_name}"


class LocalFileStorage:
    """Store objects on the local filesystem under a root directory."""

    def __init__(self, root_dir: str | Path) -> None:
        self.root_dir = Path(root_dir).resolve()

    def _resolve(self, path: str) -> Path:
        full_path = (self.root_dir / path).resolve()
        if not full_path.is_relative_to(self.root_dir):
            raise ValueError(f"Storage path escapes storage root: {path}")
        return full_path

    async def save(self, path: str, data: bytes) -> None:
        full_path = self._resolve(path)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write_bytes, full_path, data)
        logger.debug("Stored %d bytes at %s", len(data), path)

    async def read(self, path: str) -> bytes:
        full_path = self._resolve(path)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, full_path.read_bytes)

    async def delete(self, path: str) -> None:
        """Remove an object and its now-empty parent directory.

        Deleting a missing object is not an error.
        """
        full_path = self._resolve(path)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _remove, full_path, self.root_dir)


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as dest:
        dest.write(data)


def _remove(path: Path, root: Path) -> None:
    path.unlink(missing_ok=True)
    parent = path.parent
    if parent != root and parent.exists() and not any(parent.iterdir()):
        parent.rmdir()
