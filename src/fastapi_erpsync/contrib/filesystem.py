"""Blob storage on the local filesystem."""

from __future__ import annotations

import asyncio
from pathlib import Path


class FilesystemBlobStorage:
    """Resolve blob handles to files below ``root``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def path_for(self, handle: str) -> Path:
        path = (self.root / handle).resolve()
        if not path.is_relative_to(self.root):
            raise ValueError(f"Blob handle {handle!r} escapes storage root")
        return path

    async def read(self, handle: str) -> bytes:
        path = self.path_for(handle)
        return await asyncio.to_thread(path.read_bytes)
