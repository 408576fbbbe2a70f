"""Filesystem blob storage tests."""

import pytest

from fastapi_erpsync.contrib.filesystem import FilesystemBlobStorage


async def test_read_returns_bytes(tmp_path) -> None:
    (tmp_path / "signatures").mkdir()
    (tmp_path / "signatures" / "s1.png").write_bytes(b"\x89PNG")
    storage = FilesystemBlobStorage(tmp_path)

    assert await storage.read("signatures/s1.png") == b"\x89PNG"


async def test_missing_blob_raises(tmp_path) -> None:
    storage = FilesystemBlobStorage(tmp_path)

    with pytest.raises(FileNotFoundError):
        await storage.read("nope.png")


def test_handle_escaping_root_is_rejected(tmp_path) -> None:
    storage = FilesystemBlobStorage(tmp_path / "blobs")

    with pytest.raises(ValueError, match="escapes"):
        storage.path_for("../secrets.txt")
