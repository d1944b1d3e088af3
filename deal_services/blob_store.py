"""
Filesystem blob store.

Keys are ``<kind>/<YYYY-MM-DD>/<filename>`` and map onto paths below a
root directory.  Writes go to a temporary file first and are renamed into
place, so a reader never sees a partial document.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path, PurePosixPath

from deal_kernel.logging_config import get_logger

logger = get_logger("services.blob_store")


class FilesystemBlobStore:
    """BlobStore port on a local (or mounted) directory."""

    def __init__(self, root: str | Path):
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.info(
            "blob_stored",
            extra={"key": key, "bytes": len(data), "content_type": content_type},
        )
        return key

    def get(self, key: str) -> bytes:
        return self._path(key).read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def _path(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or PurePosixPath(key).is_absolute() or ".." in parts:
            raise ValueError(f"invalid blob key: {key!r}")
        return self._root.joinpath(*parts)
