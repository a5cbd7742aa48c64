"""
Named key/value blob store backed by a directory.

Each store is a sub-directory of the configured root and each key one file in
it. Hosted deployments point MCP_BLOB_STORE_DIR at a mounted volume shared by
all instances; when nothing is mounted the store reports itself unavailable on
every call and callers are expected to degrade.
"""

import os
import tempfile
from pathlib import Path


class BlobStoreUnavailable(Exception):
    """Raised when the durable store cannot be reached or written."""


class FileBlobStore:
    """
    A durable store addressed by name, offering get/set of string values.

    Writes go to a temporary file first and are moved into place with
    os.replace, so readers only ever see a complete value.
    """

    def __init__(self, root: Path | None, name: str):
        self.root = root
        self.name = name

    def _store_dir(self) -> Path:
        if self.root is None:
            raise BlobStoreUnavailable(
                f"Blob store '{self.name}' is not provisioned (MCP_BLOB_STORE_DIR is unset)"
            )
        if not self.root.is_dir():
            raise BlobStoreUnavailable(f"Blob store root {self.root} does not exist")
        return self.root / self.name

    def get(self, key: str) -> str | None:
        path = self._store_dir() / key
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise BlobStoreUnavailable(f"Failed to read '{key}' from '{self.name}': {e}") from e

    def set(self, key: str, value: str) -> None:
        store_dir = self._store_dir()
        try:
            store_dir.mkdir(exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=store_dir, prefix=f".{key}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(value)
                os.replace(tmp_path, store_dir / key)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise BlobStoreUnavailable(f"Failed to write '{key}' to '{self.name}': {e}") from e
