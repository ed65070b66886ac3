"""Key-value backends for the local record store.

``FileKeyValueStorage`` keeps one JSON document per key under the data
directory; ``MemoryKeyValueStorage`` is process-local and used for guests
and tests.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Optional

from taskwatch.protocols import StorageError

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class MemoryKeyValueStorage:
    """Dict-backed storage."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self):
        return list(self._items.keys())


class FileKeyValueStorage:
    """File-per-key storage rooted at a directory.

    Writes go to a temporary file that replaces the target, so a process
    torn down mid-write leaves the previous value intact.

    Args:
        root: Directory to hold the files; created on first write.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path_for(self, key: str) -> Path:
        if not key:
            raise StorageError("Storage key must be non-empty")
        return self.root / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise StorageError(f"Stored value for {key} is not valid UTF-8") from e

    def set_item(self, key: str, value: str) -> None:
        path = self._path_for(key)
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except OSError:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def remove_item(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
