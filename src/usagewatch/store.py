import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Protocol


class KeyValueStore(Protocol):
    """
    KeyValueStore is the persistence boundary for cached
    summaries. Only last-write-wins per key is expected.
    """

    def get(self, key: "str") -> "bytes | None": ...

    def set(self, key: "str", value: "bytes") -> "None": ...


class MemoryStore:
    """
    in-process store, used when no cache directory is configured.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._data: "dict[str, bytes]" = {}

    def get(self, key: "str") -> "bytes | None":
        with self._lock:
            return self._data.get(key)

    def set(self, key: "str", value: "bytes") -> "None":
        with self._lock:
            self._data[key] = value


_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class FileStore:
    """
    FileStore keeps one file per key under a directory. Writes go
    to a temporary file that is then renamed over the target, so a
    reader sees either the old or the new value.
    """

    def __init__(self, directory: "str | Path") -> "None":
        self._dir = Path(directory).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: "str") -> "Path":
        return self._dir / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def get(self, key: "str") -> "bytes | None":
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            return None

    def set(self, key: "str", value: "bytes") -> "None":
        target = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(value)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
