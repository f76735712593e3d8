"""
Storage collaborators — persistent and session-scoped key-value byte stores.

The wallet only needs ``get/set/remove``. ``persistent`` tells whether a
store survives the host session; the session key cache refuses persistent
stores.
"""
import os
import logging
from pathlib import Path
from typing import Optional, Protocol, Union, runtime_checkable

logger = logging.getLogger("modulr.storage")


@runtime_checkable
class KeyValueStore(Protocol):
    """Async key-value byte store."""

    persistent: bool

    async def get(self, key: str) -> Optional[bytes]:
        ...

    async def set(self, key: str, value: bytes) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...


def _validate_key(key: str) -> None:
    """Validate a storage key name.

    Raises:
        ValueError: If key is empty, too long, or contains a path separator.
    """
    if not key:
        raise ValueError("Storage key cannot be empty")
    if len(key) > 255:
        raise ValueError("Storage key cannot exceed 255 characters")
    if "/" in key or "\\" in key or key.startswith("."):
        raise ValueError(f"Invalid storage key: {key!r}")


class MemoryStorage:
    """In-process store; session-scoped unless ``persistent`` is set."""

    def __init__(self, persistent: bool = False):
        self.persistent = persistent
        self._data: dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        _validate_key(key)
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        _validate_key(key)
        self._data[key] = bytes(value)

    async def remove(self, key: str) -> None:
        _validate_key(key)
        self._data.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)


class FileStorage:
    """Directory-backed persistent store, one file per key.

    Files are written atomically and readable by the owner only.
    """

    persistent = True

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        _validate_key(key)
        return self.directory / key

    async def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    async def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_bytes(value)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
        logger.debug("Stored %s (%d bytes)", key, len(value))

    async def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
