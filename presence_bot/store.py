"""Keyed store contract used by the core, plus an in-memory implementation.

The core needs exactly five primitives from its persistence layer:

* ``get`` / ``set`` (with optional expiry) / ``delete`` on a single key,
* ``list`` of every entry under a key prefix,
* ``atomic()`` batches that ``check`` versionstamps and only ``commit`` the
  queued writes when every check still holds.

Keys are tuples (``("subscribers", "alice", 42)``). Values are plain JSON-like
data; each write gets a fresh versionstamp, and a check against ``None``
asserts that the key is absent.

``MemoryStore`` implements the contract for tests and single-process runs. A
durable backend only has to provide the same methods.
"""

import copy
import itertools
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

Key = tuple


@dataclass(frozen=True)
class Entry:
    key: Key
    value: Any
    versionstamp: str | None


class AtomicOperation(ABC):
    """A batch of versionstamp checks and writes applied all-or-nothing."""

    def __init__(self) -> None:
        self._checks: list[tuple[Key, str | None]] = []
        self._writes: list[tuple[str, Key, Any, float | None]] = []

    def check(self, key: Key, versionstamp: str | None) -> "AtomicOperation":
        self._checks.append((key, versionstamp))
        return self

    def set(self, key: Key, value: Any, expire_in: float | None = None) -> "AtomicOperation":
        self._writes.append(("set", key, value, expire_in))
        return self

    def delete(self, key: Key) -> "AtomicOperation":
        self._writes.append(("delete", key, None, None))
        return self

    @abstractmethod
    async def commit(self) -> bool:
        """Apply the queued writes. Return False if any check failed."""


class KVStore(ABC):
    @abstractmethod
    async def get(self, key: Key) -> Entry: ...

    @abstractmethod
    async def set(self, key: Key, value: Any, expire_in: float | None = None) -> None: ...

    @abstractmethod
    async def delete(self, key: Key) -> None: ...

    @abstractmethod
    def list(self, prefix: Key, limit: int | None = None) -> AsyncIterator[Entry]: ...

    @abstractmethod
    def atomic(self) -> AtomicOperation: ...


class _MemoryAtomic(AtomicOperation):
    def __init__(self, store: "MemoryStore") -> None:
        super().__init__()
        self._store = store

    async def commit(self) -> bool:
        # No await between the checks and the writes, so the batch cannot
        # interleave with another coroutine.
        for key, expected in self._checks:
            if self._store._versionstamp(key) != expected:
                return False
        for op, key, value, expire_in in self._writes:
            if op == "set":
                self._store._put(key, value, expire_in)
            else:
                self._store._data.pop(key, None)
        return True


class MemoryStore(KVStore):
    """Process-local store with versionstamps and key expiry."""

    def __init__(self) -> None:
        # key -> (value, versionstamp, expires_at)
        self._data: dict[Key, tuple[Any, str, float | None]] = {}
        self._counter = itertools.count(1)

    def _live(self, key: Key) -> tuple[Any, str, float | None] | None:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at = item[2]
        if expires_at is not None and expires_at <= time.time():
            del self._data[key]
            return None
        return item

    def _versionstamp(self, key: Key) -> str | None:
        item = self._live(key)
        return item[1] if item else None

    def _put(self, key: Key, value: Any, expire_in: float | None) -> None:
        expires_at = time.time() + expire_in if expire_in is not None else None
        self._data[key] = (copy.deepcopy(value), f"{next(self._counter):020d}", expires_at)

    async def get(self, key: Key) -> Entry:
        item = self._live(key)
        if item is None:
            return Entry(key, None, None)
        return Entry(key, copy.deepcopy(item[0]), item[1])

    async def set(self, key: Key, value: Any, expire_in: float | None = None) -> None:
        self._put(key, value, expire_in)

    async def delete(self, key: Key) -> None:
        self._data.pop(key, None)

    async def list(self, prefix: Key, limit: int | None = None) -> AsyncIterator[Entry]:
        n = len(prefix)
        matches = sorted(
            (k for k in list(self._data) if len(k) > n and k[:n] == prefix),
            key=lambda k: tuple(str(part) for part in k),
        )
        yielded = 0
        for key in matches:
            item = self._live(key)
            if item is None:
                continue
            yield Entry(key, copy.deepcopy(item[0]), item[1])
            yielded += 1
            if limit is not None and yielded >= limit:
                return

    def atomic(self) -> AtomicOperation:
        return _MemoryAtomic(self)

    @property
    def size(self) -> int:
        return len(self._data)
