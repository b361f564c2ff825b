"""In-process realtime store.

``InMemoryDatabase`` is one shared tree with live watchers; each device
talks to it through its own ``InMemoryStore`` client, which carries an
anonymous identity and can be told to fail its next operations.
"""

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from anchorwatch.remote.base import RemoteStore, get_at, join_path, set_at, split_path

logger = logging.getLogger(__name__)


class InMemoryDatabase:
    def __init__(self) -> None:
        self._root: Any = None
        self._watchers: dict[str, set[asyncio.Queue[Any]]] = {}
        self._uids = itertools.count(1)

    def new_uid(self) -> str:
        return f"anon-{next(self._uids):06d}"

    def get(self, path: str) -> Any:
        return get_at(self._root, split_path(path))

    def set(self, path: str, value: Any) -> None:
        self._root = set_at(self._root, split_path(path), value)
        self._notify([path])

    def update(self, path: str, fields: dict[str, Any]) -> None:
        changed = []
        for key, value in fields.items():
            child = join_path(path, key)
            self._root = set_at(self._root, split_path(child), value)
            changed.append(child)
        self._notify(changed)

    async def watch(self, path: str) -> AsyncIterator[Any]:
        key = join_path(path)
        queue: asyncio.Queue[Any] = asyncio.Queue()
        queue.put_nowait(self.get(key))
        self._watchers.setdefault(key, set()).add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            watchers = self._watchers.get(key)
            if watchers is not None:
                watchers.discard(queue)
                if not watchers:
                    del self._watchers[key]

    def watcher_count(self, path: str) -> int:
        return len(self._watchers.get(join_path(path), ()))

    def _notify(self, changed: list[str]) -> None:
        changed_parts = [split_path(c) for c in changed]
        for watched, queues in self._watchers.items():
            parts = split_path(watched)
            if not any(_related(parts, c) for c in changed_parts):
                continue
            value = self.get(watched)
            for queue in queues:
                queue.put_nowait(value)


def _related(a: list[str], b: list[str]) -> bool:
    n = min(len(a), len(b))
    return a[:n] == b[:n]


class InMemoryStore(RemoteStore):
    def __init__(self, database: InMemoryDatabase, uid: str | None = None) -> None:
        self.database = database
        self._uid = uid
        self.refresh_count = 0
        self.operations: list[tuple[str, str]] = []
        self._failures: list[tuple[Exception, set[str] | None]] = []

    @property
    def uid(self) -> str | None:
        return self._uid

    def inject_failure(
        self, exc: Exception, count: int = 1, operations: set[str] | None = None
    ) -> None:
        """Make the next ``count`` matching operations raise ``exc``.

        ``operations`` limits the failure to some of read, write, update,
        remove and watch; None matches all of them.
        """
        self._failures.extend((exc, operations) for _ in range(count))

    def _check(self, operation: str, path: str) -> None:
        self.operations.append((operation, path))
        for i, (exc, ops) in enumerate(self._failures):
            if ops is None or operation in ops:
                del self._failures[i]
                raise exc

    async def ensure_authenticated(self) -> str:
        if self._uid is None:
            self._uid = self.database.new_uid()
            logger.info("Signed in anonymously as %s", self._uid)
        return self._uid

    async def refresh_credentials(self) -> None:
        self.refresh_count += 1

    async def read(self, path: str) -> Any:
        await asyncio.sleep(0)
        self._check("read", path)
        return self.database.get(path)

    async def write(self, path: str, value: Any) -> None:
        await asyncio.sleep(0)
        self._check("write", path)
        self.database.set(path, value)

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        self._check("update", path)
        self.database.update(path, fields)

    async def remove(self, path: str) -> None:
        await asyncio.sleep(0)
        self._check("remove", path)
        self.database.set(path, None)

    async def watch(self, path: str) -> AsyncIterator[Any]:
        self._check("watch", path)
        async with aclosing(self.database.watch(path)) as values:
            async for value in values:
                yield value
