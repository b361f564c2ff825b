"""Base interface for path-addressed realtime document stores.

Values are JSON-like trees. Writing ``None`` deletes a node, and empty
objects disappear, matching Realtime Database semantics.
"""

import copy
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


def split_path(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p.strip("/"))


def get_at(tree: Any, parts: list[str]) -> Any:
    node = tree
    for part in parts:
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return copy.deepcopy(node)


def set_at(tree: Any, parts: list[str], value: Any) -> Any:
    """Return ``tree`` with ``value`` stored at ``parts``, pruning empty objects."""
    if not parts:
        return _prune(copy.deepcopy(value))
    root = tree if isinstance(tree, dict) else {}
    head, rest = parts[0], parts[1:]
    child = set_at(root.get(head), rest, value)
    if child is None:
        root.pop(head, None)
    else:
        root[head] = child
    return root or None


def _prune(value: Any) -> Any:
    if isinstance(value, dict):
        pruned = {k: _prune(v) for k, v in value.items()}
        pruned = {k: v for k, v in pruned.items() if v is not None}
        return pruned or None
    return value


class RemoteStore(ABC):
    """Abstract base for remote session store clients."""

    @property
    @abstractmethod
    def uid(self) -> str | None:
        """Identity of the signed-in caller, if any."""

    @abstractmethod
    async def ensure_authenticated(self) -> str:
        """Sign in (anonymously if needed) and return the caller's uid."""

    @abstractmethod
    async def refresh_credentials(self) -> None:
        """Force a credential refresh after a permission failure."""

    @abstractmethod
    async def read(self, path: str) -> Any:
        """Return the value at ``path`` or None."""

    @abstractmethod
    async def write(self, path: str, value: Any) -> None:
        """Replace the value at ``path``."""

    @abstractmethod
    async def update(self, path: str, fields: dict[str, Any]) -> None:
        """Set several children of ``path`` at once. Keys may be nested paths."""

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Delete ``path``."""

    @abstractmethod
    def watch(self, path: str) -> AsyncIterator[Any]:
        """Yield the value at ``path`` now and after every change."""

    async def close(self) -> None:
        """Release connections."""
