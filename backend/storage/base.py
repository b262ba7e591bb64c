"""
Table store interface.

The hosted backend exposes table-like storage for ``transfers``,
``transfer_sessions``, ``notifications`` and ``profiles`` plus a change
feed keyed by table and row filter. Stores raise PersistenceError on any
backend failure; callers decide how to surface it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable


@dataclass
class ChangeEvent:
    """A change on a watched table. ``row`` is None when the store only knows *that* something changed."""
    table: str
    row: dict[str, Any] | None = None


ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


class Subscription:
    """Handle returned by :meth:`TableStore.subscribe`."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stop delivering changes. Safe to call more than once."""
        if self._active:
            self._active = False
            self._cancel()


def row_matches(
    row: dict[str, Any],
    match: dict[str, Any] | None = None,
    any_of: dict[str, Any] | None = None,
) -> bool:
    """True when every ``match`` column equals and at least one ``any_of`` column equals."""
    if match and any(row.get(col) != value for col, value in match.items()):
        return False
    if any_of and not any(row.get(col) == value for col, value in any_of.items()):
        return False
    return True


class TableStore(ABC):
    """Async CRUD + change subscription over named tables."""

    @abstractmethod
    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return it as stored (id and timestamps filled in)."""

    @abstractmethod
    async def update(
        self, table: str, match: dict[str, Any], changes: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Apply ``changes`` to every row equal to ``match``; return the updated rows."""

    @abstractmethod
    async def select(
        self,
        table: str,
        *,
        match: dict[str, Any] | None = None,
        any_of: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows matching all of ``match`` and any of ``any_of``."""

    @abstractmethod
    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        match: dict[str, Any] | None = None,
        any_of: dict[str, Any] | None = None,
    ) -> Subscription:
        """Call ``callback`` whenever a row matching the filter changes."""

    async def close(self) -> None:
        """Release network resources and stop change feeds."""
