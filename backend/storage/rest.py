"""
PostgREST table store for the hosted Supabase project.

Change subscriptions poll the filtered rows and fire when their snapshot
differs from the previous poll. Rapid successive changes inside one poll
interval are delivered as a single event.
"""

import asyncio
import json
import logging
from typing import Any

import httpx

from config import REALTIME_POLL_INTERVAL
from errors import PersistenceError
from storage.base import ChangeCallback, ChangeEvent, Subscription, TableStore

logger = logging.getLogger(__name__)


def _literal(value: Any) -> str:
    """Render a Python value as a PostgREST filter literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_filter_params(
    match: dict[str, Any] | None = None,
    any_of: dict[str, Any] | None = None,
) -> dict[str, str]:
    """Translate equality filters into PostgREST query parameters."""
    params: dict[str, str] = {}
    for col, value in (match or {}).items():
        params[col] = "is.null" if value is None else f"eq.{_literal(value)}"
    if any_of:
        clauses = ",".join(f"{col}.eq.{_literal(v)}" for col, v in any_of.items())
        params["or"] = f"({clauses})"
    return params


class RestStore(TableStore):
    """Talks to ``{base_url}/rest/v1`` with the project's API key."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        poll_interval: float = REALTIME_POLL_INTERVAL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=f"{base_url}/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )
        self._poll_interval = poll_interval
        self._pollers: set[asyncio.Task] = set()

    async def _request(self, method: str, table: str, **kwargs) -> list[dict[str, Any]]:
        try:
            response = await self._client.request(method, f"/{table}", **kwargs)
        except httpx.HTTPError as e:
            raise PersistenceError(f"{method} {table} failed: {e}") from e

        if response.is_error:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            raise PersistenceError(
                f"{method} {table} failed ({response.status_code}): {detail}"
            )
        if not response.content:
            return []
        return response.json()

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        rows = await self._request(
            "POST", table, json=row, headers={"Prefer": "return=representation"}
        )
        if not rows:
            raise PersistenceError(f"Insert into {table} returned no row")
        return rows[0]

    async def update(
        self, table: str, match: dict[str, Any], changes: dict[str, Any]
    ) -> list[dict[str, Any]]:
        return await self._request(
            "PATCH",
            table,
            params=build_filter_params(match),
            json=changes,
            headers={"Prefer": "return=representation"},
        )

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
        params = {"select": "*", **build_filter_params(match, any_of)}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        return await self._request("GET", table, params=params)

    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        match: dict[str, Any] | None = None,
        any_of: dict[str, Any] | None = None,
    ) -> Subscription:
        task = asyncio.create_task(self._poll(table, callback, match, any_of))
        self._pollers.add(task)
        task.add_done_callback(self._pollers.discard)
        return Subscription(task.cancel)

    async def _poll(
        self,
        table: str,
        callback: ChangeCallback,
        match: dict[str, Any] | None,
        any_of: dict[str, Any] | None,
    ) -> None:
        """Fire ``callback`` whenever the filtered rows change between polls."""
        snapshot: str | None = None
        while True:
            try:
                rows = await self.select(table, match=match, any_of=any_of)
                current = json.dumps(
                    sorted(rows, key=lambda r: str(r.get("id"))), sort_keys=True
                )
                if snapshot is not None and current != snapshot:
                    await callback(ChangeEvent(table=table))
                snapshot = current
            except PersistenceError as e:
                logger.warning(f"Change poll on {table} failed: {e}")
            except Exception as e:
                logger.error(f"Change callback error on {table}: {e}")
            await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        for task in list(self._pollers):
            task.cancel()
        await self._client.aclose()
