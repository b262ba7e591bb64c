"""
Transfer Record Manager — single source of truth for transfer and session rows.

Backend failures are logged and surfaced as ``None``/``[]``/``False``;
lookups that find nothing raise NotFoundError and updates that would break
the forward-only lifecycle raise InvalidTransitionError.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from config import SESSION_TTL_MINUTES
from errors import InvalidTransitionError, NotFoundError, PersistenceError
from identity.provider import DeviceIdentity
from security.crypto import generate_session_code
from storage.base import ChangeEvent, Subscription, TableStore
from transfer.models import (
    STATUS_RANK,
    TERMINAL_STATES,
    Transfer,
    TransferCreate,
    TransferDirection,
    TransferSession,
    TransferStatus,
    TransferUpdate,
)

logger = logging.getLogger(__name__)

TRANSFERS = "transfers"
SESSIONS = "transfer_sessions"

NON_NULLABLE = frozenset({"status", "progress"})


def check_transition(current: Transfer, changes: dict[str, Any]) -> dict[str, Any]:
    """
    Validate a partial update against the transfer lifecycle.

    Returns the changes to write; moving to ``completed`` also sets progress
    to 100.
    """
    # status and progress are NOT NULL columns; an explicit null means "unchanged"
    changes = {
        key: value for key, value in changes.items()
        if value is not None or key not in NON_NULLABLE
    }
    new_status = TransferStatus(changes.get("status", current.status))

    if current.status in TERMINAL_STATES and new_status != current.status:
        raise InvalidTransitionError(
            f"Transfer {current.id} is {current.status.value} and cannot become {new_status.value}"
        )
    if STATUS_RANK[new_status] < STATUS_RANK[current.status]:
        raise InvalidTransitionError(
            f"Transfer {current.id} cannot go from {current.status.value} back to {new_status.value}"
        )
    if current.status == TransferStatus.PENDING and new_status == TransferStatus.COMPLETED:
        raise InvalidTransitionError(
            f"Transfer {current.id} must be in progress before it can complete"
        )

    if new_status == TransferStatus.COMPLETED:
        changes["progress"] = 100
    new_progress = changes.get("progress", current.progress)

    if new_progress < current.progress:
        raise InvalidTransitionError(
            f"Progress of {current.id} cannot drop from {current.progress} to {new_progress}"
        )
    if new_progress == 100 and new_status != TransferStatus.COMPLETED:
        raise InvalidTransitionError(
            f"Progress of {current.id} can only reach 100 once completed"
        )
    return changes


class TransferRecordManager:
    """CRUD and live updates over the ``transfers`` and ``transfer_sessions`` tables."""

    def __init__(self, store: TableStore, identity: DeviceIdentity) -> None:
        self._store = store
        self._identity = identity

    @property
    def device_id(self) -> str:
        return self._identity.device_id

    # --- Transfers ---

    async def create_transfer(self, fields: TransferCreate) -> Transfer | None:
        """Insert a pending transfer sent by this device."""
        row = fields.model_dump(mode="json")
        row.update(
            sender_device_id=self.device_id,
            status=TransferStatus.PENDING.value,
            progress=0,
        )
        try:
            stored = await self._store.insert(TRANSFERS, row)
        except PersistenceError as e:
            logger.error(f"Error creating transfer for '{fields.file_name}': {e}")
            return None
        transfer = Transfer.model_validate(stored)
        logger.info(f"Created transfer {transfer.id} for '{transfer.file_name}'")
        return transfer

    async def get_transfer(self, transfer_id: str) -> Transfer:
        rows = await self._store.select(TRANSFERS, match={"id": transfer_id}, limit=1)
        if not rows:
            raise NotFoundError(f"Transfer {transfer_id} not found")
        return Transfer.model_validate(rows[0])

    async def update_transfer(
        self, transfer_id: str, changes: TransferUpdate
    ) -> Transfer | None:
        """Apply a partial update. Concurrent writers: last write wins."""
        fields = changes.model_dump(mode="json", exclude_unset=True)
        try:
            current = await self.get_transfer(transfer_id)
            fields = check_transition(current, fields)
            if not fields:
                return current
            rows = await self._store.update(TRANSFERS, {"id": transfer_id}, fields)
        except PersistenceError as e:
            logger.error(f"Error updating transfer {transfer_id}: {e}")
            return None

        if not rows:
            # Row vanished between the read and the write
            raise NotFoundError(f"Transfer {transfer_id} not found")
        return Transfer.model_validate(rows[0])

    async def list_transfers(
        self,
        device_id: str,
        direction: TransferDirection = TransferDirection.ALL,
    ) -> list[Transfer]:
        """Transfers the device sent or received, newest first."""
        if direction == TransferDirection.SENT:
            filters = {"match": {"sender_device_id": device_id}}
        elif direction == TransferDirection.RECEIVED:
            filters = {"match": {"receiver_device_id": device_id}}
        else:
            filters = {
                "any_of": {
                    "sender_device_id": device_id,
                    "receiver_device_id": device_id,
                }
            }
        try:
            rows = await self._store.select(TRANSFERS, order_by="created_at", **filters)
        except PersistenceError as e:
            logger.error(f"Error fetching transfers: {e}")
            return []
        return [Transfer.model_validate(r) for r in rows]

    async def latest_pending_from(self, sender_device_id: str) -> Transfer | None:
        """The sender's most recent transfer still waiting for a receiver."""
        try:
            rows = await self._store.select(
                TRANSFERS,
                match={
                    "sender_device_id": sender_device_id,
                    "status": TransferStatus.PENDING.value,
                },
                order_by="created_at",
                limit=1,
            )
        except PersistenceError as e:
            logger.error(f"Error looking up pending transfer: {e}")
            return None
        return Transfer.model_validate(rows[0]) if rows else None

    def subscribe(
        self,
        device_id: str,
        on_change: Callable[[list[Transfer]], Awaitable[None]],
    ) -> Subscription:
        """
        Re-fetch the device's full transfer list whenever one of its rows changes.

        Intermediate states between two refetches may be skipped; listeners
        only ever see the latest snapshot.
        """

        async def refetch(event: ChangeEvent) -> None:
            await on_change(await self.list_transfers(device_id))

        return self._store.subscribe(
            TRANSFERS,
            refetch,
            any_of={
                "sender_device_id": device_id,
                "receiver_device_id": device_id,
            },
        )

    # --- Sessions ---

    async def create_session(self, device_id: str | None = None) -> TransferSession | None:
        """Open a receive-mode session with a fresh pairing code."""
        now = datetime.now(timezone.utc)
        row = {
            "session_code": generate_session_code(),
            "creator_device_id": device_id or self.device_id,
            "is_active": True,
            "expires_at": (now + timedelta(minutes=SESSION_TTL_MINUTES)).isoformat(),
        }
        try:
            stored = await self._store.insert(SESSIONS, row)
        except PersistenceError as e:
            logger.error(f"Error creating session: {e}")
            return None
        session = TransferSession.model_validate(stored)
        logger.info(f"Session created: {session.session_code}")
        return session

    async def find_claimable_session(
        self, session_code: str, now: datetime | None = None
    ) -> TransferSession | None:
        """An active session with this code whose expiry has not passed."""
        try:
            rows = await self._store.select(
                SESSIONS,
                match={"session_code": session_code, "is_active": True},
                order_by="created_at",
            )
        except PersistenceError as e:
            logger.error(f"Error looking up session {session_code}: {e}")
            return None

        for row in rows:
            session = TransferSession.model_validate(row)
            if not session.is_expired(now):
                return session
        return None

    async def deactivate_session(self, session_id: str) -> bool:
        try:
            rows = await self._store.update(SESSIONS, {"id": session_id}, {"is_active": False})
        except PersistenceError as e:
            logger.error(f"Error deactivating session {session_id}: {e}")
            return False
        if not rows:
            raise NotFoundError(f"Session {session_id} not found")
        return True
