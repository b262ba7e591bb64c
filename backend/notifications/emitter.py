"""
Notification Emitter — lightweight notification rows tied to transfers.

There is no delivery guarantee: a failed insert is logged and dropped.
"""

import logging

from errors import PersistenceError
from notifications.models import Notification
from storage.base import TableStore
from transfer.models import Transfer, TransferStatus

logger = logging.getLogger(__name__)

NOTIFICATIONS = "notifications"


def outcome_message(transfer: Transfer) -> tuple[str, str] | None:
    """Title and message for a transfer that reached a terminal state."""
    if transfer.status == TransferStatus.COMPLETED:
        return "File received", f"'{transfer.file_name}' was received successfully."
    if transfer.status == TransferStatus.FAILED:
        return "Transfer failed", f"Transfer of '{transfer.file_name}' failed."
    if transfer.status == TransferStatus.CANCELLED:
        return "Transfer cancelled", f"Transfer of '{transfer.file_name}' was cancelled."
    return None


class NotificationEmitter:
    def __init__(self, store: TableStore) -> None:
        self._store = store

    async def create(
        self,
        device_id: str,
        title: str,
        message: str,
        transfer_id: str | None = None,
    ) -> Notification | None:
        """Insert an unread notification for ``device_id``."""
        row = {
            "device_id": device_id,
            "title": title,
            "message": message,
            "transfer_id": transfer_id,
            "is_read": False,
        }
        try:
            stored = await self._store.insert(NOTIFICATIONS, row)
        except PersistenceError as e:
            logger.error(f"Error creating notification '{title}': {e}")
            return None
        return Notification.model_validate(stored)

    async def notify_transfer_outcome(
        self, device_id: str, transfer: Transfer
    ) -> Notification | None:
        """Record the outcome of a finished transfer; no-op while it is still running."""
        outcome = outcome_message(transfer)
        if outcome is None:
            return None
        title, message = outcome
        return await self.create(device_id, title, message, transfer_id=transfer.id)

    async def list_notifications(self, device_id: str) -> list[Notification]:
        try:
            rows = await self._store.select(
                NOTIFICATIONS, match={"device_id": device_id}, order_by="created_at"
            )
        except PersistenceError as e:
            logger.error(f"Error fetching notifications: {e}")
            return []
        return [Notification.model_validate(r) for r in rows]

    async def unread_count(self, device_id: str) -> int:
        return sum(1 for n in await self.list_notifications(device_id) if not n.is_read)

    async def mark_read(self, notification_id: str) -> bool:
        try:
            rows = await self._store.update(
                NOTIFICATIONS, {"id": notification_id}, {"is_read": True}
            )
        except PersistenceError as e:
            logger.error(f"Error marking notification as read: {e}")
            return False
        return bool(rows)

    async def mark_all_read(self, device_id: str) -> bool:
        try:
            await self._store.update(
                NOTIFICATIONS,
                {"device_id": device_id, "is_read": False},
                {"is_read": True},
            )
        except PersistenceError as e:
            logger.error(f"Error marking all notifications as read: {e}")
            return False
        return True
