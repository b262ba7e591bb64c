"""Pydantic models for notifications."""

from datetime import datetime

from pydantic import BaseModel


class Notification(BaseModel):
    """One row of the ``notifications`` table, owned by a device."""
    id: str
    device_id: str | None = None
    transfer_id: str | None = None
    title: str
    message: str
    is_read: bool = False
    created_at: datetime
