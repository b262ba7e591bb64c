"""Pydantic models for transfers, sessions and progress."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class TransferStatus(str, Enum):
    """Lifecycle of a transfer record. Moves forward only."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    TransferStatus.COMPLETED,
    TransferStatus.FAILED,
    TransferStatus.CANCELLED,
})

# Position in the lifecycle; terminal states share the last rank
STATUS_RANK = {
    TransferStatus.PENDING: 0,
    TransferStatus.IN_PROGRESS: 1,
    TransferStatus.COMPLETED: 2,
    TransferStatus.FAILED: 2,
    TransferStatus.CANCELLED: 2,
}


class TransferMethod(str, Enum):
    # Only QR_CODE moves bytes; the others are selectable placeholders
    QR_CODE = "qr_code"
    WIFI_DIRECT = "wifi_direct"
    INTERNET = "internet"


class TransferDirection(str, Enum):
    """Filter for the transfer list, from this device's point of view."""
    SENT = "sent"
    RECEIVED = "received"
    ALL = "all"


class Transfer(BaseModel):
    """One row of the ``transfers`` table."""
    id: str
    sender_device_id: str | None = None
    receiver_device_id: str | None = None
    file_name: str
    file_size: int = Field(ge=0)
    file_type: str
    file_url: str | None = None
    transfer_method: TransferMethod | None = TransferMethod.QR_CODE
    status: TransferStatus = TransferStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    encryption_key: str | None = None
    qr_code_data: str | None = None
    application_id: str | None = None
    created_at: datetime
    updated_at: datetime


class TransferCreate(BaseModel):
    """Fields a sender supplies when starting a share."""
    file_name: str
    file_size: int = Field(ge=0)
    file_type: str
    file_url: str | None = None
    transfer_method: TransferMethod = TransferMethod.QR_CODE
    encryption_key: str | None = None
    qr_code_data: str | None = None
    application_id: str | None = None


class TransferUpdate(BaseModel):
    """Partial update; only fields explicitly set are written."""
    receiver_device_id: str | None = None
    file_url: str | None = None
    status: TransferStatus | None = None
    progress: int | None = Field(default=None, ge=0, le=100)
    qr_code_data: str | None = None


class TransferSession(BaseModel):
    """Code-based pairing for receive mode."""
    id: str
    session_code: str
    creator_device_id: str | None = None
    is_active: bool = True
    expires_at: datetime
    created_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now


class ProgressStatus(str, Enum):
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


class TransferProgress(BaseModel):
    """A milestone reported while one upload or download runs. Never persisted."""
    transfer_id: str
    progress: int = Field(ge=0, le=100)
    status: ProgressStatus
    message: str = ""
