"""Pydantic models for the JSON payloads carried in QR codes."""

import time
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from transfer.models import TransferMethod


def now_ms() -> int:
    return int(time.time() * 1000)


class WireModel(BaseModel):
    """Python field names, camelCase on the wire."""
    model_config = ConfigDict(populate_by_name=True)


class FileDescriptor(WireModel):
    name: str
    size: int = Field(ge=0)
    type: str
    uri: str  # resolvable on the sending device only


class AppDescriptor(WireModel):
    name: str
    package_name: str = Field(alias="packageName")
    version: str | None = None
    icon: str | None = None
    size: int = Field(default=0, ge=0)


class SessionPayload(WireModel):
    """Receive-mode pairing, independent of any file."""
    type: Literal["session"] = "session"
    session_code: str = Field(alias="sessionCode")
    device_id: str = Field(alias="deviceId")
    timestamp: int = Field(default_factory=now_ms)


class FilePayload(WireModel):
    type: Literal["file"] = "file"
    file: FileDescriptor
    device_id: str = Field(alias="deviceId")
    encryption_key: str = Field(alias="encryptionKey")
    method: TransferMethod = TransferMethod.QR_CODE
    timestamp: int = Field(default_factory=now_ms)


class ApplicationPayload(WireModel):
    type: Literal["application"] = "application"
    app: AppDescriptor
    device_id: str = Field(alias="deviceId")
    encryption_key: str = Field(alias="encryptionKey")
    method: TransferMethod = TransferMethod.QR_CODE
    timestamp: int = Field(default_factory=now_ms)


Payload = Annotated[
    Union[SessionPayload, FilePayload, ApplicationPayload],
    Field(discriminator="type"),
]

PAYLOAD_TYPES = ("session", "file", "application")
