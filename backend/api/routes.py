"""REST API routes for Karli Share."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from errors import InvalidTransitionError, NotFoundError, PersistenceError
from payload.models import AppDescriptor
from transfer.models import TransferDirection, TransferMethod, TransferUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_identity = None
_records = None
_notifier = None
_transfer_manager = None


def init_routes(identity, records, notifier, transfer_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _identity, _records, _notifier, _transfer_manager
    _identity = identity
    _records = records
    _notifier = notifier
    _transfer_manager = transfer_manager


async def _load_transfer(transfer_id: str):
    try:
        return await _records.get_transfer(transfer_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        logger.error(f"Error loading transfer {transfer_id}: {e}")
        raise HTTPException(status_code=503, detail="Backend unavailable")


# --- Identity ---

@router.get("/identity")
async def get_identity():
    return {"device_id": _identity.device_id}


# --- Transfers ---

class ShareFileBody(BaseModel):
    file_path: str
    method: TransferMethod = TransferMethod.QR_CODE


class ShareApplicationBody(BaseModel):
    name: str
    package_name: str
    version: str | None = None
    icon: str | None = None
    size: int = Field(default=0, ge=0)
    method: TransferMethod = TransferMethod.QR_CODE


@router.get("/transfers")
async def list_transfers(direction: TransferDirection = TransferDirection.ALL):
    """Transfers this device sent and/or received, newest first."""
    transfers = await _records.list_transfers(_identity.device_id, direction)
    return {"transfers": [t.model_dump(mode="json") for t in transfers]}


@router.post("/transfers")
async def share_file(body: ShareFileBody):
    """Create a transfer for a local file and return its QR payload."""
    if not os.path.isfile(body.file_path):
        raise HTTPException(status_code=400, detail="File not found")

    shared = await _transfer_manager.share_file(body.file_path, body.method)
    if shared is None:
        raise HTTPException(status_code=503, detail="Could not create transfer")
    transfer, qr_data = shared
    return {"transfer": transfer.model_dump(mode="json"), "qr_data": qr_data}


@router.post("/applications")
async def share_application(body: ShareApplicationBody):
    """Create a transfer for an application and return its QR payload."""
    app = AppDescriptor(
        name=body.name,
        package_name=body.package_name,
        version=body.version,
        icon=body.icon,
        size=body.size,
    )
    shared = await _transfer_manager.share_application(app, body.method)
    if shared is None:
        raise HTTPException(status_code=503, detail="Could not create transfer")
    transfer, qr_data = shared
    return {"transfer": transfer.model_dump(mode="json"), "qr_data": qr_data}


@router.get("/transfers/{transfer_id}")
async def get_transfer(transfer_id: str):
    transfer = await _load_transfer(transfer_id)
    return {"transfer": transfer.model_dump(mode="json")}


@router.patch("/transfers/{transfer_id}")
async def update_transfer(transfer_id: str, body: TransferUpdate):
    try:
        transfer = await _records.update_transfer(transfer_id, body)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if transfer is None:
        raise HTTPException(status_code=503, detail="Could not update transfer")
    return {"transfer": transfer.model_dump(mode="json")}


@router.post("/transfers/{transfer_id}/upload")
async def upload_transfer(transfer_id: str):
    """Upload the file behind one of this device's transfers."""
    transfer = await _load_transfer(transfer_id)
    if not transfer.file_url:
        raise HTTPException(status_code=400, detail="Transfer has no local file")

    ok = await _transfer_manager.upload_file(
        transfer.id, transfer.file_url, _identity.device_id, transfer.encryption_key
    )
    return {"success": ok}


@router.post("/transfers/{transfer_id}/download")
async def download_transfer(transfer_id: str):
    transfer = await _load_transfer(transfer_id)
    path = await _transfer_manager.download_file(
        transfer.id, _identity.device_id, transfer.file_name, transfer.encryption_key
    )
    if path is None:
        raise HTTPException(status_code=502, detail="Download failed")
    return {"path": path}


@router.post("/transfers/{transfer_id}/cancel")
async def cancel_transfer(transfer_id: str):
    try:
        transfer = await _transfer_manager.cancel_transfer(transfer_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if transfer is None:
        raise HTTPException(status_code=503, detail="Could not cancel transfer")
    return {"status": "cancelled"}


@router.post("/transfers/{transfer_id}/accept")
async def accept_transfer(transfer_id: str):
    if not await _transfer_manager.respond_to_request(transfer_id, accept=True):
        raise HTTPException(status_code=404, detail="No pending request")
    return {"status": "accepted"}


@router.post("/transfers/{transfer_id}/reject")
async def reject_transfer(transfer_id: str):
    if not await _transfer_manager.respond_to_request(transfer_id, accept=False):
        raise HTTPException(status_code=404, detail="No pending request")
    return {"status": "rejected"}


# --- Sessions & scanning ---

class ScanBody(BaseModel):
    data: str


@router.post("/sessions")
async def open_session():
    """Enter receive mode: create a pairing session and its QR payload."""
    opened = await _transfer_manager.open_session()
    if opened is None:
        raise HTTPException(status_code=503, detail="Could not create session")
    session, qr_data = opened
    return {"session": session.model_dump(mode="json"), "qr_data": qr_data}


@router.post("/scan")
async def scan(body: ScanBody):
    """
    Process a scanned QR string. For file payloads this waits until the
    user accepts or rejects the request (see /accept and /reject).
    """
    ok = await _transfer_manager.process_payload(body.data, _identity.device_id)
    return {"success": ok}


# --- Notifications ---

@router.get("/notifications")
async def list_notifications():
    notifications = await _notifier.list_notifications(_identity.device_id)
    return {
        "notifications": [n.model_dump(mode="json") for n in notifications],
        "unread_count": sum(1 for n in notifications if not n.is_read),
    }


@router.post("/notifications/read-all")
async def mark_all_notifications_read():
    return {"success": await _notifier.mark_all_read(_identity.device_id)}


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: str):
    if not await _notifier.mark_read(notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


# --- Settings ---

class SettingsBody(BaseModel):
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {"save_dir": _transfer_manager.save_dir}


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.save_dir is not None:
        if not os.path.isdir(body.save_dir):
            try:
                os.makedirs(body.save_dir, exist_ok=True)
            except OSError as e:
                raise HTTPException(
                    status_code=400, detail=f"Invalid directory: {e}"
                )
        _transfer_manager.save_dir = body.save_dir
    return {"status": "updated"}
