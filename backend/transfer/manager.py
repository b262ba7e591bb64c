"""
Transfer Manager — runs uploads and downloads and reports their progress.

Each call moves one whole file through the edge functions and reports
coarse milestones (0/25/100 for uploads, 0/50/100 for downloads). A failed
attempt is final; the user starts a new one.
"""

import asyncio
import logging
from contextlib import contextmanager, nullcontext
from typing import Awaitable, Callable

import httpx

from config import (
    ACCEPT_TIMEOUT,
    DEFAULT_SAVE_DIR,
    ENCRYPT_TRANSFERS,
    SUPABASE_KEY,
    SUPABASE_URL,
)
from errors import (
    InvalidTransitionError,
    MalformedPayloadError,
    NotFoundError,
    TransferIOError,
)
from notifications.emitter import NotificationEmitter
from payload.codec import application_payload, decode_payload, file_payload, session_payload
from payload.models import AppDescriptor, ApplicationPayload, FilePayload, SessionPayload
from security.crypto import derive_file_key, generate_encryption_key, open_sealed, seal
from transfer.models import (
    ProgressStatus,
    Transfer,
    TransferCreate,
    TransferMethod,
    TransferProgress,
    TransferSession,
    TransferStatus,
    TransferUpdate,
)
from transfer.records import TransferRecordManager
from transfer.service import (
    describe_file,
    download_blob,
    format_file_size,
    local_path,
    read_source,
    upload_blob,
    write_download,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TransferProgress], None]
# async fn(transfer, item_name, item_size) -> accept?
ConfirmCallback = Callable[[Transfer, str, int], Awaitable[bool]]


def functions_client() -> httpx.AsyncClient:
    """HTTP client for the project's edge functions."""
    return httpx.AsyncClient(
        base_url=f"{SUPABASE_URL}/functions/v1",
        headers={"Authorization": f"Bearer {SUPABASE_KEY}"},
    )


class TransferManager:
    """Executes file transfers and dispatches scanned QR payloads."""

    def __init__(
        self,
        records: TransferRecordManager,
        notifier: NotificationEmitter,
        client: httpx.AsyncClient | None = None,
        save_dir: str = DEFAULT_SAVE_DIR,
        confirm: ConfirmCallback | None = None,
        encrypt: bool = ENCRYPT_TRANSFERS,
    ) -> None:
        self._records = records
        self._notifier = notifier
        self._client = client or functions_client()
        self._save_dir = save_dir
        self._confirm = confirm or self._prompt_accept
        self._encrypt = encrypt
        self._progress_callbacks: dict[str, ProgressCallback] = {}
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._accept_futures: dict[str, asyncio.Future] = {}

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        self._save_dir = path

    async def close(self) -> None:
        for future in self._accept_futures.values():
            if not future.done():
                future.set_result(False)
        await self._client.aclose()

    # --- Events & progress ---

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def _alert(self, kind: str, title: str, message: str) -> None:
        await self._emit("alert", {"type": kind, "title": title, "message": message})

    @contextmanager
    def track(self, transfer_id: str, callback: ProgressCallback):
        """
        Receive progress for one transfer while the block runs.

        Only one callback may watch a transfer at a time; it is removed on
        exit whether the transfer succeeded or failed.
        """
        if transfer_id in self._progress_callbacks:
            raise ValueError(f"Transfer {transfer_id} already has a progress callback")
        self._progress_callbacks[transfer_id] = callback
        try:
            yield
        finally:
            self._progress_callbacks.pop(transfer_id, None)

    def _tracking(self, transfer_id: str, callback: ProgressCallback | None):
        return nullcontext() if callback is None else self.track(transfer_id, callback)

    async def _report(
        self, transfer_id: str, progress: int, status: ProgressStatus, message: str
    ) -> None:
        update = TransferProgress(
            transfer_id=transfer_id, progress=progress, status=status, message=message
        )
        callback = self._progress_callbacks.get(transfer_id)
        if callback:
            try:
                callback(update)
            except Exception as e:
                logger.error(f"Progress callback error for {transfer_id}: {e}")
        await self._emit("transfer_progress", update.model_dump(mode="json"))

    # --- Upload / download ---

    async def upload_file(
        self,
        transfer_id: str,
        file_uri: str,
        device_id: str,
        encryption_key: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> bool:
        """Send a local file to the upload function. Returns True on success."""
        with self._tracking(transfer_id, on_progress):
            return await self._upload(transfer_id, file_uri, device_id, encryption_key)

    async def _upload(
        self, transfer_id: str, file_uri: str, device_id: str, encryption_key: str | None
    ) -> bool:
        reached = 0
        await self._report(transfer_id, 0, ProgressStatus.UPLOADING, "Preparing file...")
        try:
            data = await read_source(file_uri)
            if encryption_key and self._encrypt:
                data = await asyncio.to_thread(
                    seal, derive_file_key(encryption_key, transfer_id), data
                )

            reached = 25
            await self._report(transfer_id, 25, ProgressStatus.UPLOADING, "Sending file...")
            result = await upload_blob(
                self._client, transfer_id, device_id, local_path(file_uri).name, data
            )
        except TransferIOError as e:
            logger.error(f"Upload error for {transfer_id}: {e}")
            await self._report(
                transfer_id, reached, ProgressStatus.FAILED, f"Upload failed: {e}"
            )
            return False

        await self._report(
            transfer_id, 100, ProgressStatus.COMPLETED, "File sent successfully!"
        )
        logger.info(f"Uploaded transfer {transfer_id} ({len(data)} bytes)")

        file_url = result.get("file_url") or result.get("fileUrl")
        if file_url:
            try:
                await self._records.update_transfer(
                    transfer_id, TransferUpdate(file_url=file_url)
                )
            except (NotFoundError, InvalidTransitionError) as e:
                logger.warning(f"Could not record file URL for {transfer_id}: {e}")
        return True

    async def download_file(
        self,
        transfer_id: str,
        device_id: str,
        file_name: str,
        encryption_key: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> str | None:
        """Fetch a transfer's bytes and save them; returns the local path or None."""
        with self._tracking(transfer_id, on_progress):
            return await self._download(transfer_id, device_id, file_name, encryption_key)

    async def _download(
        self, transfer_id: str, device_id: str, file_name: str, encryption_key: str | None
    ) -> str | None:
        reached = 0
        await self._report(transfer_id, 0, ProgressStatus.DOWNLOADING, "Downloading...")
        try:
            data = await download_blob(self._client, transfer_id, device_id)

            reached = 50
            await self._report(transfer_id, 50, ProgressStatus.DOWNLOADING, "Saving file...")
            if encryption_key and self._encrypt:
                data = await asyncio.to_thread(
                    open_sealed, derive_file_key(encryption_key, transfer_id), data
                )
            path = await write_download(self._save_dir, file_name, data)
        except TransferIOError as e:
            logger.error(f"Download error for {transfer_id}: {e}")
            await self._report(
                transfer_id, reached, ProgressStatus.FAILED, f"Download failed: {e}"
            )
            return None

        await self._report(
            transfer_id, 100, ProgressStatus.COMPLETED, "File downloaded successfully!"
        )
        logger.info(f"Downloaded transfer {transfer_id} to {path}")
        return str(path)

    # --- Sharing ---

    async def share_file(
        self, file_uri: str, method: TransferMethod = TransferMethod.QR_CODE
    ) -> tuple[Transfer, str] | None:
        """Create a transfer for a local file and the QR payload that points at it."""
        try:
            descriptor = describe_file(file_uri)
        except TransferIOError as e:
            logger.error(f"Cannot share {file_uri}: {e}")
            return None

        encryption_key = generate_encryption_key()
        qr_data = file_payload(descriptor, self._records.device_id, encryption_key, method)
        transfer = await self._records.create_transfer(
            TransferCreate(
                file_name=descriptor.name,
                file_size=descriptor.size,
                file_type=descriptor.type,
                file_url=file_uri,
                transfer_method=method,
                encryption_key=encryption_key,
                qr_code_data=qr_data,
            )
        )
        if transfer is None:
            return None
        return transfer, qr_data

    async def share_application(
        self, app: AppDescriptor, method: TransferMethod = TransferMethod.QR_CODE
    ) -> tuple[Transfer, str] | None:
        """Create a transfer for an application and its QR payload."""
        encryption_key = generate_encryption_key()
        qr_data = application_payload(app, self._records.device_id, encryption_key, method)
        transfer = await self._records.create_transfer(
            TransferCreate(
                file_name=app.name,
                file_size=app.size,
                file_type="application",
                transfer_method=method,
                encryption_key=encryption_key,
                qr_code_data=qr_data,
            )
        )
        if transfer is None:
            return None
        return transfer, qr_data

    async def open_session(self) -> tuple[TransferSession, str] | None:
        """Start receive mode: a session row and the QR payload advertising it."""
        session = await self._records.create_session()
        if session is None:
            return None
        return session, session_payload(session.session_code, self._records.device_id)

    async def cancel_transfer(self, transfer_id: str) -> Transfer | None:
        """
        Mark a transfer cancelled.

        An upload or download already in flight keeps running; only the
        record changes.
        """
        transfer = await self._records.update_transfer(
            transfer_id, TransferUpdate(status=TransferStatus.CANCELLED)
        )
        if transfer:
            await self._notifier.notify_transfer_outcome(self._records.device_id, transfer)
        return transfer

    # --- Scanned payloads ---

    async def process_payload(self, payload_string: str, device_id: str) -> bool:
        """
        Act on a scanned QR string.

        Session payloads claim the matching receive session; file and
        application payloads download the sender's latest pending transfer
        after the user confirms. Returns False, leaving all records
        untouched, when the payload is malformed or nothing matches.
        """
        try:
            payload = decode_payload(payload_string)
        except MalformedPayloadError as e:
            logger.warning(f"Rejected QR payload: {e}")
            await self._alert("error", "Invalid QR code", str(e))
            return False

        if isinstance(payload, SessionPayload):
            return await self._claim_session(payload, device_id)
        if isinstance(payload, (FilePayload, ApplicationPayload)):
            return await self._receive_direct(payload, device_id)

        logger.error(f"No handler for payload type {payload.type!r}")
        return False

    async def _claim_session(self, payload: SessionPayload, device_id: str) -> bool:
        session = await self._records.find_claimable_session(payload.session_code)
        if session is None:
            await self._alert("error", "Error", "Session not found or expired")
            return False

        try:
            if not await self._records.deactivate_session(session.id):
                return False
        except NotFoundError as e:
            logger.warning(f"Session vanished while claiming: {e}")
            return False

        await self._emit(
            "session_claimed",
            {
                "session_code": session.session_code,
                "creator_device_id": session.creator_device_id,
                "device_id": device_id,
            },
        )
        await self._alert(
            "success", "Session found", "You are now connected to receive files."
        )
        return True

    async def _receive_direct(
        self, payload: FilePayload | ApplicationPayload, device_id: str
    ) -> bool:
        transfer = await self._records.latest_pending_from(payload.device_id)
        if transfer is None:
            await self._alert("error", "Error", "Transfer not found")
            return False

        if isinstance(payload, ApplicationPayload):
            item_name, item_size = payload.app.name, payload.app.size
        else:
            item_name, item_size = payload.file.name, payload.file.size

        if not await self._confirm(transfer, item_name, item_size):
            logger.info(f"Transfer {transfer.id} declined")
            return False

        try:
            claimed = await self._records.update_transfer(
                transfer.id,
                TransferUpdate(
                    receiver_device_id=device_id, status=TransferStatus.IN_PROGRESS
                ),
            )
        except (NotFoundError, InvalidTransitionError) as e:
            logger.warning(f"Could not claim transfer {transfer.id}: {e}")
            return False
        if claimed is None:
            return False

        path = await self.download_file(
            transfer.id, device_id, transfer.file_name, payload.encryption_key
        )
        final_status = TransferStatus.COMPLETED if path else TransferStatus.FAILED
        try:
            finished = await self._records.update_transfer(
                transfer.id, TransferUpdate(status=final_status)
            )
        except (NotFoundError, InvalidTransitionError) as e:
            # e.g. the sender cancelled while we were downloading
            logger.warning(f"Could not finalize transfer {transfer.id}: {e}")
            finished = None

        if finished:
            await self._notifier.notify_transfer_outcome(device_id, finished)
        if path:
            await self._alert("success", "Download complete", f"The file was saved to: {path}")
        return path is not None

    async def _prompt_accept(self, transfer: Transfer, item_name: str, item_size: int) -> bool:
        """
        Ask the user whether to receive an item.
        Creates a Future that will be resolved when the user decides. A
        second scan of a transfer that is already awaiting an answer is
        declined; the first prompt keeps waiting.
        """
        if transfer.id in self._accept_futures:
            logger.warning(f"Transfer {transfer.id} already has a pending request")
            return False

        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._accept_futures[transfer.id] = future

        try:
            # Emit event so the UI can show the confirmation dialog
            await self._emit(
                "transfer_request",
                {
                    "transfer": transfer.model_dump(mode="json"),
                    "item_name": item_name,
                    "item_size": format_file_size(item_size),
                },
            )
            return await asyncio.wait_for(future, timeout=ACCEPT_TIMEOUT)
        except asyncio.TimeoutError:
            logger.info(f"Transfer {transfer.id} timed out waiting for acceptance")
            return False
        finally:
            self._accept_futures.pop(transfer.id, None)

    async def respond_to_request(self, transfer_id: str, accept: bool) -> bool:
        """Resolve a pending acceptance prompt. False if none is waiting."""
        future = self._accept_futures.get(transfer_id)
        if future and not future.done():
            future.set_result(accept)
            return True
        return False
