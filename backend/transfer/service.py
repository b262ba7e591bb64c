"""
Edge-function file transfer service.

Moves whole files between the local disk and the hosted upload/download
functions. Every failure is raised as TransferIOError; progress reporting
and record keeping live in the transfer manager.
"""

import asyncio
import logging
import mimetypes
import os
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from config import CHUNK_SIZE, DOWNLOAD_FUNCTION, UPLOAD_FUNCTION
from errors import TransferIOError
from payload.models import FileDescriptor

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


# --- Local files ---

def local_path(file_uri: str) -> Path:
    """Accept either a plain path or a ``file://`` URI."""
    if file_uri.startswith("file://"):
        return Path(unquote(urlparse(file_uri).path))
    return Path(file_uri)


def guess_mime_type(file_name: str) -> str:
    mime_type, _ = mimetypes.guess_type(file_name)
    return mime_type or DEFAULT_MIME_TYPE


def describe_file(file_uri: str) -> FileDescriptor:
    """Build the payload descriptor for a local file."""
    path = local_path(file_uri)
    if not path.is_file():
        raise TransferIOError(f"File does not exist: {path}")
    return FileDescriptor(
        name=path.name,
        size=path.stat().st_size,
        type=guess_mime_type(path.name),
        uri=file_uri,
    )


def format_file_size(size: int) -> str:
    """Human-readable size, e.g. ``200 KB`` or ``1.5 MB``."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 2):g} {units[unit]}"


async def read_source(file_uri: str) -> bytes:
    """Read the whole file into memory."""
    path = local_path(file_uri)
    if not path.is_file():
        raise TransferIOError(f"File does not exist: {path}")
    try:
        return await asyncio.to_thread(path.read_bytes)
    except OSError as e:
        raise TransferIOError(f"Could not read {path}: {e}") from e


async def write_download(save_dir: str, file_name: str, data: bytes) -> Path:
    """Write downloaded bytes under ``save_dir``; only the base name of ``file_name`` is used."""
    safe_name = os.path.basename(file_name.replace("\\", "/")) or "download"
    target = Path(save_dir) / safe_name

    def _write() -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    try:
        await asyncio.to_thread(_write)
    except OSError as e:
        raise TransferIOError(f"Could not save {safe_name}: {e}") from e
    return target


# --- Edge functions ---

def _error_message(response: httpx.Response, default: str) -> str:
    """The ``error`` field of a JSON error body, or ``default``."""
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return default


async def upload_blob(
    client: httpx.AsyncClient,
    transfer_id: str,
    device_id: str,
    file_name: str,
    data: bytes,
) -> dict:
    """POST the file to the upload function; returns its JSON body."""
    try:
        response = await client.post(
            f"/{UPLOAD_FUNCTION}",
            files={"file": (file_name, data, DEFAULT_MIME_TYPE)},
            data={
                "transferId": transfer_id,
                "deviceId": device_id,
                "chunkSize": str(CHUNK_SIZE),
            },
        )
    except httpx.HTTPError as e:
        raise TransferIOError(f"Upload request failed: {e}") from e

    if not response.is_success:
        raise TransferIOError(_error_message(response, "Upload failed"))
    try:
        body = response.json()
    except ValueError:
        body = {}
    return body if isinstance(body, dict) else {}


async def download_blob(
    client: httpx.AsyncClient,
    transfer_id: str,
    device_id: str,
) -> bytes:
    """GET the file bytes from the download function."""
    try:
        response = await client.get(
            f"/{DOWNLOAD_FUNCTION}",
            params={"transferId": transfer_id, "deviceId": device_id},
        )
    except httpx.HTTPError as e:
        raise TransferIOError(f"Download request failed: {e}") from e

    if not response.is_success:
        raise TransferIOError(_error_message(response, "Download failed"))
    return response.content
