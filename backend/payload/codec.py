"""
QR payload codec.

Encodes shareable transfer metadata as compact JSON and parses scanned
strings back into one of the typed payloads. Raw file bytes never go into
a payload; a file is referenced by a URI the sending device can resolve.
"""

import json
import logging

from pydantic import TypeAdapter, ValidationError

from config import MAX_QR_BYTES
from errors import MalformedPayloadError
from payload.models import (
    PAYLOAD_TYPES,
    AppDescriptor,
    ApplicationPayload,
    FileDescriptor,
    FilePayload,
    Payload,
    SessionPayload,
)
from transfer.models import TransferMethod

logger = logging.getLogger(__name__)

_payload_adapter = TypeAdapter(Payload)


def encode_payload(payload: SessionPayload | FilePayload | ApplicationPayload) -> str:
    """Serialize a payload to the JSON string embedded in the QR code."""
    encoded = payload.model_dump_json(by_alias=True)
    size = len(encoded.encode("utf-8"))
    if size > MAX_QR_BYTES:
        logger.warning(
            f"{payload.type} payload is {size} bytes, above QR capacity of {MAX_QR_BYTES}"
        )
    return encoded


def session_payload(session_code: str, device_id: str) -> str:
    return encode_payload(SessionPayload(session_code=session_code, device_id=device_id))


def file_payload(
    file: FileDescriptor,
    device_id: str,
    encryption_key: str,
    method: TransferMethod = TransferMethod.QR_CODE,
) -> str:
    return encode_payload(
        FilePayload(
            file=file,
            device_id=device_id,
            encryption_key=encryption_key,
            method=method,
        )
    )


def application_payload(
    app: AppDescriptor,
    device_id: str,
    encryption_key: str,
    method: TransferMethod = TransferMethod.QR_CODE,
) -> str:
    return encode_payload(
        ApplicationPayload(
            app=app,
            device_id=device_id,
            encryption_key=encryption_key,
            method=method,
        )
    )


def decode_payload(raw: str | bytes) -> SessionPayload | FilePayload | ApplicationPayload:
    """
    Parse a scanned QR string.

    Raises:
        MalformedPayloadError: the string is not JSON, not a JSON object,
            has no ``type``, names an unknown type, or lacks fields that
            type requires. No other exception escapes.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedPayloadError(f"Payload is not valid JSON: {e}") from e
    except RecursionError as e:
        raise MalformedPayloadError("Payload is nested too deeply") from e

    if not isinstance(data, dict):
        raise MalformedPayloadError("Payload must be a JSON object")

    payload_type = data.get("type")
    if payload_type is None:
        raise MalformedPayloadError("Payload has no 'type' field")
    if payload_type not in PAYLOAD_TYPES:
        raise MalformedPayloadError(f"Unknown payload type: {payload_type!r}")

    try:
        return _payload_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedPayloadError(
            f"Invalid {payload_type} payload: {e.error_count()} field error(s)"
        ) from e
