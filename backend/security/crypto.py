"""
Security module: session codes, transfer keys and AES-256-GCM sealing.

The transfer key travels inside the QR payload. File bytes are only
sealed with it when ENCRYPT_TRANSFERS is enabled on both devices.
"""

import os
import secrets
import string
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import APP_ID, ENCRYPTION_KEY_LENGTH, SESSION_CODE_LENGTH
from errors import TransferIOError

logger = logging.getLogger(__name__)

# AES-256-GCM nonce size (12 bytes recommended)
NONCE_SIZE = 12
# AES-256 key size
KEY_SIZE = 32

_SESSION_ALPHABET = string.ascii_uppercase + string.digits
_KEY_ALPHABET = string.ascii_lowercase + string.digits


def generate_session_code(length: int = SESSION_CODE_LENGTH) -> str:
    """Return an uppercase alphanumeric pairing code, e.g. ``"K7Q2ZD"``."""
    return "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(length))


def generate_encryption_key(length: int = ENCRYPTION_KEY_LENGTH) -> str:
    """Return an opaque lowercase alphanumeric transfer key."""
    return "".join(secrets.choice(_KEY_ALPHABET) for _ in range(length))


def derive_file_key(encryption_key: str, transfer_id: str) -> bytes:
    """
    Derive a 32-byte AES-256 key from the transfer key.

    Uses HKDF-SHA256 with the transfer id as salt so the same key string
    never yields the same AES key for two transfers.
    """
    return HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=transfer_id.encode("utf-8"),
        info=f"{APP_ID}-file-key".encode(),
    ).derive(encryption_key.encode("utf-8"))


def seal(key: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt file bytes using AES-256-GCM.

    Returns: nonce (12 bytes) || ciphertext || tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    return nonce + aesgcm.encrypt(nonce, plaintext, None)


def open_sealed(key: bytes, data: bytes) -> bytes:
    """
    Decrypt file bytes produced by :func:`seal`.

    Raises TransferIOError when the data was tampered with or the key is wrong.
    """
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        logger.warning(f"Rejected sealed payload of {len(data)} bytes")
        raise TransferIOError("Decryption failed: wrong key or corrupted file") from e
