"""
Device identity provider.

Every install owns one locally generated device id. It is created on first
start, persisted in the key-value store and passed by reference to every
component that acts on behalf of this device.
"""

import logging
import secrets
import string
import time

from config import DEVICE_ID_KEY
from identity.store import KeyValueStore

logger = logging.getLogger(__name__)

_ALPHABET = string.ascii_lowercase + string.digits


def generate_device_id() -> str:
    """Return a fresh id such as ``device_k2j9x0a1b_1700000000000``."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"device_{suffix}_{int(time.time() * 1000)}"


class DeviceIdentity:
    """Owns this install's device id."""

    def __init__(self, store: KeyValueStore):
        self._store = store
        self.device_id = self._load_or_generate()
        logger.info(f"Initialized DeviceIdentity: {self.device_id}")

    def _load_or_generate(self) -> str:
        """Reuse the stored device id or create and persist a new one."""
        stored = self._store.get(DEVICE_ID_KEY)
        if stored:
            logger.info("Using existing device ID")
            return stored

        device_id = generate_device_id()
        try:
            self._store.set(DEVICE_ID_KEY, device_id)
            logger.info("Generated new device ID")
        except OSError as e:
            # The id is still usable for this run; it just won't survive a restart
            logger.error(f"Failed to persist device ID: {e}")
        return device_id
