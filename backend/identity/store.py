"""Small JSON-file key-value store for per-install state."""

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Persists string values under fixed keys in a JSON document."""

    def __init__(self, path: Path):
        self._path = path
        self._values: dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return

        try:
            data = json.loads(self._path.read_text())
            if isinstance(data, dict):
                self._values = {k: str(v) for k, v in data.items()}
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load local state from {self._path}: {e}")

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._values, indent=2))

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value
        self._save()
