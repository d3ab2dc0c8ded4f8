"""
Upstream API key pool with a persisted round-robin cursor.

The key file looks like:

    {"apiKeys": ["AIza...", ...], "currentKeyIndex": 0}
"""

import json
import logging
import os
import tempfile
import threading
from typing import Any, Optional

from errors import IndexOutOfRange, InvalidKey, NoKeysAvailable, PersistenceError

logger = logging.getLogger(__name__)

REDACTED_PREFIX_LEN = 10


def mask_api_key(api_key: str) -> str:
    """Show only the first characters of a key."""
    return api_key[:REDACTED_PREFIX_LEN] + "..."


class JsonKeyFile:
    """Load/save primitive for the key file."""

    def __init__(self, path: str):
        self.path = path

    def read(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise PersistenceError(f"key file not found: {self.path}") from e
        except (OSError, ValueError) as e:
            raise PersistenceError(f"cannot read key file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceError(f"key file {self.path} does not hold a JSON object")
        return data

    def write(self, data: dict) -> None:
        """Write atomically: temp file in the same directory, then os.replace."""
        temp_fd, temp_path = None, None
        try:
            state_dir = os.path.dirname(self.path) or "."
            os.makedirs(state_dir, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(dir=state_dir, prefix=".api_keys_", suffix=".json.tmp")

            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                temp_fd = None  # fdopen takes ownership
                json.dump(data, f, indent=2)

            try:
                os.chmod(temp_path, 0o600)
            except OSError as e:
                logger.warning(f"Failed to chmod key file: {e}")

            os.replace(temp_path, self.path)
            temp_path = None
        except OSError as e:
            raise PersistenceError(f"cannot write key file {self.path}: {e}") from e
        finally:
            if temp_fd is not None:
                try:
                    os.close(temp_fd)
                except OSError:
                    pass
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass


class KeyStore:
    """
    Round-robin pool of upstream API keys.

    Every dispense advances the cursor by one and persists the pool. Storage
    failures are logged and ignored; the in-memory state stays authoritative.

    Rotation is strict round-robin: a key that just failed upstream is still
    handed out on its next turn.
    """

    def __init__(self, storage: Optional[JsonKeyFile] = None):
        self.storage = storage
        self._keys: list[str] = []
        self._cursor = 0
        # next() has no await inside, so it is atomic under asyncio as well
        self._lock = threading.Lock()

    @property
    def total(self) -> int:
        return len(self._keys)

    @property
    def cursor(self) -> int:
        return self._cursor

    def load(self) -> None:
        """Restore the pool from storage. Never raises."""
        with self._lock:
            if self.storage is None:
                self._keys, self._cursor = [], 0
                return
            try:
                data = self.storage.read()
            except PersistenceError as e:
                logger.warning(f"{e}, starting with empty key pool")
                self._keys, self._cursor = [], 0
                return

            raw_keys = data.get("apiKeys") or []
            if not isinstance(raw_keys, list):
                logger.error("Invalid apiKeys in key file, starting with empty key pool")
                raw_keys = []
            keys = [k.strip() for k in raw_keys if isinstance(k, str) and k.strip()]

            cursor = data.get("currentKeyIndex", 0)
            if isinstance(cursor, bool) or not isinstance(cursor, int) or not 0 <= cursor < len(keys):
                cursor = 0

            self._keys, self._cursor = keys, cursor
            logger.info(f"Loaded {len(keys)} keys from {self.storage.path}")

    def save(self) -> None:
        """Persist pool and cursor. Failures are logged, never raised."""
        with self._lock:
            self._save_locked()

    def _save_locked(self) -> None:
        if self.storage is None:
            return
        try:
            self.storage.write(self._snapshot())
        except PersistenceError as e:
            logger.error(f"Error saving keys: {e}")

    def _snapshot(self) -> dict[str, Any]:
        return {"apiKeys": list(self._keys), "currentKeyIndex": self._cursor}

    def next(self) -> str:
        """Dispense the key under the cursor and advance the cursor."""
        with self._lock:
            if not self._keys:
                raise NoKeysAvailable("No API keys available")
            key = self._keys[self._cursor]
            self._cursor = (self._cursor + 1) % len(self._keys)
            self._save_locked()
            return key

    def add(self, api_key: Any) -> int:
        if not isinstance(api_key, str) or not api_key.strip():
            raise InvalidKey("API key is required")
        with self._lock:
            self._keys.append(api_key.strip())
            self._save_locked()
            total = len(self._keys)
        logger.info(f"Added API key {mask_api_key(api_key.strip())} | total={total}")
        return total

    def remove(self, index: Any) -> int:
        with self._lock:
            position = _parse_index(index)
            if position is None or not 0 <= position < len(self._keys):
                raise IndexOutOfRange("Invalid key index")
            del self._keys[position]
            # keep the cursor on the same upcoming key
            if position < self._cursor:
                self._cursor -= 1
            if self._cursor >= len(self._keys):
                self._cursor = 0
            self._save_locked()
            total = len(self._keys)
        logger.info(f"Deleted API key at index {position} | total={total}")
        return total

    def list(self) -> dict[str, Any]:
        """Redacted view of the pool."""
        with self._lock:
            return {
                "keys": [
                    {"id": i, "key": mask_api_key(key)}
                    for i, key in enumerate(self._keys)
                ],
                "total": len(self._keys),
                "currentIndex": self._cursor,
            }


def _parse_index(value: Any) -> Optional[int]:
    """Accept ints, integral floats and their string forms, as posted by the admin page."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        try:
            return int(value)
        except ValueError:
            try:
                value = float(value)
            except ValueError:
                return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None
