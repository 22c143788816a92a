# gateway/wallet/storage.py
"""
Client-local key/value storage for the allowance wallet.

A small JSON file standing in for browser localStorage: string keys, string
values, one file per device/profile. Writes go through a temp file and
os.replace so a crash never leaves a half-written record, and the file is
kept owner read/write only.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_PATH = Path.home() / ".voxsol" / "storage.json"

# Owner read/write only
SECURE_FILE_MODE = 0o600


class LocalStorage:
    """File-backed string key/value store."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else DEFAULT_STORAGE_PATH

    def _read_all(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable local storage at {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".storage-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f)
            if os.name == "posix":
                os.chmod(tmp_name, SECURE_FILE_MODE)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get_item(self, key: str) -> Optional[str]:
        return self._read_all().get(key)

    def set_item(self, key: str, value: str) -> None:
        """Persist a value. Raises OSError if the storage is not writable."""
        data = self._read_all()
        data[key] = value
        self._write_all(data)
