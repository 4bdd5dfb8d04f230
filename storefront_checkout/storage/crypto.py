"""Symmetric encryption for client storage files (Fernet)."""
import json
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)


class StorageCrypto:
    """Encrypts JSON-serialisable dicts with a key kept next to the data."""

    def __init__(self, key_path: Path):
        self._key_path = key_path
        self._fernet: Fernet | None = None

    def _get_fernet(self) -> Fernet:
        if self._fernet is not None:
            return self._fernet
        if self._key_path.exists():
            key = self._key_path.read_bytes()
        else:
            self._key_path.parent.mkdir(parents=True, exist_ok=True)
            key = Fernet.generate_key()
            self._key_path.write_bytes(key)
            os.chmod(self._key_path, 0o600)
            logger.info("Created storage key at %s", self._key_path)
        self._fernet = Fernet(key)
        return self._fernet

    def encrypt(self, data: dict) -> bytes:
        return self._get_fernet().encrypt(json.dumps(data).encode("utf-8"))

    def decrypt(self, token: bytes) -> dict:
        """Raises cryptography.fernet.InvalidToken on tampered data."""
        return json.loads(self._get_fernet().decrypt(token).decode("utf-8"))
