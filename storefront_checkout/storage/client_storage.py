"""Client storage — one encrypted file per key, keyed per profile directory."""
import logging
import os
import re
from pathlib import Path

from cryptography.fernet import InvalidToken

from .crypto import StorageCrypto

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[a-z0-9_\-]+$")


class ClientStorage:
    """Durable key/value store. Values are dicts, encrypted at rest.

    Plays the role browser localStorage plays for a storefront: it survives
    restarts and belongs to one profile directory.
    """

    def __init__(self, base_dir: Path, crypto: StorageCrypto | None = None):
        self._base_dir = base_dir
        self._crypto = crypto or StorageCrypto(key_path=base_dir / "storage.key")

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _path_for(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self._base_dir / f"{key}.enc"

    def exists(self, key: str) -> bool:
        return self._path_for(key).exists()

    def get(self, key: str) -> dict | None:
        """Load a value, or None when absent or unreadable."""
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            return self._crypto.decrypt(path.read_bytes())
        except (InvalidToken, ValueError) as e:
            logger.error("Discarding unreadable storage entry %s: %s", key, e)
            return None

    def set(self, key: str, value: dict) -> None:
        """Encrypt and write atomically (temp file + rename)."""
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(self._crypto.encrypt(value))
        os.replace(tmp, path)
        logger.debug("Stored %s", key)

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        if path.exists():
            path.unlink()
            logger.debug("Deleted %s", key)
