"""Encrypted durable client-side storage for cart and receipt state."""
from .client_storage import ClientStorage
from .crypto import StorageCrypto

__all__ = ["ClientStorage", "StorageCrypto"]
