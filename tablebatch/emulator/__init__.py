"""
In-memory table storage emulator.

Serves the entity group transaction (``$batch``) endpoint and the entity
read path over FastAPI, applying each batch atomically.
"""

from tablebatch.emulator.backend import TableBackend, backend
from tablebatch.emulator.api import router, create_app
from tablebatch.emulator.models import BatchOperation, StoredEntity

__all__ = [
    "TableBackend",
    "backend",
    "router",
    "create_app",
    "BatchOperation",
    "StoredEntity",
]
