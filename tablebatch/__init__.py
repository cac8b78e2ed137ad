"""
tablebatch: atomic entity batches for Azure-style table storage.

Builds partition-scoped entity batches, sends them as one transactional
request, and maps the service response back to per-operation ETags.
"""

__version__ = "0.1.0"

from .table.batch import Batch
from .table.service import TableService

__all__ = ["Batch", "TableService", "__version__"]
