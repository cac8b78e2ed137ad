"""
Pydantic models for the table emulator.

Defines stored entities and the parsed form of one batch sub-request.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from tablebatch.table.models import OperationKind
from tablebatch.table.types import encode_properties, format_datetime


class StoredEntity(BaseModel):
    """
    Entity as held by the emulator.

    ``properties`` holds decoded custom property values; a None value is a
    property stored with an explicit null.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    partition_key: str
    row_key: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    etag: str = ""
    properties: Dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        """JSON entity body as returned by Get Entity."""
        body: Dict[str, Any] = {
            "odata.etag": self.etag,
            "PartitionKey": self.partition_key,
            "RowKey": self.row_key,
            "Timestamp@odata.type": "Edm.DateTime",
            "Timestamp": format_datetime(self.timestamp),
        }
        body.update(encode_properties(self.properties))
        return body

    @staticmethod
    def generate_etag(timestamp: datetime) -> str:
        """
        Generate ETag for entity.

        Format: W/"datetime'2025-12-04T10%3A30%3A00.123456Z'"
        """
        ts_str = timestamp.isoformat(timespec='microseconds').replace('+00:00', 'Z')
        ts_str = ts_str.replace(':', '%3A')
        return f'W/"datetime\'{ts_str}\'"'


class BatchOperation(BaseModel):
    """One sub-request of a ``$batch`` changeset, resolved to an operation."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: OperationKind
    table_name: str
    partition_key: str
    row_key: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    if_match: Optional[str] = None
    content_id: Optional[str] = None
