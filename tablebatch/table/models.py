"""
Data model for table batch operations.

Defines entities as read back from the service, key naming rules, and the
operation descriptors a Batch accumulates.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .types import SYSTEM_KEYS, decode_properties

MAX_KEY_LENGTH = 1024

# Characters the service refuses in PartitionKey and RowKey values
_FORBIDDEN_KEY_CHARS = re.compile(r"[/\\#?\x00-\x1f\x7f-\x9f]")


class KeyValidator:
    """Validates PartitionKey and RowKey values against table storage rules."""

    @staticmethod
    def validate(key: Any) -> tuple[bool, Optional[str]]:
        """
        Validate a partition or row key.

        Rules:
        - Non-empty string, at most 1024 characters
        - No '/', '\\', '#', '?'
        - No control characters (U+0000-U+001F, U+007F-U+009F)

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not isinstance(key, str):
            return False, f"Key must be a string, got {type(key).__name__}"

        if not key:
            return False, "Key cannot be empty"

        if len(key) > MAX_KEY_LENGTH:
            return False, f"Key must be at most {MAX_KEY_LENGTH} characters, got {len(key)}"

        match = _FORBIDDEN_KEY_CHARS.search(key)
        if match:
            return False, f"Key contains forbidden character {match.group()!r}"

        return True, None


def is_valid_key(key: Any) -> bool:
    """Return True if ``key`` may be used as a PartitionKey or RowKey."""
    return KeyValidator.validate(key)[0]


class TableNameValidator:
    """Validates table naming rules."""

    @staticmethod
    def validate(name: str) -> tuple[bool, Optional[str]]:
        """
        Validate table name.

        Rules:
        - 3-63 characters
        - Alphanumeric only
        - Must start with a letter

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not name:
            return False, "Table name cannot be empty"

        if len(name) < 3 or len(name) > 63:
            return False, f"Table name must be between 3 and 63 characters, got {len(name)}"

        if not re.fullmatch(r"[A-Za-z][A-Za-z0-9]*", name):
            return False, "Table name must start with a letter and contain only alphanumeric characters"

        return True, None


class Entity(BaseModel):
    """
    A table entity as stored by the service.

    ``properties`` holds custom properties only. A property written with an
    explicit null value is present with value None.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    table: str
    partition_key: str
    row_key: str
    etag: Optional[str] = None
    timestamp: Optional[datetime] = None
    properties: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_wire(
        cls,
        table: str,
        body: Mapping[str, Any],
        etag: Optional[str] = None,
    ) -> "Entity":
        """
        Build an entity from a JSON entity body.

        Args:
            table: Owning table name
            body: Decoded JSON object from the service
            etag: ETag response header; falls back to ``odata.etag`` in the body
        """
        decoded = decode_properties(body)
        return cls(
            table=table,
            partition_key=decoded.get("PartitionKey", ""),
            row_key=decoded.get("RowKey", ""),
            etag=etag or body.get("odata.etag"),
            timestamp=decoded.get("Timestamp"),
            properties={k: v for k, v in decoded.items() if k not in SYSTEM_KEYS},
        )


class OperationKind(str, Enum):
    """Kinds of entity mutation a batch can carry."""
    INSERT = "insert"
    UPDATE = "update"
    MERGE = "merge"
    DELETE = "delete"
    INSERT_OR_REPLACE = "insert_or_replace"
    INSERT_OR_MERGE = "insert_or_merge"

    @property
    def http_method(self) -> str:
        return _HTTP_METHODS[self]

    @property
    def addresses_entity(self) -> bool:
        """True if the sub-request path names the entity rather than the table."""
        return self is not OperationKind.INSERT

    @property
    def requires_if_match(self) -> bool:
        """
        Update, merge and delete always carry If-Match.

        A PUT or MERGE without If-Match is an upsert on the service side,
        so the header is what separates UPDATE from INSERT_OR_REPLACE.
        """
        return self in (OperationKind.UPDATE, OperationKind.MERGE, OperationKind.DELETE)


_HTTP_METHODS = {
    OperationKind.INSERT: "POST",
    OperationKind.UPDATE: "PUT",
    OperationKind.MERGE: "MERGE",
    OperationKind.DELETE: "DELETE",
    OperationKind.INSERT_OR_REPLACE: "PUT",
    OperationKind.INSERT_OR_MERGE: "MERGE",
}


@dataclass(frozen=True)
class OperationDescriptor:
    """One pending mutation in a batch."""
    kind: OperationKind
    row_key: str
    payload: Optional[Mapping[str, Any]] = None
    if_match_etag: Optional[str] = None

    def __post_init__(self):
        if self.kind is OperationKind.DELETE:
            if self.payload is not None:
                raise ValueError("Delete operations carry no payload")
        elif self.payload is None:
            raise ValueError(f"{self.kind.value} operations require a payload")
        else:
            # Detach from the caller's mapping
            object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @property
    def if_match_header(self) -> Optional[str]:
        """Value of the If-Match header for this operation, or None to omit it."""
        if not self.kind.requires_if_match:
            return None
        return self.if_match_etag or "*"
