"""
OData EDM (Entity Data Model) property codec for table entities.

Converts between Python property values and the JSON entity payload used
on the wire. JSON natively carries strings, 32-bit integers, booleans,
doubles and null; every other EDM type travels as a string value plus a
``<Name>@odata.type`` annotation.

References:
    - OData v3 Primitive Data Types
    - Azure Table Storage Entity Properties (JSON format)
"""

from __future__ import annotations

import base64
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping

from .errors import InvalidArgument

ANNOTATION_SUFFIX = "@odata.type"

INT32_MIN = -2147483648
INT32_MAX = 2147483647

# Keys written by the service that are metadata rather than entity properties
SYSTEM_KEYS = frozenset({"PartitionKey", "RowKey", "Timestamp"})


class EdmType(Enum):
    """
    Entity Data Model primitive types.

    Represents the set of property types supported by table storage.
    """
    STRING = "Edm.String"
    INT32 = "Edm.Int32"
    INT64 = "Edm.Int64"
    DOUBLE = "Edm.Double"
    BOOLEAN = "Edm.Boolean"
    DATETIME = "Edm.DateTime"
    GUID = "Edm.Guid"
    BINARY = "Edm.Binary"
    NULL = "Edm.Null"

    @classmethod
    def from_annotation(cls, annotation: str) -> EdmType:
        """Look up a type by its ``@odata.type`` annotation value."""
        for member in cls:
            if member.value == annotation:
                return member
        raise InvalidArgument(f"Unknown EDM type annotation '{annotation}'")


# Types whose JSON value is always a string
STRING_ENCODED_TYPES = frozenset({EdmType.DATETIME, EdmType.GUID, EdmType.BINARY})


@dataclass(frozen=True)
class TypedValue:
    """
    Value with an explicit EDM type.

    Use it when inference would pick the wrong type, e.g. a small integer
    that must be stored as Edm.Int64 or a string holding a GUID.
    """
    value: Any
    edm_type: EdmType

    def __repr__(self) -> str:
        return f"TypedValue({self.value!r}, {self.edm_type.value})"


def infer_edm_type(value: Any) -> EdmType:
    """
    Infer EDM type from a Python value.

    Raises:
        InvalidArgument: If the value has no table storage representation
    """
    if isinstance(value, TypedValue):
        return value.edm_type
    if value is None:
        return EdmType.NULL
    # bool before int: bool is a subclass of int
    if isinstance(value, bool):
        return EdmType.BOOLEAN
    if isinstance(value, int):
        if INT32_MIN <= value <= INT32_MAX:
            return EdmType.INT32
        return EdmType.INT64
    if isinstance(value, float):
        return EdmType.DOUBLE
    if isinstance(value, str):
        return EdmType.STRING
    if isinstance(value, datetime):
        return EdmType.DATETIME
    if isinstance(value, uuid.UUID):
        return EdmType.GUID
    if isinstance(value, (bytes, bytearray)):
        return EdmType.BINARY
    raise InvalidArgument(
        f"Unsupported property type {type(value).__name__}"
    )


def format_datetime(value: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with a trailing Z. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_datetime(text: str) -> datetime:
    """Parse an ISO-8601 timestamp as written by the service."""
    text = text.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Service timestamps may carry 7 fractional digits; Python accepts 6
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = tail
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def encode_value(name: str, value: Any) -> Dict[str, Any]:
    """
    Encode one property into its JSON member(s).

    Returns:
        Dict with the value entry and, when needed, its type annotation
    """
    edm_type = infer_edm_type(value)
    raw = value.value if isinstance(value, TypedValue) else value

    if raw is None:
        return {name: None}

    try:
        if edm_type == EdmType.STRING:
            return {name: str(raw)}
        if edm_type == EdmType.BOOLEAN:
            return {name: bool(raw)}
        if edm_type == EdmType.INT32:
            number = int(raw)
            if not INT32_MIN <= number <= INT32_MAX:
                raise InvalidArgument(f"Property '{name}' is out of Edm.Int32 range")
            return {name: number}
        if edm_type == EdmType.INT64:
            return {name: str(int(raw)), name + ANNOTATION_SUFFIX: edm_type.value}
        if edm_type == EdmType.DOUBLE:
            number = float(raw)
            if math.isnan(number):
                return {name: "NaN", name + ANNOTATION_SUFFIX: edm_type.value}
            if math.isinf(number):
                text = "Infinity" if number > 0 else "-Infinity"
                return {name: text, name + ANNOTATION_SUFFIX: edm_type.value}
            return {name: number, name + ANNOTATION_SUFFIX: edm_type.value}
        if edm_type == EdmType.DATETIME:
            if isinstance(raw, str):
                raw = parse_datetime(raw)
            return {name: format_datetime(raw), name + ANNOTATION_SUFFIX: edm_type.value}
        if edm_type == EdmType.GUID:
            return {name: str(uuid.UUID(str(raw))), name + ANNOTATION_SUFFIX: edm_type.value}
        if edm_type == EdmType.BINARY:
            encoded = base64.b64encode(bytes(raw)).decode("ascii")
            return {name: encoded, name + ANNOTATION_SUFFIX: edm_type.value}
    except InvalidArgument:
        raise
    except (TypeError, ValueError) as e:
        raise InvalidArgument(
            f"Property '{name}' cannot be encoded as {edm_type.value}: {e}"
        ) from e

    raise InvalidArgument(f"Property '{name}' has unsupported type {edm_type.value}")


def decode_value(value: Any, edm_type: EdmType) -> Any:
    """
    Decode one JSON value given its (annotated or implied) EDM type.

    Raises:
        InvalidArgument: If the JSON value cannot hold that type
    """
    if value is None:
        return None
    if edm_type in STRING_ENCODED_TYPES and not isinstance(value, str):
        raise InvalidArgument(
            f"{edm_type.value} value must be a JSON string, got {type(value).__name__}"
        )
    if edm_type == EdmType.BOOLEAN and not isinstance(value, bool):
        raise InvalidArgument(f"Edm.Boolean value must be true or false, got {value!r}")

    try:
        if edm_type == EdmType.INT64 or edm_type == EdmType.INT32:
            return int(value)
        if edm_type == EdmType.DOUBLE:
            if isinstance(value, str):
                return float(value.replace("Infinity", "inf"))
            return float(value)
        if edm_type == EdmType.DATETIME:
            return parse_datetime(value)
        if edm_type == EdmType.GUID:
            return uuid.UUID(value)
        if edm_type == EdmType.BINARY:
            return base64.b64decode(value, validate=True)
    except (TypeError, ValueError) as e:
        raise InvalidArgument(f"Invalid {edm_type.value} value {value!r}: {e}") from e
    return value


def encode_properties(properties: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Encode a property mapping into a JSON entity body.

    Raises:
        InvalidArgument: If a property name or value cannot be represented
    """
    body: Dict[str, Any] = {}
    for name, value in properties.items():
        if not isinstance(name, str) or not name:
            raise InvalidArgument("Property names must be non-empty strings")
        if name.endswith(ANNOTATION_SUFFIX) or name.startswith("odata."):
            raise InvalidArgument(f"Property name '{name}' is reserved")
        body.update(encode_value(name, value))
    return body


def decode_properties(body: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Decode a JSON entity body into a property mapping.

    OData metadata members and type annotations are consumed, not returned.
    System keys are kept; callers decide whether to strip them.
    """
    properties: Dict[str, Any] = {}
    for name, value in body.items():
        if name.startswith("odata.") or name.endswith(ANNOTATION_SUFFIX):
            continue
        annotation = body.get(name + ANNOTATION_SUFFIX)
        if annotation is not None:
            edm_type = EdmType.from_annotation(annotation)
        elif name == "Timestamp" and isinstance(value, str):
            edm_type = EdmType.DATETIME
        else:
            edm_type = _implied_type(value)
        properties[name] = decode_value(value, edm_type)
    return properties


def _implied_type(value: Any) -> EdmType:
    """Type of an unannotated JSON value."""
    if value is None:
        return EdmType.NULL
    if isinstance(value, bool):
        return EdmType.BOOLEAN
    if isinstance(value, int):
        return EdmType.INT32
    if isinstance(value, float):
        return EdmType.DOUBLE
    return EdmType.STRING
