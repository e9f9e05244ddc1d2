# tools/metadata.py
import logging
import re
from typing import Any, Dict, List, Mapping, Sequence

from errors import InvalidRequest
from models import COLUMN_TYPES

LOGGER = logging.getLogger(__name__)

TYPE_ALIASES = {
    "string": "text",
    "str": "text",
    "varchar": "text",
    "int": "integer",
    "bigint": "integer",
    "number": "numeric",
    "float": "numeric",
    "double": "numeric",
    "decimal": "numeric",
    "bool": "boolean",
    "date": "timestamp",
    "datetime": "timestamp",
    "timestamptz": "timestamp",
}

DATE_LIKE = re.compile(r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2}:\d{2})?")


def infer_column_type(column: str, sample_rows: Sequence[Mapping[str, Any]]) -> str:
    """Type from the first non-null sample value; text when nothing tells otherwise."""
    for row in sample_rows:
        if not row:
            continue
        value = row.get(column)
        if value is None:
            continue
        if isinstance(value, bool):
            return "boolean"
        if isinstance(value, int):
            return "integer"
        if isinstance(value, float):
            return "integer" if value.is_integer() else "numeric"
        if isinstance(value, str) and DATE_LIKE.match(value):
            return "timestamp"
        return "text"
    return "text"


def load_schema(schema: Mapping[str, Any], sample_rows: Sequence[Mapping[str, Any]]) -> Dict[str, str]:
    """Canonical column -> type map covering every column seen in the sample rows."""
    out: Dict[str, str] = {}
    for column, raw in schema.items():
        typ = str(raw or "").strip().lower()
        typ = TYPE_ALIASES.get(typ, typ)
        if typ not in COLUMN_TYPES:
            raise InvalidRequest(f"Invalid schema: unsupported type {raw!r} for column {column!r}")
        out[str(column)] = typ

    missing: List[str] = []
    for row in sample_rows:
        for column in row.keys():
            if column not in out and column not in missing:
                missing.append(column)
    for column in missing:
        out[column] = infer_column_type(column, sample_rows)
    if missing:
        LOGGER.info("[schema] inferred types for columns missing from schema: %s", missing)
    return out
