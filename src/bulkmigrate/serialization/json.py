"""
JSON serialization utilities for bulkmigrate records.

Stats maps and change payloads are arbitrary caller data. This encoder
covers the non-JSON types callers commonly put in them.

Example:
    >>> from bulkmigrate.serialization import json_dumps, json_loads
    >>> json_dumps({"started": datetime.now(UTC), "skipped": {3, 1}})
    '{"started": "2024-...", "skipped": [1, 3]}'
"""

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
from typing import Any
from uuid import UUID


class BulkMigrateJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for stats and payload values.

    Handles:
    - UUID, PurePath: string form
    - datetime, date: ISO 8601 string
    - Enum: its value
    - Decimal: float
    - set, frozenset: sorted list (insertion order is not meaningful)
    """

    def default(self, obj: Any) -> Any:
        """
        Convert non-serializable objects to JSON-serializable formats.

        Raises:
            TypeError: If object type is not supported
        """
        if isinstance(obj, UUID | PurePath):
            return str(obj)
        if isinstance(obj, datetime | date):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, set | frozenset):
            return sorted(obj, key=str)
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """Serialize ``obj`` to a JSON string using BulkMigrateJSONEncoder."""
    return json.dumps(obj, cls=BulkMigrateJSONEncoder)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize a JSON string.

    Dates and UUIDs stay strings; typed records are rebuilt by their
    pydantic models.
    """
    return json.loads(s)


__all__ = [
    "BulkMigrateJSONEncoder",
    "json_dumps",
    "json_loads",
]
