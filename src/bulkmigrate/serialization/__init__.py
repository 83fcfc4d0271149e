"""Serialization utilities for bulkmigrate."""

from bulkmigrate.serialization.json import BulkMigrateJSONEncoder, json_dumps, json_loads

__all__ = [
    "BulkMigrateJSONEncoder",
    "json_dumps",
    "json_loads",
]
