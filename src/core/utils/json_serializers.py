"""Shared JSON serialization utilities for type-safe JSON encoding."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any


def json_serializer(obj: Any) -> Any:
    """
    ``default=`` hook for json.dumps that keeps types meaningful.

    - datetime/date -> ISO 8601 string
    - Decimal -> float
    - Path -> string
    - Enum -> value
    - bytes -> UTF-8 text, replacing undecodable bytes
    - everything else -> str()
    """
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    return str(obj)


__all__ = ["json_serializer"]
