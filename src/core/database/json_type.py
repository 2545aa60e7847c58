"""JSON column type: JSONB on PostgreSQL, generic JSON elsewhere.

Columns holding alert details, workflow effect results and tenant settings
only ever store objects or arrays. Values are normalised on the way in so
that Decimals (prices) and datetimes (TTLs) survive serialisation.
"""

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)


def to_json_safe(value: Any) -> Any:
    """Recursively convert Decimals, datetimes and tuples into JSON-native values."""
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [to_json_safe(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    return value


class JSONType(TypeDecorator):
    """JSON column type that only accepts objects and arrays.

    Usage:
        class InventoryAlert(Base):
            details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    Python ``None`` is stored as SQL NULL, not JSON ``null``.
    """

    impl = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> dict | list | None:
        if value is None:
            return None
        if not isinstance(value, dict | list | tuple):
            raise TypeError(f"JSON columns hold objects or arrays, got {type(value).__name__}")
        return to_json_safe(value)

    def process_result_value(self, value: Any, dialect: Dialect) -> dict | list | None:
        if value is None or isinstance(value, dict | list):
            return value

        # Rows written by raw SQL may come back as text
        if isinstance(value, str):
            try:
                decoded = json.loads(value)
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, dict | list):
                return decoded

        logger.error(f"Unexpected value in JSON column: {type(value).__name__} {repr(value)[:100]}")
        raise TypeError(f"Unexpected type in JSON column: {type(value).__name__}")
