"""
Value coercion between source rows and target column types.

Coercion never blocks a batch on one bad cell under the default policy:
non-numeric values become 0, unparseable dates become the current time
and invalid JSON becomes an empty object. The strict policy raises
ValueCoercionError instead. Values that fail UUID validation become None;
a row whose non-nullable UUID column ends up None is dropped and counted.

Example:
    >>> transformer = ValueTransformer()
    >>> transformer.transform_value("42.9", ColumnDefinition(name="n", type="integer"))
    42
    >>> rows, dropped = transformer.transform_rows(source_rows, users_table)
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from livemigrate._time import ensure_utc, utcnow
from livemigrate.adapters.base import Row
from livemigrate.config import CoercionPolicy
from livemigrate.definitions import ColumnDefinition, LogicalType, TableDefinition
from livemigrate.exceptions import ValueCoercionError

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def _to_decimal(value: Any) -> Decimal | None:
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, int):
        number = Decimal(int(value))
    else:
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation:
            return None
    return number if number.is_finite() else None


class ValueTransformer:
    """
    Converts row values to the logical type of their target column.

    Args:
        policy: What to do with values that cannot be converted
    """

    def __init__(self, policy: CoercionPolicy = CoercionPolicy.DEFAULT) -> None:
        self._policy = policy

    @property
    def policy(self) -> CoercionPolicy:
        return self._policy

    def _fallback(self, logical_type: LogicalType, value: Any, default: Any) -> Any:
        if self._policy is CoercionPolicy.STRICT:
            raise ValueCoercionError(logical_type.value, value)
        return default

    def transform_value(self, value: Any, column: ColumnDefinition) -> Any:
        """Convert one value to ``column``'s type. None stays None."""
        if value is None:
            return None
        logical = column.type

        if logical in (LogicalType.STRING, LogicalType.TEXT):
            if isinstance(value, dict | list):
                return json.dumps(value, default=str)
            if isinstance(value, datetime | date):
                return value.isoformat()
            return str(value)

        if logical in (LogicalType.INTEGER, LogicalType.BIGINT):
            if isinstance(value, int):
                return int(value)
            number = _to_decimal(value)
            if number is None:
                return self._fallback(logical, value, 0)
            return math.floor(number)

        if logical is LogicalType.DECIMAL:
            number = _to_decimal(value)
            if number is None:
                return self._fallback(logical, value, Decimal(0))
            return number

        if logical is LogicalType.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                return value.lower() == "true" or value == "1"
            if isinstance(value, int | float | Decimal):
                return value != 0
            return bool(value)

        if logical in (LogicalType.DATE, LogicalType.DATETIME):
            instant = ensure_utc(value)
            if instant is None:
                instant = self._fallback(logical, value, utcnow())
            return instant.date() if logical is LogicalType.DATE else instant

        if logical is LogicalType.JSON:
            if isinstance(value, dict | list):
                return value
            try:
                return json.loads(str(value))
            except ValueError:
                return self._fallback(logical, value, {})

        if logical is LogicalType.UUID:
            text = str(value)
            return text if UUID_PATTERN.match(text) else None

        return value

    def transform_row(self, row: Row, table: TableDefinition) -> Row | None:
        """
        Project a source row onto the target columns and convert each value.

        Columns absent from the source row are left out so target defaults
        apply.

        Returns:
            The converted row, or None if a non-nullable UUID column held
            an invalid value
        """
        result: Row = {}
        for column in table.columns:
            if column.name not in row:
                continue
            original = row[column.name]
            value = self.transform_value(original, column)
            if (
                column.type is LogicalType.UUID
                and original is not None
                and value is None
                and (not column.nullable or column.name == table.primary_key)
            ):
                return None
            result[column.name] = value
        return result

    def transform_rows(
        self, rows: Sequence[Row], table: TableDefinition
    ) -> tuple[list[Row], int]:
        """
        Convert a batch.

        Returns:
            Tuple of (converted rows, number of rows dropped)
        """
        converted: list[Row] = []
        dropped = 0
        for row in rows:
            result = self.transform_row(row, table)
            if result is None:
                dropped += 1
                continue
            converted.append(result)
        if dropped:
            logger.debug(
                "Dropped %d rows of %s with invalid UUID values",
                dropped,
                table.name,
                extra={"table": table.name, "rows_dropped": dropped},
            )
        return converted, dropped


__all__ = ["UUID_PATTERN", "ValueTransformer"]
