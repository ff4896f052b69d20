"""
Unit tests for ValueTransformer.

Tests cover:
- Conversion rules for every logical type
- Default fallbacks versus the strict policy
- Row projection and invalid-UUID row dropping
"""

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from livemigrate.config import CoercionPolicy
from livemigrate.definitions import ColumnDefinition, LogicalType, TableDefinition
from livemigrate.exceptions import ValueCoercionError
from livemigrate.transform import ValueTransformer

VALID_UUID = "123e4567-e89b-42d3-a456-426614174000"


def column(logical: str, *, nullable: bool = True, name: str = "c") -> ColumnDefinition:
    return ColumnDefinition(name=name, type=logical, nullable=nullable)


@pytest.fixture
def transformer() -> ValueTransformer:
    return ValueTransformer()


class TestTransformValue:
    def test_none_stays_none(self, transformer: ValueTransformer) -> None:
        for logical in LogicalType:
            assert transformer.transform_value(None, column(logical.value)) is None

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("42.9", 42),
            (-1.5, -2),
            (7, 7),
            (Decimal("3.99"), 3),
            ("abc", 0),
        ],
    )
    def test_integer(self, transformer: ValueTransformer, value: object, expected: int) -> None:
        assert transformer.transform_value(value, column("integer")) == expected

    def test_bigint_keeps_full_precision(self, transformer: ValueTransformer) -> None:
        largest = 9223372036854775807
        assert transformer.transform_value(largest, column("bigint")) == largest
        assert transformer.transform_value(str(largest), column("bigint")) == largest
        assert transformer.transform_value("9223372036854775806.7", column("bigint")) == (
            largest - 1
        )

    def test_decimal(self, transformer: ValueTransformer) -> None:
        assert transformer.transform_value("12.50", column("decimal")) == Decimal("12.50")
        assert transformer.transform_value("n/a", column("decimal")) == 0
        assert transformer.transform_value(0.1, column("decimal")) == Decimal("0.1")

    def test_decimal_is_exact(self, transformer: ValueTransformer) -> None:
        exact = Decimal("12345678901234567.89")
        converted = transformer.transform_value(exact, column("decimal"))
        assert isinstance(converted, Decimal)
        assert converted == exact
        assert transformer.transform_value("NaN", column("decimal")) == 0

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (True, True),
            ("true", True),
            ("TRUE", True),
            ("1", True),
            ("yes", False),
            ("0", False),
            (0, False),
            (3, True),
        ],
    )
    def test_boolean(self, transformer: ValueTransformer, value: object, expected: bool) -> None:
        assert transformer.transform_value(value, column("boolean")) is expected

    def test_string(self, transformer: ValueTransformer) -> None:
        assert transformer.transform_value(12, column("string")) == "12"
        assert transformer.transform_value({"a": 1}, column("text")) == '{"a": 1}'

    def test_datetime_is_utc(self, transformer: ValueTransformer) -> None:
        result = transformer.transform_value("2024-03-01T12:00:00+02:00", column("datetime"))
        assert result == datetime(2024, 3, 1, 10, 0, tzinfo=UTC)

    def test_date(self, transformer: ValueTransformer) -> None:
        result = transformer.transform_value("2024-03-01T12:00:00Z", column("date"))
        assert result == date(2024, 3, 1)

    def test_unparseable_datetime_becomes_now(self, transformer: ValueTransformer) -> None:
        before = datetime.now(UTC)
        result = transformer.transform_value("not a date", column("datetime"))
        assert result >= before

    def test_json(self, transformer: ValueTransformer) -> None:
        assert transformer.transform_value('{"a": [1, 2]}', column("json")) == {"a": [1, 2]}
        assert transformer.transform_value([1], column("json")) == [1]
        assert transformer.transform_value("{broken", column("json")) == {}

    def test_uuid(self, transformer: ValueTransformer) -> None:
        assert transformer.transform_value(VALID_UUID, column("uuid")) == VALID_UUID
        assert transformer.transform_value("not-a-uuid", column("uuid")) is None


class TestStrictPolicy:
    @pytest.mark.parametrize(
        ("value", "logical"),
        [("abc", "integer"), ("abc", "decimal"), ("never", "datetime"), ("{", "json")],
    )
    def test_raises(self, value: str, logical: str) -> None:
        transformer = ValueTransformer(CoercionPolicy.STRICT)

        with pytest.raises(ValueCoercionError) as exc_info:
            transformer.transform_value(value, column(logical))
        assert exc_info.value.value == value
        assert exc_info.value.logical_type == logical


class TestTransformRows:
    @pytest.fixture
    def table(self) -> TableDefinition:
        return TableDefinition(
            name="orders",
            columns=(
                ColumnDefinition(name="id", type="uuid", nullable=False),
                ColumnDefinition(name="ref", type="uuid"),
                ColumnDefinition(name="qty", type="integer"),
                ColumnDefinition(name="status", type="string", default_value="new"),
            ),
            primary_key="id",
        )

    def test_projects_onto_target_columns(
        self, transformer: ValueTransformer, table: TableDefinition
    ) -> None:
        row = transformer.transform_row({"id": VALID_UUID, "qty": "2", "extra": 1}, table)
        assert row == {"id": VALID_UUID, "qty": 2}

    def test_nullable_uuid_becomes_none(
        self, transformer: ValueTransformer, table: TableDefinition
    ) -> None:
        row = transformer.transform_row({"id": VALID_UUID, "ref": "bogus"}, table)
        assert row == {"id": VALID_UUID, "ref": None}

    def test_counts_dropped_rows(
        self, transformer: ValueTransformer, table: TableDefinition
    ) -> None:
        rows = [
            {"id": VALID_UUID, "qty": 1},
            {"id": "bad-1", "qty": 2},
            {"id": "bad-2", "qty": 3},
        ]

        converted, dropped = transformer.transform_rows(rows, table)

        assert dropped == 2
        assert converted == [{"id": VALID_UUID, "qty": 1}]
