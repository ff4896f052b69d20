"""
Unit tests for endpoint and structural definitions.
"""

import pytest
from pydantic import ValidationError

from livemigrate.definitions import (
    BackendKind,
    ColumnDefinition,
    ConstraintDefinition,
    IndexDefinition,
    LogicalType,
    StorageEndpoint,
    StructuralDefinition,
    TableDefinition,
    normalize_type,
)
from tests.fixtures import users_table


class TestStorageEndpoint:
    def test_signature(self) -> None:
        endpoint = StorageEndpoint(kind="postgresql", host="db", port=5432, database="app")
        assert endpoint.signature == "postgresql://db:5432/app"

    def test_signature_without_port(self) -> None:
        endpoint = StorageEndpoint(kind="memory", database="src")
        assert endpoint.signature == "memory://localhost:/src"

    def test_kind_is_normalized(self) -> None:
        assert StorageEndpoint(kind=" MySQL ", database="app").kind == "mysql"
        assert StorageEndpoint(kind=BackendKind.MONGODB, database="app").kind == "mongodb"

    def test_unknown_kind_is_accepted(self) -> None:
        assert StorageEndpoint(kind="oracle", database="app").kind == "oracle"

    def test_password_is_masked(self) -> None:
        endpoint = StorageEndpoint(kind="postgresql", database="app", password="s3cret")
        assert "s3cret" not in repr(endpoint)
        assert endpoint.password is not None
        assert endpoint.password.get_secret_value() == "s3cret"

    def test_is_frozen(self) -> None:
        endpoint = StorageEndpoint(kind="memory", database="app")
        with pytest.raises(ValidationError):
            endpoint.database = "other"  # type: ignore[misc]

    @pytest.mark.parametrize("port", [0, 70000])
    def test_port_range(self, port: int) -> None:
        with pytest.raises(ValidationError):
            StorageEndpoint(kind="postgresql", database="app", port=port)

    def test_database_required(self) -> None:
        with pytest.raises(ValidationError):
            StorageEndpoint(kind="postgresql", database="")


class TestLogicalTypes:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("varchar", LogicalType.STRING),
            ("INT", LogicalType.INTEGER),
            ("jsonb", LogicalType.JSON),
            ("timestamp", LogicalType.DATETIME),
            ("uuid", "uuid"),
        ],
    )
    def test_normalize_type(self, raw: str, expected: object) -> None:
        assert normalize_type(raw) == expected

    def test_column_accepts_alias(self) -> None:
        column = ColumnDefinition(name="email", type="varchar")
        assert column.type is LogicalType.STRING

    def test_column_rejects_unknown_type(self) -> None:
        with pytest.raises(ValidationError):
            ColumnDefinition(name="geom", type="geometry")


class TestColumnDefinition:
    def test_structurally_equals_ignores_name(self) -> None:
        a = ColumnDefinition(name="a", type="integer", nullable=False)
        b = ColumnDefinition(name="b", type="integer", nullable=False)
        assert a.structurally_equals(b)

    def test_structurally_equals_compares_default(self) -> None:
        a = ColumnDefinition(name="a", type="boolean", default_value=True)
        b = ColumnDefinition(name="a", type="boolean", default_value=False)
        assert not a.structurally_equals(b)


class TestTableDefinition:
    def test_lookup(self) -> None:
        table = users_table()
        assert table.column_names[:2] == ["id", "email"]
        assert table.column("email") is not None
        assert table.column("missing") is None

    def test_renamed_keeps_structure(self) -> None:
        table = users_table()
        shadow = table.renamed("users_shadow")

        assert shadow.name == "users_shadow"
        assert shadow.columns == table.columns
        assert shadow.primary_key == "id"
        assert table.name == "users"


class TestStructuralDefinition:
    def test_from_mapping(self) -> None:
        schema = StructuralDefinition.model_validate(
            {
                "version": "3",
                "tables": [
                    {
                        "name": "users",
                        "columns": [{"name": "id", "type": "int", "nullable": False}],
                        "primary_key": "id",
                    }
                ],
                "indexes": [{"name": "ix_users_id", "table": "users", "columns": ["id"]}],
            }
        )

        assert schema.table_names == ["users"]
        assert schema.table("users") is not None
        assert schema.table("nope") is None
        assert [i.name for i in schema.indexes_for("users")] == ["ix_users_id"]

    def test_index_requires_columns(self) -> None:
        with pytest.raises(ValidationError):
            IndexDefinition(name="ix", table="users", columns=())

    def test_constraint_type_is_closed(self) -> None:
        with pytest.raises(ValidationError):
            ConstraintDefinition(name="c", type="FOREIGN", definition="x")

    def test_table_is_hashable_value(self) -> None:
        assert TableDefinition(name="a") == TableDefinition(name="a")
