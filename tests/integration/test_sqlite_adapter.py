"""
Integration tests for SqlAdapter against a real SQLite database.

Tests cover:
- Table lifecycle through Alembic operations
- Paged reads, upserts and change queries
- Transactional renames
- Change-capture triggers mirroring a table into its shadow
- A full table copy between two databases
"""

from datetime import UTC, timedelta

import pytest

from livemigrate.adapters import SqlAdapter, StorageAdapter
from livemigrate.definitions import (
    ColumnDefinition,
    IndexDefinition,
    LogicalType,
    TableDefinition,
)
from livemigrate.exceptions import BackendExecutionError
from livemigrate.migrator import BatchDataMigrator
from livemigrate.models import EPOCH, ReplicationMode, TableChanges
from livemigrate.replication import MAINTENANCE_TABLE, ShadowReplicationManager
from tests.fixtures import BASE_TIME, schema_of, user_rows, users_table

pytestmark = pytest.mark.integration


class TestStructure:
    @pytest.mark.asyncio
    async def test_create_and_describe(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())

        definition = await sqlite_adapter.describe_table("users")

        assert await sqlite_adapter.list_tables() == ["users"]
        assert definition.primary_key == "id"
        assert definition.column_names == users_table().column_names
        assert definition.column("id").type is LogicalType.INTEGER
        assert definition.column("id").nullable is False
        assert definition.column("active").type is LogicalType.BOOLEAN
        assert definition.column("active").default_value is True
        assert definition.column("updated_at").type is LogicalType.DATETIME

    @pytest.mark.asyncio
    async def test_describe_missing_table(self, sqlite_adapter: SqlAdapter) -> None:
        assert (await sqlite_adapter.describe_table("missing")).columns == ()
        assert not await sqlite_adapter.table_exists("missing")

    @pytest.mark.asyncio
    async def test_evolve_adds_and_drops_columns(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        await sqlite_adapter.insert_rows("users", user_rows(3))

        await sqlite_adapter.evolve_table(
            "users",
            TableChanges(
                add=(ColumnDefinition(name="tier", type="string", default_value="free"),),
                drop=("active",),
            ),
        )

        definition = await sqlite_adapter.describe_table("users")
        assert "tier" in definition.column_names
        assert "active" not in definition.column_names
        rows = await sqlite_adapter.select_rows("users", 10)
        assert [row["tier"] for row in rows] == ["free", "free", "free"]

    @pytest.mark.asyncio
    async def test_indexes(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        index = IndexDefinition(name="ix_users_email", table="users", columns=("email",))

        await sqlite_adapter.create_index(index)
        names = await sqlite_adapter.run_command(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = :table",
            {"table": "users"},
        )
        assert {"name": "ix_users_email"} in names

        await sqlite_adapter.drop_index("ix_users_email", "users")
        names = await sqlite_adapter.run_command(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND name = 'ix_users_email'"
        )
        assert names == []

    @pytest.mark.asyncio
    async def test_statistics_refresh_and_trigger_toggle(
        self, sqlite_adapter: SqlAdapter
    ) -> None:
        await sqlite_adapter.create_table(users_table())

        await sqlite_adapter.refresh_statistics("users")
        with pytest.raises(BackendExecutionError):
            await sqlite_adapter.suspend_triggers("users")

    @pytest.mark.asyncio
    async def test_driver_errors_are_wrapped(self, sqlite_adapter: SqlAdapter) -> None:
        with pytest.raises(BackendExecutionError) as exc_info:
            await sqlite_adapter.run_command("SELECT * FROM missing")
        assert exc_info.value.operation == "run_command"
        assert exc_info.value.cause is not None


class TestRows:
    @pytest.mark.asyncio
    async def test_select_rows_is_ordered_by_key(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        await sqlite_adapter.insert_rows("users", list(reversed(user_rows(25))))

        first = await sqlite_adapter.select_rows("users", 10)
        last = await sqlite_adapter.select_rows("users", 10, offset=20)

        assert [row["id"] for row in first] == list(range(1, 11))
        assert [row["id"] for row in last] == list(range(21, 26))
        assert await sqlite_adapter.count_rows("users") == 25

    @pytest.mark.asyncio
    async def test_duplicate_key_without_upsert_fails(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        await sqlite_adapter.insert_rows("users", user_rows(1))

        with pytest.raises(BackendExecutionError):
            await sqlite_adapter.insert_rows("users", user_rows(1))

    @pytest.mark.asyncio
    async def test_upsert_by_key(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        await sqlite_adapter.insert_rows("users", user_rows(2))
        changed = {**user_rows(1)[0], "email": "changed@example.com"}

        await sqlite_adapter.insert_rows("users", [changed], key="id")

        rows = await sqlite_adapter.select_rows("users", 10)
        assert len(rows) == 2
        assert rows[0]["email"] == "changed@example.com"

    @pytest.mark.asyncio
    async def test_changed_since_and_latest_timestamp(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        assert await sqlite_adapter.latest_timestamp("users") is None
        await sqlite_adapter.insert_rows("users", user_rows(10))

        rows = await sqlite_adapter.select_changed_since(
            "users", BASE_TIME + timedelta(seconds=7), 100
        )
        latest = await sqlite_adapter.latest_timestamp("users")

        assert [row["id"] for row in rows] == [8, 9, 10]
        assert latest == BASE_TIME + timedelta(seconds=10)
        assert latest.tzinfo is UTC

    @pytest.mark.asyncio
    async def test_changed_since_pages_through_tied_timestamps(
        self, sqlite_adapter: SqlAdapter
    ) -> None:
        await sqlite_adapter.create_table(users_table())
        tied = [{**row, "created_at": BASE_TIME, "updated_at": BASE_TIME} for row in user_rows(5)]
        await sqlite_adapter.insert_rows("users", list(reversed(tied)))

        first = await sqlite_adapter.select_changed_since("users", EPOCH, 2)
        rest = await sqlite_adapter.select_changed_since("users", BASE_TIME, 10, after_key=2)

        assert [row["id"] for row in first] == [1, 2]
        assert [row["id"] for row in rest] == [3, 4, 5]

    @pytest.mark.asyncio
    async def test_change_stamp_falls_back_to_created_at(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        rows = user_rows(3)
        rows[0]["updated_at"] = None
        rows[0]["created_at"] = BASE_TIME + timedelta(hours=1)
        await sqlite_adapter.insert_rows("users", rows)

        changed = await sqlite_adapter.select_changed_since("users", BASE_TIME, 10)

        assert [row["id"] for row in changed] == [2, 3, 1]

    @pytest.mark.asyncio
    async def test_keyless_table_pages_in_a_stable_order(self, sqlite_adapter: SqlAdapter) -> None:
        keyless = TableDefinition(
            name="events",
            columns=(
                ColumnDefinition(name="label", type="string"),
                ColumnDefinition(name="payload", type="json"),
            ),
        )
        await sqlite_adapter.create_table(keyless)
        labels = ["delta", "alpha", "echo", "charlie", "bravo"]
        await sqlite_adapter.insert_rows(
            "events", [{"label": label, "payload": {"n": i}} for i, label in enumerate(labels)]
        )

        pages = [await sqlite_adapter.select_rows("events", 2, offset=n) for n in (0, 2, 4)]

        assert [row["label"] for page in pages for row in page] == sorted(labels)

    @pytest.mark.asyncio
    async def test_delete_rows(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        await sqlite_adapter.insert_rows("users", user_rows(4))

        assert await sqlite_adapter.delete_rows("users") == 4
        assert await sqlite_adapter.count_rows("users") == 0


class TestTransactions:
    @pytest.mark.asyncio
    async def test_rename_rolls_back(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        await sqlite_adapter.create_table(users_table("users_shadow"))

        with pytest.raises(RuntimeError):
            async with sqlite_adapter.transaction():
                await sqlite_adapter.rename_table("users", "users_backup")
                await sqlite_adapter.rename_table("users_shadow", "users")
                raise RuntimeError("abort cutover")

        assert sorted(await sqlite_adapter.list_tables()) == ["users", "users_shadow"]

    @pytest.mark.asyncio
    async def test_rename_commits(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        await sqlite_adapter.insert_rows("users", user_rows(3))

        async with sqlite_adapter.transaction():
            await sqlite_adapter.rename_table("users", "people")

        assert await sqlite_adapter.list_tables() == ["people"]
        assert await sqlite_adapter.count_rows("people") == 3


class TestChangeCapture:
    @pytest.mark.asyncio
    async def test_triggers_mirror_writes(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        await sqlite_adapter.create_table(users_table("users_shadow"))
        await sqlite_adapter.install_change_capture(users_table(), "users_shadow")

        await sqlite_adapter.insert_rows("users", user_rows(3))
        await sqlite_adapter.run_command(
            "UPDATE users SET email = 'moved@example.com' WHERE id = 2"
        )
        await sqlite_adapter.run_command("DELETE FROM users WHERE id = 3")

        shadow = await sqlite_adapter.select_rows("users_shadow", 10)
        assert [row["id"] for row in shadow] == [1, 2]
        assert shadow[1]["email"] == "moved@example.com"

    @pytest.mark.asyncio
    async def test_removed_triggers_stop_mirroring(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        await sqlite_adapter.create_table(users_table("users_shadow"))
        await sqlite_adapter.install_change_capture(users_table(), "users_shadow")

        await sqlite_adapter.remove_change_capture("users", "users_shadow")
        await sqlite_adapter.insert_rows("users", user_rows(2))

        assert await sqlite_adapter.count_rows("users_shadow") == 0


class TestCopyBetweenDatabases:
    @pytest.mark.asyncio
    async def test_full_copy(self, sqlite_pair: tuple[StorageAdapter, StorageAdapter]) -> None:
        source, target = sqlite_pair
        for adapter in (source, target):
            await adapter.create_table(users_table())
        await source.insert_rows("users", user_rows(45))
        schema = schema_of(users_table())

        migrator = BatchDataMigrator(enable_tracing=False)
        migrator.set_batch_size(20)
        result = await migrator.migrate_full(source, target, schema)

        assert result.rows_written == 45
        assert result.pages_fetched == 3
        report = await migrator.validate_data_integrity(source, target, schema)
        assert report.is_valid


class TestTriggerReplication:
    @pytest.mark.asyncio
    async def test_same_database_cutover(self, sqlite_adapter: SqlAdapter) -> None:
        await sqlite_adapter.create_table(users_table())
        await sqlite_adapter.insert_rows("users", user_rows(5))
        manager = ShadowReplicationManager(sqlite_adapter, sqlite_adapter, enable_tracing=False)

        await manager.setup_shadow_writes(schema_of(users_table()))
        assert manager.streams["users"].mode is ReplicationMode.TRIGGER
        assert await sqlite_adapter.count_rows("users_shadow") == 5

        await sqlite_adapter.insert_rows("users", user_rows(2, start=6))
        assert await sqlite_adapter.count_rows("users_shadow") == 7

        result = await manager.cutover()
        await manager.cleanup()

        backup = result.swapped["users"]
        assert sorted(await sqlite_adapter.list_tables()) == sorted(
            ["users", backup, MAINTENANCE_TABLE.name]
        )
        assert await sqlite_adapter.count_rows("users") == 7
        assert await sqlite_adapter.count_rows(MAINTENANCE_TABLE.name) == 0
