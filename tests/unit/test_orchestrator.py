"""
Unit tests for MigrationOrchestrator.

Tests cover:
- Job creation and validation
- End-to-end runs on in-memory backends (downtime and zero downtime)
- Pause, resume and invalid transitions
- Timeouts and integrity failures
- Rollback to the pre-migration structure
- Event ordering
"""

import asyncio
from uuid import uuid4

import pytest

from livemigrate.adapters import InMemoryAdapter
from livemigrate.config import MigrationConfig
from livemigrate.definitions import ColumnDefinition, TableDefinition
from livemigrate.events import MigrationEventType
from livemigrate.exceptions import (
    IntegrityMismatchError,
    InvalidTransitionError,
    MigrationCancelledError,
    MigrationNotFoundError,
    MigrationTimeoutError,
    RollbackUnsupportedError,
    StrategyValidationError,
)
from livemigrate.migrator import BatchDataMigrator
from livemigrate.models import JobStatus
from livemigrate.observability import ATTR_ERROR_TYPE, ATTR_PROGRESS_PERCENT, MockTracer
from livemigrate.orchestrator import MigrationOrchestrator
from tests.fixtures import (
    downtime_strategy,
    memory_endpoint,
    order_rows,
    orders_table,
    schema_of,
    users_table,
    zero_downtime_strategy,
)

LEGACY_USERS = TableDefinition(
    name="users",
    columns=(
        ColumnDefinition(name="id", type="integer", nullable=False),
        ColumnDefinition(name="email", type="string", nullable=False),
    ),
    primary_key="id",
)


class GatedMigrator(BatchDataMigrator):
    """Holds the full copy until the test opens the gate."""

    def __init__(self, config: MigrationConfig) -> None:
        super().__init__(config, enable_tracing=False)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def migrate_full(self, *args, **kwargs):
        self.entered.set()
        await self.gate.wait()
        return await super().migrate_full(*args, **kwargs)


class SlowMigrator(BatchDataMigrator):
    async def migrate_full(self, *args, **kwargs):
        await asyncio.sleep(5)
        return await super().migrate_full(*args, **kwargs)


class LockWaitMigrator(BatchDataMigrator):
    async def migrate_full(self, *args, **kwargs):
        raise TimeoutError("lock wait exceeded on users")


def gated_orchestrator(config, registry, event_channel):
    migrator = GatedMigrator(config)
    orchestrator = MigrationOrchestrator(
        config,
        registry=registry,
        events=event_channel,
        migrator_factory=lambda cfg: migrator,
        enable_tracing=False,
    )
    return orchestrator, migrator


async def create_job(orchestrator, strategy=None, schema=None):
    return await orchestrator.create_migration(
        memory_endpoint("source"),
        memory_endpoint("target"),
        schema or schema_of(users_table()),
        strategy or downtime_strategy(),
    )


def event_types(channel, job_id):
    return [event.type for event in channel.history if event.job_id == job_id]


class TestCreateMigration:
    @pytest.mark.asyncio
    async def test_new_job_is_pending(self, orchestrator, event_channel):
        job = await create_job(orchestrator)

        assert job.status is JobStatus.PENDING
        assert orchestrator.get_job(job.id) is job
        assert orchestrator.list_jobs() == [job]
        assert event_types(event_channel, job.id) == [MigrationEventType.JOB_CREATED]

    @pytest.mark.asyncio
    async def test_accepts_plain_mappings(self, orchestrator):
        job = await orchestrator.create_migration(
            {"kind": "memory", "database": "source"},
            {"kind": "memory", "database": "target"},
            {"version": "2", "tables": [users_table().model_dump()]},
            {
                "id": "custom",
                "name": "Custom",
                "risk_level": "low",
                "downtime": True,
                "rollback_supported": True,
            },
        )

        assert job.strategy.id == "custom"
        assert job.schema.table_names == ["users"]

    @pytest.mark.asyncio
    async def test_malformed_strategy_is_rejected(self, orchestrator):
        with pytest.raises(StrategyValidationError) as exc_info:
            await orchestrator.create_migration(
                memory_endpoint("source"),
                memory_endpoint("target"),
                schema_of(users_table()),
                {"id": "broken"},
            )

        assert exc_info.value.errors
        assert orchestrator.list_jobs() == []

    @pytest.mark.asyncio
    async def test_unknown_job(self, orchestrator):
        with pytest.raises(MigrationNotFoundError):
            orchestrator.get_status(uuid4())
        with pytest.raises(MigrationNotFoundError):
            await orchestrator.start_migration(uuid4())
        assert orchestrator.get_job(uuid4()) is None

    @pytest.mark.asyncio
    async def test_recommend_strategies_without_advisor(self, orchestrator):
        strategies = await orchestrator.recommend_strategies(
            memory_endpoint("source"), memory_endpoint("target"), schema_of(users_table())
        )
        assert [s.id for s in strategies] == ["default-incremental", "default-full"]


class TestDowntimeMigration:
    @pytest.mark.asyncio
    async def test_runs_to_completion(
        self, orchestrator, populated_source, target_adapter, event_channel
    ):
        job = await create_job(orchestrator)

        await orchestrator.start_migration(job.id)

        assert job.status is JobStatus.COMPLETED
        assert job.progress == 100.0
        assert job.error is None
        assert await target_adapter.count_rows("users") == 25
        messages = [entry.message for entry in job.logs]
        assert "Executing migration with planned downtime" in messages
        assert messages[-1] == "Migration completed successfully"

    @pytest.mark.asyncio
    async def test_events_in_order(self, orchestrator, populated_source, event_channel):
        job = await create_job(orchestrator)

        await orchestrator.start_migration(job.id)

        types = event_types(event_channel, job.id)
        assert [t for t in types if t is not MigrationEventType.JOB_PROGRESS] == [
            MigrationEventType.JOB_CREATED,
            MigrationEventType.JOB_STARTED,
            MigrationEventType.JOB_COMPLETED,
        ]
        progress = [
            event.payload["progress"]
            for event in event_channel.history
            if event.type is MigrationEventType.JOB_PROGRESS
        ]
        assert progress == sorted(progress)
        assert progress[0] == 30
        assert progress[-1] == 100

    @pytest.mark.asyncio
    async def test_stream_ends_with_job(self, orchestrator, populated_source):
        job = await create_job(orchestrator)
        received = []

        async def collect():
            async for event in orchestrator.events.stream(job.id):
                received.append(event.type)

        collector = asyncio.create_task(collect())
        await asyncio.sleep(0)
        await orchestrator.start_migration(job.id)
        await asyncio.wait_for(collector, timeout=1)

        assert received[0] is MigrationEventType.JOB_STARTED
        assert received[-1] is MigrationEventType.JOB_COMPLETED

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, orchestrator, populated_source):
        job = await create_job(orchestrator)
        await orchestrator.start_migration(job.id)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.start_migration(job.id)

    @pytest.mark.asyncio
    async def test_orphaned_running_job_can_be_restarted(self, orchestrator, populated_source):
        job = await create_job(orchestrator)
        job.status = JobStatus.RUNNING

        await orchestrator.start_migration(job.id)

        assert job.status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_integrity_mismatch_fails_job(
        self, orchestrator, source_adapter, event_channel
    ):
        await source_adapter.create_table(orders_table())
        rows = order_rows(3)
        rows[0]["id"] = "not-a-uuid"
        await source_adapter.insert_rows("orders", rows)
        job = await create_job(orchestrator, schema=schema_of(orders_table()))

        with pytest.raises(IntegrityMismatchError) as exc_info:
            await orchestrator.start_migration(job.id)

        assert exc_info.value.mismatches == [
            {"table": "orders", "source_count": 3, "target_count": 2}
        ]
        assert job.status is JobStatus.FAILED
        assert job.error == "Data validation failed for orders: source=3, target=2"
        assert job.ended_at is not None
        assert event_types(event_channel, job.id)[-1] is MigrationEventType.JOB_FAILED

    @pytest.mark.asyncio
    async def test_timeout_fails_job(self, registry, event_channel, populated_source):
        config = MigrationConfig(job_timeout_ms=50)
        orchestrator = MigrationOrchestrator(
            config,
            registry=registry,
            events=event_channel,
            migrator_factory=lambda cfg: SlowMigrator(cfg, enable_tracing=False),
            enable_tracing=False,
        )
        job = await create_job(orchestrator)

        with pytest.raises(MigrationTimeoutError) as exc_info:
            await orchestrator.start_migration(job.id)

        assert exc_info.value.timeout_ms == 50
        assert job.status is JobStatus.FAILED
        assert job.error == "Migration timed out after 50 ms"
        await orchestrator.cleanup()

    @pytest.mark.asyncio
    async def test_timeout_raised_by_the_work_is_not_the_job_timeout(
        self, registry, event_channel, populated_source
    ):
        orchestrator = MigrationOrchestrator(
            MigrationConfig(job_timeout_ms=60_000),
            registry=registry,
            events=event_channel,
            migrator_factory=lambda cfg: LockWaitMigrator(cfg, enable_tracing=False),
            enable_tracing=False,
        )
        job = await create_job(orchestrator)

        with pytest.raises(TimeoutError, match="lock wait exceeded") as exc_info:
            await orchestrator.start_migration(job.id)

        assert not isinstance(exc_info.value, MigrationTimeoutError)
        assert job.status is JobStatus.FAILED
        assert job.error == "lock wait exceeded on users"
        await orchestrator.cleanup()

    @pytest.mark.asyncio
    async def test_failure_span_records_error_type(
        self, config, registry, event_channel, source_adapter
    ):
        tracer = MockTracer()
        orchestrator = MigrationOrchestrator(
            config, registry=registry, events=event_channel, tracer=tracer
        )
        await source_adapter.create_table(orders_table())
        rows = order_rows(2)
        rows[0]["id"] = "not-a-uuid"
        await source_adapter.insert_rows("orders", rows)
        job = await create_job(orchestrator, schema=schema_of(orders_table()))

        with pytest.raises(IntegrityMismatchError):
            await orchestrator.start_migration(job.id)

        (attributes,) = [
            attrs for name, attrs in tracer.spans if name == "livemigrate.orchestrator.job_failed"
        ]
        assert attributes[ATTR_ERROR_TYPE] == "IntegrityMismatchError"
        assert attributes[ATTR_PROGRESS_PERCENT] == job.progress
        await orchestrator.cleanup()


class TestZeroDowntimeMigration:
    @pytest.mark.asyncio
    async def test_runs_to_completion_with_cutover(
        self, orchestrator, populated_source, target_adapter, event_channel
    ):
        job = await create_job(orchestrator, strategy=zero_downtime_strategy())

        await orchestrator.start_migration(job.id)

        assert job.status is JobStatus.COMPLETED
        assert await target_adapter.count_rows("users") == 25
        tables = await target_adapter.list_tables()
        assert "users_shadow" not in tables
        assert any(name.startswith("users_backup_") for name in tables)

        types = event_types(event_channel, job.id)
        assert MigrationEventType.SHADOW_SETUP_COMPLETED in types
        assert types.index(MigrationEventType.CUTOVER_STARTED) < types.index(
            MigrationEventType.CUTOVER_COMPLETED
        )
        assert types[-1] is MigrationEventType.JOB_COMPLETED

    @pytest.mark.asyncio
    async def test_rollback_removes_everything_the_job_created(
        self, orchestrator, populated_source, target_adapter
    ):
        job = await create_job(orchestrator, strategy=zero_downtime_strategy())
        await orchestrator.start_migration(job.id)

        await orchestrator.rollback_migration(job.id)

        assert job.status is JobStatus.COMPLETED
        assert await target_adapter.list_tables() == []
        assert job.logs[-1].message == "Rollback completed successfully"


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_on_completed_job_is_rejected(self, orchestrator, populated_source):
        job = await create_job(orchestrator)
        await orchestrator.start_migration(job.id)
        log_count = len(job.logs)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await orchestrator.pause_migration(job.id)

        assert exc_info.value.current_status == "completed"
        assert job.status is JobStatus.COMPLETED
        assert len(job.logs) == log_count

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, orchestrator):
        job = await create_job(orchestrator)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await orchestrator.resume_migration(job.id)

        assert exc_info.value.current_status == "pending"
        assert job.status is JobStatus.PENDING
        assert job.started_at is None

    @pytest.mark.asyncio
    async def test_pause_requires_running(self, orchestrator):
        job = await create_job(orchestrator)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.pause_migration(job.id)

        assert job.status is JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_pause_and_resume_while_running(
        self, config, registry, event_channel, populated_source, target_adapter
    ):
        orchestrator, migrator = gated_orchestrator(config, registry, event_channel)
        job = await create_job(orchestrator)
        run = asyncio.create_task(orchestrator.start_migration(job.id))
        await asyncio.wait_for(migrator.entered.wait(), timeout=1)

        await orchestrator.pause_migration(job.id)
        migrator.gate.set()
        await asyncio.sleep(0.05)

        status = orchestrator.get_status(job.id)
        assert status.is_paused
        assert status.status is JobStatus.PAUSED
        assert status.elapsed_ms > 0
        assert not run.done()
        assert await target_adapter.count_rows("users") == 0

        await orchestrator.resume_migration(job.id)
        await asyncio.wait_for(run, timeout=1)

        assert job.status is JobStatus.COMPLETED
        assert await target_adapter.count_rows("users") == 25
        types = event_types(event_channel, job.id)
        assert types.index(MigrationEventType.JOB_PAUSED) < types.index(
            MigrationEventType.JOB_RESUMED
        )
        await orchestrator.cleanup()


class TestRollback:
    @pytest.mark.asyncio
    async def test_restores_pre_migration_structure(
        self, orchestrator, populated_source, target_adapter
    ):
        await target_adapter.create_table(LEGACY_USERS)
        job = await create_job(orchestrator)
        await orchestrator.start_migration(job.id)
        assert (await target_adapter.describe_table("users")).column("active") is not None

        await orchestrator.rollback_migration(job.id)

        assert job.status is JobStatus.COMPLETED
        assert await target_adapter.describe_table("users") == LEGACY_USERS
        assert await target_adapter.count_rows("users") == 0

    @pytest.mark.asyncio
    async def test_unsupported_strategy(self, orchestrator, populated_source):
        job = await create_job(orchestrator, strategy=downtime_strategy(rollback_supported=False))
        await orchestrator.start_migration(job.id)

        with pytest.raises(RollbackUnsupportedError):
            await orchestrator.rollback_migration(job.id)

        assert job.status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_pending_job_cannot_roll_back(self, orchestrator):
        job = await create_job(orchestrator)
        with pytest.raises(InvalidTransitionError):
            await orchestrator.rollback_migration(job.id)
        assert job.status is JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_rollback_of_paused_job_stops_execution(
        self, config, registry, event_channel, populated_source, target_adapter
    ):
        orchestrator, migrator = gated_orchestrator(config, registry, event_channel)
        job = await create_job(orchestrator)
        run = asyncio.create_task(orchestrator.start_migration(job.id))
        await asyncio.wait_for(migrator.entered.wait(), timeout=1)
        await orchestrator.pause_migration(job.id)
        migrator.gate.set()

        await asyncio.wait_for(orchestrator.rollback_migration(job.id), timeout=1)

        with pytest.raises(MigrationCancelledError):
            await run
        assert job.status is JobStatus.COMPLETED
        assert await target_adapter.list_tables() == []
        assert event_types(event_channel, job.id)[-1] is MigrationEventType.JOB_ROLLED_BACK
        await orchestrator.cleanup()


class TestCleanup:
    @pytest.mark.asyncio
    async def test_cleanup_disconnects_adapters(
        self, orchestrator, source_adapter: InMemoryAdapter
    ):
        await orchestrator.cleanup()
        await orchestrator.cleanup()

        assert not source_adapter.is_connected
        assert len(orchestrator.registry) == 0
