"""
MigrationOrchestrator - Drives migration jobs through their lifecycle.

The orchestrator is the entry point for callers. It owns the job state
machine, resolves and caches one adapter per endpoint, and sequences the
planner, the data migrator and the shadow replication manager according
to the job's strategy.

Execution paths:
    Planned downtime:
        schema (30%) -> full copy (30-90%) -> integrity check (100%)
    Zero downtime:
        shadow setup (10%) -> schema (30%) -> incremental copy (30-80%)
        -> cutover (95%) -> integrity check (100%)

Concurrency:
    Operations on one job are serialized by that job's lock. A running
    execution holds the lock only while it changes the job's status, so
    pause, resume and status queries are served while it runs. Pause is
    honored at the next batch boundary.

Usage:
    >>> orchestrator = MigrationOrchestrator(MigrationConfig(job_timeout_ms=3_600_000))
    >>> job = await orchestrator.create_migration(source, target, schema, strategy)
    >>> await orchestrator.start_migration(job.id)
    >>> status = orchestrator.get_status(job.id)
    >>> await orchestrator.cleanup()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from livemigrate.adapters.base import StorageAdapter
from livemigrate.adapters.factory import AdapterRegistry
from livemigrate.config import MigrationConfig
from livemigrate.definitions import StorageEndpoint, StructuralDefinition
from livemigrate.events import EventChannel, MigrationEventType
from livemigrate.exceptions import (
    IntegrityMismatchError,
    InvalidTransitionError,
    MigrationError,
    MigrationNotFoundError,
    MigrationTimeoutError,
    RollbackUnsupportedError,
)
from livemigrate.migrator import BatchDataMigrator, JobControl
from livemigrate.models import (
    JobStatus,
    LogLevel,
    MigrationJob,
    MigrationStatus,
)
from livemigrate.observability import (
    ATTR_DOWNTIME,
    ATTR_ERROR_TYPE,
    ATTR_JOB_ID,
    ATTR_JOB_STATUS,
    ATTR_PROGRESS_PERCENT,
    ATTR_STRATEGY_ID,
    Tracer,
    create_tracer,
)
from livemigrate.planner import SchemaEvolutionPlanner
from livemigrate.replication import ShadowReplicationManager, shadow_name
from livemigrate.strategies import (
    OptimizationConstraints,
    Strategy,
    StrategyAdvisor,
    resolve_strategies,
    validate_strategy,
)

logger = logging.getLogger(__name__)


def _error_message(error: BaseException) -> str:
    if isinstance(error, MigrationError):
        return error.message
    return str(error) or type(error).__name__


class MigrationOrchestrator:
    """
    Creates, runs and controls migration jobs.

    Args:
        config: Migration configuration shared by all jobs
        registry: Adapter cache (a new one is created if None)
        events: Outbound event channel (a new one is created if None)
        planner: Schema planner (a new one is created if None)
        migrator_factory: Builds the data migrator for a job
        advisor: Optional strategy advisor used by recommend_strategies
        tracer: Optional custom Tracer instance
        enable_tracing: If True, emit traces (default: True)
    """

    def __init__(
        self,
        config: MigrationConfig | None = None,
        *,
        registry: AdapterRegistry | None = None,
        events: EventChannel | None = None,
        planner: SchemaEvolutionPlanner | None = None,
        migrator_factory: Callable[[MigrationConfig], BatchDataMigrator] | None = None,
        advisor: StrategyAdvisor | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._config = config or MigrationConfig()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._registry = registry or AdapterRegistry(
            tracer=self._tracer, enable_tracing=self._enable_tracing
        )
        self._events = events or EventChannel(queue_size=self._config.event_queue_size)
        self._planner = planner or SchemaEvolutionPlanner(tracer=self._tracer)
        self._migrator_factory = migrator_factory or (
            lambda cfg: BatchDataMigrator(cfg, tracer=self._tracer)
        )
        self._advisor = advisor

        self._jobs: dict[UUID, MigrationJob] = {}
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._controls: dict[UUID, JobControl] = {}
        self._executing: dict[UUID, asyncio.Event] = {}
        self._replication: dict[UUID, ShadowReplicationManager] = {}
        self._backups: dict[UUID, dict[str, str]] = {}

    @property
    def events(self) -> EventChannel:
        return self._events

    @property
    def registry(self) -> AdapterRegistry:
        return self._registry

    @property
    def config(self) -> MigrationConfig:
        return self._config

    # -- queries --------------------------------------------------------

    def get_job(self, job_id: UUID) -> MigrationJob | None:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[MigrationJob]:
        return list(self._jobs.values())

    def get_status(self, job_id: UUID) -> MigrationStatus:
        """
        Snapshot of a job.

        Raises:
            MigrationNotFoundError: If the job does not exist
        """
        job = self._require(job_id)
        elapsed_ms = 0.0
        if job.started_at is not None:
            end = job.ended_at or datetime.now(UTC)
            elapsed_ms = (end - job.started_at).total_seconds() * 1000
        return MigrationStatus(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            elapsed_ms=elapsed_ms,
            is_paused=job.status is JobStatus.PAUSED,
            error=job.error,
            log_count=len(job.logs),
        )

    async def recommend_strategies(
        self,
        source: StorageEndpoint,
        target: StorageEndpoint,
        schema: StructuralDefinition,
        constraints: OptimizationConstraints | None = None,
    ) -> list[Strategy]:
        """Validated, ranked strategy candidates (defaults if the advisor fails)."""
        return await resolve_strategies(self._advisor, source, target, schema, constraints)

    # -- lifecycle ------------------------------------------------------

    async def create_migration(
        self,
        source: StorageEndpoint | Mapping[str, Any],
        target: StorageEndpoint | Mapping[str, Any],
        schema: StructuralDefinition | Mapping[str, Any],
        strategy: Strategy | Mapping[str, Any],
    ) -> MigrationJob:
        """
        Register a new job in PENDING. Nothing is executed.

        Raises:
            StrategyValidationError: If the strategy is malformed
            pydantic.ValidationError: If an endpoint or the schema is malformed
        """
        job = MigrationJob(
            source=StorageEndpoint.model_validate(source),
            target=StorageEndpoint.model_validate(target),
            strategy=validate_strategy(strategy),
            schema=StructuralDefinition.model_validate(schema),
        )
        self._jobs[job.id] = job
        self._locks[job.id] = asyncio.Lock()
        job.add_log(LogLevel.INFO, "Migration job created", strategy=job.strategy.id)
        self._events.emit(
            MigrationEventType.JOB_CREATED,
            job.id,
            strategy=job.strategy.id,
            tables=job.schema.table_names,
        )
        return job

    async def start_migration(self, job_id: UUID) -> MigrationJob:
        """
        Run a job to completion.

        Accepts a PENDING job, or a RUNNING job with no live execution
        (an orphaned run, which is resumed from the start).

        Raises:
            MigrationNotFoundError: If the job does not exist
            InvalidTransitionError: If the job cannot be started
            MigrationTimeoutError: If the job exceeded job_timeout_ms
            MigrationError: Whatever failure moved the job to FAILED
        """
        job = self._require(job_id)
        async with self._locks[job_id]:
            orphaned = job.status is JobStatus.RUNNING and job_id not in self._executing
            if job.status is not JobStatus.PENDING and not orphaned:
                raise InvalidTransitionError(job_id, job.status.value, "start")
            if not orphaned:
                job.status = JobStatus.RUNNING
                job.started_at = datetime.now(UTC)
            control = JobControl()
            self._controls[job_id] = control
            finished = asyncio.Event()
            self._executing[job_id] = finished
            job.add_log(
                LogLevel.INFO, f"Starting migration with strategy: {job.strategy.name}"
            )
            self._events.emit(MigrationEventType.JOB_STARTED, job_id, strategy=job.strategy.id)

        try:
            with self._tracer.span(
                "livemigrate.orchestrator.start_migration",
                {
                    ATTR_JOB_ID: str(job_id),
                    ATTR_STRATEGY_ID: job.strategy.id,
                    ATTR_DOWNTIME: job.strategy.downtime,
                },
            ):
                timeout_ms = self._config.job_timeout_ms
                deadline = None if timeout_ms is None else timeout_ms / 1000
                try:
                    async with asyncio.timeout(deadline) as scope:
                        await self._execute(job, control)
                except TimeoutError as e:
                    if not scope.expired():
                        raise
                    raise MigrationTimeoutError(job_id, timeout_ms or 0) from e
                await self._settle(job, control)
        except BaseException as e:
            await self._fail(job, e)
            raise
        finally:
            self._controls.pop(job_id, None)
            self._executing.pop(job_id, None)
            finished.set()
        return job

    async def _execute(self, job: MigrationJob, control: JobControl) -> None:
        job.add_log(LogLevel.INFO, "Initializing database connections")
        source = await self._registry.get(job.source)
        target = await self._registry.get(job.target)

        if job.baseline is None:
            job.baseline = await self._planner.describe_schema(target, job.schema.table_names)

        migrator = self._migrator_factory(self._config)
        if job.strategy.downtime:
            await self._execute_with_downtime(job, control, source, target, migrator)
        else:
            await self._execute_zero_downtime(job, control, source, target, migrator)

    async def _execute_with_downtime(
        self,
        job: MigrationJob,
        control: JobControl,
        source: StorageAdapter,
        target: StorageAdapter,
        migrator: BatchDataMigrator,
    ) -> None:
        job.add_log(LogLevel.INFO, "Executing migration with planned downtime")

        await self._planner.migrate_schema(target, job.schema, job)
        self._set_progress(job, 30)

        await migrator.optimize_migration(target, job.schema, job)
        await migrator.migrate_full(
            source,
            target,
            job.schema,
            job=job,
            progress=lambda percent: self._set_progress(job, 30 + percent * 0.6),
            control=control,
        )
        await migrator.post_migration_optimization(target, job.schema, job)

        await control.checkpoint()
        await self._validate_integrity(job, migrator, source, target)
        self._set_progress(job, 100)

    async def _execute_zero_downtime(
        self,
        job: MigrationJob,
        control: JobControl,
        source: StorageAdapter,
        target: StorageAdapter,
        migrator: BatchDataMigrator,
    ) -> None:
        job.add_log(LogLevel.INFO, "Executing zero-downtime migration")

        manager = ShadowReplicationManager(
            source,
            target,
            config=self._config,
            events=self._events,
            job=job,
            tracer=self._tracer,
        )
        self._replication[job.id] = manager
        try:
            await manager.setup_shadow_writes(job.schema)
            self._set_progress(job, 10)

            await self._planner.migrate_schema(target, job.schema, job)
            self._set_progress(job, 30)

            await migrator.migrate_incremental(
                source,
                target,
                job.schema,
                job=job,
                progress=lambda percent: self._set_progress(job, 30 + percent * 0.5),
                control=control,
            )

            await control.checkpoint()
            await manager.synchronize()
            result = await manager.cutover()
            self._backups[job.id] = result.swapped
            self._set_progress(job, 95)

            await self._validate_integrity(job, migrator, source, target)
            self._set_progress(job, 100)
        finally:
            await manager.cleanup()
            self._replication.pop(job.id, None)

    async def _validate_integrity(
        self,
        job: MigrationJob,
        migrator: BatchDataMigrator,
        source: StorageAdapter,
        target: StorageAdapter,
    ) -> None:
        report = await migrator.validate_data_integrity(source, target, job.schema)
        if not report.is_valid:
            first = report.mismatches[0]
            raise IntegrityMismatchError(
                first.table,
                first.source_count,
                first.target_count,
                job_id=job.id,
                mismatches=[m.to_dict() for m in report.mismatches],
            )
        job.add_log(LogLevel.INFO, "Data integrity validated")

    async def _settle(self, job: MigrationJob, control: JobControl) -> None:
        """Move a finished execution to COMPLETED, waiting out a late pause."""
        while True:
            await control.checkpoint()
            async with self._locks[job.id]:
                if job.status is JobStatus.PAUSED:
                    continue
                job.status = JobStatus.COMPLETED
                job.ended_at = datetime.now(UTC)
                job.progress = 100.0
                job.add_log(LogLevel.INFO, "Migration completed successfully")
                self._events.emit(MigrationEventType.JOB_COMPLETED, job.id, progress=100.0)
                return

    async def _fail(self, job: MigrationJob, error: BaseException) -> None:
        async with self._locks[job.id]:
            if job.status is JobStatus.ROLLING_BACK:
                job.add_log(LogLevel.WARN, f"Execution stopped for rollback: {error}")
                return
            with self._tracer.span(
                "livemigrate.orchestrator.job_failed",
                {
                    ATTR_JOB_ID: str(job.id),
                    ATTR_ERROR_TYPE: type(error).__name__,
                    ATTR_PROGRESS_PERCENT: job.progress,
                },
            ):
                message = _error_message(error)
                job.status = JobStatus.FAILED
                job.error = message
                job.ended_at = datetime.now(UTC)
                job.add_log(
                    LogLevel.ERROR,
                    f"Migration failed: {message}",
                    error_type=type(error).__name__,
                )
                self._events.emit(MigrationEventType.JOB_FAILED, job.id, error=message)

    def _set_progress(self, job: MigrationJob, percent: float) -> None:
        percent = min(max(percent, job.progress), 100.0)
        job.progress = percent
        self._events.emit(MigrationEventType.JOB_PROGRESS, job.id, progress=percent)

    # -- control --------------------------------------------------------

    async def pause_migration(self, job_id: UUID) -> MigrationJob:
        """
        Park a running job at its next batch boundary.

        Raises:
            InvalidTransitionError: If the job is not RUNNING
        """
        job = self._require(job_id)
        async with self._locks[job_id]:
            with self._tracer.span(
                "livemigrate.orchestrator.pause_migration",
                {ATTR_JOB_ID: str(job_id), ATTR_PROGRESS_PERCENT: job.progress},
            ):
                self._expect(job, JobStatus.RUNNING, "pause")
                self._transition(job, JobStatus.PAUSED, "pause")
                control = self._controls.get(job_id)
                if control is not None:
                    control.pause()
                job.add_log(LogLevel.INFO, "Migration paused")
                self._events.emit(MigrationEventType.JOB_PAUSED, job_id, progress=job.progress)
        return job

    async def resume_migration(self, job_id: UUID) -> MigrationJob:
        """
        Release a paused job.

        Raises:
            InvalidTransitionError: If the job is not PAUSED
        """
        job = self._require(job_id)
        async with self._locks[job_id]:
            with self._tracer.span(
                "livemigrate.orchestrator.resume_migration",
                {ATTR_JOB_ID: str(job_id), ATTR_PROGRESS_PERCENT: job.progress},
            ):
                self._expect(job, JobStatus.PAUSED, "resume")
                self._transition(job, JobStatus.RUNNING, "resume")
                control = self._controls.get(job_id)
                if control is not None:
                    control.resume()
                job.add_log(LogLevel.INFO, "Migration resumed")
                self._events.emit(MigrationEventType.JOB_RESUMED, job_id, progress=job.progress)
        return job

    async def rollback_migration(self, job_id: UUID) -> MigrationJob:
        """
        Restore the target toward its pre-migration structure and emptiness.

        Tables the job created are dropped (shadow and backup tables
        included); tables that existed before are recreated empty. Source
        data is never replayed.

        Raises:
            RollbackUnsupportedError: If the strategy forbids rollback
            InvalidTransitionError: If the job is not PAUSED, COMPLETED or FAILED
        """
        job = self._require(job_id)
        async with self._locks[job_id]:
            if not job.strategy.rollback_supported:
                raise RollbackUnsupportedError(job_id, job.strategy.id)
            self._transition(job, JobStatus.ROLLING_BACK, "rollback")
            job.add_log(LogLevel.INFO, "Starting rollback")
            control = self._controls.get(job_id)
            if control is not None:
                control.cancel()
            finished = self._executing.get(job_id)

        if finished is not None:
            await finished.wait()

        try:
            with self._tracer.span(
                "livemigrate.orchestrator.rollback_migration",
                {ATTR_JOB_ID: str(job_id), ATTR_JOB_STATUS: job.status.value},
            ):
                await self._rollback(job)
        except BaseException as e:
            async with self._locks[job_id]:
                message = _error_message(e)
                job.status = JobStatus.FAILED
                job.error = message
                job.ended_at = datetime.now(UTC)
                job.add_log(LogLevel.ERROR, f"Rollback failed: {message}")
                self._events.emit(MigrationEventType.JOB_FAILED, job_id, error=message)
            raise

        async with self._locks[job_id]:
            job.status = JobStatus.COMPLETED
            job.ended_at = datetime.now(UTC)
            job.add_log(LogLevel.INFO, "Rollback completed successfully")
            self._events.emit(MigrationEventType.JOB_ROLLED_BACK, job_id)
        return job

    async def _rollback(self, job: MigrationJob) -> None:
        manager = self._replication.pop(job.id, None)
        if manager is not None:
            await manager.cleanup()

        target = await self._registry.get(job.target)
        baseline = job.baseline or StructuralDefinition()
        names = job.schema.table_names
        managed = set(names) | {shadow_name(name) for name in names}
        managed |= set(self._backups.pop(job.id, {}).values())

        await self._planner.rollback_schema(target, baseline, managed)
        restored = StructuralDefinition(
            tables=tuple(t for t in job.schema.tables if t.name in baseline.table_names)
        )
        migrator = self._migrator_factory(self._config)
        await migrator.rollback_data(target, restored, job)

    async def cleanup(self) -> None:
        """
        Stop replication, cancel running executions and disconnect adapters.

        Idempotent.
        """
        for control in list(self._controls.values()):
            control.cancel()
        managers = list(self._replication.values())
        self._replication.clear()
        for manager in managers:
            await manager.cleanup()
        await self._registry.close_all()
        logger.info("Orchestrator cleaned up", extra={"jobs": len(self._jobs)})

    # -- helpers --------------------------------------------------------

    def _require(self, job_id: UUID) -> MigrationJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise MigrationNotFoundError(job_id)
        return job

    @staticmethod
    def _expect(job: MigrationJob, status: JobStatus, operation: str) -> None:
        if job.status is not status:
            raise InvalidTransitionError(job.id, job.status.value, operation)

    @staticmethod
    def _transition(job: MigrationJob, target: JobStatus, operation: str) -> None:
        if not job.status.can_transition_to(target):
            raise InvalidTransitionError(job.id, job.status.value, operation)
        job.status = target


__all__ = ["MigrationOrchestrator"]
