"""
Migration strategies and the advisory optimizer contract.

A Strategy tells the orchestrator whether a job may take the dataset
offline and whether it can be rolled back. Strategies may come from an
external advisor (for example one backed by a language model); its output
is a suggestion only and every candidate is validated here before use.
When the advisor is missing, fails, or returns nothing usable, the
built-in default strategies are used instead.

Example:
    >>> strategies = await resolve_strategies(advisor, source, target, schema)
    >>> job = await orchestrator.create_migration(source, target, schema, strategies[0])
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from livemigrate.definitions import StorageEndpoint, StructuralDefinition
from livemigrate.exceptions import StrategyValidationError

logger = logging.getLogger(__name__)


class RiskLevel(Enum):
    """Risk classification of a strategy."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}[self]


class Priority(Enum):
    """What the caller wants a strategy ranking to optimize for."""

    SPEED = "speed"
    SAFETY = "safety"
    COST = "cost"


class Strategy(BaseModel):
    """
    A named migration plan.

    ``downtime``, ``rollback_supported`` and ``risk_level`` are required:
    they decide the execution path and whether rollback is legal.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Stable strategy identifier")
    name: str = Field(default="", description="Display name")
    description: str = Field(default="", description="What the strategy does")
    estimated_duration_ms: int = Field(default=0, ge=0, description="Expected duration")
    risk_level: RiskLevel = Field(..., description="Risk classification")
    downtime: bool = Field(..., description="Whether the dataset is taken offline")
    rollback_supported: bool = Field(..., description="Whether rollback is allowed")


class OptimizationConstraints(BaseModel):
    """Caller constraints handed to the advisor and used for ranking."""

    model_config = ConfigDict(frozen=True)

    max_downtime_ms: int | None = Field(default=None, ge=0)
    max_duration_ms: int | None = Field(default=None, ge=0)
    priority: Priority = Priority.SAFETY


class StrategyAdvisor(Protocol):
    """
    External collaborator that suggests strategies.

    Implementations may return Strategy instances or plain mappings; both
    are validated by resolve_strategies.
    """

    async def recommend(
        self,
        source: StorageEndpoint,
        target: StorageEndpoint,
        schema: StructuralDefinition,
        constraints: OptimizationConstraints,
    ) -> Iterable[Strategy | Mapping[str, Any]]: ...


def default_strategies() -> list[Strategy]:
    """Built-in strategies used when no advisor output is usable."""
    return [
        Strategy(
            id="default-full",
            name="Full Migration with Downtime",
            description="Complete migration with planned downtime",
            estimated_duration_ms=3_600_000,
            risk_level=RiskLevel.MEDIUM,
            downtime=True,
            rollback_supported=True,
        ),
        Strategy(
            id="default-incremental",
            name="Incremental Migration",
            description="Zero-downtime migration using shadow tables and cutover",
            estimated_duration_ms=7_200_000,
            risk_level=RiskLevel.LOW,
            downtime=False,
            rollback_supported=True,
        ),
    ]


def validate_strategy(candidate: Strategy | Mapping[str, Any]) -> Strategy:
    """
    Validate one externally supplied strategy.

    Args:
        candidate: A Strategy or a mapping with strategy fields

    Returns:
        The validated Strategy

    Raises:
        StrategyValidationError: If required fields are missing or invalid
    """
    if isinstance(candidate, Strategy):
        return candidate
    try:
        return Strategy.model_validate(candidate)
    except ValidationError as e:
        raise StrategyValidationError(
            f"Invalid strategy: {e.error_count()} validation error(s)",
            errors=[
                {"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()
            ],
        ) from e


def rank_strategies(
    strategies: list[Strategy],
    constraints: OptimizationConstraints,
) -> list[Strategy]:
    """
    Order strategies by fit to the caller's constraints.

    Strategies that respect the duration bound, and the downtime bound
    when they take the dataset offline, come first. Within each group the
    priority decides: safety prefers low risk, speed prefers short
    duration, cost prefers downtime-tolerant plans.
    """

    def fits(strategy: Strategy) -> bool:
        if (
            constraints.max_duration_ms is not None
            and strategy.estimated_duration_ms > constraints.max_duration_ms
        ):
            return False
        return not (
            strategy.downtime
            and constraints.max_downtime_ms is not None
            and strategy.estimated_duration_ms > constraints.max_downtime_ms
        )

    def key(strategy: Strategy) -> tuple[int, Any, Any]:
        if constraints.priority is Priority.SPEED:
            order: tuple[Any, Any] = (strategy.estimated_duration_ms, strategy.risk_level.rank)
        elif constraints.priority is Priority.COST:
            order = (not strategy.downtime, strategy.estimated_duration_ms)
        else:
            order = (strategy.risk_level.rank, strategy.estimated_duration_ms)
        return (0 if fits(strategy) else 1, *order)

    return sorted(strategies, key=key)


async def resolve_strategies(
    advisor: StrategyAdvisor | None,
    source: StorageEndpoint,
    target: StorageEndpoint,
    schema: StructuralDefinition,
    constraints: OptimizationConstraints | None = None,
) -> list[Strategy]:
    """
    Ask the advisor for strategies and keep only the valid ones.

    Falls back to default_strategies() when the advisor is missing, raises,
    or yields no valid candidate. Malformed candidates are dropped with a
    warning.

    Returns:
        Non-empty list of strategies, best first
    """
    constraints = constraints or OptimizationConstraints()
    candidates: list[Strategy] = []

    if advisor is not None:
        try:
            suggested = list(await advisor.recommend(source, target, schema, constraints))
        except Exception as e:
            logger.warning(
                "Strategy advisor unavailable, using defaults: %s",
                e,
                extra={"error_type": type(e).__name__},
            )
            suggested = []

        for raw in suggested:
            try:
                candidates.append(validate_strategy(raw))
            except StrategyValidationError as e:
                logger.warning(
                    "Dropping malformed strategy suggestion: %s",
                    e.message,
                    extra={"errors": e.errors},
                )

    if not candidates:
        candidates = default_strategies()

    return rank_strategies(candidates, constraints)


__all__ = [
    "RiskLevel",
    "Priority",
    "Strategy",
    "OptimizationConstraints",
    "StrategyAdvisor",
    "default_strategies",
    "validate_strategy",
    "rank_strategies",
    "resolve_strategies",
]
