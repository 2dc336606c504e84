"""
Decision spine engine: the external interface for evaluations.

One evaluation pass is: read history -> resolve thresholds -> evaluate rules
-> classify -> compose -> append. The pass runs under a per-entity lock, so
evaluations of one entity are strictly ordered while different entities
proceed concurrently. Everything except the append is pure.
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from spine.config import AppConfig, EngineConfig
from spine.domain.errors import ConcurrentEvaluationConflict, LedgerAppendFailure
from spine.domain.models import (
    EntityContext,
    EntityType,
    Judgment,
    LedgerEntry,
    Observation,
    SignalGap,
)
from spine.services.composer import JudgmentComposer
from spine.services.default_thresholds import build_default_snapshot
from spine.services.ledger import InMemoryJudgmentLedger, JudgmentLedger, SqliteJudgmentLedger
from spine.services.rules import RuleEvaluator
from spine.services.thresholds import (
    FileThresholdStore,
    InMemoryThresholdStore,
    ThresholdResolver,
    ThresholdStore,
)

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class EvaluationRequest:
    """One entity to evaluate in an ``evaluate_many`` batch."""

    entity_id: str
    entity_type: EntityType
    observations: Sequence[Observation] = ()
    config_version: str | None = None
    gaps: Sequence[SignalGap] = ()
    context: EntityContext | None = None


@dataclass
class _EntityLocks:
    """asyncio.Lock per entity id, dropped once nobody holds or waits on it."""

    locks: dict[str, asyncio.Lock] = field(default_factory=dict)
    users: dict[str, int] = field(default_factory=dict)

    @asynccontextmanager
    async def hold(self, entity_id: str) -> AsyncIterator[None]:
        lock = self.locks.get(entity_id)
        if lock is None:
            lock = self.locks[entity_id] = asyncio.Lock()
        self.users[entity_id] = self.users.get(entity_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self.users[entity_id] -= 1
            if not self.users[entity_id]:
                del self.users[entity_id]
                del self.locks[entity_id]

    def __len__(self) -> int:
        return len(self.locks)


class DecisionSpineEngine:
    """
    Deterministic classification engine for care operations.

    Same-entity requests queue behind the entity lock rather than being
    coalesced, so every request yields its own judgment and ledger entry.
    """

    def __init__(
        self,
        resolver: ThresholdResolver,
        ledger: JudgmentLedger,
        evaluator: RuleEvaluator | None = None,
        composer: JudgmentComposer | None = None,
        config: EngineConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.resolver = resolver
        self.ledger = ledger
        self.evaluator = evaluator or RuleEvaluator()
        self.composer = composer or JudgmentComposer()
        self.config = config or EngineConfig()
        self.clock = clock
        self._locks = _EntityLocks()
        self.logger = logger.bind(component="decision_spine_engine")

    def _version_for(self, config_version: str | None, context: EntityContext | None) -> str | None:
        if config_version:
            return config_version
        if self.config.config_version:
            return self.config.config_version
        tenant = context.tenant_id if context and context.tenant_id else self.config.default_tenant
        return self.resolver.latest_version(tenant)

    async def evaluate(
        self,
        entity_id: str,
        entity_type: EntityType,
        observations: Sequence[Observation],
        config_version: str | None = None,
        *,
        gaps: Sequence[SignalGap] = (),
        context: EntityContext | None = None,
    ) -> Judgment:
        """
        Evaluate one entity and append the judgment to the ledger.

        Args:
            entity_id: Entity being judged
            entity_type: Its type, which selects the required-signal table
            observations: Normalized observations for this entity
            config_version: Threshold version; latest published for the tenant when omitted
            gaps: Upstream gaps (rejected records, failed sources) to surface as unknowns
            context: Optional roster and descriptive context

        Returns:
            The emitted Judgment

        Raises:
            ValueError: An observation belongs to another entity
            LedgerAppendFailure: The judgment could not be persisted; nothing was emitted
            LedgerReadFailure: History could not be read; nothing was composed
        """
        foreign = sorted({o.entity_id for o in observations if o.entity_id != entity_id})
        if foreign:
            raise ValueError(f"observations for other entities passed to {entity_id}: {foreign}")

        version = self._version_for(config_version, context)

        async with self._locks.hold(entity_id):
            conflicts = 0
            while True:
                history = await self._read_history(entity_id)
                judgment = self._judge(
                    entity_id, entity_type, observations, version, gaps, context, history
                )
                try:
                    entry = await self.ledger.append(judgment)
                except ConcurrentEvaluationConflict as e:
                    conflicts += 1
                    self.logger.warning(
                        "ledger_conflict",
                        entity_id=entity_id,
                        expected_sequence=e.expected_sequence,
                        actual_sequence=e.actual_sequence,
                        attempt=conflicts,
                    )
                    if conflicts > self.config.max_conflict_retries:
                        raise LedgerAppendFailure(
                            entity_id, f"ledger head kept moving after {conflicts} attempts"
                        ) from e
                    continue
                break

        self.logger.info(
            "judgment_emitted",
            entity_id=entity_id,
            entity_type=entity_type.value,
            classification=judgment.classification.value,
            trend=judgment.trend.value,
            config_version=judgment.config_version,
            sequence=entry.sequence,
            unknowns=len(judgment.unknowns),
        )
        return entry.judgment

    async def _read_history(self, entity_id: str) -> list[LedgerEntry]:
        """
        Newest-first history for composing the next judgment.

        Reads ``history_limit`` entries, and the whole ledger when every entry in
        that window shares one class, so days in state is never cut short.
        """
        limit = self.config.history_limit
        history = await self.ledger.history(entity_id, limit=limit)
        if len(history) == limit and all(
            e.classification is history[0].classification for e in history
        ):
            self.logger.debug("history_window_widened", entity_id=entity_id, limit=limit)
            history = await self.ledger.history(entity_id)
        return history

    def _judge(
        self,
        entity_id: str,
        entity_type: EntityType,
        observations: Sequence[Observation],
        version: str | None,
        gaps: Sequence[SignalGap],
        context: EntityContext | None,
        history: list[LedgerEntry],
    ) -> Judgment:
        evaluated_at = self.clock()
        # The ledger stays ordered even if the wall clock steps backwards
        if history and evaluated_at < history[0].evaluated_at:
            evaluated_at = history[0].evaluated_at

        thresholds = self.resolver.resolve_for_entity(entity_id, entity_type, version)
        evaluation = self.evaluator.evaluate(observations, thresholds, gaps)
        return self.composer.compose(
            entity_id=entity_id,
            entity_type=entity_type,
            evaluation=evaluation,
            thresholds=thresholds,
            observations=observations,
            history=history,
            evaluated_at=evaluated_at,
            context=context,
        )

    async def evaluate_many(self, requests: Iterable[EvaluationRequest]) -> list[Judgment]:
        """Evaluate several entities concurrently; results follow request order."""
        requests = list(requests)
        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(
                    self.evaluate(
                        r.entity_id,
                        r.entity_type,
                        r.observations,
                        r.config_version,
                        gaps=r.gaps,
                        context=r.context,
                    )
                )
                for r in requests
            ]
        return [task.result() for task in tasks]

    async def get_history(self, entity_id: str, limit: int | None = None) -> list[LedgerEntry]:
        """Ledger entries for an entity, newest first."""
        return await self.ledger.history(entity_id, limit=limit)

    async def current_judgment(self, entity_id: str) -> Judgment | None:
        """The entity's current state, read from the newest ledger entry."""
        entry = await self.ledger.latest(entity_id)
        return entry.judgment if entry else None


def build_threshold_store(config: AppConfig) -> ThresholdStore:
    if config.thresholds.snapshot_dir:
        return FileThresholdStore(config.thresholds.snapshot_dir)
    return InMemoryThresholdStore([build_default_snapshot(tenant_id=config.engine.default_tenant)])


def build_ledger(config: AppConfig) -> JudgmentLedger:
    if config.ledger.backend == "sqlite":
        return SqliteJudgmentLedger(config.ledger.sqlite_path, config.ledger.timeout_seconds)
    return InMemoryJudgmentLedger()


def build_engine(config: AppConfig, clock: Clock = utc_now) -> DecisionSpineEngine:
    """Wire an engine from application configuration."""
    return DecisionSpineEngine(
        resolver=ThresholdResolver(build_threshold_store(config)),
        ledger=build_ledger(config),
        config=config.engine,
        clock=clock,
    )
