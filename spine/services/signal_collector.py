"""
Raw signal collection from care source providers, and the service that wires
collection, normalization and evaluation together.

Key patterns:
- Protocol-based sources (EHR, eMAR, task board, device gateway, rostering)
- Structured concurrency with asyncio.TaskGroup and per-source timeouts
- A failing or slow source becomes a SignalGap, never a silent omission
"""

import asyncio
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import structlog

from spine.config import AppConfig, CollectionConfig, get_config
from spine.domain.models import (
    EntityContext,
    EntityType,
    Judgment,
    Observation,
    SignalGap,
    SignalKind,
)
from spine.domain.result import Result
from spine.services.engine import Clock, DecisionSpineEngine, build_engine, utc_now
from spine.services.normalizer import SignalNormalizer

logger = structlog.get_logger(__name__)

RawRecord = Mapping[str, Any]


class SignalSource(Protocol):
    """
    Provider of raw records of one signal kind.

    Why Protocol over ABC: Structural typing, easier test doubles, less coupling.
    """

    source_name: str
    signal_kind: SignalKind

    async def fetch_records(
        self, entity_id: str, window_start: datetime, window_end: datetime
    ) -> Result[list[dict[str, Any]], Exception]:
        """
        Fetch raw records for an entity inside the window.

        Returns:
            Result containing the raw records or the exception that prevented fetching.
        """
        ...


class StaticSignalSource:
    """Serves a fixed list of raw records. Used for replays and tests."""

    def __init__(
        self, source_name: str, signal_kind: SignalKind, records: Sequence[dict[str, Any]]
    ) -> None:
        self.source_name = source_name
        self.signal_kind = signal_kind
        self._records = list(records)
        self.logger = logger.bind(source=source_name)

    async def fetch_records(
        self, entity_id: str, window_start: datetime, window_end: datetime
    ) -> Result[list[dict[str, Any]], Exception]:
        records = [dict(r) for r in self._records if r.get("entity_id") == entity_id]
        self.logger.debug("records_fetched", entity_id=entity_id, count=len(records))
        return Result.ok(records)


@dataclass
class CollectedSignals:
    """Raw records paired with their kind, plus the gaps found while collecting."""

    records: list[tuple[dict[str, Any], SignalKind]] = field(default_factory=list)
    gaps: list[SignalGap] = field(default_factory=list)
    successful_sources: int = 0


class SignalCollector:
    """
    Pulls raw records from every registered source concurrently.

    Design principles:
    - Graceful degradation (partial failures become gaps)
    - Observable (structured logging per source)
    - Resource-aware (timeouts, bounded concurrency)
    """

    def __init__(self, config: CollectionConfig | None = None, clock: Clock = utc_now) -> None:
        self.config = config or CollectionConfig()
        self.clock = clock
        self.sources: list[SignalSource] = []
        self.logger = logger.bind(component="signal_collector")

    def add_source(self, source: SignalSource) -> None:
        """Add a source. Validates the source implements the protocol."""
        if not hasattr(source, "fetch_records") or not hasattr(source, "signal_kind"):
            raise TypeError(f"Source {source} must implement SignalSource protocol")
        self.sources.append(source)
        self.logger.info(
            "source_added", source=source.source_name, signal_kind=source.signal_kind.value
        )

    def remove_source(self, source: SignalSource) -> None:
        self.sources.remove(source)
        self.logger.info("source_removed", source=source.source_name)

    async def _fetch(
        self,
        source: SignalSource,
        semaphore: asyncio.Semaphore,
        entity_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> Result[list[dict[str, Any]], Exception]:
        # Failures are returned, not raised, so one source never cancels the others
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    source.fetch_records(entity_id, window_start, window_end),
                    timeout=self.config.source_timeout_seconds,
                )
            except TimeoutError as e:
                return Result.err(e)
            except Exception as e:
                self.logger.exception(
                    "unexpected_source_error", source=source.source_name, error=str(e)
                )
                return Result.err(e)

    async def collect(self, entity_id: str, window_end: datetime | None = None) -> CollectedSignals:
        """Collect raw records for one entity over the configured look-back window."""
        window_end = window_end or self.clock()
        window_start = window_end - timedelta(hours=self.config.window_hours)
        semaphore = asyncio.Semaphore(self.config.max_concurrent_sources)
        start_time = time.perf_counter()

        async with asyncio.TaskGroup() as task_group:
            tasks = [
                task_group.create_task(
                    self._fetch(source, semaphore, entity_id, window_start, window_end)
                )
                for source in self.sources
            ]

        collected = CollectedSignals()
        for source, task in zip(self.sources, tasks, strict=True):
            result = task.result()
            if result.is_ok():
                records = result.unwrap()
                collected.records.extend((record, source.signal_kind) for record in records)
                collected.successful_sources += 1
                continue

            error = result.unwrap_err()
            if isinstance(error, TimeoutError):
                reason = "SourceTimeout"
                detail = (
                    f"{source.source_name} did not respond within "
                    f"{self.config.source_timeout_seconds:g}s"
                )
                self.logger.warning("source_collection_timeout", source=source.source_name)
            else:
                reason = "SourceUnavailable"
                detail = f"{source.source_name}: {error}"
                self.logger.warning(
                    "source_collection_failed", source=source.source_name, error=str(error)
                )
            collected.gaps.append(
                SignalGap(signal_kind=source.signal_kind, reason=reason, detail=detail)
            )

        self.logger.info(
            "signal_collection_completed",
            entity_id=entity_id,
            total_records=len(collected.records),
            successful_sources=collected.successful_sources,
            total_sources=len(self.sources),
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )
        return collected


class DecisionSpineService:
    """End-to-end pipeline: collect -> normalize -> evaluate -> append."""

    def __init__(
        self,
        engine: DecisionSpineEngine,
        collector: SignalCollector | None = None,
        normalizer: SignalNormalizer | None = None,
    ) -> None:
        self.engine = engine
        self.collector = collector or SignalCollector()
        self.normalizer = normalizer or SignalNormalizer()
        self.logger = logger.bind(component="decision_spine_service")

    @classmethod
    def from_config(
        cls,
        config: AppConfig | None = None,
        sources: Iterable[SignalSource] = (),
        clock: Clock = utc_now,
    ) -> "DecisionSpineService":
        config = config or get_config()
        collector = SignalCollector(config.collection, clock=clock)
        for source in sources:
            collector.add_source(source)
        return cls(engine=build_engine(config, clock=clock), collector=collector)

    def _split(
        self, entity_id: str, records: Iterable[tuple[RawRecord, SignalKind | str]]
    ) -> tuple[list[Observation], list[SignalGap]]:
        observations, gaps = self.normalizer.normalize_batch(records)
        own = []
        for obs in observations:
            if obs.entity_id == entity_id:
                own.append(obs)
            else:
                gaps.append(
                    SignalGap(
                        signal_kind=obs.signal_kind,
                        reason="ForeignEntity",
                        detail=f"record from {obs.source} belongs to {obs.entity_id}",
                    )
                )
        return own, gaps

    async def evaluate_records(
        self,
        entity_id: str,
        entity_type: EntityType,
        records: Iterable[tuple[RawRecord, SignalKind | str]],
        config_version: str | None = None,
        *,
        gaps: Sequence[SignalGap] = (),
        context: EntityContext | None = None,
    ) -> Judgment:
        """Normalize raw records and evaluate the entity."""
        observations, rejected = self._split(entity_id, records)
        return await self.engine.evaluate(
            entity_id,
            entity_type,
            observations,
            config_version,
            gaps=[*gaps, *rejected],
            context=context,
        )

    async def evaluate_entity(
        self,
        entity_id: str,
        entity_type: EntityType,
        config_version: str | None = None,
        *,
        context: EntityContext | None = None,
    ) -> Judgment:
        """Collect from every source, then evaluate."""
        collected = await self.collector.collect(entity_id)
        return await self.evaluate_records(
            entity_id,
            entity_type,
            collected.records,
            config_version,
            gaps=collected.gaps,
            context=context,
        )
