"""
Baseline and threshold resolution.

Thresholds are published as immutable, versioned ConfigSnapshots by an external
governance process. The resolver never mutates a snapshot: a given
(entity, signal kind, version) always resolves to the same ThresholdSet, and
"changing thresholds" means publishing a new version.
"""

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from spine.domain.errors import ResolutionError, ResolutionReason
from spine.domain.models import (
    Classification,
    EntityType,
    SignalKind,
    ThresholdBand,
    ThresholdSet,
)
from spine.domain.result import Result

logger = structlog.get_logger(__name__)

# Used only when no snapshot at all can be found, so coverage is still enforced
FALLBACK_REQUIRED_SIGNALS: dict[EntityType, tuple[SignalKind, ...]] = {
    EntityType.RESIDENT: (SignalKind.VITAL, SignalKind.MEDICATION, SignalKind.TASK),
    EntityType.DEPARTMENT: (SignalKind.STAFFING, SignalKind.TASK, SignalKind.DEVICE),
    EntityType.CAREGIVER: (SignalKind.STAFFING, SignalKind.TASK),
    EntityType.SHIFT: (SignalKind.STAFFING, SignalKind.TASK),
    EntityType.FACILITY: (SignalKind.STAFFING, SignalKind.DEVICE),
}

FALLBACK_ACTION_DEADLINE_MINUTES: dict[Classification, int] = {
    Classification.CRITICAL: 15,
    Classification.UNSAFE: 30,
    Classification.CONCERNING: 24 * 60,
    Classification.ACCEPTABLE: 24 * 60,
}

FALLBACK_ACCOUNTABLE_ROLE = "SUPERVISOR"


class ThresholdSpec(BaseModel):
    """Thresholds for one signal kind as written in a snapshot."""

    model_config = ConfigDict(frozen=True)

    bands: dict[str, ThresholdBand] = Field(default_factory=dict)
    categorical: dict[str, dict[str, Classification]] = Field(default_factory=dict)
    parameters: dict[str, float] = Field(default_factory=dict)
    action_deadline_minutes: dict[Classification, int] = Field(default_factory=dict)


class ConfigSnapshot(BaseModel):
    """One published configuration version for a tenant."""

    model_config = ConfigDict(frozen=True)

    version: str = Field(min_length=1)
    tenant_id: str = "default"
    published_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    required_signals: dict[EntityType, list[SignalKind]] = Field(default_factory=dict)
    defaults: dict[EntityType, dict[SignalKind, ThresholdSpec]] = Field(default_factory=dict)
    overrides: dict[str, dict[SignalKind, ThresholdSpec]] = Field(
        default_factory=dict, description="Per-entity overrides keyed by entity id"
    )
    action_deadline_minutes: dict[Classification, int] = Field(
        default_factory=lambda: dict(FALLBACK_ACTION_DEADLINE_MINUTES)
    )
    accountability: dict[EntityType, dict[Classification, str]] = Field(default_factory=dict)
    default_accountable_role: str = Field(default=FALLBACK_ACCOUNTABLE_ROLE, min_length=1)
    parameters: dict[str, float] = Field(
        default_factory=dict, description="Parameters for combination rules"
    )

    @model_validator(mode="after")
    def deadlines_cover_every_class(self) -> "ConfigSnapshot":
        """Every class needs a deadline, and more severe classes never get longer ones."""
        missing = [c.value for c in Classification if c not in self.action_deadline_minutes]
        if missing:
            raise ValueError(f"action_deadline_minutes missing classes: {', '.join(missing)}")
        ordered = sorted(Classification, key=lambda c: c.rank, reverse=True)
        for more_severe, less_severe in zip(ordered, ordered[1:], strict=False):
            if (
                self.action_deadline_minutes[more_severe]
                > self.action_deadline_minutes[less_severe]
            ):
                raise ValueError(
                    f"deadline for {more_severe.value} must not exceed {less_severe.value}"
                )
        return self


class ThresholdStore(Protocol):
    """
    Read side of the configuration store.

    Why Protocol over ABC: Structural typing, easier test doubles.
    """

    def get_snapshot(self, version: str) -> ConfigSnapshot | None: ...

    def latest_version(self, tenant_id: str) -> str | None: ...


def _latest(snapshots: Iterable[ConfigSnapshot], tenant_id: str) -> str | None:
    candidates = [s for s in snapshots if s.tenant_id == tenant_id]
    if not candidates:
        return None
    return max(candidates, key=lambda s: (s.published_at, s.version)).version


class InMemoryThresholdStore:
    """Snapshot store held in memory. Published versions are immutable."""

    def __init__(self, snapshots: Iterable[ConfigSnapshot] = ()) -> None:
        self._snapshots: dict[str, ConfigSnapshot] = {}
        self.logger = logger.bind(component="threshold_store")
        for snapshot in snapshots:
            self.publish(snapshot)

    def publish(self, snapshot: ConfigSnapshot) -> None:
        existing = self._snapshots.get(snapshot.version)
        if existing is not None:
            if existing == snapshot:
                return
            raise ValueError(
                f"config version {snapshot.version} is already published; "
                "publish a new version instead of changing it"
            )
        self._snapshots[snapshot.version] = snapshot
        self.logger.info(
            "config_version_published", version=snapshot.version, tenant_id=snapshot.tenant_id
        )

    def get_snapshot(self, version: str) -> ConfigSnapshot | None:
        return self._snapshots.get(version)

    def latest_version(self, tenant_id: str) -> str | None:
        return _latest(self._snapshots.values(), tenant_id)

    @property
    def versions(self) -> list[str]:
        return sorted(self._snapshots)


class FileThresholdStore(InMemoryThresholdStore):
    """Loads every ``*.json`` snapshot in a directory once, at construction."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        if not self.directory.is_dir():
            raise FileNotFoundError(f"threshold snapshot directory not found: {self.directory}")
        snapshots = []
        for path in sorted(self.directory.glob("*.json")):
            snapshots.append(ConfigSnapshot.model_validate(json.loads(path.read_text("utf-8"))))
        super().__init__(snapshots)
        self.logger.info(
            "threshold_snapshots_loaded", directory=str(self.directory), count=len(snapshots)
        )


def _merge_specs(
    base: ThresholdSpec | None, override: ThresholdSpec | None
) -> ThresholdSpec | None:
    if base is None:
        return override
    if override is None:
        return base
    categorical = {key: dict(table) for key, table in base.categorical.items()}
    for key, table in override.categorical.items():
        categorical[key] = {**categorical.get(key, {}), **table}
    return ThresholdSpec(
        bands={**base.bands, **override.bands},
        categorical=categorical,
        parameters={**base.parameters, **override.parameters},
        action_deadline_minutes={
            **base.action_deadline_minutes,
            **override.action_deadline_minutes,
        },
    )


@dataclass(frozen=True)
class ResolvedThresholds:
    """Everything the evaluator and composer need for one entity and version."""

    entity_id: str
    entity_type: EntityType
    config_version: str | None
    sets: dict[SignalKind, ThresholdSet] = field(default_factory=dict)
    errors: dict[SignalKind, ResolutionError] = field(default_factory=dict)
    required_kinds: tuple[SignalKind, ...] = ()
    action_deadline_minutes: dict[Classification, int] = field(
        default_factory=lambda: dict(FALLBACK_ACTION_DEADLINE_MINUTES)
    )
    accountability: dict[Classification, str] = field(default_factory=dict)
    default_accountable_role: str = FALLBACK_ACCOUNTABLE_ROLE
    parameters: dict[str, float] = field(default_factory=dict)
    required_table_configured: bool = True

    def for_kind(self, kind: SignalKind) -> ThresholdSet | None:
        return self.sets.get(kind)

    def deadline_minutes(
        self, classification: Classification, kind: SignalKind | None = None
    ) -> int:
        """
        Deadline for a class, using the signal kind's own table when it has one.

        Capped at the shortest deadline any kind gives a less severe class, so
        a worse class for this entity never gets more time than a milder one.
        """
        deadline = self._table_deadline(classification, kind)
        kinds = [None, *self.sets]
        for milder in Classification:
            if milder.rank < classification.rank:
                deadline = min(deadline, *(self._table_deadline(milder, k) for k in kinds))
        return deadline

    def _table_deadline(self, classification: Classification, kind: SignalKind | None) -> int:
        if kind is not None:
            kind_set = self.sets.get(kind)
            if kind_set is not None and classification in kind_set.action_deadline_minutes:
                return kind_set.action_deadline_minutes[classification]
        return self.action_deadline_minutes[classification]

    def accountable_role(self, classification: Classification) -> str:
        return self.accountability.get(classification) or self.default_accountable_role


class ThresholdResolver:
    """
    Resolves ThresholdSets from a store.

    The cache is keyed by version, and versions never change, so it is safe to
    share between concurrent evaluations.
    """

    def __init__(self, store: ThresholdStore) -> None:
        self.store = store
        self.logger = logger.bind(component="threshold_resolver")
        self._cache: dict[
            tuple[str, EntityType, SignalKind, str], Result[ThresholdSet, ResolutionError]
        ] = {}

    def latest_version(self, tenant_id: str) -> str | None:
        return self.store.latest_version(tenant_id)

    def resolve(
        self,
        entity_id: str,
        entity_type: EntityType,
        signal_kind: SignalKind,
        config_version: str,
    ) -> Result[ThresholdSet, ResolutionError]:
        key = (entity_id, entity_type, signal_kind, config_version)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        result = self._resolve_uncached(entity_id, entity_type, signal_kind, config_version)
        self._cache[key] = result
        return result

    def _resolve_uncached(
        self,
        entity_id: str,
        entity_type: EntityType,
        signal_kind: SignalKind,
        config_version: str,
    ) -> Result[ThresholdSet, ResolutionError]:
        snapshot = self.store.get_snapshot(config_version)
        if snapshot is None:
            return Result.err(
                ResolutionError(
                    ResolutionReason.UNKNOWN_CONFIG_VERSION,
                    f"config version {config_version} is not published",
                    signal_kind=signal_kind,
                    config_version=config_version,
                )
            )

        spec = _merge_specs(
            snapshot.defaults.get(entity_type, {}).get(signal_kind),
            snapshot.overrides.get(entity_id, {}).get(signal_kind),
        )
        if spec is None:
            return Result.err(
                ResolutionError(
                    ResolutionReason.NO_THRESHOLD_CONFIGURED,
                    f"no {signal_kind.value} thresholds configured for "
                    f"{entity_type.value} {entity_id} in version {config_version}",
                    signal_kind=signal_kind,
                    config_version=config_version,
                )
            )

        return Result.ok(
            ThresholdSet(
                config_version=config_version,
                entity_id=entity_id,
                entity_type=entity_type,
                signal_kind=signal_kind,
                bands=spec.bands,
                categorical=spec.categorical,
                parameters=spec.parameters,
                action_deadline_minutes=spec.action_deadline_minutes,
            )
        )

    def resolve_for_entity(
        self, entity_id: str, entity_type: EntityType, config_version: str | None
    ) -> ResolvedThresholds:
        """Resolve every signal kind for an entity; failures are kept, not raised."""
        snapshot = self.store.get_snapshot(config_version) if config_version else None
        if snapshot is None:
            detail = (
                f"config version {config_version} is not published"
                if config_version
                else "no published config version for tenant"
            )
            errors = {
                kind: ResolutionError(
                    ResolutionReason.UNKNOWN_CONFIG_VERSION,
                    detail,
                    signal_kind=kind,
                    config_version=config_version,
                )
                for kind in SignalKind
            }
            self.logger.warning(
                "config_version_unavailable", entity_id=entity_id, config_version=config_version
            )
            return ResolvedThresholds(
                entity_id=entity_id,
                entity_type=entity_type,
                config_version=config_version,
                errors=errors,
                required_kinds=FALLBACK_REQUIRED_SIGNALS.get(entity_type, tuple(SignalKind)),
                required_table_configured=False,
            )

        sets: dict[SignalKind, ThresholdSet] = {}
        errors: dict[SignalKind, ResolutionError] = {}
        for kind in SignalKind:
            result = self.resolve(entity_id, entity_type, kind, snapshot.version)
            if result.is_ok():
                sets[kind] = result.unwrap()
            else:
                errors[kind] = result.unwrap_err()

        required = snapshot.required_signals.get(entity_type)
        return ResolvedThresholds(
            entity_id=entity_id,
            entity_type=entity_type,
            config_version=snapshot.version,
            sets=sets,
            errors=errors,
            required_kinds=tuple(required)
            if required is not None
            else FALLBACK_REQUIRED_SIGNALS.get(entity_type, tuple(SignalKind)),
            action_deadline_minutes=dict(snapshot.action_deadline_minutes),
            accountability=dict(snapshot.accountability.get(entity_type, {})),
            default_accountable_role=snapshot.default_accountable_role,
            parameters=dict(snapshot.parameters),
            required_table_configured=required is not None,
        )
