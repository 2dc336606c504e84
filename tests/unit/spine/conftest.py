"""Fixtures shared by the decision spine tests."""

import pytest
from care_builders import RESIDENT_ID, SteppingClock

from spine.config import EngineConfig
from spine.domain.models import EntityType
from spine.services.default_thresholds import DEFAULT_CONFIG_VERSION, build_default_snapshot
from spine.services.engine import DecisionSpineEngine
from spine.services.ledger import InMemoryJudgmentLedger
from spine.services.rules import RuleEvaluator
from spine.services.thresholds import (
    ConfigSnapshot,
    InMemoryThresholdStore,
    ResolvedThresholds,
    ThresholdResolver,
)


@pytest.fixture
def snapshot() -> ConfigSnapshot:
    return build_default_snapshot()


@pytest.fixture
def store(snapshot: ConfigSnapshot) -> InMemoryThresholdStore:
    return InMemoryThresholdStore([snapshot])


@pytest.fixture
def resolver(store: InMemoryThresholdStore) -> ThresholdResolver:
    return ThresholdResolver(store)


@pytest.fixture
def resident_thresholds(resolver: ThresholdResolver) -> ResolvedThresholds:
    return resolver.resolve_for_entity(RESIDENT_ID, EntityType.RESIDENT, DEFAULT_CONFIG_VERSION)


@pytest.fixture
def evaluator() -> RuleEvaluator:
    return RuleEvaluator()


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def ledger() -> InMemoryJudgmentLedger:
    return InMemoryJudgmentLedger()


@pytest.fixture
def engine(
    resolver: ThresholdResolver, ledger: InMemoryJudgmentLedger, clock: SteppingClock
) -> DecisionSpineEngine:
    return DecisionSpineEngine(
        resolver=resolver,
        ledger=ledger,
        config=EngineConfig(max_conflict_retries=2),
        clock=clock,
    )
