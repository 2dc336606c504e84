"""
Services for the decision spine.

This package contains the evaluation pipeline: normalization, threshold
resolution, rules, classification, composition, the ledger and the engine.
"""

from spine.domain.result import Result

from .composer import JudgmentComposer
from .engine import DecisionSpineEngine, EvaluationRequest, build_engine
from .ledger import InMemoryJudgmentLedger, JudgmentLedger, SqliteJudgmentLedger
from .normalizer import SignalNormalizer
from .rules import RuleEvaluator
from .signal_collector import (
    DecisionSpineService,
    SignalCollector,
    SignalSource,
    StaticSignalSource,
)
from .thresholds import FileThresholdStore, InMemoryThresholdStore, ThresholdResolver

__all__ = [
    "DecisionSpineEngine",
    "DecisionSpineService",
    "EvaluationRequest",
    "FileThresholdStore",
    "InMemoryJudgmentLedger",
    "InMemoryThresholdStore",
    "JudgmentComposer",
    "JudgmentLedger",
    "Result",
    "RuleEvaluator",
    "SignalCollector",
    "SignalNormalizer",
    "SignalSource",
    "SqliteJudgmentLedger",
    "StaticSignalSource",
    "ThresholdResolver",
    "build_engine",
]
