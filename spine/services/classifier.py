"""
Classifier: findings plus prior judgments to a classification and a trend.

The class is the most severe finding; no findings means ACCEPTABLE. History is
always newest first, as returned by the ledger.
"""

from collections.abc import Sequence
from datetime import datetime

from spine.domain.models import Classification, Finding, LedgerEntry, Trend


def classify_findings(findings: Sequence[Finding]) -> Classification:
    return Classification.highest([f.severity for f in findings])


def trend_against(current: Classification, previous: Classification | None) -> Trend:
    if previous is None:
        return Trend.NO_HISTORY
    if current.rank > previous.rank:
        return Trend.WORSENING
    if current.rank < previous.rank:
        return Trend.IMPROVING
    return Trend.STABLE


def classify(
    findings: Sequence[Finding], history: Sequence[LedgerEntry]
) -> tuple[Classification, Trend]:
    """
    Classify one evaluation pass.

    Args:
        findings: Findings from the rule evaluator
        history: Prior ledger entries for the entity, newest first

    Returns:
        The classification and its trend against the most recent prior judgment
    """
    classification = classify_findings(findings)
    previous = history[0].classification if history else None
    return classification, trend_against(classification, previous)


def days_in_state(classification: Classification, history: Sequence[LedgerEntry]) -> int:
    """Consecutive judgments in this class, counting the one being emitted."""
    count = 1
    for entry in history:
        if entry.classification is not classification:
            break
        count += 1
    return count


def state_since(
    classification: Classification, history: Sequence[LedgerEntry], evaluated_at: datetime
) -> datetime:
    """When the entity entered its current class."""
    since = evaluated_at
    for entry in history:
        if entry.classification is not classification:
            break
        since = entry.evaluated_at
    return since
