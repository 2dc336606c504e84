"""
Judgment composer: findings and classification to the ten-question Judgment.

Everything the composer says comes from catalogue guidance of the rules that
fired, the classification defaults below, and the configured deadline and
accountability tables. It never invents thresholds or deadlines of its own.
"""

from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

import structlog

from spine.domain.models import (
    AccountableParty,
    BlockedDecision,
    Classification,
    EntityContext,
    EntityType,
    Finding,
    FindingKind,
    Judgment,
    LedgerEntry,
    NextAction,
    Observation,
    Reasoning,
    RoleViolation,
    SignalKind,
    TimeAwareness,
    Trend,
)
from spine.services.classifier import classify, days_in_state, state_since
from spine.services.rules import GAP_KINDS, RuleEvaluation, canonical_order, guidance_for
from spine.services.thresholds import ResolvedThresholds

logger = structlog.get_logger(__name__)

C = Classification

DEFAULT_NEXT_ACTION: dict[Classification, str] = {
    C.CRITICAL: "Escalate to the accountable role for immediate response",
    C.UNSAFE: "Correct the unsafe condition before care continues",
    C.CONCERNING: "Review the findings and schedule follow-up",
    C.ACCEPTABLE: "Continue routine monitoring under the current care plan",
}

DEFAULT_PROHIBITIONS: dict[Classification, tuple[str, ...]] = {
    C.CRITICAL: ("DO NOT leave the situation unattended until the accountable role responds",),
    C.UNSAFE: ("DO NOT continue the affected care activity until the condition is corrected",),
}

DEFAULT_CONSEQUENCES: dict[Classification, tuple[str, ...]] = {
    C.CRITICAL: ("Serious harm is likely without immediate intervention",),
    C.UNSAFE: ("The situation is likely to become critical if not corrected",),
    C.CONCERNING: ("Concerns may compound into an unsafe situation",),
}

CONFIRM_ACCEPTABLE = "Confirm status as ACCEPTABLE"

_VIOLATION_SEVERITY = {
    C.CRITICAL: "UNACCEPTABLE",
    C.UNSAFE: "UNSAFE",
    C.CONCERNING: "ALLOWED_WITH_OVERRIDE",
}


def _unique(items: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)


def _by_severity(findings: Sequence[Finding]) -> list[Finding]:
    # Stable sort keeps rule order within a severity
    return sorted(findings, key=lambda f: f.severity.rank, reverse=True)


def _fmt(value: float | str) -> str:
    return f"{value:g}" if isinstance(value, float) else str(value)


def describe_observations(observations: Sequence[Observation]) -> list[str]:
    """One fact per signal kind and sub-key, latest reading first."""
    if not observations:
        return ["No observations were received for this evaluation"]
    grouped: dict[tuple[SignalKind, str], list[Observation]] = defaultdict(list)
    for obs in canonical_order(observations):
        grouped[(obs.signal_kind, obs.sub_key)].append(obs)

    facts = []
    for (kind, sub_key), readings in grouped.items():
        latest = max(readings, key=lambda o: o.observed_at)
        label = kind.value if sub_key == "*" else f"{kind.value} {sub_key}"
        unit = f" {latest.unit}" if latest.unit else ""
        fact = (
            f"{label}: {_fmt(latest.value)}{unit} at {latest.observed_at.isoformat()} "
            f"({latest.source})"
        )
        if len(readings) > 1:
            fact += f"; {len(readings)} readings in window"
        facts.append(fact)
    return facts


class JudgmentComposer:
    """
    Builds one Judgment per evaluation pass.

    Invariants kept here:
    - Exactly one next action, deadline from the configured table
    - A non-empty accountable role
    - Never ACCEPTABLE when coverage was not confirmed
    - "Confirm status as ACCEPTABLE" blocked whenever anything is unknown
    """

    def __init__(self) -> None:
        self.logger = logger.bind(component="judgment_composer")

    def compose(
        self,
        *,
        entity_id: str,
        entity_type: EntityType,
        evaluation: RuleEvaluation,
        thresholds: ResolvedThresholds,
        observations: Sequence[Observation],
        history: Sequence[LedgerEntry],
        evaluated_at: datetime,
        context: EntityContext | None = None,
    ) -> Judgment:
        findings = list(evaluation.findings)
        if not evaluation.coverage.all_required_confirmed and not any(
            f.kind in GAP_KINDS and f.unknown for f in findings
        ):
            findings.append(
                Finding(
                    rule_id="coverage.unconfirmed",
                    kind=FindingKind.MISSING_SIGNAL,
                    severity=C.CONCERNING,
                    reason="Signal coverage for this entity could not be confirmed",
                    unknown=(
                        "Whether every required signal was observed "
                        "(no required signals defined)"
                    ),
                )
            )

        classification, trend = classify(findings, history)
        previous = history[0].classification if history else None
        ranked = _by_severity(findings)
        driving = next((f for f in ranked if f.severity is classification), None)
        guidance = [guidance_for(f) for f in ranked]

        # Q4, Q5
        driving_guidance = guidance_for(driving) if driving else None
        action = (
            driving_guidance.next_action
            if driving_guidance and driving_guidance.next_action
            else DEFAULT_NEXT_ACTION[classification]
        )
        minutes = thresholds.deadline_minutes(
            classification, driving.signal_kind if driving else None
        )
        next_action = NextAction(
            action=action,
            deadline=evaluated_at + timedelta(minutes=minutes),
            time_remaining_seconds=minutes * 60,
        )

        # Q7
        role = thresholds.accountable_role(classification)
        person = context.roster.get(role) if context else None
        accountable = AccountableParty(
            role=role,
            person_id=person.person_id if person else None,
            person_name=person.name if person else None,
        )

        # Q6, Q8
        prohibitions = _unique(
            [p for g in guidance for p in g.prohibitions]
            + list(DEFAULT_PROHIBITIONS.get(classification, ()))
        )
        consequences = _unique(
            [c for g in guidance for c in g.consequences]
            + list(DEFAULT_CONSEQUENCES.get(classification, ()))
        )

        # Q9, Q10
        unknowns = _unique(
            [f.unknown for f in findings if f.unknown] + [u for g in guidance for u in g.unknowns]
        )
        blocked = list({d: None for g in guidance for d in g.blocked_decisions})
        if unknowns:
            blocked.append(
                BlockedDecision(
                    decision=CONFIRM_ACCEPTABLE,
                    requires_human_role=thresholds.accountable_role(C.ACCEPTABLE),
                    reason_blocked=f"{len(unknowns)} unknown(s) must be resolved by a person first",
                )
            )

        days = days_in_state(classification, history)
        time_awareness = TimeAwareness(
            trend=trend,
            days_in_state=days,
            state_since=state_since(classification, history, evaluated_at),
            countdown_to_escalation_seconds=(
                minutes * 60 if classification in (C.CRITICAL, C.UNSAFE) else None
            ),
            countdown_to_regulatory_breach_seconds=self._regulatory_countdown(
                findings, thresholds
            ),
            next_risk_to_materialize=consequences[0] if consequences else None,
        )

        judgment = Judgment(
            entity_id=entity_id,
            entity_type=entity_type,
            evaluated_at=evaluated_at,
            config_version=thresholds.config_version,
            classification=classification,
            previous_classification=previous,
            trend=trend,
            what_is_happening=describe_observations(observations),
            what_is_wrong=[f"{f.severity.value}: {f.reason}" for f in ranked],
            reasoning=self._reasoning(findings, classification, previous, trend),
            single_next_action=next_action,
            prohibitions=prohibitions,
            accountable=accountable,
            consequences_if_unaddressed=consequences,
            unknowns=unknowns,
            blocked_decisions=blocked,
            time_awareness=time_awareness,
            role_violations=self._role_violations(ranked, entity_id, context),
            findings=findings,
            based_on_sequence=history[0].sequence if history else 0,
        )

        self.logger.debug(
            "judgment_composed",
            entity_id=entity_id,
            classification=classification.value,
            driving_rule=driving.rule_id if driving else None,
            unknowns=len(unknowns),
        )
        return judgment

    def _reasoning(
        self,
        findings: Sequence[Finding],
        classification: Classification,
        previous: Classification | None,
        trend: Trend,
    ) -> Reasoning:
        thresholds_crossed = [
            f"{f.sub_key or (f.signal_kind.value if f.signal_kind else f.rule_id)}: "
            f"{f.threshold_crossed.describe()}"
            for f in findings
            if f.threshold_crossed is not None and f.kind is not FindingKind.BASELINE
        ]
        trends = [f.reason for f in findings if f.kind is FindingKind.TREND]
        if previous is not None:
            trends.append(
                f"Classification {trend.value.lower()}: {previous.value} -> {classification.value}"
            )
        return Reasoning(
            rules_fired=_unique(f.rule_id for f in findings),
            thresholds_crossed=thresholds_crossed,
            trends_detected=trends,
            baselines_compared=[f.reason for f in findings if f.kind is FindingKind.BASELINE],
        )

    def _regulatory_countdown(
        self, findings: Sequence[Finding], thresholds: ResolvedThresholds
    ) -> int | None:
        medication = thresholds.for_kind(SignalKind.MEDICATION)
        if medication is None:
            return None
        breach_count = medication.parameter("regulatory_breach_count", 0)
        breach_hours = medication.parameter("regulatory_breach_hours", 0)
        if breach_count <= 0 or breach_hours <= 0:
            return None
        for f in findings:
            if (
                f.rule_id == "medication.late_pattern"
                and f.threshold_crossed is not None
                and f.threshold_crossed.value >= breach_count
            ):
                return int(breach_hours * 3600)
        return None

    def _role_violations(
        self,
        findings: Sequence[Finding],
        entity_id: str,
        context: EntityContext | None,
    ) -> list[RoleViolation]:
        violations = []
        for f in findings:
            g = guidance_for(f)
            if g.violation_type is None or f.kind in GAP_KINDS:
                continue
            person = (
                f.tags.get("caregiver_name")
                or f.tags.get("caregiver_id")
                or (context.display_name if context else None)
                or entity_id
            )
            violations.append(
                RoleViolation(
                    type=g.violation_type,
                    severity=_VIOLATION_SEVERITY.get(f.severity, "ALLOWED_WITH_OVERRIDE"),
                    description=f.reason,
                    person_involved=person,
                    required_correction=g.violation_correction or DEFAULT_NEXT_ACTION[f.severity],
                )
            )
        return violations
