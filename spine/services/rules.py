"""
Rule evaluator: ordered, deterministic rules over normalized observations.

Rule ordering (fixed, safety first):
    SAFETY       vital bands, medication status, caregiver credentials
    CLINICAL     baseline deviation, decline trends, late-medication pattern
    OPERATIONAL  device battery and status, detected patterns
    WORKLOAD     staffing ratio, task status, overdue backlog
    COMBINATION  escalations that need more than one finding
    COVERAGE     missing signals, unresolved thresholds, upstream gaps

Observations are sorted into a canonical order first, so identical inputs
always give an identical finding list. A rule that raises never aborts the
pass; its failure becomes a RULE_FAILURE finding.
"""

from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from statistics import fmean

import structlog

from spine.domain.errors import RuleFailure
from spine.domain.models import (
    BlockedDecision,
    Classification,
    Finding,
    FindingKind,
    Observation,
    SignalGap,
    SignalKind,
    ThresholdCrossing,
    ThresholdSet,
)
from spine.services.thresholds import ResolvedThresholds

logger = structlog.get_logger(__name__)

C = Classification

_KIND_ORDER = {kind: index for index, kind in enumerate(SignalKind)}

# Finding kinds that stand for something the system could not judge
GAP_KINDS = frozenset(
    {
        FindingKind.MISSING_SIGNAL,
        FindingKind.UNRESOLVED_SIGNAL,
        FindingKind.NORMALIZATION_FAILURE,
        FindingKind.RULE_FAILURE,
    }
)


class RulePhase(IntEnum):
    SAFETY = 1
    CLINICAL = 2
    OPERATIONAL = 3
    WORKLOAD = 4
    COMBINATION = 5
    COVERAGE = 6


@dataclass(frozen=True)
class RuleGuidance:
    """What the composer says when a rule drives or contributes to a judgment."""

    next_action: str | None = None
    prohibitions: tuple[str, ...] = ()
    consequences: tuple[str, ...] = ()
    unknowns: tuple[str, ...] = ()
    blocked_decisions: tuple[BlockedDecision, ...] = ()
    violation_type: str | None = None
    violation_correction: str | None = None


ObservationRule = Callable[[Observation, ThresholdSet], Finding | None]
AggregateRule = Callable[[list[Observation], ThresholdSet], list[Finding]]
CombinationRule = Callable[[list[Finding], ResolvedThresholds], Finding | None]


@dataclass(frozen=True)
class RuleDefinition:
    rule_id: str
    phase: RulePhase
    description: str
    signal_kind: SignalKind | None = None
    observation_rule: ObservationRule | None = None
    aggregate_rule: AggregateRule | None = None
    combination_rule: CombinationRule | None = None
    guidance: RuleGuidance = field(default_factory=RuleGuidance)


@dataclass(frozen=True)
class SignalCoverage:
    """Which signal kinds were present, missing, or could not be judged."""

    required: tuple[SignalKind, ...]
    present: tuple[SignalKind, ...]
    missing: tuple[SignalKind, ...]
    unresolved: tuple[SignalKind, ...]
    all_required_confirmed: bool


@dataclass(frozen=True)
class RuleEvaluation:
    findings: list[Finding]
    coverage: SignalCoverage

    @property
    def unknowns(self) -> list[str]:
        return [f.unknown for f in self.findings if f.unknown]


# Helpers


def canonical_order(observations: Iterable[Observation]) -> list[Observation]:
    """Stable ordering independent of the order records arrived in."""
    return sorted(
        observations,
        key=lambda o: (
            _KIND_ORDER[o.signal_kind],
            o.sub_key,
            o.observed_at,
            o.source,
            str(o.value),
            o.entity_id,
            tuple(sorted(o.tags.items())),
        ),
    )


def _label(obs: Observation) -> str:
    return obs.sub_key if obs.sub_key != "*" else obs.signal_kind.value.lower()


def _fmt(value: float | str) -> str:
    return f"{value:g}" if isinstance(value, float) else str(value)


def _band_finding(rule_id: str, obs: Observation, ts: ThresholdSet) -> Finding | None:
    if not isinstance(obs.value, float):
        return None
    band = ts.band_for(obs.sub_key)
    if band is None:
        return Finding(
            rule_id=rule_id,
            kind=FindingKind.UNRESOLVED_SIGNAL,
            signal_kind=obs.signal_kind,
            sub_key=obs.sub_key,
            severity=C.CONCERNING,
            reason=f"No band configured for {obs.signal_kind.value} {_label(obs)}",
            occurred_at=obs.observed_at,
            unknown=(
                f"Cannot judge {obs.signal_kind.value} {_label(obs)} = {_fmt(obs.value)}: "
                "no threshold band configured"
            ),
        )

    value = obs.value
    unit = f" {obs.unit or band.unit}" if (obs.unit or band.unit) else ""
    # Unsafe and critical cutoffs are inclusive, the normal band edges are not
    checks = (
        (C.CRITICAL, band.critical_low, band.critical_high, True),
        (C.UNSAFE, band.unsafe_low, band.unsafe_high, True),
        (C.CONCERNING, band.low, band.high, False),
    )
    for severity, low, high, inclusive in checks:
        crossing: ThresholdCrossing | None = None
        if low is not None and (value <= low if inclusive else value < low):
            crossing = ThresholdCrossing(
                value=value, threshold=low, comparison="at_or_below" if inclusive else "below"
            )
        elif high is not None and (value >= high if inclusive else value > high):
            crossing = ThresholdCrossing(
                value=value, threshold=high, comparison="at_or_above" if inclusive else "above"
            )
        if crossing is not None:
            return Finding(
                rule_id=rule_id,
                kind=FindingKind.THRESHOLD,
                signal_kind=obs.signal_kind,
                sub_key=obs.sub_key,
                severity=severity,
                reason=(
                    f"{_label(obs)} {_fmt(value)}{unit} is {crossing.comparison.replace('_', ' ')} "
                    f"the {severity.value.lower()} cutoff {crossing.threshold:g}"
                ),
                threshold_crossed=crossing,
                occurred_at=obs.observed_at,
            )
    return None


def _categorical_finding(rule_id: str, obs: Observation, ts: ThresholdSet) -> Finding | None:
    if isinstance(obs.value, float):
        return None
    if obs.is_unclassified:
        return Finding(
            rule_id=rule_id,
            kind=FindingKind.UNRESOLVED_SIGNAL,
            signal_kind=obs.signal_kind,
            sub_key=obs.sub_key,
            severity=C.CONCERNING,
            reason=f"{obs.signal_kind.value} {_label(obs)} reported an unrecognized value",
            occurred_at=obs.observed_at,
            unknown=(
                f"Cannot interpret {obs.signal_kind.value} {_label(obs)} from {obs.source}: "
                "value outside the source's known vocabulary"
            ),
        )
    severity = ts.categories_for(obs.sub_key).get(obs.value)
    if severity is None or severity is C.ACCEPTABLE:
        return None
    return Finding(
        rule_id=rule_id,
        kind=FindingKind.THRESHOLD,
        signal_kind=obs.signal_kind,
        sub_key=obs.sub_key,
        severity=severity,
        reason=f"{obs.signal_kind.value.lower()} {_label(obs)} reported '{obs.value}'",
        occurred_at=obs.observed_at,
    )


def _categorical_only(rule_id: str, obs: Observation, ts: ThresholdSet) -> Finding | None:
    """Categorical rule for kinds that never carry numbers."""
    if isinstance(obs.value, float):
        return Finding(
            rule_id=rule_id,
            kind=FindingKind.UNRESOLVED_SIGNAL,
            signal_kind=obs.signal_kind,
            sub_key=obs.sub_key,
            severity=C.CONCERNING,
            reason=f"{obs.signal_kind.value} {_label(obs)} carried a numeric value",
            occurred_at=obs.observed_at,
            unknown=(
                f"Cannot interpret numeric {obs.signal_kind.value} value {_fmt(obs.value)} "
                f"from {obs.source}"
            ),
        )
    return _categorical_finding(rule_id, obs, ts)


def _by_sub_key(observations: list[Observation]) -> dict[str, list[Observation]]:
    grouped: dict[str, list[Observation]] = defaultdict(list)
    for obs in observations:
        if isinstance(obs.value, float):
            grouped[obs.sub_key].append(obs)
    return grouped


# Rule functions


def vital_band(obs: Observation, ts: ThresholdSet) -> Finding | None:
    if not isinstance(obs.value, float):
        return _categorical_finding("vital.band", obs, ts)
    return _band_finding("vital.band", obs, ts)


def medication_status(obs: Observation, ts: ThresholdSet) -> Finding | None:
    return _categorical_finding("medication.status", obs, ts)


def staffing_credentials(obs: Observation, ts: ThresholdSet) -> Finding | None:
    return _categorical_finding("staffing.credentials", obs, ts)


def vital_baseline_deviation(observations: list[Observation], ts: ThresholdSet) -> list[Finding]:
    """Mean over the window compared with the configured baseline."""
    findings = []
    for sub_key, readings in sorted(_by_sub_key(observations).items()):
        band = ts.band_for(sub_key)
        if band is None or band.baseline is None or band.max_baseline_deviation_pct is None:
            continue
        if band.baseline == 0:
            continue
        mean = fmean(float(o.value) for o in readings)
        deviation_pct = abs(mean - band.baseline) / abs(band.baseline) * 100
        if deviation_pct <= band.max_baseline_deviation_pct:
            continue
        above = mean > band.baseline
        limit = band.baseline * (
            1 + band.max_baseline_deviation_pct / 100 * (1 if above else -1)
        )
        findings.append(
            Finding(
                rule_id="vital.baseline_deviation",
                kind=FindingKind.BASELINE,
                signal_kind=SignalKind.VITAL,
                sub_key=sub_key,
                severity=C.CONCERNING,
                reason=(
                    f"Mean {sub_key} {mean:.1f} over {len(readings)} readings deviates "
                    f"{deviation_pct:.1f}% from baseline {band.baseline:g} "
                    f"(limit {band.max_baseline_deviation_pct:g}%)"
                ),
                threshold_crossed=ThresholdCrossing(
                    value=round(mean, 2),
                    threshold=round(limit, 2),
                    comparison="above" if above else "below",
                ),
                occurred_at=readings[-1].observed_at,
            )
        )
    return findings


def vital_decline(observations: list[Observation], ts: ThresholdSet) -> list[Finding]:
    """Drop from the earliest to the latest reading in the window."""
    findings = []
    for sub_key, readings in sorted(_by_sub_key(observations).items()):
        band = ts.band_for(sub_key)
        if band is None or band.max_decline is None or len(readings) < 2:
            continue
        ordered = sorted(readings, key=lambda o: o.observed_at)
        first, last = float(ordered[0].value), float(ordered[-1].value)
        decline = first - last
        if decline < band.max_decline:
            continue
        findings.append(
            Finding(
                rule_id="vital.decline",
                kind=FindingKind.TREND,
                signal_kind=SignalKind.VITAL,
                sub_key=sub_key,
                severity=C.CONCERNING,
                reason=(
                    f"{sub_key} declined from {first:g} to {last:g} "
                    f"(decline {decline:g}, limit {band.max_decline:g})"
                ),
                threshold_crossed=ThresholdCrossing(
                    value=decline, threshold=band.max_decline, comparison="at_or_above"
                ),
                occurred_at=ordered[-1].observed_at,
            )
        )
    return findings


def medication_late_pattern(observations: list[Observation], ts: ThresholdSet) -> list[Finding]:
    late_minutes = ts.parameter("late_minutes", 30)
    late_count = ts.parameter("late_count", 3)
    late = [
        o
        for o in observations
        if (isinstance(o.value, float) and o.value > late_minutes) or o.value == "late"
    ]
    if not late or len(late) < late_count:
        return []
    return [
        Finding(
            rule_id="medication.late_pattern",
            kind=FindingKind.THRESHOLD,
            signal_kind=SignalKind.MEDICATION,
            severity=C.CONCERNING,
            reason=(
                f"{len(late)} medication passes more than {late_minutes:g} minutes late "
                f"(limit {late_count:g})"
            ),
            threshold_crossed=ThresholdCrossing(
                value=float(len(late)), threshold=late_count, comparison="at_or_above"
            ),
            occurred_at=max(o.observed_at for o in late),
        )
    ]


def device_band(obs: Observation, ts: ThresholdSet) -> Finding | None:
    return _band_finding("device.band", obs, ts)


def device_status(obs: Observation, ts: ThresholdSet) -> Finding | None:
    return _categorical_finding("device.status", obs, ts)


def pattern_alert(obs: Observation, ts: ThresholdSet) -> Finding | None:
    return _categorical_only("pattern.alert", obs, ts)


def staffing_ratio(obs: Observation, ts: ThresholdSet) -> Finding | None:
    return _band_finding("staffing.ratio", obs, ts)


def task_status(obs: Observation, ts: ThresholdSet) -> Finding | None:
    return _categorical_only("task.status", obs, ts)


def task_overdue_backlog(observations: list[Observation], ts: ThresholdSet) -> list[Finding]:
    overdue_count = ts.parameter("overdue_count", 3)
    overdue = [o for o in observations if o.value == "overdue"]
    if not overdue or len(overdue) < overdue_count:
        return []
    return [
        Finding(
            rule_id="task.overdue_backlog",
            kind=FindingKind.THRESHOLD,
            signal_kind=SignalKind.TASK,
            severity=C.CONCERNING,
            reason=f"{len(overdue)} tasks currently overdue (limit {overdue_count:g})",
            threshold_crossed=ThresholdCrossing(
                value=float(len(overdue)), threshold=overdue_count, comparison="at_or_above"
            ),
            occurred_at=max(o.observed_at for o in overdue),
        )
    ]


def _latest_time(findings: list[Finding]):
    stamps = [f.occurred_at for f in findings if f.occurred_at is not None]
    return max(stamps) if stamps else None


def multi_system_deterioration(
    findings: list[Finding], thresholds: ResolvedThresholds
) -> Finding | None:
    """Several vitals deteriorating at once escalates to CRITICAL."""
    minimum = int(thresholds.parameters.get("min_deteriorating_vitals", 2))
    contributing = [
        f
        for f in findings
        if f.signal_kind is SignalKind.VITAL
        and (
            f.kind in (FindingKind.BASELINE, FindingKind.TREND)
            or (f.kind is FindingKind.THRESHOLD and f.severity.rank >= C.UNSAFE.rank)
        )
    ]
    indicators = sorted({f.sub_key for f in contributing if f.sub_key})
    if len(indicators) < minimum:
        return None
    return Finding(
        rule_id="combination.multi_system_deterioration",
        kind=FindingKind.COMBINATION,
        signal_kind=SignalKind.VITAL,
        severity=C.CRITICAL,
        reason=(
            f"{len(indicators)} vital indicators deteriorating together: "
            f"{', '.join(indicators)}"
        ),
        threshold_crossed=ThresholdCrossing(
            value=float(len(indicators)), threshold=float(minimum), comparison="at_or_above"
        ),
        occurred_at=_latest_time(contributing),
    )


def clinical_risk_with_unsafe_staffing(
    findings: list[Finding], thresholds: ResolvedThresholds
) -> Finding | None:
    """A clinical concern while staffing is unsafe escalates to CRITICAL."""
    clinical = [
        f
        for f in findings
        if f.signal_kind is SignalKind.VITAL
        and f.kind not in GAP_KINDS
        and f.severity.rank >= C.CONCERNING.rank
    ]
    staffing = [
        f
        for f in findings
        if f.signal_kind is SignalKind.STAFFING
        and f.kind is FindingKind.THRESHOLD
        and f.severity.rank >= C.UNSAFE.rank
    ]
    if not clinical or not staffing:
        return None
    return Finding(
        rule_id="combination.clinical_risk_unsafe_staffing",
        kind=FindingKind.COMBINATION,
        signal_kind=SignalKind.STAFFING,
        severity=C.CRITICAL,
        reason=(
            f"Clinical concern ({clinical[0].reason}) while staffing is unsafe "
            f"({staffing[0].reason})"
        ),
        occurred_at=_latest_time(clinical + staffing),
    )


# Catalogue

_PHYSICIAN_BLOCK = BlockedDecision(
    decision="Determine the medical cause of the deterioration",
    requires_human_role="PHYSICIAN",
    reason_blocked="Diagnosis is outside what the system may decide",
)

DEFAULT_RULES: tuple[RuleDefinition, ...] = (
    RuleDefinition(
        rule_id="vital.band",
        phase=RulePhase.SAFETY,
        description="Vital sign reading outside its configured band",
        signal_kind=SignalKind.VITAL,
        observation_rule=vital_band,
        guidance=RuleGuidance(
            next_action="Obtain a confirmatory set of vital signs and notify the licensed nurse",
            prohibitions=("DO NOT wait for the next scheduled assessment",),
            consequences=("Condition may decline without clinical intervention",),
        ),
    ),
    RuleDefinition(
        rule_id="medication.status",
        phase=RulePhase.SAFETY,
        description="Medication pass recorded as missed or refused",
        signal_kind=SignalKind.MEDICATION,
        observation_rule=medication_status,
        guidance=RuleGuidance(
            next_action="Review the medication administration record with the licensed nurse",
            prohibitions=("DO NOT double the next dose to make up for a missed dose",),
            consequences=("Therapeutic levels may not be maintained",),
            blocked_decisions=(
                BlockedDecision(
                    decision="Reschedule or skip the missed dose",
                    requires_human_role="LICENSED_NURSE",
                    reason_blocked="Dose changes require a licensed clinician",
                ),
            ),
        ),
    ),
    RuleDefinition(
        rule_id="staffing.credentials",
        phase=RulePhase.SAFETY,
        description="Assigned caregiver lacks the required licensure",
        signal_kind=SignalKind.STAFFING,
        observation_rule=staffing_credentials,
        guidance=RuleGuidance(
            next_action="Reassign the resident to a licensed nurse",
            prohibitions=(
                "DO NOT allow injectable medication administration by this caregiver",
                "DO NOT allow complex wound care by this caregiver",
                "DO NOT proceed without licensed nurse assignment",
            ),
            consequences=(
                "Clinical tasks may be performed by unqualified personnel",
                "Regulatory violation and legal liability for the facility",
            ),
            blocked_decisions=(
                BlockedDecision(
                    decision="Allow current caregiver to continue clinical tasks",
                    requires_human_role="SUPERVISOR",
                    reason_blocked="Caregiver lacks required licensure for resident acuity level",
                ),
            ),
            violation_type="LICENSURE",
            violation_correction="Immediate reassignment to licensed nurse required",
        ),
    ),
    RuleDefinition(
        rule_id="vital.baseline_deviation",
        phase=RulePhase.CLINICAL,
        description="Window mean deviates from the resident baseline",
        signal_kind=SignalKind.VITAL,
        aggregate_rule=vital_baseline_deviation,
        guidance=RuleGuidance(
            next_action="Compare against the resident baseline and notify the licensed nurse",
            consequences=("An undiagnosed condition may progress without treatment",),
        ),
    ),
    RuleDefinition(
        rule_id="vital.decline",
        phase=RulePhase.CLINICAL,
        description="Score declined across the window",
        signal_kind=SignalKind.VITAL,
        aggregate_rule=vital_decline,
        guidance=RuleGuidance(
            next_action="Increase monitoring frequency and document observations for review",
            consequences=("Fall risk rises as mobility and alertness decline",),
        ),
    ),
    RuleDefinition(
        rule_id="medication.late_pattern",
        phase=RulePhase.CLINICAL,
        description="Repeated late medication passes",
        signal_kind=SignalKind.MEDICATION,
        aggregate_rule=medication_late_pattern,
        guidance=RuleGuidance(
            next_action="Review the medication pass sequence with the assigned caregiver",
            consequences=(
                "Resident health outcomes degrade without consistent medication timing",
                "State survey citation if the pattern is documented during inspection",
            ),
        ),
    ),
    RuleDefinition(
        rule_id="device.band",
        phase=RulePhase.OPERATIONAL,
        description="Device telemetry outside its configured band",
        signal_kind=SignalKind.DEVICE,
        observation_rule=device_band,
        guidance=RuleGuidance(
            next_action="Recharge or replace the monitoring device battery",
            consequences=("Monitoring stops when the device powers off",),
        ),
    ),
    RuleDefinition(
        rule_id="device.status",
        phase=RulePhase.OPERATIONAL,
        description="Device offline or degraded",
        signal_kind=SignalKind.DEVICE,
        observation_rule=device_status,
        guidance=RuleGuidance(
            next_action="Restore the monitoring device connection",
            prohibitions=("DO NOT rely on this device for fall or vital alerts until restored",),
            consequences=("Events from this device will not reach staff",),
        ),
    ),
    RuleDefinition(
        rule_id="pattern.alert",
        phase=RulePhase.OPERATIONAL,
        description="Upstream pattern detector raised an alert",
        signal_kind=SignalKind.PATTERN,
        observation_rule=pattern_alert,
        guidance=RuleGuidance(
            next_action="Review the detected pattern with the care team",
            consequences=("The detected pattern may continue unaddressed",),
        ),
    ),
    RuleDefinition(
        rule_id="staffing.ratio",
        phase=RulePhase.WORKLOAD,
        description="Residents per caregiver above the configured ceiling",
        signal_kind=SignalKind.STAFFING,
        observation_rule=staffing_ratio,
        guidance=RuleGuidance(
            next_action="Call in additional staff or redistribute assignments",
            prohibitions=("DO NOT accept new admissions until the ratio is restored",),
            consequences=("Care tasks will be delayed or missed",),
            blocked_decisions=(
                BlockedDecision(
                    decision="Accept new admissions",
                    requires_human_role="DIRECTOR_OF_NURSING",
                    reason_blocked="Staffing ratio exceeds the configured ceiling",
                ),
            ),
            violation_type="RATIO",
            violation_correction="Restore the staffing ratio to the configured ceiling",
        ),
    ),
    RuleDefinition(
        rule_id="task.status",
        phase=RulePhase.WORKLOAD,
        description="Care task missed",
        signal_kind=SignalKind.TASK,
        observation_rule=task_status,
        guidance=RuleGuidance(
            next_action="Complete or reschedule the missed care task",
            consequences=("Resident needs are not being met on schedule",),
        ),
    ),
    RuleDefinition(
        rule_id="task.overdue_backlog",
        phase=RulePhase.WORKLOAD,
        description="Overdue task backlog",
        signal_kind=SignalKind.TASK,
        aggregate_rule=task_overdue_backlog,
        guidance=RuleGuidance(
            next_action="Prioritize the overdue task backlog with the assigned caregiver",
            consequences=("Resident condition may worsen due to missed care interventions",),
        ),
    ),
    RuleDefinition(
        rule_id="combination.multi_system_deterioration",
        phase=RulePhase.COMBINATION,
        description="Several vital indicators deteriorating together",
        combination_rule=multi_system_deterioration,
        guidance=RuleGuidance(
            next_action="Contact the physician for urgent evaluation",
            prohibitions=(
                "DO NOT wait for the next scheduled assessment",
                "DO NOT delegate physician notification to unlicensed staff",
            ),
            consequences=(
                "Condition may rapidly decline without physician intervention",
                "Potential hospitalization for a preventable condition",
            ),
            unknowns=(
                "Specific medical cause of the deterioration (requires physician evaluation)",
            ),
            blocked_decisions=(_PHYSICIAN_BLOCK,),
        ),
    ),
    RuleDefinition(
        rule_id="combination.clinical_risk_unsafe_staffing",
        phase=RulePhase.COMBINATION,
        description="Clinical concern while staffing is unsafe",
        combination_rule=clinical_risk_with_unsafe_staffing,
        guidance=RuleGuidance(
            next_action="Assign a licensed nurse to the resident immediately",
            prohibitions=("DO NOT leave the resident with unlicensed staff only",),
            consequences=("Clinical deterioration may go unrecognized by unqualified staff",),
        ),
    ),
)

COVERAGE_GUIDANCE: dict[str, RuleGuidance] = {
    "coverage.missing_signal": RuleGuidance(
        next_action="Record the missing observations so the situation can be classified",
        consequences=("Problems in unobserved areas cannot be detected",),
    ),
    "coverage.unresolved_thresholds": RuleGuidance(
        next_action="Ask the configuration owner to publish thresholds for the affected signals",
        consequences=("Signals without thresholds are not being judged",),
    ),
    "coverage.required_signals_unconfigured": RuleGuidance(
        next_action="Ask the configuration owner to define required signals for this entity type",
    ),
    "coverage.upstream_gap": RuleGuidance(
        next_action="Correct or resend the rejected source records",
        consequences=("Rejected records may hide a real problem",),
    ),
    "rule.failure": RuleGuidance(
        next_action="Report the failing rule to the configuration owner",
        consequences=("Part of the situation was not evaluated",),
    ),
}

_GUIDANCE = {rule.rule_id: rule.guidance for rule in DEFAULT_RULES} | COVERAGE_GUIDANCE


def guidance_for(finding: Finding) -> RuleGuidance:
    """Catalogue guidance for the rule that produced a finding."""
    if finding.kind is FindingKind.RULE_FAILURE:
        return COVERAGE_GUIDANCE["rule.failure"]
    return _GUIDANCE.get(finding.rule_id, RuleGuidance())


# Evaluator


class RuleEvaluator:
    """
    Applies the rule catalogue in its fixed order.

    Design principles:
    - Deterministic: canonical observation order, fixed rule order
    - Total: every pass completes, failures become findings
    - Explicit: anything not judged is reported as a gap finding with an unknown
    """

    def __init__(self, rules: Sequence[RuleDefinition] = DEFAULT_RULES) -> None:
        # sorted() is stable, so declaration order is kept inside a phase
        self.rules = tuple(sorted(rules, key=lambda r: r.phase))
        self.logger = logger.bind(component="rule_evaluator")

    def evaluate(
        self,
        observations: Sequence[Observation],
        thresholds: ResolvedThresholds,
        gaps: Sequence[SignalGap] = (),
    ) -> RuleEvaluation:
        ordered = canonical_order(observations)
        by_kind: dict[SignalKind, list[Observation]] = defaultdict(list)
        for obs in ordered:
            by_kind[obs.signal_kind].append(obs)

        findings: list[Finding] = []
        for rule in self.rules:
            findings.extend(self._apply(rule, by_kind, thresholds, findings))

        coverage_findings, coverage = self._coverage(by_kind, thresholds, gaps, findings)
        findings.extend(coverage_findings)

        self.logger.debug(
            "rules_evaluated",
            entity_id=thresholds.entity_id,
            observations=len(ordered),
            findings=len(findings),
            all_required_confirmed=coverage.all_required_confirmed,
        )
        return RuleEvaluation(findings=findings, coverage=coverage)

    def _apply(
        self,
        rule: RuleDefinition,
        by_kind: dict[SignalKind, list[Observation]],
        thresholds: ResolvedThresholds,
        findings_so_far: list[Finding],
    ) -> list[Finding]:
        try:
            if rule.combination_rule is not None:
                found = rule.combination_rule(list(findings_so_far), thresholds)
                return [found] if found is not None else []

            if rule.signal_kind is None:
                return []
            observations = by_kind.get(rule.signal_kind)
            threshold_set = thresholds.for_kind(rule.signal_kind)
            # Unresolved kinds are reported once, by the coverage step
            if not observations or threshold_set is None:
                return []

            if rule.aggregate_rule is not None:
                return list(rule.aggregate_rule(observations, threshold_set))
        except Exception as e:
            return [self._failure(rule, thresholds, e)]

        results: list[Finding] = []
        if rule.observation_rule is None:
            return results
        # One bad observation must not hide what the rule finds in the others
        for obs in observations:
            try:
                found = rule.observation_rule(obs, threshold_set)
            except Exception as e:
                results.append(self._failure(rule, thresholds, e, obs))
                continue
            if found is not None:
                results.append(found.model_copy(update={"tags": dict(obs.tags)}))
        return results

    def _failure(
        self,
        rule: RuleDefinition,
        thresholds: ResolvedThresholds,
        error: Exception,
        obs: Observation | None = None,
    ) -> Finding:
        failure = RuleFailure(rule.rule_id, error)
        self.logger.exception(
            "rule_failed",
            rule_id=rule.rule_id,
            entity_id=thresholds.entity_id,
            sub_key=obs.sub_key if obs is not None else None,
            error=str(error),
        )
        return Finding(
            rule_id=rule.rule_id,
            kind=FindingKind.RULE_FAILURE,
            signal_kind=rule.signal_kind,
            sub_key=obs.sub_key if obs is not None else None,
            severity=C.CONCERNING,
            reason=str(failure),
            occurred_at=obs.observed_at if obs is not None else None,
            unknown=f"Rule {rule.rule_id} could not be evaluated ({type(error).__name__})",
            tags=dict(obs.tags) if obs is not None else {},
        )

    def _coverage(
        self,
        by_kind: dict[SignalKind, list[Observation]],
        thresholds: ResolvedThresholds,
        gaps: Sequence[SignalGap],
        findings: list[Finding],
    ) -> tuple[list[Finding], SignalCoverage]:
        required = thresholds.required_kinds
        present = tuple(kind for kind in SignalKind if by_kind.get(kind))
        missing = tuple(kind for kind in required if kind not in present)
        unresolved = tuple(
            kind
            for kind in SignalKind
            if kind in thresholds.errors and (kind in required or kind in present)
        )

        results: list[Finding] = []

        if not thresholds.required_table_configured:
            results.append(
                Finding(
                    rule_id="coverage.required_signals_unconfigured",
                    kind=FindingKind.UNRESOLVED_SIGNAL,
                    severity=C.CONCERNING,
                    reason=(
                        f"No required-signal table for {thresholds.entity_type.value} "
                        f"in config version {thresholds.config_version or 'none'}"
                    ),
                    unknown=(
                        f"Which signals are required for a {thresholds.entity_type.value.lower()} "
                        "(configuration missing; built-in list applied)"
                    ),
                )
            )

        for kind in missing:
            results.append(
                Finding(
                    rule_id="coverage.missing_signal",
                    kind=FindingKind.MISSING_SIGNAL,
                    signal_kind=kind,
                    severity=C.CONCERNING,
                    reason=f"No {kind.value} observations for this evaluation",
                    unknown=(
                        f"No {kind.value} data received; "
                        f"{kind.value} status cannot be determined"
                    ),
                )
            )

        for kind in unresolved:
            error = thresholds.errors[kind]
            results.append(
                Finding(
                    rule_id="coverage.unresolved_thresholds",
                    kind=FindingKind.UNRESOLVED_SIGNAL,
                    signal_kind=kind,
                    severity=C.CONCERNING,
                    reason=f"{error.reason.value}: {error.detail}",
                    unknown=f"Cannot classify {kind.value} signals: {error.detail}",
                )
            )

        ordered_gaps = sorted(
            gaps,
            key=lambda g: (
                _KIND_ORDER[g.signal_kind] if g.signal_kind else len(_KIND_ORDER),
                g.reason,
                g.detail,
            ),
        )
        for gap in ordered_gaps:
            label = gap.signal_kind.value if gap.signal_kind else "signal"
            results.append(
                Finding(
                    rule_id="coverage.upstream_gap",
                    kind=FindingKind.NORMALIZATION_FAILURE,
                    signal_kind=gap.signal_kind,
                    severity=C.CONCERNING,
                    reason=f"{gap.reason}: {gap.detail}",
                    unknown=f"{label} data incomplete: {gap.detail}",
                )
            )

        has_gap = any(f.kind in GAP_KINDS for f in findings) or bool(results)
        coverage = SignalCoverage(
            required=tuple(required),
            present=present,
            missing=missing,
            unresolved=unresolved,
            all_required_confirmed=bool(required) and not has_gap,
        )
        return results, coverage
