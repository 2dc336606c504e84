"""
Tests for judgment composition.

Covers the ten questions for representative care situations: deadlines from
the configured tables, the accountable role and named person, prohibitions,
unknowns, blocked decisions, role violations and time awareness. Escalating to
a worse class never extends the deadline.
"""

from datetime import timedelta

from care_builders import RESIDENT_ID, T0, medication, routine_resident, staffing, task, vital

from spine.domain.models import (
    Classification,
    EntityContext,
    EntityType,
    Judgment,
    Observation,
    PersonRef,
    SignalKind,
    Trend,
)
from spine.services.composer import CONFIRM_ACCEPTABLE, JudgmentComposer, describe_observations
from spine.services.rules import RuleEvaluator
from spine.services.thresholds import ResolvedThresholds

C = Classification

ROSTER = EntityContext(
    tenant_id="default",
    display_name="Margaret Chen",
    roster={
        "LICENSED_NURSE": PersonRef(person_id="rn-4", name="Dana Ortiz"),
        "SUPERVISOR": PersonRef(person_id="sup-1", name="Sam Patel"),
    },
)


def _compose(
    observations: list[Observation],
    thresholds: ResolvedThresholds,
    context: EntityContext | None = None,
) -> Judgment:
    evaluation = RuleEvaluator().evaluate(observations, thresholds)
    return JudgmentComposer().compose(
        entity_id=RESIDENT_ID,
        entity_type=EntityType.RESIDENT,
        evaluation=evaluation,
        thresholds=thresholds,
        observations=observations,
        history=[],
        evaluated_at=T0,
        context=context,
    )


class TestAcceptable:
    def test_routine_resident_is_acceptable_with_nothing_blocked(
        self, resident_thresholds: ResolvedThresholds
    ) -> None:
        judgment = _compose(routine_resident(), resident_thresholds)

        assert judgment.classification is C.ACCEPTABLE
        assert judgment.trend is Trend.NO_HISTORY
        assert judgment.unknowns == []
        assert judgment.blocked_decisions == []
        assert judgment.accountable.role == "ASSIGNED_CAREGIVER"
        assert judgment.single_next_action.action.startswith("Continue routine monitoring")
        assert judgment.action_deadline == T0 + timedelta(minutes=24 * 60)
        assert len(judgment.what_is_happening) == 3


class TestCritical:
    def test_critical_vital_uses_vital_deadline_and_licensed_nurse(
        self, resident_thresholds: ResolvedThresholds
    ) -> None:
        observations = routine_resident()[1:] + [vital("heart_rate", 135, unit="bpm")]

        judgment = _compose(observations, resident_thresholds, ROSTER)

        assert judgment.classification is C.CRITICAL
        # vitals carry their own 15 minute CRITICAL deadline
        assert judgment.single_next_action.time_remaining_seconds == 15 * 60
        assert judgment.action_deadline == T0 + timedelta(minutes=15)
        assert judgment.accountable.role == "LICENSED_NURSE"
        assert judgment.accountable.person_name == "Dana Ortiz"
        assert judgment.time_awareness.countdown_to_escalation_seconds == 15 * 60
        assert "vital.band" in judgment.reasoning.rules_fired
        assert any("heart_rate" in t for t in judgment.reasoning.thresholds_crossed)
        assert judgment.what_is_wrong[0].startswith("CRITICAL")

    def test_multi_system_deterioration_blocks_diagnosis(
        self, resident_thresholds: ResolvedThresholds
    ) -> None:
        observations = routine_resident() + [
            vital("mobility_score", 5, at=T0 - timedelta(hours=4)),
            vital("mobility_score", 2, at=T0),
            vital("alertness_score", 5, at=T0 - timedelta(hours=4)),
            vital("alertness_score", 3, at=T0),
        ]

        judgment = _compose(observations, resident_thresholds)

        assert judgment.classification is C.CRITICAL
        assert judgment.single_next_action.action == "Contact the physician for urgent evaluation"
        assert "DO NOT delegate physician notification to unlicensed staff" in judgment.prohibitions
        roles = {d.requires_human_role for d in judgment.blocked_decisions}
        assert "PHYSICIAN" in roles
        assert any("medical cause" in u for u in judgment.unknowns)
        assert any(d.decision == CONFIRM_ACCEPTABLE for d in judgment.blocked_decisions)
        assert len(judgment.reasoning.trends_detected) == 2


class TestUnsafe:
    def test_unlicensed_caregiver_yields_role_violation(
        self, resident_thresholds: ResolvedThresholds
    ) -> None:
        observations = routine_resident() + [
            staffing("licensure", "unlicensed", tags={"caregiver_name": "Jordan Lee"})
        ]

        judgment = _compose(observations, resident_thresholds, ROSTER)

        assert judgment.classification is C.UNSAFE
        assert judgment.single_next_action.action == "Reassign the resident to a licensed nurse"
        # staffing overrides the UNSAFE deadline to 15 minutes
        assert judgment.single_next_action.time_remaining_seconds == 15 * 60
        assert judgment.accountable.role == "SUPERVISOR"
        assert judgment.accountable.person_id == "sup-1"
        assert "DO NOT proceed without licensed nurse assignment" in judgment.prohibitions
        assert len(judgment.role_violations) == 1
        violation = judgment.role_violations[0]
        assert violation.type == "LICENSURE"
        assert violation.severity == "UNSAFE"
        assert violation.person_involved == "Jordan Lee"
        assert judgment.unknowns == []

    def test_each_violation_names_its_own_caregiver(
        self, resident_thresholds: ResolvedThresholds
    ) -> None:
        credentials = [
            staffing("licensure", "unlicensed", tags={"caregiver_name": "Ana Silva"}),
            staffing("licensure", "expired", tags={"caregiver_name": "Ben Okafor"}),
        ]

        forward = _compose(routine_resident() + credentials, resident_thresholds, ROSTER)
        backward = _compose(routine_resident() + credentials[::-1], resident_thresholds, ROSTER)

        people = [v.person_involved for v in forward.role_violations]
        assert sorted(people) == ["Ana Silva", "Ben Okafor"]
        assert [v.person_involved for v in backward.role_violations] == people


class TestEscalationDeadlines:
    def test_escalation_to_critical_never_extends_the_deadline(
        self, resident_thresholds: ResolvedThresholds
    ) -> None:
        unsafe_only = routine_resident() + [staffing("licensure", "unlicensed")]
        escalated = unsafe_only[1:] + [vital("heart_rate", 105)]

        unsafe = _compose(unsafe_only, resident_thresholds, ROSTER)
        critical = _compose(escalated, resident_thresholds, ROSTER)

        assert unsafe.classification is C.UNSAFE
        assert critical.classification is C.CRITICAL
        assert critical.single_next_action.time_remaining_seconds <= (
            unsafe.single_next_action.time_remaining_seconds
        )
        assert critical.action_deadline <= unsafe.action_deadline


class TestConcerning:
    def test_late_medication_pattern_sets_regulatory_countdown(
        self, resident_thresholds: ResolvedThresholds
    ) -> None:
        observations = [vital("heart_rate", 72), task("bathing", "completed")] + [
            medication(f"med-{i}", 45, at=T0 + timedelta(hours=i)) for i in range(5)
        ]

        judgment = _compose(observations, resident_thresholds)

        assert judgment.classification is C.CONCERNING
        # medication has its own 4 hour CONCERNING deadline
        assert judgment.single_next_action.time_remaining_seconds == 4 * 60 * 60
        assert judgment.time_awareness.countdown_to_regulatory_breach_seconds == 48 * 3600
        assert judgment.time_awareness.countdown_to_escalation_seconds is None
        assert judgment.time_awareness.next_risk_to_materialize == (
            judgment.consequences_if_unaddressed[0]
        )

    def test_below_breach_count_has_no_regulatory_countdown(
        self, resident_thresholds: ResolvedThresholds
    ) -> None:
        observations = [vital("heart_rate", 72), task("bathing", "completed")] + [
            medication(f"med-{i}", 45, at=T0 + timedelta(hours=i)) for i in range(3)
        ]

        judgment = _compose(observations, resident_thresholds)

        assert judgment.classification is C.CONCERNING
        assert judgment.time_awareness.countdown_to_regulatory_breach_seconds is None

    def test_missing_signals_are_never_acceptable(
        self, resident_thresholds: ResolvedThresholds
    ) -> None:
        judgment = _compose([vital("heart_rate", 72)], resident_thresholds)

        assert judgment.classification is C.CONCERNING
        assert len(judgment.unknowns) == 2
        assert any(d.decision == CONFIRM_ACCEPTABLE for d in judgment.blocked_decisions)

    def test_empty_required_table_still_cannot_be_acceptable(
        self, resident_thresholds: ResolvedThresholds
    ) -> None:
        thresholds = ResolvedThresholds(
            entity_id=RESIDENT_ID,
            entity_type=EntityType.RESIDENT,
            config_version="empty",
            sets=resident_thresholds.sets,
            required_kinds=(),
        )

        judgment = _compose(routine_resident(), thresholds)

        assert judgment.classification is C.CONCERNING
        assert judgment.unknowns
        assert judgment.accountable.role == "SUPERVISOR"


class TestFacts:
    def test_facts_summarize_latest_reading_per_sub_key(self) -> None:
        facts = describe_observations(
            [
                vital("heart_rate", 80, at=T0, unit="bpm"),
                vital("heart_rate", 92, at=T0 + timedelta(hours=1), unit="bpm"),
            ]
        )

        assert len(facts) == 1
        assert facts[0].startswith(f"{SignalKind.VITAL.value} heart_rate: 92 bpm")
        assert "2 readings" in facts[0]

    def test_no_observations_is_stated(self) -> None:
        assert describe_observations([]) == ["No observations were received for this evaluation"]
