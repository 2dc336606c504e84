"""
Built-in baseline configuration for care operations.

Used when no snapshot directory is configured and as the starting point the
governance process tunes from. Values follow common long-term-care practice:
adult vital ranges, a 30-minute late-medication window, 8 residents per
caregiver as the day-shift ceiling.
"""

from datetime import UTC, datetime

from adapters.care.domain import VitalMetric
from spine.domain.models import Classification, EntityType, SignalKind, ThresholdBand
from spine.services.thresholds import ConfigSnapshot, ThresholdSpec

DEFAULT_CONFIG_VERSION = "baseline-1"

C = Classification

V = VitalMetric

_VITAL_BANDS = {
    V.HEART_RATE.value: ThresholdBand(
        low=60, high=100, unsafe_low=50, unsafe_high=120, critical_low=40, critical_high=130,
        baseline=75, max_baseline_deviation_pct=25, unit="bpm",
    ),
    V.SYSTOLIC_BP.value: ThresholdBand(
        low=90, high=140, unsafe_low=85, unsafe_high=160, critical_low=80, critical_high=180,
        unit="mmHg",
    ),
    V.DIASTOLIC_BP.value: ThresholdBand(
        low=60, high=90, unsafe_low=50, unsafe_high=100, critical_low=40, critical_high=120,
        unit="mmHg",
    ),
    V.TEMPERATURE.value: ThresholdBand(
        low=36.0, high=37.8, unsafe_low=35.5, unsafe_high=38.5, critical_low=35.0,
        critical_high=39.5, unit="celsius",
    ),
    V.SPO2.value: ThresholdBand(low=94, unsafe_low=90, critical_low=88, unit="percent"),
    V.RESPIRATORY_RATE.value: ThresholdBand(
        low=12, high=20, unsafe_low=10, unsafe_high=24, critical_low=8, critical_high=30,
        unit="breaths_per_minute",
    ),
    V.FOOD_INTAKE.value: ThresholdBand(
        low=60, baseline=85, max_baseline_deviation_pct=40, unit="percent"
    ),
    V.MOBILITY.value: ThresholdBand(low=1, max_decline=2, unit="score"),
    V.ALERTNESS.value: ThresholdBand(low=1, max_decline=2, unit="score"),
}

_MEDICATION = ThresholdSpec(
    categorical={"*": {"missed": C.UNSAFE, "refused": C.CONCERNING}},
    parameters={
        "late_minutes": 30,
        "late_count": 3,
        "regulatory_breach_count": 5,
        "regulatory_breach_hours": 48,
    },
    action_deadline_minutes={C.CONCERNING: 4 * 60},
)

_LICENSURE = {"licensure": {"unlicensed": C.UNSAFE, "expired": C.UNSAFE}}

_RATIO_BAND = ThresholdBand(high=8, unsafe_high=12, critical_high=16, unit="ratio")

_DEVICE = ThresholdSpec(
    bands={"battery_percent": ThresholdBand(low=20, unsafe_low=10, unit="percent")},
    categorical={
        "*": {"offline": C.CONCERNING, "degraded": C.CONCERNING, "low_battery": C.CONCERNING}
    },
)

_PATTERN = ThresholdSpec(
    categorical={"*": {"urgent": C.UNSAFE, "attention": C.CONCERNING}},
)


def _tasks(overdue_count: int) -> ThresholdSpec:
    return ThresholdSpec(
        categorical={"*": {"missed": C.CONCERNING}},
        parameters={"overdue_count": overdue_count},
    )


def _staffing(with_ratio: bool) -> ThresholdSpec:
    return ThresholdSpec(
        bands={"residents_per_caregiver": _RATIO_BAND} if with_ratio else {},
        categorical=_LICENSURE,
        action_deadline_minutes={C.UNSAFE: 15},
    )


def build_default_snapshot(
    version: str = DEFAULT_CONFIG_VERSION, tenant_id: str = "default"
) -> ConfigSnapshot:
    """Baseline snapshot covering every entity type."""
    return ConfigSnapshot(
        version=version,
        tenant_id=tenant_id,
        published_at=datetime(2024, 1, 1, tzinfo=UTC),
        required_signals={
            EntityType.RESIDENT: [SignalKind.VITAL, SignalKind.MEDICATION, SignalKind.TASK],
            EntityType.DEPARTMENT: [SignalKind.STAFFING, SignalKind.TASK, SignalKind.DEVICE],
            EntityType.CAREGIVER: [SignalKind.STAFFING, SignalKind.TASK],
            EntityType.SHIFT: [SignalKind.STAFFING, SignalKind.TASK],
            EntityType.FACILITY: [SignalKind.STAFFING, SignalKind.DEVICE],
        },
        defaults={
            EntityType.RESIDENT: {
                SignalKind.VITAL: ThresholdSpec(
                    bands=_VITAL_BANDS, action_deadline_minutes={C.CRITICAL: 15}
                ),
                SignalKind.MEDICATION: _MEDICATION,
                SignalKind.TASK: _tasks(overdue_count=3),
                SignalKind.DEVICE: _DEVICE,
                SignalKind.STAFFING: _staffing(with_ratio=False),
                SignalKind.PATTERN: _PATTERN,
            },
            EntityType.DEPARTMENT: {
                SignalKind.STAFFING: _staffing(with_ratio=True),
                SignalKind.TASK: _tasks(overdue_count=5),
                SignalKind.DEVICE: _DEVICE,
                SignalKind.PATTERN: _PATTERN,
                SignalKind.MEDICATION: _MEDICATION,
            },
            EntityType.CAREGIVER: {
                SignalKind.STAFFING: _staffing(with_ratio=True),
                SignalKind.TASK: _tasks(overdue_count=3),
                SignalKind.PATTERN: _PATTERN,
            },
            EntityType.SHIFT: {
                SignalKind.STAFFING: _staffing(with_ratio=True),
                SignalKind.TASK: _tasks(overdue_count=5),
                SignalKind.PATTERN: _PATTERN,
            },
            EntityType.FACILITY: {
                SignalKind.STAFFING: _staffing(with_ratio=True),
                SignalKind.DEVICE: _DEVICE,
                SignalKind.PATTERN: _PATTERN,
            },
        },
        action_deadline_minutes={
            C.CRITICAL: 30,
            C.UNSAFE: 60,
            C.CONCERNING: 24 * 60,
            C.ACCEPTABLE: 24 * 60,
        },
        accountability={
            EntityType.RESIDENT: {
                C.CRITICAL: "LICENSED_NURSE",
                C.UNSAFE: "SUPERVISOR",
                C.CONCERNING: "SUPERVISOR",
                C.ACCEPTABLE: "ASSIGNED_CAREGIVER",
            },
            EntityType.DEPARTMENT: {
                C.CRITICAL: "DIRECTOR_OF_NURSING",
                C.UNSAFE: "DEPARTMENT_MANAGER",
                C.CONCERNING: "DEPARTMENT_MANAGER",
                C.ACCEPTABLE: "DEPARTMENT_MANAGER",
            },
            EntityType.CAREGIVER: {
                C.CRITICAL: "DIRECTOR_OF_NURSING",
                C.UNSAFE: "SUPERVISOR",
                C.CONCERNING: "SUPERVISOR",
                C.ACCEPTABLE: "SUPERVISOR",
            },
            EntityType.SHIFT: {
                C.CRITICAL: "DIRECTOR_OF_NURSING",
                C.UNSAFE: "SHIFT_SUPERVISOR",
                C.CONCERNING: "SHIFT_SUPERVISOR",
                C.ACCEPTABLE: "SHIFT_SUPERVISOR",
            },
            EntityType.FACILITY: {
                C.CRITICAL: "ADMINISTRATOR",
                C.UNSAFE: "ADMINISTRATOR",
                C.CONCERNING: "DIRECTOR_OF_NURSING",
                C.ACCEPTABLE: "DIRECTOR_OF_NURSING",
            },
        },
        default_accountable_role="SUPERVISOR",
        parameters={"min_deteriorating_vitals": 2},
    )
