"""
Care-operations source schemas for the signal normalizer.

Each upstream system names its fields differently: a vitals feed reports
``recorded_at`` and ``metric``, the eMAR reports ``administered_at`` and
``medication``. A SourceSchema lists, per signal kind, which raw fields carry
the value, the sub-key, the timestamp and the provenance, plus the categorical
vocabulary the source is allowed to emit.

Key care concepts:
- Minutes late: how far after the scheduled time a medication was given
- Residents per caregiver: staffing ratio on the floor right now
- Licensure: whether the assigned caregiver holds the license the resident's
  acuity requires
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from spine.domain.models import SignalKind


class MedicationStatus(str, Enum):
    GIVEN = "given"
    LATE = "late"
    MISSED = "missed"
    REFUSED = "refused"
    HELD = "held"


class TaskStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    OVERDUE = "overdue"
    MISSED = "missed"


class DeviceStatus(str, Enum):
    ONLINE = "online"
    DEGRADED = "degraded"
    LOW_BATTERY = "low_battery"
    OFFLINE = "offline"


class LicensureStatus(str, Enum):
    LICENSED = "licensed"
    UNLICENSED = "unlicensed"
    EXPIRED = "expired"


class PatternSeverity(str, Enum):
    """Severity reported by the upstream pattern detector."""

    INFO = "info"
    ATTENTION = "attention"
    URGENT = "urgent"


class VitalMetric(str, Enum):
    HEART_RATE = "heart_rate"
    SYSTOLIC_BP = "systolic_bp"
    DIASTOLIC_BP = "diastolic_bp"
    TEMPERATURE = "temperature"
    SPO2 = "spo2"
    RESPIRATORY_RATE = "respiratory_rate"
    FOOD_INTAKE = "food_intake_percent"
    MOBILITY = "mobility_score"
    ALERTNESS = "alertness_score"


class SourceSchema(BaseModel):
    """Field mapping for the raw records of one signal kind."""

    model_config = ConfigDict(frozen=True)

    signal_kind: SignalKind
    value_fields: tuple[str, ...] = Field(description="Candidate value fields, first present wins")
    sub_key_fields: tuple[str, ...] = ()
    default_sub_key: str | None = None
    timestamp_fields: tuple[str, ...] = ("observed_at", "timestamp")
    source_fields: tuple[str, ...] = ("source",)
    unit_field: str = "unit"
    tag_fields: tuple[str, ...] = (
        "caregiver_id",
        "caregiver_name",
        "device_id",
        "room",
        "task_id",
        "shift_id",
    )
    default_units: dict[str, str] = Field(
        default_factory=dict, description="Unit per value field when the record omits one"
    )
    vocabulary: frozenset[str] = Field(
        default_factory=frozenset, description="Categorical values this source may emit"
    )


SOURCE_SCHEMAS: dict[SignalKind, SourceSchema] = {
    SignalKind.VITAL: SourceSchema(
        signal_kind=SignalKind.VITAL,
        value_fields=("value", "reading"),
        sub_key_fields=("metric", "vital"),
        timestamp_fields=("observed_at", "recorded_at", "timestamp"),
        source_fields=("source", "device_id", "recorded_by"),
    ),
    SignalKind.MEDICATION: SourceSchema(
        signal_kind=SignalKind.MEDICATION,
        value_fields=("minutes_late", "status"),
        sub_key_fields=("medication", "medication_name"),
        timestamp_fields=("observed_at", "administered_at", "scheduled_at", "timestamp"),
        source_fields=("source", "administered_by"),
        default_units={"minutes_late": "minutes"},
        vocabulary=frozenset(s.value for s in MedicationStatus),
    ),
    SignalKind.TASK: SourceSchema(
        signal_kind=SignalKind.TASK,
        value_fields=("status", "state"),
        sub_key_fields=("category", "task_category"),
        timestamp_fields=("observed_at", "scheduled_end", "updated_at", "timestamp"),
        vocabulary=frozenset(s.value for s in TaskStatus),
    ),
    SignalKind.DEVICE: SourceSchema(
        signal_kind=SignalKind.DEVICE,
        value_fields=("battery_percent", "status"),
        sub_key_fields=("metric",),
        timestamp_fields=("observed_at", "last_seen_at", "timestamp"),
        source_fields=("source", "device_id"),
        default_units={"battery_percent": "percent"},
        vocabulary=frozenset(s.value for s in DeviceStatus),
    ),
    SignalKind.STAFFING: SourceSchema(
        signal_kind=SignalKind.STAFFING,
        value_fields=("residents_per_caregiver", "licensure", "value"),
        sub_key_fields=("metric",),
        timestamp_fields=("observed_at", "shift_start", "timestamp"),
        default_units={"residents_per_caregiver": "ratio"},
        vocabulary=frozenset(s.value for s in LicensureStatus),
    ),
    SignalKind.PATTERN: SourceSchema(
        signal_kind=SignalKind.PATTERN,
        value_fields=("severity",),
        sub_key_fields=("pattern", "pattern_type"),
        timestamp_fields=("observed_at", "detected_at", "timestamp"),
        source_fields=("source", "detector"),
        vocabulary=frozenset(s.value for s in PatternSeverity),
    ),
}


def schema_for(signal_kind: SignalKind) -> SourceSchema:
    return SOURCE_SCHEMAS[signal_kind]
