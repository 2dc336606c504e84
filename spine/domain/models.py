"""
Domain models for the decision spine.

These models represent the core care-operations concepts and are framework-agnostic.
They use Pydantic for validation; every value object is frozen so a judgment
can be reasoned about after it has been emitted.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Marker for categorical values outside a source's known vocabulary
UNCLASSIFIED = "UNCLASSIFIED"

# Sub-key used for a band or categorical table that applies to every sub-key
DEFAULT_SUB_KEY = "*"


class EntityType(str, Enum):
    """Closed set of things the spine can judge."""

    RESIDENT = "RESIDENT"
    DEPARTMENT = "DEPARTMENT"
    CAREGIVER = "CAREGIVER"
    SHIFT = "SHIFT"
    FACILITY = "FACILITY"


class SignalKind(str, Enum):
    """Families of operational signals, listed in evaluation order."""

    VITAL = "VITAL"
    MEDICATION = "MEDICATION"
    TASK = "TASK"
    DEVICE = "DEVICE"
    STAFFING = "STAFFING"
    PATTERN = "PATTERN"


class Classification(str, Enum):
    """Severity classes, declared from most to least severe."""

    CRITICAL = "CRITICAL"
    UNSAFE = "UNSAFE"
    CONCERNING = "CONCERNING"
    ACCEPTABLE = "ACCEPTABLE"

    @property
    def rank(self) -> int:
        return _CLASSIFICATION_RANK[self]

    @classmethod
    def highest(cls, classifications: "list[Classification]") -> "Classification":
        """Most severe class in the list, ACCEPTABLE for an empty list."""
        return max(classifications, key=lambda c: c.rank, default=cls.ACCEPTABLE)


_CLASSIFICATION_RANK = {
    Classification.ACCEPTABLE: 0,
    Classification.CONCERNING: 1,
    Classification.UNSAFE: 2,
    Classification.CRITICAL: 3,
}


class Trend(str, Enum):
    """Direction of change relative to the previous judgment."""

    WORSENING = "WORSENING"
    STABLE = "STABLE"
    IMPROVING = "IMPROVING"
    NO_HISTORY = "NO_HISTORY"


class FindingKind(str, Enum):
    """What produced a finding."""

    THRESHOLD = "THRESHOLD"
    BASELINE = "BASELINE"
    TREND = "TREND"
    COMBINATION = "COMBINATION"
    MISSING_SIGNAL = "MISSING_SIGNAL"
    UNRESOLVED_SIGNAL = "UNRESOLVED_SIGNAL"
    NORMALIZATION_FAILURE = "NORMALIZATION_FAILURE"
    RULE_FAILURE = "RULE_FAILURE"


def _utc(value: datetime) -> datetime:
    # Naive timestamps are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Observation(BaseModel):
    """One normalized fact about an entity."""

    model_config = ConfigDict(frozen=True)

    entity_id: str = Field(min_length=1)
    entity_type: EntityType
    signal_kind: SignalKind
    sub_key: str = Field(
        default=DEFAULT_SUB_KEY, min_length=1, description="e.g. heart_rate, metformin"
    )
    value: float | str
    unit: str | None = None
    observed_at: datetime
    source: str = Field(min_length=1, description="Provenance of the raw record")
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("observed_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _utc(v)

    @property
    def is_numeric(self) -> bool:
        return isinstance(self.value, float)

    @property
    def is_unclassified(self) -> bool:
        return self.value == UNCLASSIFIED


class ThresholdBand(BaseModel):
    """Numeric cutoffs for one sub-key. Values inside [low, high] are in range."""

    model_config = ConfigDict(frozen=True)

    low: float | None = None
    high: float | None = None
    unsafe_low: float | None = None
    unsafe_high: float | None = None
    critical_low: float | None = None
    critical_high: float | None = None
    baseline: float | None = None
    max_baseline_deviation_pct: float | None = Field(default=None, gt=0.0)
    max_decline: float | None = Field(default=None, gt=0.0)
    unit: str | None = None


class ThresholdSet(BaseModel):
    """Resolved, versioned configuration for one entity and signal kind."""

    model_config = ConfigDict(frozen=True)

    config_version: str
    entity_id: str
    entity_type: EntityType
    signal_kind: SignalKind
    bands: dict[str, ThresholdBand] = Field(default_factory=dict)
    categorical: dict[str, dict[str, Classification]] = Field(default_factory=dict)
    parameters: dict[str, float] = Field(default_factory=dict)
    action_deadline_minutes: dict[Classification, int] = Field(default_factory=dict)

    def band_for(self, sub_key: str) -> ThresholdBand | None:
        return self.bands.get(sub_key) or self.bands.get(DEFAULT_SUB_KEY)

    def categories_for(self, sub_key: str) -> dict[str, Classification]:
        return self.categorical.get(sub_key) or self.categorical.get(DEFAULT_SUB_KEY) or {}

    def parameter(self, name: str, default: float) -> float:
        return self.parameters.get(name, default)


class ThresholdCrossing(BaseModel):
    """The value and the cutoff it crossed."""

    model_config = ConfigDict(frozen=True)

    value: float
    threshold: float
    comparison: Literal["above", "below", "at_or_above", "at_or_below"]

    def describe(self) -> str:
        return f"{self.value:g} {self.comparison.replace('_', ' ')} {self.threshold:g}"


class Finding(BaseModel):
    """Output of one rule firing. Never edited after creation."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    kind: FindingKind
    signal_kind: SignalKind | None = None
    sub_key: str | None = None
    severity: Classification
    reason: str
    threshold_crossed: ThresholdCrossing | None = None
    # None for coverage findings, which are not tied to an observed moment
    occurred_at: datetime | None = None
    unknown: str | None = Field(
        default=None, description="What the system cannot determine because of this finding"
    )
    tags: dict[str, str] = Field(
        default_factory=dict, description="Identifying tags of the observation that fired"
    )


class SignalGap(BaseModel):
    """Upstream gap that must surface as an unknown (bad record, dead source)."""

    model_config = ConfigDict(frozen=True)

    signal_kind: SignalKind | None = None
    reason: str
    detail: str


class PersonRef(BaseModel):
    """A named person who can hold an accountable role."""

    model_config = ConfigDict(frozen=True)

    person_id: str
    name: str


class EntityContext(BaseModel):
    """Descriptive context for an entity, supplied by the caller."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str | None = None
    display_name: str | None = None
    location: str | None = None
    roster: dict[str, PersonRef] = Field(
        default_factory=dict, description="Role name to the person currently holding it"
    )


class NextAction(BaseModel):
    """The single most important action and its deadline."""

    model_config = ConfigDict(frozen=True)

    action: str = Field(min_length=1)
    deadline: datetime
    time_remaining_seconds: int = Field(ge=0)


class AccountableParty(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str = Field(min_length=1)
    person_id: str | None = None
    person_name: str | None = None


class BlockedDecision(BaseModel):
    """A decision the spine refuses to make without a human."""

    model_config = ConfigDict(frozen=True)

    decision: str
    requires_human_role: str
    reason_blocked: str


class RoleViolation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["LICENSURE", "SCOPE", "RATIO", "SUPERVISION"]
    severity: Literal["UNACCEPTABLE", "UNSAFE", "ALLOWED_WITH_OVERRIDE"]
    description: str
    person_involved: str
    required_correction: str


class Reasoning(BaseModel):
    """Why the classification came out the way it did."""

    model_config = ConfigDict(frozen=True)

    rules_fired: list[str] = Field(default_factory=list)
    thresholds_crossed: list[str] = Field(default_factory=list)
    trends_detected: list[str] = Field(default_factory=list)
    baselines_compared: list[str] = Field(default_factory=list)


class TimeAwareness(BaseModel):
    model_config = ConfigDict(frozen=True)

    trend: Trend
    days_in_state: int = Field(ge=1, description="Consecutive judgments in the current class")
    state_since: datetime
    countdown_to_escalation_seconds: int | None = None
    countdown_to_regulatory_breach_seconds: int | None = None
    next_risk_to_materialize: str | None = None


class Judgment(BaseModel):
    """The ten-question decision record for one evaluation pass."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    entity_type: EntityType
    evaluated_at: datetime
    config_version: str | None

    # Q2 classification and its history
    classification: Classification
    previous_classification: Classification | None = None
    trend: Trend

    what_is_happening: list[str]
    what_is_wrong: list[str]
    reasoning: Reasoning
    single_next_action: NextAction
    prohibitions: list[str]
    accountable: AccountableParty
    consequences_if_unaddressed: list[str]
    unknowns: list[str]
    blocked_decisions: list[BlockedDecision]

    time_awareness: TimeAwareness
    role_violations: list[RoleViolation] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)

    # Ledger sequence of the newest entry this judgment was composed against
    based_on_sequence: int = Field(default=0, ge=0)

    @property
    def action_deadline(self) -> datetime:
        return self.single_next_action.deadline

    @property
    def accountable_role(self) -> str:
        return self.accountable.role


class LedgerEntry(BaseModel):
    """One append-only ledger row."""

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(ge=1)
    entity_id: str
    judgment: Judgment
    previous_classification: Classification | None
    appended_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def classification(self) -> Classification:
        return self.judgment.classification

    @property
    def evaluated_at(self) -> datetime:
        return self.judgment.evaluated_at
