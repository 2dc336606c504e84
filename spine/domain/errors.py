"""
Error taxonomy for the decision spine.

Recoverable errors (normalization, resolution, rule failures) are absorbed into
a judgment's unknowns. Only ledger failures reach the caller.
"""

from enum import Enum

from spine.domain.models import SignalGap, SignalKind


class SpineError(Exception):
    """Base class for every error raised by the spine."""


class NormalizationReason(str, Enum):
    MISSING_FIELD = "MissingField"
    UNRECOGNIZED_SIGNAL_KIND = "UnrecognizedSignalKind"
    INVALID_VALUE = "InvalidValue"


class NormalizationError(SpineError):
    """A raw record could not be turned into an Observation."""

    def __init__(
        self,
        reason: NormalizationReason,
        detail: str,
        signal_kind: SignalKind | None = None,
        field: str | None = None,
    ) -> None:
        super().__init__(f"{reason.value}: {detail}")
        self.reason = reason
        self.detail = detail
        self.signal_kind = signal_kind
        self.field = field

    def to_gap(self) -> SignalGap:
        return SignalGap(signal_kind=self.signal_kind, reason=self.reason.value, detail=self.detail)


class ResolutionReason(str, Enum):
    NO_THRESHOLD_CONFIGURED = "NoThresholdConfigured"
    UNKNOWN_CONFIG_VERSION = "UnknownConfigVersion"


class ResolutionError(SpineError):
    """No threshold configuration applies to an entity/signal combination."""

    def __init__(
        self,
        reason: ResolutionReason,
        detail: str,
        signal_kind: SignalKind | None = None,
        config_version: str | None = None,
    ) -> None:
        super().__init__(f"{reason.value}: {detail}")
        self.reason = reason
        self.detail = detail
        self.signal_kind = signal_kind
        self.config_version = config_version


class RuleFailure(SpineError):
    """A single rule raised while evaluating."""

    def __init__(self, rule_id: str, cause: BaseException) -> None:
        super().__init__(f"rule {rule_id} failed: {type(cause).__name__}: {cause}")
        self.rule_id = rule_id
        self.cause = cause


class LedgerAppendFailure(SpineError):
    """The judgment could not be persisted and therefore was not emitted."""

    def __init__(self, entity_id: str, detail: str) -> None:
        super().__init__(f"ledger append failed for {entity_id}: {detail}")
        self.entity_id = entity_id
        self.detail = detail


class LedgerReadFailure(SpineError):
    """Judgment history could not be read, so nothing can be composed on it."""

    def __init__(self, entity_id: str, detail: str) -> None:
        super().__init__(f"ledger read failed for {entity_id}: {detail}")
        self.entity_id = entity_id
        self.detail = detail


class ConcurrentEvaluationConflict(SpineError):
    """The ledger head moved between reading history and appending."""

    def __init__(self, entity_id: str, expected_sequence: int, actual_sequence: int) -> None:
        super().__init__(
            f"ledger head for {entity_id} is {actual_sequence}, judgment was built on "
            f"{expected_sequence}"
        )
        self.entity_id = entity_id
        self.expected_sequence = expected_sequence
        self.actual_sequence = actual_sequence
