"""
Tests for the signal normalizer.

Covers:
- Field aliases per source schema (vitals feed, eMAR, task board, rostering)
- Rejection of records without provenance, timestamp, entity or value
- UNCLASSIFIED for categorical values outside the vocabulary
- Timestamp handling (ISO strings, Z suffix, naive as UTC)
- Non-string units and tags kept as text; invalid fields rejected, never raised
- Batch normalization into observations plus gaps
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from hypothesis import given
from hypothesis import strategies as st

from spine.domain.errors import NormalizationError, NormalizationReason
from spine.domain.models import UNCLASSIFIED, EntityType, SignalKind
from spine.services.normalizer import SignalNormalizer, parse_signal_kind


@pytest.fixture
def normalizer() -> SignalNormalizer:
    return SignalNormalizer()


def _vital_record(**overrides: object) -> dict[str, object]:
    record: dict[str, object] = {
        "entity_id": "res-101",
        "entity_type": "resident",
        "metric": "Heart_Rate",
        "value": 88,
        "unit": "bpm",
        "recorded_at": "2025-03-10T08:00:00Z",
        "device_id": "monitor-7",
    }
    record.update(overrides)
    return record


class TestSignalKindParsing:
    def test_kind_names_are_case_insensitive(self) -> None:
        assert parse_signal_kind("vital") is SignalKind.VITAL
        assert parse_signal_kind(" Medication ") is SignalKind.MEDICATION

    def test_unknown_kind_raises_normalization_error(self) -> None:
        with pytest.raises(NormalizationError) as exc_info:
            parse_signal_kind("weather")

        assert exc_info.value.reason is NormalizationReason.UNRECOGNIZED_SIGNAL_KIND


class TestVitalRecords:
    def test_vital_record_becomes_numeric_observation(self, normalizer: SignalNormalizer) -> None:
        result = normalizer.normalize(_vital_record(), "VITAL")

        assert result.is_ok()
        obs = result.unwrap()
        assert obs.entity_id == "res-101"
        assert obs.entity_type is EntityType.RESIDENT
        assert obs.signal_kind is SignalKind.VITAL
        assert obs.sub_key == "heart_rate"
        assert obs.value == 88.0
        assert obs.unit == "bpm"
        assert obs.source == "monitor-7"
        assert obs.observed_at == datetime(2025, 3, 10, 8, 0, tzinfo=UTC)

    def test_numeric_strings_are_parsed(self, normalizer: SignalNormalizer) -> None:
        obs = normalizer.normalize(_vital_record(value="97.5"), SignalKind.VITAL).unwrap()
        assert obs.value == 97.5
        assert obs.is_numeric

    def test_naive_timestamp_is_taken_as_utc(self, normalizer: SignalNormalizer) -> None:
        obs = normalizer.normalize(
            _vital_record(recorded_at="2025-03-10T08:00:00"), SignalKind.VITAL
        ).unwrap()
        assert obs.observed_at.tzinfo == UTC

    def test_offset_timestamp_is_converted_to_utc(self, normalizer: SignalNormalizer) -> None:
        local = datetime(2025, 3, 10, 3, 0, tzinfo=timezone(timedelta(hours=-5)))
        obs = normalizer.normalize(_vital_record(recorded_at=local), SignalKind.VITAL).unwrap()
        assert obs.observed_at == datetime(2025, 3, 10, 8, 0, tzinfo=UTC)

    def test_boolean_value_is_rejected(self, normalizer: SignalNormalizer) -> None:
        result = normalizer.normalize(_vital_record(value=True), SignalKind.VITAL)

        assert result.is_err()
        assert result.unwrap_err().reason is NormalizationReason.INVALID_VALUE

    def test_non_finite_value_is_rejected(self, normalizer: SignalNormalizer) -> None:
        result = normalizer.normalize(_vital_record(value="nan"), SignalKind.VITAL)

        assert result.is_err()
        assert result.unwrap_err().reason is NormalizationReason.INVALID_VALUE

    def test_unparseable_timestamp_is_rejected(self, normalizer: SignalNormalizer) -> None:
        result = normalizer.normalize(_vital_record(recorded_at="yesterday"), SignalKind.VITAL)

        assert result.is_err()
        assert result.unwrap_err().reason is NormalizationReason.INVALID_VALUE

    def test_numeric_unit_is_kept_as_text(self, normalizer: SignalNormalizer) -> None:
        obs = normalizer.normalize(_vital_record(unit=1), SignalKind.VITAL).unwrap()
        assert obs.unit == "1"

    def test_non_string_tag_is_kept_as_text(self, normalizer: SignalNormalizer) -> None:
        obs = normalizer.normalize(_vital_record(device_id=7), SignalKind.VITAL).unwrap()
        assert obs.source == "7"
        assert obs.tags["device_id"] == "7"

    def test_blank_metric_is_rejected_not_raised(self, normalizer: SignalNormalizer) -> None:
        result = normalizer.normalize(_vital_record(metric="   "), SignalKind.VITAL)

        assert result.is_err()
        error = result.unwrap_err()
        assert error.reason is NormalizationReason.INVALID_VALUE
        assert error.field == "sub_key"

    @given(value=st.floats(min_value=0.0, max_value=300.0, allow_nan=False))
    def test_any_finite_reading_is_kept_exactly(self, value: float) -> None:
        """Property-based test: normalization never alters a numeric reading."""
        obs = SignalNormalizer().normalize(_vital_record(value=value), "VITAL").unwrap()
        assert obs.value == value


class TestRejectedRecords:
    @pytest.mark.parametrize(
        "field,missing",
        [
            ("device_id", "source"),
            ("recorded_at", "timestamp"),
            ("entity_id", "entity_id"),
            ("entity_type", "entity_type"),
            ("value", "value"),
        ],
    )
    def test_missing_required_field_is_rejected(
        self, normalizer: SignalNormalizer, field: str, missing: str
    ) -> None:
        record = _vital_record()
        del record[field]

        result = normalizer.normalize(record, SignalKind.VITAL)

        assert result.is_err()
        error = result.unwrap_err()
        assert error.reason is NormalizationReason.MISSING_FIELD
        assert error.field == missing
        assert error.signal_kind is SignalKind.VITAL

    def test_unknown_signal_kind_is_rejected(self, normalizer: SignalNormalizer) -> None:
        result = normalizer.normalize(_vital_record(), "telemetry")

        assert result.is_err()
        assert result.unwrap_err().reason is NormalizationReason.UNRECOGNIZED_SIGNAL_KIND

    def test_unknown_entity_type_is_rejected(self, normalizer: SignalNormalizer) -> None:
        result = normalizer.normalize(_vital_record(entity_type="visitor"), SignalKind.VITAL)

        assert result.is_err()
        assert result.unwrap_err().reason is NormalizationReason.INVALID_VALUE


class TestCategoricalRecords:
    def test_medication_status_uses_emar_fields(self, normalizer: SignalNormalizer) -> None:
        record = {
            "entity_id": "res-101",
            "entity_type": "RESIDENT",
            "medication": "Metformin",
            "status": "MISSED",
            "scheduled_at": "2025-03-10T08:00:00+00:00",
            "administered_by": "cg-22",
        }

        obs = normalizer.normalize(record, SignalKind.MEDICATION).unwrap()

        assert obs.sub_key == "metformin"
        assert obs.value == "missed"
        assert obs.source == "cg-22"

    def test_minutes_late_carries_default_unit(self, normalizer: SignalNormalizer) -> None:
        record = {
            "entity_id": "res-101",
            "entity_type": "RESIDENT",
            "medication": "lisinopril",
            "minutes_late": 45,
            "administered_at": "2025-03-10T08:45:00Z",
            "administered_by": "cg-22",
        }

        obs = normalizer.normalize(record, SignalKind.MEDICATION).unwrap()

        assert obs.value == 45.0
        assert obs.unit == "minutes"

    def test_out_of_vocabulary_status_becomes_unclassified(
        self, normalizer: SignalNormalizer
    ) -> None:
        record = {
            "entity_id": "res-101",
            "entity_type": "RESIDENT",
            "category": "bathing",
            "status": "sort of done",
            "updated_at": "2025-03-10T08:00:00Z",
            "source": "task-board",
        }

        obs = normalizer.normalize(record, SignalKind.TASK).unwrap()

        assert obs.value == UNCLASSIFIED
        assert obs.is_unclassified

    def test_licensure_value_field_becomes_sub_key(self, normalizer: SignalNormalizer) -> None:
        record = {
            "entity_id": "res-101",
            "entity_type": "RESIDENT",
            "licensure": "unlicensed",
            "shift_start": "2025-03-10T07:00:00Z",
            "source": "roster",
            "caregiver_name": "Jordan Lee",
        }

        obs = normalizer.normalize(record, SignalKind.STAFFING).unwrap()

        assert obs.sub_key == "licensure"
        assert obs.value == "unlicensed"
        assert obs.tags["caregiver_name"] == "Jordan Lee"


class TestBatchNormalization:
    def test_rejections_become_gaps_and_valid_records_survive(
        self, normalizer: SignalNormalizer
    ) -> None:
        no_source = _vital_record()
        del no_source["device_id"]

        observations, gaps = normalizer.normalize_batch(
            [
                (_vital_record(), "VITAL"),
                (no_source, "VITAL"),
                (_vital_record(), "weather"),
            ]
        )

        assert len(observations) == 1
        assert len(gaps) == 2
        assert gaps[0].signal_kind is SignalKind.VITAL
        assert gaps[0].reason == NormalizationReason.MISSING_FIELD.value
        assert gaps[1].signal_kind is None

    def test_invalid_field_becomes_gap(self, normalizer: SignalNormalizer) -> None:
        observations, gaps = normalizer.normalize_batch(
            [(_vital_record(metric="   "), "VITAL"), (_vital_record(unit=1), "VITAL")]
        )

        assert len(observations) == 1
        assert [g.reason for g in gaps] == [NormalizationReason.INVALID_VALUE.value]
