"""
Signal normalizer: raw source records to typed Observations.

The transform is pure. Records missing provenance or a timestamp are rejected,
never patched up; categorical values the source is not known to emit become
UNCLASSIFIED so the rule evaluator can surface them.
"""

import math
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError

from adapters.care.domain import SourceSchema, schema_for
from spine.domain.errors import NormalizationError, NormalizationReason
from spine.domain.models import (
    DEFAULT_SUB_KEY,
    UNCLASSIFIED,
    EntityType,
    Observation,
    SignalGap,
    SignalKind,
)
from spine.domain.result import Result

logger = structlog.get_logger(__name__)

# Value fields that say nothing about what was measured
GENERIC_VALUE_FIELDS = frozenset({"value", "reading", "status", "state", "severity"})

RawRecord = Mapping[str, Any]


def _first_present(record: RawRecord, fields: Iterable[str]) -> tuple[str, Any] | None:
    for name in fields:
        value = record.get(name)
        if value is not None and value != "":
            return name, value
    return None


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        ts = raw
    elif isinstance(raw, str):
        ts = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"unsupported timestamp type {type(raw).__name__}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def parse_signal_kind(raw: Any) -> SignalKind:
    """Map a signal kind name to the enum, raising NormalizationError when unknown."""
    if isinstance(raw, SignalKind):
        return raw
    try:
        return SignalKind(str(raw).strip().upper())
    except ValueError:
        raise NormalizationError(
            NormalizationReason.UNRECOGNIZED_SIGNAL_KIND,
            f"unrecognized signal kind {raw!r}",
        ) from None


class SignalNormalizer:
    """Converts raw records into Observations using per-kind source schemas."""

    def __init__(self, schemas: Mapping[SignalKind, SourceSchema] | None = None) -> None:
        self._schemas = dict(schemas) if schemas is not None else None
        self.logger = logger.bind(component="signal_normalizer")

    def _schema(self, kind: SignalKind) -> SourceSchema:
        if self._schemas is not None:
            schema = self._schemas.get(kind)
            if schema is None:
                raise NormalizationError(
                    NormalizationReason.UNRECOGNIZED_SIGNAL_KIND,
                    f"no source schema registered for {kind.value}",
                    signal_kind=kind,
                )
            return schema
        return schema_for(kind)

    def normalize(
        self, raw_record: RawRecord, signal_kind: SignalKind | str
    ) -> Result[Observation, NormalizationError]:
        """
        Normalize one raw record.

        Returns:
            Result holding the Observation, or the NormalizationError explaining
            why the record was rejected.
        """
        try:
            kind = parse_signal_kind(signal_kind)
            return Result.ok(self._build(raw_record, kind))
        except NormalizationError as e:
            self.logger.info(
                "record_rejected",
                reason=e.reason.value,
                signal_kind=e.signal_kind.value if e.signal_kind else None,
                detail=e.detail,
            )
            return Result.err(e)

    def normalize_batch(
        self, records: Iterable[tuple[RawRecord, SignalKind | str]]
    ) -> tuple[list[Observation], list[SignalGap]]:
        """Normalize many records, turning every rejection into a SignalGap."""
        observations: list[Observation] = []
        gaps: list[SignalGap] = []
        for record, kind in records:
            result = self.normalize(record, kind)
            if result.is_ok():
                observations.append(result.unwrap())
            else:
                gaps.append(result.unwrap_err().to_gap())
        return observations, gaps

    def _build(self, record: RawRecord, kind: SignalKind) -> Observation:
        schema = self._schema(kind)

        def missing(field: str) -> NormalizationError:
            return NormalizationError(
                NormalizationReason.MISSING_FIELD,
                f"{kind.value} record is missing {field}",
                signal_kind=kind,
                field=field,
            )

        entity_id = record.get("entity_id")
        if not entity_id:
            raise missing("entity_id")

        entity_type_raw = record.get("entity_type")
        if not entity_type_raw:
            raise missing("entity_type")
        try:
            entity_type = EntityType(str(entity_type_raw).strip().upper())
        except ValueError:
            raise NormalizationError(
                NormalizationReason.INVALID_VALUE,
                f"unknown entity type {entity_type_raw!r}",
                signal_kind=kind,
                field="entity_type",
            ) from None

        provenance = _first_present(record, schema.source_fields)
        if provenance is None:
            raise missing("source")

        stamp = _first_present(record, schema.timestamp_fields)
        if stamp is None:
            raise missing("timestamp")
        try:
            observed_at = _parse_timestamp(stamp[1])
        except ValueError as e:
            raise NormalizationError(
                NormalizationReason.INVALID_VALUE,
                f"unparseable timestamp in {stamp[0]}: {e}",
                signal_kind=kind,
                field=stamp[0],
            ) from None

        found = _first_present(record, schema.value_fields)
        if found is None:
            raise missing("value")
        value_field, raw_value = found
        value = self._coerce_value(raw_value, schema, kind, value_field)

        sub_key_hit = _first_present(record, schema.sub_key_fields)
        if sub_key_hit is not None:
            sub_key = str(sub_key_hit[1]).strip().lower()
        elif value_field not in GENERIC_VALUE_FIELDS:
            sub_key = value_field
        else:
            sub_key = schema.default_sub_key or DEFAULT_SUB_KEY

        unit = record.get(schema.unit_field) or schema.default_units.get(value_field)
        if unit is not None:
            unit = str(unit)

        tags = {name: str(record[name]) for name in schema.tag_fields if record.get(name)}
        tags["value_field"] = value_field

        try:
            return Observation(
                entity_id=str(entity_id),
                entity_type=entity_type,
                signal_kind=kind,
                sub_key=sub_key,
                value=value,
                unit=unit,
                observed_at=observed_at,
                source=str(provenance[1]),
                tags=tags,
            )
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
            raise NormalizationError(
                NormalizationReason.INVALID_VALUE,
                f"{kind.value} record has invalid {fields or 'fields'}",
                signal_kind=kind,
                field=fields or None,
            ) from None

    def _coerce_value(
        self, raw: Any, schema: SourceSchema, kind: SignalKind, field: str
    ) -> float | str:
        if isinstance(raw, bool):
            raise NormalizationError(
                NormalizationReason.INVALID_VALUE,
                f"boolean is not a valid {kind.value} value in {field}",
                signal_kind=kind,
                field=field,
            )
        number: float | None = None
        text = str(raw).strip()
        if isinstance(raw, int | float):
            number = float(raw)
        else:
            try:
                number = float(text)
            except ValueError:
                number = None
        if number is not None:
            if not math.isfinite(number):
                raise NormalizationError(
                    NormalizationReason.INVALID_VALUE,
                    f"non-finite {kind.value} value in {field}",
                    signal_kind=kind,
                    field=field,
                )
            return number
        category = text.lower()
        if category in schema.vocabulary:
            return category
        self.logger.warning(
            "unclassified_categorical_value",
            signal_kind=kind.value,
            field=field,
            value=text,
        )
        return UNCLASSIFIED
