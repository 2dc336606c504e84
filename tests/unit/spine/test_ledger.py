"""
Tests for the judgment ledgers.

Both backends must behave identically: sequences start at 1, history reads
newest first, previous_classification links each entry to the one before it,
and an append built on a stale head is refused.
"""

from datetime import timedelta
from pathlib import Path

import pytest
from care_builders import RESIDENT_ID, T0

from spine.domain.errors import (
    ConcurrentEvaluationConflict,
    LedgerAppendFailure,
    LedgerReadFailure,
)
from spine.domain.models import (
    AccountableParty,
    Classification,
    EntityType,
    Judgment,
    NextAction,
    Reasoning,
    TimeAwareness,
    Trend,
)
from spine.services.ledger import InMemoryJudgmentLedger, JudgmentLedger, SqliteJudgmentLedger

C = Classification


def _judgment(
    based_on: int, classification: Classification, entity_id: str = RESIDENT_ID
) -> Judgment:
    evaluated_at = T0 + timedelta(minutes=5 * based_on)
    return Judgment(
        entity_id=entity_id,
        entity_type=EntityType.RESIDENT,
        evaluated_at=evaluated_at,
        config_version="baseline-1",
        classification=classification,
        trend=Trend.NO_HISTORY,
        what_is_happening=["VITAL heart_rate: 72 bpm"],
        what_is_wrong=[],
        reasoning=Reasoning(rules_fired=["vital.band"]),
        single_next_action=NextAction(
            action="Continue routine monitoring",
            deadline=evaluated_at + timedelta(hours=24),
            time_remaining_seconds=24 * 3600,
        ),
        prohibitions=[],
        accountable=AccountableParty(role="ASSIGNED_CAREGIVER"),
        consequences_if_unaddressed=[],
        unknowns=[],
        blocked_decisions=[],
        time_awareness=TimeAwareness(
            trend=Trend.NO_HISTORY, days_in_state=1, state_since=evaluated_at
        ),
        based_on_sequence=based_on,
    )


@pytest.fixture(params=["memory", "sqlite"])
def any_ledger(request: pytest.FixtureRequest, tmp_path: Path) -> JudgmentLedger:
    if request.param == "sqlite":
        return SqliteJudgmentLedger(tmp_path / "ledger.db")
    return InMemoryJudgmentLedger()


class TestAppendAndHistory:
    async def test_sequences_start_at_one_and_link_previous(
        self, any_ledger: JudgmentLedger
    ) -> None:
        first = await any_ledger.append(_judgment(0, C.ACCEPTABLE))
        second = await any_ledger.append(_judgment(1, C.CONCERNING))

        assert first.sequence == 1
        assert first.previous_classification is None
        assert second.sequence == 2
        assert second.previous_classification is C.ACCEPTABLE

    async def test_history_is_newest_first_and_limited(self, any_ledger: JudgmentLedger) -> None:
        for based_on, classification in enumerate([C.ACCEPTABLE, C.CONCERNING, C.UNSAFE]):
            await any_ledger.append(_judgment(based_on, classification))

        history = await any_ledger.history(RESIDENT_ID)
        limited = await any_ledger.history(RESIDENT_ID, limit=2)

        assert [e.classification for e in history] == [C.UNSAFE, C.CONCERNING, C.ACCEPTABLE]
        assert [e.sequence for e in limited] == [3, 2]

    async def test_entities_have_independent_sequences(self, any_ledger: JudgmentLedger) -> None:
        await any_ledger.append(_judgment(0, C.ACCEPTABLE))
        other = await any_ledger.append(_judgment(0, C.CRITICAL, entity_id="res-202"))

        assert other.sequence == 1
        assert (await any_ledger.latest(RESIDENT_ID)).classification is C.ACCEPTABLE

    async def test_latest_of_unknown_entity_is_none(self, any_ledger: JudgmentLedger) -> None:
        assert await any_ledger.latest("res-000") is None
        assert await any_ledger.history("res-000") == []

    async def test_stored_judgment_round_trips(self, any_ledger: JudgmentLedger) -> None:
        judgment = _judgment(0, C.ACCEPTABLE)
        await any_ledger.append(judgment)

        entry = await any_ledger.latest(RESIDENT_ID)

        assert entry is not None
        assert entry.judgment == judgment
        assert entry.evaluated_at == judgment.evaluated_at


class TestConflicts:
    async def test_stale_head_is_refused(self, any_ledger: JudgmentLedger) -> None:
        await any_ledger.append(_judgment(0, C.ACCEPTABLE))

        with pytest.raises(ConcurrentEvaluationConflict) as exc_info:
            await any_ledger.append(_judgment(0, C.CRITICAL))

        assert exc_info.value.expected_sequence == 0
        assert exc_info.value.actual_sequence == 1
        assert len(await any_ledger.history(RESIDENT_ID)) == 1

    async def test_judgment_ahead_of_head_is_refused(self, any_ledger: JudgmentLedger) -> None:
        with pytest.raises(ConcurrentEvaluationConflict):
            await any_ledger.append(_judgment(3, C.ACCEPTABLE))


class TestSqliteLedger:
    async def test_history_survives_reopening(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.db"
        await SqliteJudgmentLedger(path).append(_judgment(0, C.UNSAFE))

        reopened = SqliteJudgmentLedger(path)
        entry = await reopened.append(_judgment(1, C.UNSAFE))

        assert entry.sequence == 2
        assert entry.previous_classification is C.UNSAFE

    async def test_storage_error_becomes_append_failure(self, tmp_path: Path) -> None:
        ledger = SqliteJudgmentLedger(tmp_path / "ledger.db")
        # A directory in place of the database file cannot be opened
        ledger.path = str(tmp_path)

        with pytest.raises(LedgerAppendFailure):
            await ledger.append(_judgment(0, C.ACCEPTABLE))

    async def test_storage_error_becomes_read_failure(self, tmp_path: Path) -> None:
        ledger = SqliteJudgmentLedger(tmp_path / "ledger.db")
        ledger.path = str(tmp_path)

        with pytest.raises(LedgerReadFailure) as exc_info:
            await ledger.history(RESIDENT_ID)
        assert exc_info.value.entity_id == RESIDENT_ID

        with pytest.raises(LedgerReadFailure):
            await ledger.latest(RESIDENT_ID)
