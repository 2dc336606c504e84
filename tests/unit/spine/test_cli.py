"""Tests for the decision-spine command line."""

import json
from collections.abc import Iterator
from pathlib import Path

import pytest

from spine.cli import load_records_file, main
from spine.config import get_config

RECORDS = {
    "entity_id": "res-101",
    "entity_type": "RESIDENT",
    "context": {
        "display_name": "Margaret Chen",
        "roster": {"ASSIGNED_CAREGIVER": {"person_id": "cg-22", "name": "Ana Silva"}},
    },
    "records": [
        {
            "signal_kind": "VITAL",
            "entity_id": "res-101",
            "entity_type": "resident",
            "metric": "heart_rate",
            "value": 72,
            "recorded_at": "2025-03-10T07:30:00Z",
            "device_id": "monitor-7",
        },
        {
            "signal_kind": "MEDICATION",
            "entity_id": "res-101",
            "entity_type": "resident",
            "medication": "metformin",
            "status": "given",
            "administered_at": "2025-03-10T07:00:00Z",
            "administered_by": "cg-22",
        },
        {
            "signal_kind": "TASK",
            "entity_id": "res-101",
            "entity_type": "resident",
            "category": "bathing",
            "status": "completed",
            "updated_at": "2025-03-10T07:45:00Z",
            "source": "task-board",
        },
    ],
}


@pytest.fixture(autouse=True)
def development_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("SPINE_LEDGER_BACKEND", "memory")
    monkeypatch.delenv("SPINE_THRESHOLD_DIR", raising=False)
    monkeypatch.delenv("SPINE_CONFIG_VERSION", raising=False)
    get_config.cache_clear()
    yield
    get_config.cache_clear()


def _write(tmp_path: Path, payload: object) -> Path:
    path = tmp_path / "records.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


class TestLoadRecordsFile:
    def test_bare_list_is_wrapped(self, tmp_path: Path) -> None:
        payload = load_records_file(_write(tmp_path, RECORDS["records"]))

        assert len(payload["records"]) == 3

    def test_object_without_records_is_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="records"):
            load_records_file(_write(tmp_path, {"entity_id": "res-101"}))


class TestEvaluateCommand:
    def test_renders_judgment_table(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        exit_code = main(["evaluate", str(_write(tmp_path, RECORDS))])

        out = capsys.readouterr().out
        assert exit_code == 0
        assert "ACCEPTABLE" in out
        assert "res-101" in out

    def test_json_output(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        exit_code = main(["evaluate", str(_write(tmp_path, RECORDS)), "--json"])

        out = capsys.readouterr().out
        assert exit_code == 0
        assert '"classification": "ACCEPTABLE"' in out

    def test_missing_entity_is_a_usage_error(self, tmp_path: Path) -> None:
        records = [{k: v for k, v in r.items() if k != "entity_id"} for r in RECORDS["records"]]

        assert main(["evaluate", str(_write(tmp_path, records))]) == 2

    def test_unreadable_file_fails(self, tmp_path: Path) -> None:
        assert main(["evaluate", str(tmp_path / "absent.json")]) == 1


class TestConfigCommand:
    def test_prints_summary(self, capsys: pytest.CaptureFixture) -> None:
        assert main(["config"]) == 0

        out = capsys.readouterr().out
        assert "CONFIGURATION SUMMARY" in out
        assert "Backend: memory" in out
