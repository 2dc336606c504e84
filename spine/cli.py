"""
Command line entry point.

    decision-spine evaluate records.json
    decision-spine config

The records file is either a list of raw records or an object::

    {
      "entity_id": "res-101",
      "entity_type": "RESIDENT",
      "config_version": "baseline-1",
      "context": {"display_name": "...", "roster": {"LICENSED_NURSE": {...}}},
      "records": [{"signal_kind": "VITAL", "metric": "heart_rate", ...}, ...]
    }

Each record names its own ``signal_kind``.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from spine.config import get_config, print_config_summary, validate_config
from spine.domain.models import Classification, EntityContext, EntityType, Judgment, SignalKind
from spine.logconfig import configure_logging
from spine.services.signal_collector import DecisionSpineService

console = Console()

CLASSIFICATION_STYLE = {
    Classification.CRITICAL: "bold white on red",
    Classification.UNSAFE: "bold red",
    Classification.CONCERNING: "bold yellow",
    Classification.ACCEPTABLE: "bold green",
}


def load_records_file(path: Path) -> dict[str, Any]:
    """Read a records file into a dict with at least a ``records`` list."""
    payload = json.loads(path.read_text("utf-8"))
    if isinstance(payload, list):
        payload = {"records": payload}
    if not isinstance(payload, dict) or not isinstance(payload.get("records"), list):
        raise ValueError(f"{path} must hold a list of records or an object with 'records'")
    return payload


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) if items else "-"


def render_judgment(judgment: Judgment) -> None:
    style = CLASSIFICATION_STYLE[judgment.classification]
    previous = (
        judgment.previous_classification.value if judgment.previous_classification else "none"
    )
    console.print(
        Panel(
            f"[{style}]{judgment.classification.value}[/]  trend {judgment.trend.value}, "
            f"previously {previous}, {judgment.time_awareness.days_in_state} judgment(s) in state",
            title=f"{judgment.entity_type.value} {judgment.entity_id}",
            subtitle=f"config {judgment.config_version or 'unresolved'}",
        )
    )

    action = judgment.single_next_action
    accountable = judgment.accountable.role
    if judgment.accountable.person_name:
        accountable += f" ({judgment.accountable.person_name})"

    table = Table(title="Judgment", show_lines=True)
    table.add_column("Question", style="cyan")
    table.add_column("Answer", style="white")
    table.add_row("What is happening", _bullets(judgment.what_is_happening))
    table.add_row("What is wrong", _bullets(judgment.what_is_wrong))
    table.add_row("Why", _bullets(judgment.reasoning.rules_fired))
    table.add_row("Next action", action.action)
    minutes = action.time_remaining_seconds // 60
    table.add_row("By when", f"{action.deadline.isoformat()} ({minutes} min)")
    table.add_row("Must not happen", _bullets(judgment.prohibitions))
    table.add_row("Accountable", accountable)
    table.add_row("If nothing changes", _bullets(judgment.consequences_if_unaddressed))
    table.add_row("Unknown", _bullets(judgment.unknowns))
    table.add_row(
        "Blocked pending a human",
        _bullets(
            [
                f"{d.decision} [{d.requires_human_role}]: {d.reason_blocked}"
                for d in judgment.blocked_decisions
            ]
        ),
    )
    console.print(table)

    if judgment.role_violations:
        violations = Table(title="Role Violations")
        violations.add_column("Type", style="magenta")
        violations.add_column("Severity", style="red")
        violations.add_column("Person", style="cyan")
        violations.add_column("Correction", style="white")
        for v in judgment.role_violations:
            violations.add_row(v.type, v.severity, v.person_involved, v.required_correction)
        console.print(violations)


async def run_evaluate(args: argparse.Namespace) -> int:
    payload = load_records_file(Path(args.records))
    records = payload["records"]

    first = records[0] if records else {}
    entity_id = args.entity_id or payload.get("entity_id") or first.get("entity_id")
    entity_type_raw = args.entity_type or payload.get("entity_type") or first.get("entity_type")
    if not entity_id or not entity_type_raw:
        console.print("entity id and entity type are required", style="red")
        return 2
    entity_type = EntityType(str(entity_type_raw).upper())

    context = EntityContext.model_validate(payload["context"]) if payload.get("context") else None
    pairs: list[tuple[dict[str, Any], SignalKind | str]] = [
        (record, record.get("signal_kind", "")) for record in records
    ]

    service = DecisionSpineService.from_config(get_config())
    judgment = await service.evaluate_records(
        entity_id,
        entity_type,
        pairs,
        args.config_version or payload.get("config_version"),
        context=context,
    )

    if args.json:
        console.print_json(judgment.model_dump_json())
    else:
        render_judgment(judgment)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="decision-spine", description="Care-operations decision spine"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    evaluate = commands.add_parser("evaluate", help="Evaluate an entity from a JSON records file")
    evaluate.add_argument("records", help="Path to the records file")
    evaluate.add_argument("--entity-id", help="Entity to evaluate (defaults to the file's)")
    evaluate.add_argument("--entity-type", help="Entity type (defaults to the file's)")
    evaluate.add_argument("--config-version", help="Threshold version (defaults to latest)")
    evaluate.add_argument("--json", action="store_true", help="Print the judgment as JSON")

    commands.add_parser("config", help="Validate and print the configuration")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    configure_logging(config.logging)

    if args.command == "config":
        validate_config()
        print_config_summary()
        return 0

    try:
        return asyncio.run(run_evaluate(args))
    except (OSError, ValueError) as e:
        console.print(f"Evaluation failed: {e}", style="red")
        return 1


if __name__ == "__main__":
    sys.exit(main())
