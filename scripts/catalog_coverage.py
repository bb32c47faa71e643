"""Report fact-catalog coverage per stage and flag sparse stages."""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Dict, Sequence

from progression_table import stage_names
from number_ranges import Operation
from question_catalog import QuestionCatalog, summarize_coverage


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--catalog",
        type=str,
        default="facts_catalog.json",
        help="Path to the fact catalog JSON file (default: facts_catalog.json)",
    )
    parser.add_argument(
        "--min-facts",
        type=int,
        default=5,
        help="Minimum number of facts required per stage (default: 5)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON coverage report",
    )
    return parser


def _build_report(facts: Sequence[Dict]) -> dict:
    coverage = summarize_coverage(facts)
    operations: Dict[str, dict] = {}
    for op in Operation:
        counts = coverage.get(op.value, {})
        operations[op.value] = {
            "count": sum(counts.values()),
            "untagged": counts.get("", 0),
            "stages": {name: counts.get(name, 0) for name in stage_names(op)},
        }
    return {"totals": {"count": len(facts)}, "operations": operations}


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    catalog = QuestionCatalog(args.catalog, auto_sync=False)
    report = _build_report(catalog.facts)

    flagged: list[str] = []
    min_facts = max(1, int(args.min_facts))
    for operation, data in report["operations"].items():
        for stage, count in data["stages"].items():
            if count < min_facts:
                flagged.append(f"{operation} / {stage}: only {count} facts (min {min_facts})")

    payload = json.dumps(report, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)

    if flagged:
        for issue in flagged:
            print(f"sparse: {issue}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
