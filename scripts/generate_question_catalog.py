"""Write a fact catalog JSON file built from the stage fact families."""
from __future__ import annotations

import argparse
import json
import random
import re
from pathlib import Path
from typing import Dict, Iterator, List, Sequence, Tuple

from number_ranges import Operation
from progression_table import FactFamily, stages_for

_SLUG = re.compile(r"[^a-z0-9]+")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--output",
        type=str,
        default="facts_catalog.json",
        help="Where to write the catalog (default: facts_catalog.json)",
    )
    parser.add_argument(
        "--operation",
        action="append",
        choices=[op.value for op in Operation],
        help="Restrict to one operation; repeat for several (default: all)",
    )
    parser.add_argument(
        "--per-stage",
        type=int,
        default=0,
        help="Sample at most this many facts per stage; 0 keeps every fact (default: 0)",
    )
    parser.add_argument("--seed", type=int, default=7, help="Sampling seed (default: 7)")
    return parser


def _slug(text: str) -> str:
    return _SLUG.sub("-", text.lower()).strip("-")


def _span(bounds: Tuple[int, int]) -> range:
    return range(bounds[0], bounds[1] + 1)


def family_operands(op: Operation, family: FactFamily) -> Iterator[Tuple[int, int]]:
    """Every (operand1, operand2) pair a stage family can produce."""

    if family.pattern == "double":
        for value in _span(family.first):
            yield value, value
    elif family.pattern == "make":
        for value in _span(family.first):
            yield value, family.total - value
    elif family.pattern == "from":
        for minuend in _span(family.first):
            for subtrahend in range(minuend + 1):
                yield minuend, subtrahend
    elif family.pattern == "half":
        for half in _span(family.first):
            yield half * 2, half
    elif op is Operation.SUBTRACTION:
        for subtrahend in _span(family.first):
            for difference in _span(family.second):
                yield subtrahend + difference, subtrahend
    elif op is Operation.DIVISION:
        for divisor in _span(family.first):
            for quotient in _span(family.second):
                yield divisor * quotient, divisor
    else:
        for first in _span(family.first):
            for second in _span(family.second):
                yield first, second
                if first != second:
                    yield second, first


def build_catalog(
    operations: Sequence[Operation],
    *,
    per_stage: int = 0,
    rng: random.Random | None = None,
) -> List[Dict]:
    rng = rng or random.Random()
    facts: List[Dict] = []
    for op in operations:
        for stage in stages_for(op):
            pairs = list(dict.fromkeys(family_operands(op, stage.family)))
            if per_stage > 0 and len(pairs) > per_stage:
                pairs = rng.sample(pairs, per_stage)
            for operand1, operand2 in pairs:
                facts.append(
                    {
                        "id": f"{op.value[:3]}-{_slug(stage.name)}-{operand1}-{operand2}",
                        "operation": op.value,
                        "operand1": operand1,
                        "operand2": operand2,
                        "answer": op.apply(operand1, operand2),
                        "fact_type": stage.name,
                    }
                )
    return facts


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    operations = [Operation.parse(name) for name in args.operation] if args.operation else list(Operation)
    facts = build_catalog(operations, per_stage=max(0, args.per_stage), rng=random.Random(args.seed))

    Path(args.output).write_text(json.dumps(facts, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    print(f"Wrote {len(facts)} facts to {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
