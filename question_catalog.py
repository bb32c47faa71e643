"""Pre-authored fact catalog with validation and stage-aware selection."""
from __future__ import annotations

import json
import logging
import random
from pathlib import Path
from typing import Any, Dict, List, MutableSet, Optional, Sequence

import db
from engines.caching import TTLCache
from engines.fact_generator import (
    DEFAULT_SEEN_CAPACITY,
    MathFact,
    build_options,
    difficulty_for_grade,
    question_signature,
)
from grade_levels import GradeToken, parse_grade
from number_ranges import Operation, UnknownOperationError, get_range
from progression_table import UnknownStageError, get_stage

logger = logging.getLogger(__name__)


class CatalogValidationError(ValueError):
    """Raised when a fact from the JSON catalog fails validation."""


def validate_fact(entry: Any) -> Dict[str, Any]:
    """Return a normalised copy of one catalog entry or raise ``CatalogValidationError``."""

    if not isinstance(entry, dict):
        raise CatalogValidationError("Each fact must be an object")

    for field in QuestionCatalog.REQUIRED_FIELDS:
        if field not in entry or entry[field] in (None, ""):
            raise CatalogValidationError(f"Fact {entry.get('id')} missing required field '{field}'")

    fact_id = str(entry["id"])
    try:
        op = Operation.parse(entry["operation"])
    except UnknownOperationError as exc:
        raise CatalogValidationError(f"Fact {fact_id}: {exc}") from exc

    try:
        operand1 = int(entry["operand1"])
        operand2 = int(entry["operand2"])
    except (TypeError, ValueError) as exc:
        raise CatalogValidationError(f"Fact {fact_id} operands must be integers") from exc
    if operand1 < 0 or operand2 < 0:
        raise CatalogValidationError(f"Fact {fact_id} operands cannot be negative")
    if op is Operation.SUBTRACTION and operand1 < operand2:
        raise CatalogValidationError(f"Fact {fact_id} would have a negative difference")
    if op is Operation.DIVISION and (operand2 == 0 or operand1 % operand2):
        raise CatalogValidationError(f"Fact {fact_id} is not a whole-number division")

    answer = op.apply(operand1, operand2)
    declared = entry.get("answer")
    if declared is not None and str(declared).strip() != str(answer):
        raise CatalogValidationError(f"Fact {fact_id} declares answer {declared!r}, expected {answer}")

    fact_type = entry.get("fact_type")
    if fact_type is not None:
        try:
            get_stage(op, str(fact_type))
        except UnknownStageError as exc:
            raise CatalogValidationError(f"Fact {fact_id}: {exc}") from exc
        fact_type = str(fact_type)

    grade_levels = entry.get("grade_levels") or []
    if not isinstance(grade_levels, list):
        raise CatalogValidationError(f"Fact {fact_id} grade_levels must be a list")
    parsed_grades: List[int] = []
    for grade in grade_levels:
        level = parse_grade(grade)
        if level is None:
            raise CatalogValidationError(f"Fact {fact_id} has invalid grade level {grade!r}")
        parsed_grades.append(level)

    return {
        "id": fact_id,
        "operation": op.value,
        "operand1": operand1,
        "operand2": operand2,
        "answer": answer,
        "fact_type": fact_type,
        "grade_levels": parsed_grades,
    }


class QuestionCatalog:
    """Loads a JSON list of facts, syncs it to the database and serves from it.

    Query results are cached in an injected :class:`TTLCache` keyed by the
    filter, so repeated requests for the same stage do not hit SQLite.
    """

    REQUIRED_FIELDS = ("id", "operation", "operand1", "operand2")

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        cache: Optional[TTLCache] = None,
        auto_sync: bool = True,
    ) -> None:
        self.path = Path(path) if path is not None else None
        self.cache = cache or TTLCache()
        self._facts: List[Dict[str, Any]] = []
        if self.path is not None:
            self._load(self.path, auto_sync=auto_sync)

    # ------------------------------------------------------------------
    # loading & validation
    # ------------------------------------------------------------------
    def _load(self, path: Path, *, auto_sync: bool) -> None:
        if not path.exists():
            raise FileNotFoundError(f"Fact catalog file not found: {path}")

        with path.open("r", encoding="utf-8") as fh:
            try:
                raw = json.load(fh)
            except json.JSONDecodeError as exc:
                raise CatalogValidationError(f"Fact catalog is not valid JSON: {exc}") from exc

        if not isinstance(raw, list):
            raise CatalogValidationError("Fact catalog root must be a JSON list")

        facts: List[Dict[str, Any]] = []
        seen_ids: set[str] = set()
        for entry in raw:
            fact = validate_fact(entry)
            if fact["id"] in seen_ids:
                raise CatalogValidationError(f"Duplicate fact id detected: {fact['id']}")
            seen_ids.add(fact["id"])
            facts.append(fact)

        self._facts = facts
        if auto_sync and facts:
            synced = db.upsert_catalog_facts(facts)
            self.cache.clear()
            logger.info("Synced %s catalog facts from %s", synced, path)

    @property
    def facts(self) -> List[Dict[str, Any]]:
        return list(self._facts)

    # ------------------------------------------------------------------
    # selection
    # ------------------------------------------------------------------
    def candidates(
        self,
        operation: Operation,
        grade: Optional[GradeToken],
        stage: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Catalog facts matching the stage, or the grade's operand ranges when untagged."""

        if stage is not None:
            key: tuple = (operation.value, "stage", stage)
            bounds = None
        else:
            bounds = get_range(operation, grade).operand_bounds()
            key = (operation.value, "range", bounds)

        cached = self.cache.get(key)
        if cached is None:
            if bounds is None:
                cached = db.query_catalog(operation.value, fact_type=stage)
            else:
                cached = db.query_catalog(
                    operation.value, operand1_bounds=bounds[0], operand2_bounds=bounds[1]
                )
            self.cache.set(key, cached)

        level = parse_grade(grade)
        return [
            fact
            for fact in cached
            if not fact["grade_levels"] or level is None or level in fact["grade_levels"]
        ]

    def select(
        self,
        operation: Operation,
        grade: Optional[GradeToken],
        seen: MutableSet[str],
        *,
        stage: Optional[str] = None,
        rng: Optional[random.Random] = None,
        capacity: int = DEFAULT_SEEN_CAPACITY,
    ) -> Optional[MathFact]:
        """Pick a catalog fact not yet in ``seen``; ``None`` means fall back to generation."""

        if len(seen) > capacity:
            seen.clear()
        fresh = [
            fact
            for fact in self.candidates(operation, grade, stage)
            if question_signature(operation, fact["operand1"], fact["operand2"]) not in seen
        ]
        if not fresh:
            return None

        rng = rng or random.Random()
        fact = rng.choice(fresh)
        seen.add(question_signature(operation, fact["operand1"], fact["operand2"]))
        return _to_math_fact(operation, fact, grade, rng)


def _to_math_fact(
    operation: Operation,
    fact: Dict[str, Any],
    grade: Optional[GradeToken],
    rng: random.Random,
) -> MathFact:
    answer = int(fact["answer"])
    return MathFact(
        operation=operation,
        operand1=int(fact["operand1"]),
        operand2=int(fact["operand2"]),
        answer=str(answer),
        options=build_options(answer, rng),
        grade_level=parse_grade(grade),
        difficulty=difficulty_for_grade(grade),
        fact_type=fact.get("fact_type"),
        source="catalog",
        id=str(fact["id"]),
    )


def summarize_coverage(facts: Sequence[Dict[str, Any]]) -> Dict[str, Dict[str, int]]:
    """Count facts per operation and stage; untagged facts are counted under ``""``."""

    coverage: Dict[str, Dict[str, int]] = {}
    for fact in facts:
        per_op = coverage.setdefault(str(fact["operation"]), {})
        stage = fact.get("fact_type") or ""
        per_op[stage] = per_op.get(stage, 0) + 1
    return coverage
