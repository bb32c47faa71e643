"""Stage-gated progression through the math-fact curriculum.

The gate decides which fact-type stage a learner plays next, turns finished
assessments and practice sessions into completed stages, and flips the
per-operator mastery flag once the curriculum is done. Mastery never reverts
and completed stages are never removed.

Updates for one (user, operator) pair are serialised with a per-key lock and
run inside a single store transaction, so two concurrent completions cannot
interleave their read-modify-write.
"""

from __future__ import annotations

import logging
import random
import sqlite3
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import db
from grade_levels import GradeToken, normalize_grade, grade_to_token
from number_ranges import Operation
from progression_table import (
    current_step,
    is_progression_complete,
    next_stage,
    required_stages,
    stage_names,
)
from engines.fact_generator import MathFact, generate_batch
from engines.mastery_tracker import MasteryTracker

_LOGGER = logging.getLogger(__name__)

MODULE_NAME = "math_facts"
DEFAULT_MASTERY_BONUS = 50
DEFAULT_ASSESSMENT_SIZE = 24


@dataclass(frozen=True)
class StageResult:
    fact_type: Optional[str]
    is_correct: bool


@dataclass
class StageOutcome:
    """Result of merging one finished session into the stage progression."""

    operator: str
    questions_total: int
    questions_correct: int
    mastered_types: List[str] = field(default_factory=list)
    newly_mastered: List[str] = field(default_factory=list)
    types_complete: List[str] = field(default_factory=list)
    mastery_level: bool = False
    mastery_achieved: bool = False
    bonus_tokens: int = 0
    next_stage: Optional[str] = None


def _coerce_result(item: Any) -> StageResult:
    if isinstance(item, StageResult):
        return item
    if isinstance(item, Mapping):
        return StageResult(item.get("fact_type"), bool(item.get("is_correct")))
    if isinstance(item, tuple):
        fact_type, is_correct = item
        return StageResult(fact_type, bool(is_correct))
    return StageResult(getattr(item, "fact_type", None), bool(getattr(item, "is_correct", False)))


def analyze_stage_results(results: Iterable[Any]) -> List[str]:
    """Stages answered correctly at least once and never incorrectly.

    Untagged answers are ignored. Order is the order in which each stage was
    first answered correctly.
    """

    correct_types: List[str] = []
    missed: set[str] = set()
    for item in results:
        result = _coerce_result(item)
        if not result.fact_type:
            continue
        if result.is_correct:
            if result.fact_type not in correct_types:
                correct_types.append(result.fact_type)
        else:
            missed.add(result.fact_type)
    return [fact_type for fact_type in correct_types if fact_type not in missed]


class _KeyLock:
    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def __enter__(self) -> "_KeyLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._lock.release()


class _KeyedLocks:
    """Reentrant lock per key, dropped once no caller holds it."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], _KeyLock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def get(self, key: Tuple[str, str]) -> _KeyLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = _KeyLock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@contextmanager
def _unit_of_work(con: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
    if con is not None:
        yield con
        return
    with db.transaction() as own:
        yield own


class ProgressionGate:
    """Stage gating, assessment completion and mastery decisions."""

    def __init__(
        self,
        tracker: Optional[MasteryTracker] = None,
        *,
        mastery_bonus: int = DEFAULT_MASTERY_BONUS,
    ) -> None:
        if mastery_bonus < 0:
            raise ValueError("mastery_bonus must be non-negative")
        self.tracker = tracker or MasteryTracker()
        self.mastery_bonus = int(mastery_bonus)
        self._locks = _KeyedLocks()

    # ----- locking -----------------------------------------------------
    @contextmanager
    def locked(self, user_id: str, operator: Union[str, Operation]) -> Iterator[None]:
        """Serialise progression updates for one (user, operator) pair."""

        op = Operation.parse(operator)
        lock = self._locks.get((str(user_id), op.value))
        with lock:
            yield

    # ----- queries -----------------------------------------------------
    def current_stage(
        self,
        user_id: str,
        operator: Union[str, Operation],
        *,
        grade: Optional[GradeToken] = None,
    ) -> Optional[str]:
        record, grade = self._record_and_grade(user_id, operator, grade)
        return next_stage(operator, record["types_complete"], grade)

    def assessment_questions(
        self,
        operator: Union[str, Operation],
        grade: Optional[GradeToken],
        count: int = DEFAULT_ASSESSMENT_SIZE,
        *,
        rng: Optional[random.Random] = None,
    ) -> List[MathFact]:
        """A question set that cycles through every stage the grade has to master."""

        op = Operation.parse(operator)
        stages: List[Optional[str]] = list(required_stages(op, grade)) or [None]
        return generate_batch(op, grade, count, stages=stages, rng=rng)

    # ----- completions -------------------------------------------------
    def complete_assessment(
        self,
        user_id: str,
        operator: Union[str, Operation],
        results: Iterable[Any],
        *,
        grade: Optional[GradeToken] = None,
        con: Optional[sqlite3.Connection] = None,
    ) -> StageOutcome:
        """Merge an assessment into the learner's progression.

        Mastery is set when it was already set, when every required stage is
        now complete, or when a non-empty assessment was answered entirely
        correctly. The last rule applies even if the assessment did not cover
        every stage.
        """

        op = Operation.parse(operator)
        graded = [_coerce_result(item) for item in results]
        all_correct = bool(graded) and all(result.is_correct for result in graded)
        with self.locked(user_id, op), _unit_of_work(con) as tx:
            outcome = self._merge_stages(
                user_id, op, graded, grade=grade, perfect=all_correct, source="assessment", con=tx
            )
            db.update_mastery_record(
                user_id,
                op.value,
                increments={
                    "total_questions_answered": outcome.questions_total,
                    "correct_answers": outcome.questions_correct,
                },
                assignments={
                    "test_taken": True,
                    "last_played": datetime.now(timezone.utc).isoformat(),
                },
                con=tx,
            )
            db.log_module_history(
                user_id,
                MODULE_NAME,
                "assessment",
                grade_level=self._grade_token(user_id, grade, tx),
                questions_total=outcome.questions_total,
                questions_correct=outcome.questions_correct,
                tokens_earned=outcome.bonus_tokens,
                properties={
                    "operator": op.value,
                    "mastered_types": outcome.mastered_types,
                    "mastery_achieved": outcome.mastery_achieved,
                },
                con=tx,
            )
        return outcome

    def evaluate_practice(
        self,
        user_id: str,
        operator: Union[str, Operation],
        results: Iterable[Any],
        *,
        grade: Optional[GradeToken] = None,
        con: Optional[sqlite3.Connection] = None,
    ) -> StageOutcome:
        """Merge the stages mastered in a practice session.

        Unlike an assessment, a perfect practice session does not by itself
        grant mastery; only completing the curriculum does.
        """

        op = Operation.parse(operator)
        graded = [_coerce_result(item) for item in results]
        with self.locked(user_id, op), _unit_of_work(con) as tx:
            return self._merge_stages(
                user_id, op, graded, grade=grade, perfect=False, source="practice", con=tx
            )

    # ----- helpers -----------------------------------------------------
    def _record_and_grade(
        self,
        user_id: str,
        operator: Union[str, Operation],
        grade: Optional[GradeToken],
        con: Optional[sqlite3.Connection] = None,
    ) -> Tuple[Dict[str, Any], GradeToken]:
        if grade is None:
            grade = db.ensure_user(user_id, con=con)["grade"]
        record = self.tracker.load(user_id, operator, con=con)
        return record, grade

    def _grade_token(self, user_id: str, grade: Optional[GradeToken], con: sqlite3.Connection) -> str:
        if grade is None:
            user = db.get_user(user_id, con=con)
            grade = user["grade"] if user else None
        return grade_to_token(normalize_grade(grade))

    def _merge_stages(
        self,
        user_id: str,
        op: Operation,
        graded: List[StageResult],
        *,
        grade: Optional[GradeToken],
        perfect: bool,
        source: str,
        con: sqlite3.Connection,
    ) -> StageOutcome:
        record, grade = self._record_and_grade(user_id, op, grade, con)
        known = set(stage_names(op))
        mastered = analyze_stage_results(graded)
        unknown = [name for name in mastered if name not in known]
        if unknown:
            _LOGGER.warning("Ignoring unknown %s stages for %s: %s", op.value, user_id, unknown)
        mastered = [name for name in mastered if name in known]

        added = db.merge_types_complete(user_id, op.value, mastered, source=source, con=con)
        types_complete = list(record["types_complete"]) + added
        for name in added:
            _LOGGER.info("Stage mastered for %s on %s: %s", user_id, op.value, name)

        previously_mastered = bool(record["mastery_level"])
        mastery = (
            previously_mastered
            or is_progression_complete(op, types_complete, grade)
            or perfect
        )
        step = current_step(op, types_complete, grade)
        db.update_mastery_record(user_id, op.value, assignments={"current_step": step}, con=con)

        achieved = False
        bonus = 0
        if mastery and not previously_mastered:
            achieved = db.set_mastery_flag(user_id, op.value, con=con)
        if achieved:
            bonus = self.mastery_bonus
            if bonus:
                db.add_user_tokens(user_id, bonus, con=con)
                db.update_mastery_record(user_id, op.value, increments={"tokens_earned": bonus}, con=con)
            _LOGGER.info("Mastery achieved for %s on %s (bonus %s tokens)", user_id, op.value, bonus)

        return StageOutcome(
            operator=op.value,
            questions_total=len(graded),
            questions_correct=sum(1 for result in graded if result.is_correct),
            mastered_types=mastered,
            newly_mastered=added,
            types_complete=types_complete,
            mastery_level=mastery,
            mastery_achieved=achieved,
            bonus_tokens=bonus,
            next_stage=next_stage(op, types_complete, grade),
        )
