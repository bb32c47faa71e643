"""Per-(user, operator) mastery records backed by the fact_mastery tables."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import db
from number_ranges import Operation
from progression_table import auto_skip_types, current_step
from engines.rewards import micro_tokens

_LOGGER = logging.getLogger(__name__)

PASS_THRESHOLD = 0.8


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PracticeProgress:
    passed: bool
    streak_current: int
    streak_best: int
    good_attempts: int
    bad_attempts: int
    sessions_completed: int


def session_passed(correct: int, total: int, threshold: float = PASS_THRESHOLD) -> bool:
    return total > 0 and correct / total >= threshold


def continue_streak(current: int, best: int, outcomes: Sequence[bool]) -> Tuple[int, int]:
    """Carry the running streak through ``outcomes``; a miss resets it to zero."""

    for correct in outcomes:
        current = current + 1 if correct else 0
        best = max(best, current)
    return current, best


class MasteryTracker:
    """Reads and updates mastery records.

    Every method accepts an optional ``con``; when given, writes join the
    caller's transaction instead of committing on their own.
    """

    def load(
        self,
        user_id: str,
        operator: Union[str, Operation],
        *,
        con: Optional[sqlite3.Connection] = None,
    ) -> Dict[str, Any]:
        """Return the record, creating it on first read.

        A new record is seeded with the auto-skips of the grade stored on the
        user row. A grade passed to a single request only picks ranges and the
        stage to serve; it never decides which stages a learner skips.
        """

        op = Operation.parse(operator)
        record = db.get_mastery_record(user_id, op.value, con=con)
        if record is not None:
            return record

        grade = db.ensure_user(user_id, con=con)["grade"]
        seed = auto_skip_types(op, grade)
        if db.create_mastery_record(user_id, op.value, seed, con=con):
            step = current_step(op, seed, grade)
            if step:
                db.update_mastery_record(user_id, op.value, assignments={"current_step": step}, con=con)
            _LOGGER.debug("Created %s mastery record for %s (auto-skipped %s)", op.value, user_id, seed)
        record = db.get_mastery_record(user_id, op.value, con=con)
        if record is None:
            raise RuntimeError(f"{op.value} mastery record for {user_id} was not created")
        return record

    def record_micro_tokens(
        self,
        user_id: str,
        operator: Union[str, Operation],
        correct_count: int,
        *,
        con: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Credit ``correct_count // 3`` tokens to the user and the record.

        Both balances are incremented in SQL so concurrent awards cannot lose
        updates. Zero awards write nothing.
        """

        op = Operation.parse(operator)
        awarded = micro_tokens(correct_count)
        if awarded <= 0:
            return 0
        db.ensure_user(user_id, con=con)
        self.load(user_id, op, con=con)
        db.add_user_tokens(user_id, awarded, con=con)
        db.update_mastery_record(user_id, op.value, increments={"tokens_earned": awarded}, con=con)
        return awarded

    def apply_practice(
        self,
        user_id: str,
        operator: Union[str, Operation],
        outcomes: Sequence[bool],
        *,
        tokens: int = 0,
        con: Optional[sqlite3.Connection] = None,
    ) -> PracticeProgress:
        """Fold a finished practice session into the record's counters."""

        op = Operation.parse(operator)
        record = self.load(user_id, op, con=con)
        total = len(outcomes)
        correct = sum(1 for outcome in outcomes if outcome)

        streak_current, streak_best = continue_streak(
            int(record["streak_current"]), int(record["streak_best"]), outcomes
        )
        good = int(record["good_attempts"])
        bad = int(record["bad_attempts"])
        passed = session_passed(correct, total)
        if total:
            if passed:
                good, bad = good + 1, 0
            else:
                good, bad = 0, bad + 1

        db.update_mastery_record(
            user_id,
            op.value,
            increments={
                "total_questions_answered": total,
                "correct_answers": correct,
                "sessions_completed": 1,
                "tokens_earned": max(0, int(tokens)),
            },
            assignments={
                "streak_current": streak_current,
                "streak_best": streak_best,
                "good_attempts": good,
                "bad_attempts": bad,
                "last_played": _utc_now(),
            },
            con=con,
        )
        return PracticeProgress(
            passed=passed,
            streak_current=streak_current,
            streak_best=streak_best,
            good_attempts=good,
            bad_attempts=bad,
            sessions_completed=int(record["sessions_completed"]) + 1,
        )
