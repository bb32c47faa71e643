"""Grade advancement and regression driven by per-(subject, grade) accuracy.

A learner's accuracy on a subject at their current grade is accumulated over
every practice session. Once enough evidence exists the learner is moved one
grade up (K-6, capped) or one grade down (floored at K).
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

import db
from grade_levels import GradeToken, grade_to_token, next_grade, normalize_grade

_LOGGER = logging.getLogger(__name__)

ADVANCE_MASTERY = 80
ADVANCE_MIN_ATTEMPTS = 30
DOWNGRADE_MASTERY = 50
DOWNGRADE_MIN_ATTEMPTS = 10


@dataclass
class GradeDecision:
    subject: str
    previous_grade: str
    new_grade: str
    decision: Optional[str]
    level_changed: bool
    mastery_level: int
    total_attempts: int
    correct_attempts: int


def mastery_percent(correct: int, total: int) -> int:
    """``100 * correct / total`` rounded half up; 0 when nothing was attempted."""

    if total <= 0:
        return 0
    correct = max(0, min(int(correct), int(total)))
    return (200 * correct + total) // (2 * total)


def decide_grade_change(mastery_level: int, total_attempts: int) -> Optional[str]:
    """Return ``"advance"``, ``"downgrade"`` or ``None`` (hold)."""

    if mastery_level >= ADVANCE_MASTERY and total_attempts >= ADVANCE_MIN_ATTEMPTS:
        return "advance"
    if mastery_level < DOWNGRADE_MASTERY and total_attempts >= DOWNGRADE_MIN_ATTEMPTS:
        return "downgrade"
    return None


def record_attempts(
    user_id: str,
    subject: str,
    grade: GradeToken,
    attempts: int,
    correct: int,
    *,
    con: Optional[sqlite3.Connection] = None,
) -> GradeDecision:
    """Add a session's answers to the subject row and apply any grade change.

    Writes go through ``con`` when given so the caller can keep them in the
    same transaction as the rest of the session.
    """

    if attempts < 0 or correct < 0 or correct > attempts:
        raise ValueError("correct must be between 0 and attempts")

    level = normalize_grade(grade)
    token = grade_to_token(level)
    row = db.ensure_subject_mastery(user_id, subject, token, con=con)

    total_attempts = int(row["total_attempts"]) + int(attempts)
    correct_attempts = int(row["correct_attempts"]) + int(correct)
    mastery_level = mastery_percent(correct_attempts, total_attempts)
    decision = decide_grade_change(mastery_level, total_attempts)

    fields = {
        "total_attempts": total_attempts,
        "correct_attempts": correct_attempts,
        "mastery_level": mastery_level,
    }
    new_level = level
    if decision == "advance":
        fields["next_grade_unlocked"] = True
        new_level = next_grade(level, "up")
        if new_level != level:
            target = grade_to_token(new_level)
            db.ensure_subject_mastery(user_id, subject, target, con=con)
            db.update_subject_mastery(user_id, subject, target, {"is_unlocked": True}, con=con)
    elif decision == "downgrade":
        new_level = next_grade(level, "down")
        if new_level != level:
            target = grade_to_token(new_level)
            db.ensure_subject_mastery(user_id, subject, target, con=con)
            db.update_subject_mastery(user_id, subject, target, {"downgraded": True}, con=con)

    db.update_subject_mastery(user_id, subject, token, fields, con=con)

    level_changed = new_level != level
    if level_changed:
        db.set_user_grade(user_id, grade_to_token(new_level), con=con)
        _LOGGER.info(
            "Grade %s for %s on %s: %s -> %s (mastery %s%% over %s attempts)",
            decision,
            user_id,
            subject,
            token,
            grade_to_token(new_level),
            mastery_level,
            total_attempts,
        )

    return GradeDecision(
        subject=subject,
        previous_grade=token,
        new_grade=grade_to_token(new_level),
        decision=decision,
        level_changed=level_changed,
        mastery_level=mastery_level,
        total_attempts=total_attempts,
        correct_attempts=correct_attempts,
    )
