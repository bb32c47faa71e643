"""Caller-facing operations: serve questions and credit finished sessions.

Every session completion runs under the progression gate's per-(user,
operator) lock and inside one store transaction. A failing store raises
:class:`ProgressPersistenceError` and leaves nothing credited.
"""

from __future__ import annotations

import logging
import random
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import db
from env_validation import get_env_int
from grade_levels import GradeToken, grade_to_token, normalize_grade
from number_ranges import Operation
from progression_table import next_stage, required_stages, stage_names
from question_catalog import QuestionCatalog
from schemas import (
    AnswerRecord,
    AssessmentSummary,
    MasteryRecordModel,
    MicroTokenAward,
    ProgressSnapshot,
    SessionResetResult,
    SessionSummary,
    SubjectMasteryModel,
)
from engines.caching import SeenSetRegistry
from engines.fact_generator import MathFact, check_answer, generate
from engines.mastery_tracker import MasteryTracker
from engines.progression import MODULE_NAME, ProgressionGate, StageResult
from engines.rewards import calculate_tokens, time_setting_for
from engines.subject_mastery import record_attempts

logger = logging.getLogger(__name__)
session_logger = logging.getLogger("factpath.sessions")


class ProgressPersistenceError(RuntimeError):
    """The store failed while reading or crediting progress; nothing was credited."""


@dataclass
class ServiceConfig:
    seen_capacity: int = 100
    max_attempts: int = 20
    assessment_count: int = 24
    mastery_bonus: int = 50

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            seen_capacity=get_env_int("SEEN_SET_CAPACITY"),
            max_attempts=get_env_int("SIGNATURE_RETRY_LIMIT"),
            assessment_count=get_env_int("ASSESSMENT_QUESTION_COUNT"),
            mastery_bonus=get_env_int("MASTERY_BONUS_TOKENS"),
        )


@contextmanager
def _persistence(action: str, user_id: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        logger.exception("Store failure during %s for %s", action, user_id)
        raise ProgressPersistenceError(f"{action} failed; progress was not credited") from exc


def grade_answers(operation: Operation, answers: Iterable[Union[AnswerRecord, dict]]) -> List[StageResult]:
    """Resolve each answer to a (fact_type, is_correct) pair.

    Answers carrying operands and a response are checked here; the client's
    ``is_correct`` is used only when they do not.
    """

    results: List[StageResult] = []
    for raw in answers:
        answer = raw if isinstance(raw, AnswerRecord) else AnswerRecord.model_validate(raw)
        if answer.operand1 is not None and answer.operand2 is not None and answer.response is not None:
            if operation is Operation.DIVISION and answer.operand2 == 0:
                correct = False
            else:
                expected = operation.apply(answer.operand1, answer.operand2)
                correct = check_answer(answer.response, str(expected))
        else:
            correct = bool(answer.is_correct)
        results.append(StageResult(answer.fact_type, correct))
    return results


class FactsService:
    def __init__(
        self,
        *,
        gate: Optional[ProgressionGate] = None,
        seen: Optional[SeenSetRegistry] = None,
        catalog: Optional[QuestionCatalog] = None,
        rng: Optional[random.Random] = None,
        config: Optional[ServiceConfig] = None,
    ) -> None:
        self.config = config or ServiceConfig()
        self.gate = gate or ProgressionGate(mastery_bonus=self.config.mastery_bonus)
        self.seen = seen or SeenSetRegistry(capacity=self.config.seen_capacity)
        self.catalog = catalog
        self.rng = rng or random.Random()

    @property
    def tracker(self) -> MasteryTracker:
        return self.gate.tracker

    # ----- questions ---------------------------------------------------
    def get_next_question(
        self,
        user_id: str,
        operator: Union[str, Operation],
        grade: Optional[GradeToken] = None,
    ) -> MathFact:
        """Next question for the learner's current stage, catalog first."""

        op = Operation.parse(operator)
        with _persistence("loading progress", user_id):
            if grade is None:
                grade = db.ensure_user(user_id)["grade"]
            stage = self.gate.current_stage(user_id, op, grade=grade)

            with self.gate.locked(user_id, op):
                seen = self.seen.get(user_id, op.value)
                question = None
                if self.catalog is not None:
                    question = self.catalog.select(
                        op, grade, seen, stage=stage, rng=self.rng, capacity=self.seen.capacity
                    )
                    if question is None:
                        logger.debug("No catalog fact for %s stage %r; generating", op.value, stage)
                if question is None:
                    question = generate(
                        op,
                        grade,
                        seen,
                        stage=stage,
                        rng=self.rng,
                        capacity=self.seen.capacity,
                        max_attempts=self.config.max_attempts,
                    )
        return question

    def get_assessment(
        self,
        user_id: str,
        operator: Union[str, Operation],
        count: Optional[int] = None,
    ) -> Tuple[str, List[MathFact]]:
        op = Operation.parse(operator)
        with _persistence("loading user", user_id):
            grade = db.ensure_user(user_id)["grade"]
        questions = self.gate.assessment_questions(
            op, grade, count or self.config.assessment_count, rng=self.rng
        )
        return grade_to_token(normalize_grade(grade)), questions

    # ----- completions -------------------------------------------------
    def submit_assessment(
        self,
        user_id: str,
        operator: Union[str, Operation],
        answers: Sequence[Union[AnswerRecord, dict]],
    ) -> AssessmentSummary:
        op = Operation.parse(operator)
        results = grade_answers(op, answers)
        with _persistence("assessment completion", user_id):
            outcome = self.gate.complete_assessment(user_id, op, results)

        session_logger.info(
            "assessment user=%s op=%s correct=%s/%s mastered=%s mastery=%s bonus=%s",
            user_id,
            op.value,
            outcome.questions_correct,
            outcome.questions_total,
            outcome.newly_mastered,
            outcome.mastery_level,
            outcome.bonus_tokens,
        )
        return AssessmentSummary(
            user_id=user_id,
            operation=op.value,
            questions_total=outcome.questions_total,
            questions_correct=outcome.questions_correct,
            mastered_types=outcome.mastered_types,
            newly_mastered=outcome.newly_mastered,
            types_complete=outcome.types_complete,
            mastery_level=outcome.mastery_level,
            mastery_achieved=outcome.mastery_achieved,
            bonus_tokens=outcome.bonus_tokens,
            next_stage=outcome.next_stage,
        )

    def submit_practice_session(
        self,
        user_id: str,
        operator: Union[str, Operation],
        answers: Sequence[Union[AnswerRecord, dict]],
        duration_seconds: float,
    ) -> SessionSummary:
        """Credit a timed practice session.

        Tokens, stage progress, streaks, the subject-mastery grade decision
        and the history row are written in one transaction.
        """

        op = Operation.parse(operator)
        results = grade_answers(op, answers)
        total = len(results)
        correct = sum(1 for result in results if result.is_correct)
        tokens = calculate_tokens(correct, total, duration_seconds)
        setting = time_setting_for(duration_seconds)

        with _persistence("practice session completion", user_id):
            with self.gate.locked(user_id, op), db.transaction() as tx:
                grade = db.ensure_user(user_id, con=tx)["grade"]
                stages = self.gate.evaluate_practice(user_id, op, results, grade=grade, con=tx)
                progress = self.tracker.apply_practice(
                    user_id,
                    op,
                    [result.is_correct for result in results],
                    tokens=tokens,
                    con=tx,
                )
                if tokens:
                    db.add_user_tokens(user_id, tokens, con=tx)
                decision = None
                if total:
                    decision = record_attempts(user_id, op.value, grade, total, correct, con=tx)
                db.log_module_history(
                    user_id,
                    MODULE_NAME,
                    "practice",
                    grade_level=grade_to_token(normalize_grade(grade)),
                    questions_total=total,
                    questions_correct=correct,
                    time_spent_seconds=duration_seconds,
                    tokens_earned=tokens + stages.bonus_tokens,
                    properties={
                        "operator": op.value,
                        "time_setting": setting.name,
                        "mastered_types": stages.mastered_types,
                        "grade_decision": decision.decision if decision else None,
                    },
                    con=tx,
                )

        level_changed = bool(decision and decision.level_changed)
        session_logger.info(
            "practice user=%s op=%s correct=%s/%s tokens=%s setting=%s grade_change=%s",
            user_id,
            op.value,
            correct,
            total,
            tokens,
            setting.name,
            decision.new_grade if level_changed else None,
        )
        return SessionSummary(
            user_id=user_id,
            operation=op.value,
            questions_total=total,
            questions_correct=correct,
            accuracy=(correct / total) if total else 0.0,
            time_setting=setting.name,
            tokens_earned=tokens,
            bonus_tokens=stages.bonus_tokens,
            mastery_level=stages.mastery_level,
            mastered_types=stages.mastered_types,
            newly_mastered=stages.newly_mastered,
            level_changed=level_changed,
            new_grade=decision.new_grade if level_changed else None,
            grade_decision=decision.decision if decision else None,
            subject_mastery_level=decision.mastery_level if decision else 0,
            passed=progress.passed,
            streak_current=progress.streak_current,
            streak_best=progress.streak_best,
            next_stage=stages.next_stage,
        )

    def record_micro_tokens(
        self,
        user_id: str,
        operator: Union[str, Operation],
        correct_count: int,
    ) -> MicroTokenAward:
        op = Operation.parse(operator)
        with _persistence("micro-token award", user_id):
            with db.transaction() as tx:
                awarded = self.tracker.record_micro_tokens(user_id, op, correct_count, con=tx)
                user = db.ensure_user(user_id, con=tx)
                record = self.tracker.load(user_id, op, con=tx)
        return MicroTokenAward(
            user_id=user_id,
            operation=op.value,
            tokens_awarded=awarded,
            tokens_earned=int(record["tokens_earned"]),
            user_tokens=int(user["tokens"]),
        )

    # ----- session & progress ------------------------------------------
    def reset_session(self, user_id: str, operator: Optional[Union[str, Operation]] = None) -> SessionResetResult:
        """Forget which questions the learner has already seen."""

        op = Operation.parse(operator) if operator else None
        cleared = self.seen.reset(user_id, op.value if op else None)
        return SessionResetResult(user_id=user_id, operation=op.value if op else None, cleared=cleared)

    def get_progress(self, user_id: str, operator: Union[str, Operation]) -> ProgressSnapshot:
        op = Operation.parse(operator)
        with _persistence("loading progress", user_id):
            user = db.ensure_user(user_id)
            record = self.tracker.load(user_id, op)
            history = [
                entry
                for entry in db.list_module_history(user_id, limit=20)
                if entry["properties"].get("operator") == op.value
            ]
        return ProgressSnapshot(
            user_id=user_id,
            grade=grade_to_token(normalize_grade(user["grade"])),
            tokens=int(user["tokens"]),
            record=_mastery_model(user_id, op, record),
            next_stage=next_stage(op, record["types_complete"], user["grade"]),
            stages_total=len(stage_names(op)),
            stages_required=required_stages(op, user["grade"]),
            recent_history=history[:5],
        )

    def subject_mastery(self, user_id: str, subject: Optional[str] = None) -> List[SubjectMasteryModel]:
        if subject:
            subject = Operation.parse(subject).value
        with _persistence("loading subject mastery", user_id):
            rows = db.list_subject_mastery(user_id, subject)
        return [_subject_model(row) for row in rows]


def _mastery_model(user_id: str, op: Operation, record: dict[str, Any]) -> MasteryRecordModel:
    return MasteryRecordModel(
        user_id=user_id,
        operator=op.value,
        test_taken=bool(record["test_taken"]),
        mastery_level=bool(record["mastery_level"]),
        types_complete=list(record["types_complete"]),
        good_attempts=int(record["good_attempts"]),
        bad_attempts=int(record["bad_attempts"]),
        current_step=int(record["current_step"]),
        tokens_earned=int(record["tokens_earned"]),
        total_questions_answered=int(record["total_questions_answered"]),
        correct_answers=int(record["correct_answers"]),
        streak_current=int(record["streak_current"]),
        streak_best=int(record["streak_best"]),
        sessions_completed=int(record["sessions_completed"]),
        last_played=record["last_played"],
    )


def _subject_model(row: dict[str, Any]) -> SubjectMasteryModel:
    return SubjectMasteryModel(
        user_id=row["user_id"],
        subject=row["subject"],
        grade=str(row["grade"]),
        total_attempts=int(row["total_attempts"]),
        correct_attempts=int(row["correct_attempts"]),
        mastery_level=int(row["mastery_level"]),
        is_unlocked=bool(row["is_unlocked"]),
        next_grade_unlocked=bool(row["next_grade_unlocked"]),
        downgraded=bool(row["downgraded"]),
        last_practiced=row["last_practiced"],
    )
