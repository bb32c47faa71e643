"""Pydantic schemas for questions, session submissions and progress snapshots."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

__all__ = [
    "QuestionModel",
    "AssessmentSet",
    "AnswerRecord",
    "MasteryRecordModel",
    "SubjectMasteryModel",
    "AssessmentSummary",
    "SessionSummary",
    "MicroTokenAward",
    "ProgressSnapshot",
    "SessionResetResult",
]


class QuestionModel(BaseModel):
    id: str
    operation: str
    operation_symbol: str
    operand1: int
    operand2: int
    answer: str
    options: List[str] = Field(min_length=4, max_length=4)
    grade_level: int | None = None
    difficulty: int = Field(ge=1, le=3)
    fact_type: str | None = None
    text: str
    source: Literal["generated", "catalog"] = "generated"


class AssessmentSet(BaseModel):
    user_id: str
    operation: str
    grade: str
    questions: List[QuestionModel]


class AnswerRecord(BaseModel):
    """One answered question.

    Either ``is_correct`` is reported by the client, or the operands and the
    learner's ``response`` are sent and the answer is checked server-side.
    """

    fact_type: str | None = Field(
        default=None,
        description="Stage the question was tagged with; untagged answers count for totals only.",
    )
    is_correct: bool | None = None
    operand1: int | None = Field(default=None, ge=0)
    operand2: int | None = Field(default=None, ge=0)
    response: str | int | None = None
    question_id: str | None = None
    response_time_ms: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _require_outcome(self) -> "AnswerRecord":
        if self.is_correct is None and (
            self.operand1 is None or self.operand2 is None or self.response is None
        ):
            raise ValueError("answer needs is_correct or operand1, operand2 and response")
        return self


class MasteryRecordModel(BaseModel):
    user_id: str
    operator: str
    test_taken: bool = False
    mastery_level: bool = False
    types_complete: List[str] = Field(default_factory=list)
    good_attempts: int = 0
    bad_attempts: int = 0
    current_step: int = 0
    tokens_earned: int = 0
    total_questions_answered: int = 0
    correct_answers: int = 0
    streak_current: int = 0
    streak_best: int = 0
    sessions_completed: int = 0
    last_played: str | None = None


class SubjectMasteryModel(BaseModel):
    user_id: str
    subject: str
    grade: str
    total_attempts: int = 0
    correct_attempts: int = 0
    mastery_level: int = Field(default=0, ge=0, le=100)
    is_unlocked: bool = True
    next_grade_unlocked: bool = False
    downgraded: bool = False
    last_practiced: str | None = None


class AssessmentSummary(BaseModel):
    user_id: str
    operation: str
    questions_total: int
    questions_correct: int
    mastered_types: List[str] = Field(
        default_factory=list,
        description="Stages answered correctly and never incorrectly in this assessment.",
    )
    newly_mastered: List[str] = Field(default_factory=list)
    types_complete: List[str] = Field(default_factory=list)
    mastery_level: bool
    mastery_achieved: bool = Field(
        default=False,
        description="True only when mastery flipped from false to true in this submission.",
    )
    bonus_tokens: int = 0
    next_stage: str | None = None


class SessionSummary(BaseModel):
    user_id: str
    operation: str
    questions_total: int
    questions_correct: int
    accuracy: float = Field(ge=0.0, le=1.0)
    time_setting: Literal["SHORT", "LONG"]
    tokens_earned: int
    bonus_tokens: int = 0
    mastery_level: bool
    mastered_types: List[str] = Field(default_factory=list)
    newly_mastered: List[str] = Field(default_factory=list)
    level_changed: bool = False
    new_grade: str | None = None
    grade_decision: Literal["advance", "downgrade"] | None = None
    subject_mastery_level: int = Field(default=0, ge=0, le=100)
    passed: bool = False
    streak_current: int = 0
    streak_best: int = 0
    next_stage: str | None = None


class MicroTokenAward(BaseModel):
    user_id: str
    operation: str
    tokens_awarded: int
    tokens_earned: int
    user_tokens: int


class ProgressSnapshot(BaseModel):
    user_id: str
    grade: str
    tokens: int
    record: MasteryRecordModel
    next_stage: str | None = None
    stages_total: int
    stages_required: List[str] = Field(default_factory=list)
    recent_history: List[Dict[str, Any]] = Field(default_factory=list)


class SessionResetResult(BaseModel):
    user_id: str
    operation: Optional[str] = None
    cleared: int
