# app.py — factpath math-facts service
# - Stage-gated question serving (catalog first, synthetic fallback)
# - Session crediting in one transaction; store failures surface as 503

import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

import db
from env_validation import get_env_int
from facts_service import FactsService, ProgressPersistenceError, ServiceConfig
from number_ranges import Operation, UnknownOperationError
from question_catalog import CatalogValidationError, QuestionCatalog
from schemas import (
    AnswerRecord,
    AssessmentSet,
    AssessmentSummary,
    MicroTokenAward,
    ProgressSnapshot,
    QuestionModel,
    SessionResetResult,
    SessionSummary,
    SubjectMasteryModel,
)
from engines.caching import SeenSetRegistry, TTLCache

logger = logging.getLogger(__name__)

_SESSION_LOGGER = logging.getLogger("factpath.sessions")
if not _SESSION_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    _SESSION_LOGGER.addHandler(_handler)
_SESSION_LOGGER.setLevel(logging.INFO)
_SESSION_LOGGER.propagate = False

QUESTION_CACHE = TTLCache(
    max_size=get_env_int("QUESTION_CACHE_MAX_ENTRIES"),
    ttl_seconds=get_env_int("QUESTION_CACHE_TTL_SECONDS"),
)
SERVICE = FactsService(
    config=ServiceConfig.from_env(),
    seen=SeenSetRegistry(
        capacity=get_env_int("SEEN_SET_CAPACITY"),
        max_keys=get_env_int("SEEN_SET_MAX_KEYS"),
        ttl_seconds=get_env_int("SEEN_SET_TTL_SECONDS"),
    ),
)


def _load_catalog() -> None:
    path = os.getenv("FACTS_CATALOG_PATH")
    if not path:
        return
    try:
        SERVICE.catalog = QuestionCatalog(path, cache=QUESTION_CACHE)
    except CatalogValidationError as exc:
        logger.error("Fact catalog %s rejected: %s", path, exc)
        raise
    logger.info("Loaded %s catalog facts from %s", len(SERVICE.catalog.facts), path)


async def _sweep_caches(interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        dropped = QUESTION_CACHE.sweep()
        expired = SERVICE.seen.sweep()
        if dropped or expired:
            logger.debug(
                "Swept %s expired catalog cache entries and %s idle seen sets", dropped, expired
            )


@asynccontextmanager
async def _lifespan(_: FastAPI):
    sweeper: Optional[asyncio.Task] = None
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        _load_catalog()
        sweeper = asyncio.create_task(_sweep_caches(get_env_int("CACHE_SWEEP_INTERVAL_SECONDS")))
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        db.close()


app = FastAPI(title="factpath", version="1.0.0", lifespan=_lifespan)


def _operation(value: str) -> Operation:
    try:
        return Operation.parse(value)
    except UnknownOperationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _require_user(user_id: str) -> str:
    user_id = (user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id required")
    return user_id


class AssessmentBody(BaseModel):
    user_id: str
    operation: str
    answers: List[AnswerRecord] = Field(default_factory=list)


class PracticeSessionBody(BaseModel):
    user_id: str
    operation: str
    answers: List[AnswerRecord] = Field(default_factory=list)
    duration_seconds: float = Field(ge=0)


class MicroTokenBody(BaseModel):
    user_id: str
    operation: str
    correct_count: int = Field(ge=0)


class SessionResetBody(BaseModel):
    user_id: str
    operation: Optional[str] = None


@app.get("/")
def root():
    return {
        "status": "ok",
        "catalog_loaded": SERVICE.catalog is not None,
        "operations": [op.value for op in Operation],
    }


@app.get("/facts/next", response_model=QuestionModel)
def next_question(user_id: str, operation: str, grade: Optional[str] = None):
    user_id = _require_user(user_id)
    op = _operation(operation)
    try:
        question = SERVICE.get_next_question(user_id, op, grade=grade)
    except ProgressPersistenceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return question.to_dict()


@app.get("/facts/assessment", response_model=AssessmentSet)
def assessment(user_id: str, operation: str, count: Optional[int] = None):
    user_id = _require_user(user_id)
    op = _operation(operation)
    if count is not None and not 1 <= count <= 200:
        raise HTTPException(status_code=400, detail="count must be between 1 and 200")
    try:
        grade, questions = SERVICE.get_assessment(user_id, op, count)
    except ProgressPersistenceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {
        "user_id": user_id,
        "operation": op.value,
        "grade": grade,
        "questions": [question.to_dict() for question in questions],
    }


@app.post("/facts/assessment", response_model=AssessmentSummary)
def submit_assessment(body: AssessmentBody):
    user_id = _require_user(body.user_id)
    op = _operation(body.operation)
    try:
        return SERVICE.submit_assessment(user_id, op, body.answers)
    except ProgressPersistenceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.post("/facts/practice", response_model=SessionSummary)
def submit_practice(body: PracticeSessionBody):
    user_id = _require_user(body.user_id)
    op = _operation(body.operation)
    try:
        return SERVICE.submit_practice_session(user_id, op, body.answers, body.duration_seconds)
    except ProgressPersistenceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.post("/facts/micro-tokens", response_model=MicroTokenAward)
def micro_tokens(body: MicroTokenBody):
    user_id = _require_user(body.user_id)
    op = _operation(body.operation)
    try:
        return SERVICE.record_micro_tokens(user_id, op, body.correct_count)
    except ProgressPersistenceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.post("/facts/session/reset", response_model=SessionResetResult)
def reset_session(body: SessionResetBody):
    user_id = _require_user(body.user_id)
    op = _operation(body.operation) if body.operation else None
    return SERVICE.reset_session(user_id, op)


@app.get("/facts/progress", response_model=ProgressSnapshot)
def progress(user_id: str, operation: str):
    user_id = _require_user(user_id)
    op = _operation(operation)
    try:
        return SERVICE.get_progress(user_id, op)
    except ProgressPersistenceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.get("/subjects/mastery", response_model=List[SubjectMasteryModel])
def subject_mastery(user_id: str, subject: Optional[str] = None):
    user_id = _require_user(user_id)
    if subject:
        subject = _operation(subject).value
    try:
        return SERVICE.subject_mastery(user_id, subject)
    except ProgressPersistenceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
