import json
import random
import sqlite3

import pytest

import db
from facts_service import FactsService, ProgressPersistenceError, ServiceConfig, grade_answers
from number_ranges import Operation
from progression_table import stage_names
from question_catalog import QuestionCatalog


@pytest.fixture
def service(temp_db):
    return FactsService(rng=random.Random(5), config=ServiceConfig())


def _correct(count, fact_type=None):
    return [{"fact_type": fact_type, "is_correct": True} for _ in range(count)]


def test_short_perfect_practice_session(service):
    summary = service.submit_practice_session("ada", "addition", _correct(20), 60)

    assert summary.time_setting == "SHORT"
    assert summary.tokens_earned == 32
    assert summary.accuracy == 1.0
    assert summary.passed
    assert summary.streak_current == 20
    assert summary.subject_mastery_level == 100
    assert summary.grade_decision is None
    assert not summary.level_changed
    assert summary.next_stage == "Adding 0 and 1"
    assert db.get_user("ada")["tokens"] == 32

    record = db.get_mastery_record("ada", "addition")
    assert record["sessions_completed"] == 1
    assert record["good_attempts"] == 1
    assert record["tokens_earned"] == 32
    history = db.list_module_history("ada")
    assert history[0]["run_type"] == "practice"
    assert history[0]["properties"]["time_setting"] == "SHORT"


def test_thirty_attempts_at_eighty_percent_advance_the_grade(service):
    service.submit_practice_session("ben", "multiplication", _correct(20), 60)
    answers = _correct(8) + [{"fact_type": None, "is_correct": False}] * 2
    summary = service.submit_practice_session("ben", "multiplication", answers, 90)

    # 28 of 30 attempts correct
    assert summary.subject_mastery_level == 93
    assert summary.grade_decision == "advance"
    assert summary.level_changed
    assert summary.new_grade == "4"
    assert summary.time_setting == "LONG"
    assert summary.tokens_earned == 2
    assert summary.passed
    assert db.get_user("ben")["grade"] == "4"


def test_failing_sessions_reset_the_good_counter(service):
    service.submit_practice_session("cy", "subtraction", _correct(5), 60)
    missed = [{"is_correct": False}] * 5
    summary = service.submit_practice_session("cy", "subtraction", missed, 60)

    assert not summary.passed
    assert summary.streak_current == 0
    assert summary.streak_best == 5
    record = db.get_mastery_record("cy", "subtraction")
    assert record["good_attempts"] == 0
    assert record["bad_attempts"] == 1
    # 5 of 10 correct: below the evidence needed to advance, not low enough to downgrade
    assert summary.grade_decision is None


def test_completing_every_stage_in_practice_pays_the_bonus(service):
    answers = [{"fact_type": name, "is_correct": True} for name in stage_names(Operation.ADDITION)]
    summary = service.submit_practice_session("dee", "addition", answers, 60)

    assert summary.mastery_level
    assert summary.bonus_tokens == 50
    assert summary.next_stage is None
    assert summary.tokens_earned == 26
    assert db.get_user("dee")["tokens"] == 76


def test_answers_are_checked_server_side():
    results = grade_answers(
        Operation.ADDITION,
        [
            {"fact_type": "Adding 3", "operand1": 3, "operand2": 4, "response": "7", "is_correct": False},
            {"fact_type": "Adding 3", "operand1": 3, "operand2": 5, "response": 9, "is_correct": True},
            {"fact_type": "Adding 4", "is_correct": True},
        ],
    )
    assert [result.is_correct for result in results] == [True, False, True]

    division = grade_answers(Operation.DIVISION, [{"operand1": 8, "operand2": 0, "response": "0"}])
    assert division[0].is_correct is False


def test_store_failure_credits_nothing(service, monkeypatch):
    def _broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "log_module_history", _broken)
    with pytest.raises(ProgressPersistenceError, match="progress was not credited"):
        service.submit_practice_session("eve", "addition", _correct(20), 60)

    assert db.get_user("eve") is None
    assert db.get_mastery_record("eve", "addition") is None
    assert db.list_subject_mastery("eve") == []


def test_assessment_perfect_score_grants_mastery(service):
    answers = [
        {"fact_type": "Adding 0 and 1", "is_correct": True},
        {"fact_type": "Adding 10", "is_correct": True},
    ]
    summary = service.submit_assessment("fay", "addition", answers)
    assert summary.mastery_level
    assert summary.mastery_achieved
    assert summary.bonus_tokens == 50
    assert summary.newly_mastered == ["Adding 0 and 1", "Adding 10"]

    again = service.submit_assessment("fay", "addition", answers)
    assert again.mastery_level
    assert not again.mastery_achieved
    assert again.bonus_tokens == 0
    assert db.get_user("fay")["tokens"] == 50


def test_next_question_serves_catalog_then_generates(temp_db, tmp_path):
    path = tmp_path / "facts_catalog.json"
    path.write_text(
        json.dumps(
            [
                {"id": "c1", "operation": "addition", "operand1": 0, "operand2": 5, "fact_type": "Adding 0 and 1"},
                {"id": "c2", "operation": "addition", "operand1": 1, "operand2": 5, "fact_type": "Adding 0 and 1"},
                {"id": "c3", "operation": "addition", "operand1": 10, "operand2": 5, "fact_type": "Adding 10"},
            ]
        ),
        encoding="utf-8",
    )
    service = FactsService(catalog=QuestionCatalog(path), rng=random.Random(9))

    served = [service.get_next_question("gil", "addition") for _ in range(3)]
    assert [q.source for q in served] == ["catalog", "catalog", "generated"]
    assert {q.id for q in served[:2]} == {"c1", "c2"}
    assert all(q.fact_type == "Adding 0 and 1" for q in served)
    assert len({q.signature for q in served}) == 3


def test_reset_session_clears_seen_questions(service):
    service.get_next_question("hal", "division")
    service.get_next_question("hal", "addition")
    assert service.reset_session("hal", "division").cleared == 1
    result = service.reset_session("hal")
    assert result.cleared == 1
    assert result.operation is None


def test_micro_tokens(service):
    award = service.record_micro_tokens("ivy", "multiplication", 7)
    assert award.tokens_awarded == 2
    assert award.tokens_earned == 2
    assert award.user_tokens == 2

    nothing = service.record_micro_tokens("ivy", "multiplication", 2)
    assert nothing.tokens_awarded == 0
    assert nothing.user_tokens == 2


def test_progress_snapshot(service):
    service.submit_assessment(
        "jo", "addition", [{"fact_type": "Adding 0 and 1", "is_correct": True}, {"fact_type": "Adding 10", "is_correct": False}]
    )
    snapshot = service.get_progress("jo", "addition")

    assert snapshot.grade == "3"
    assert snapshot.record.test_taken
    assert snapshot.record.types_complete == ["Adding 0 and 1"]
    assert snapshot.next_stage == "Adding 10"
    assert snapshot.stages_total == 14
    assert len(snapshot.stages_required) == 14
    assert snapshot.recent_history[0]["run_type"] == "assessment"


def test_assessment_set_for_upper_grades_skips_seeded_stages(service):
    db.ensure_user("kim", grade="6")
    grade, questions = service.get_assessment("kim", "division", 12)
    assert grade == "6"
    assert len(questions) == 12
    assert "Divide by 2" not in {q.fact_type for q in questions}
    assert service.get_progress("kim", "division").record.types_complete == ["Divide by 2"]


def test_request_grade_does_not_seed_skipped_stages(service):
    db.ensure_user("u1", grade="3")
    question = service.get_next_question("u1", "multiplication", grade="6")

    assert question.operation is Operation.MULTIPLICATION
    assert question.fact_type == "Multiply by 3"
    assert db.get_mastery_record("u1", "multiplication")["types_complete"] == []
    assert service.get_progress("u1", "multiplication").next_stage == "Multiply by 0 and 1"
    assert db.get_user("u1")["grade"] == "3"
