import sqlite3

import pytest

import db


def test_init_is_idempotent(temp_db):
    db.init()
    db.init()
    assert db.get_user("nobody") is None


def test_ensure_user_defaults(temp_db, monkeypatch):
    user = db.ensure_user("u1")
    assert user["grade"] == "3"
    assert user["tokens"] == 0

    monkeypatch.setenv("DEFAULT_USER_GRADE", "k")
    assert db.ensure_user("u2")["grade"] == "K"
    # existing users keep their grade
    assert db.ensure_user("u1", grade="5")["grade"] == "3"


def test_merge_types_complete_is_append_only_and_ordered(temp_db):
    db.ensure_user("u1")
    db.create_mastery_record("u1", "addition", ["Adding 2"])
    added = db.merge_types_complete("u1", "addition", ["Adding 5", "Adding 2", "Adding 3"])
    assert added == ["Adding 5", "Adding 3"]
    assert db.list_types_complete("u1", "addition") == ["Adding 2", "Adding 5", "Adding 3"]


def test_create_mastery_record_only_once(temp_db):
    db.ensure_user("u1")
    assert db.create_mastery_record("u1", "division", ["Divide by 2"])
    assert not db.create_mastery_record("u1", "division", ["Divide by 3"])
    assert db.list_types_complete("u1", "division") == ["Divide by 2"]


def test_update_mastery_record_increments_and_assigns(temp_db):
    db.ensure_user("u1")
    db.create_mastery_record("u1", "addition")
    db.update_mastery_record(
        "u1",
        "addition",
        increments={"correct_answers": 4, "total_questions_answered": 5},
        assignments={"test_taken": True, "current_step": 3},
    )
    db.update_mastery_record("u1", "addition", increments={"correct_answers": 1})
    record = db.get_mastery_record("u1", "addition")
    assert record["correct_answers"] == 5
    assert record["total_questions_answered"] == 5
    assert record["test_taken"] is True
    assert record["current_step"] == 3


def test_update_mastery_record_rejects_unknown_columns(temp_db):
    with pytest.raises(ValueError):
        db.update_mastery_record("u1", "addition", increments={"user_id": 1})
    with pytest.raises(ValueError):
        db.update_mastery_record("u1", "addition", assignments={"types_complete": "[]"})


def test_set_mastery_flag_reports_only_the_flip(temp_db):
    db.ensure_user("u1")
    db.create_mastery_record("u1", "addition")
    assert db.set_mastery_flag("u1", "addition")
    assert not db.set_mastery_flag("u1", "addition")


def test_transaction_rolls_back_on_error(temp_db):
    db.ensure_user("u1")
    with pytest.raises(sqlite3.OperationalError):
        with db.transaction() as con:
            db.add_user_tokens("u1", 10, con=con)
            con.execute("SELECT * FROM missing_table")
    assert db.get_user("u1")["tokens"] == 0


def test_module_history_round_trip(temp_db):
    db.log_module_history(
        "u1",
        "math_facts",
        "practice",
        grade_level="3",
        questions_total=20,
        questions_correct=18,
        tokens_earned=9,
        time_spent_seconds=60,
        properties={"operator": "addition"},
    )
    history = db.list_module_history("u1")
    assert len(history) == 1
    assert history[0]["properties"] == {"operator": "addition"}
    assert history[0]["run_type"] == "practice"


def test_catalog_upsert_and_query(temp_db):
    facts = [
        {"id": "a1", "operation": "addition", "operand1": 2, "operand2": 3, "answer": 5, "fact_type": "Adding 2"},
        {"id": "a2", "operation": "addition", "operand1": 20, "operand2": 30, "answer": 50, "fact_type": None},
    ]
    assert db.upsert_catalog_facts(facts) == 2
    assert db.count_catalog("addition") == 2
    assert [f["id"] for f in db.query_catalog("addition", fact_type="Adding 2")] == ["a1"]
    in_range = db.query_catalog("addition", operand1_bounds=(10, 59), operand2_bounds=(10, 59))
    assert [f["id"] for f in in_range] == ["a2"]
    assert in_range[0]["grade_levels"] == []


def test_close_releases_connections_and_pool_reopens(temp_db):
    db.ensure_user("u1")
    db.close()
    assert db._pool._created_connections == 0
    assert db.get_user("u1")["grade"] == "3"


def test_missing_rows_after_insert_raise(temp_db, monkeypatch):
    db.ensure_user("u1")
    monkeypatch.setattr(db, "get_subject_mastery", lambda *args, **kwargs: None)
    with pytest.raises(RuntimeError, match="could not be created"):
        db.ensure_subject_mastery("u1", "addition", "3")

    monkeypatch.setattr(db, "get_user", lambda user_id, con=None: None)
    with pytest.raises(RuntimeError, match="could not be created"):
        db.ensure_user("ghost")
