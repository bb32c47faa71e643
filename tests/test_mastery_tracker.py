import threading

import pytest

import db
from engines.mastery_tracker import MasteryTracker, continue_streak, session_passed


def test_first_load_creates_seeded_record(temp_db):
    db.ensure_user("g6", grade="6")
    tracker = MasteryTracker()
    record = tracker.load("g6", "multiplication")
    assert record["types_complete"] == ["Multiply by 0 and 1", "Multiply by 2"]
    assert record["current_step"] == 2
    assert record["mastery_level"] is False
    assert record["test_taken"] is False

    addition = tracker.load("g6", "addition")
    assert addition["types_complete"] == []
    assert addition["current_step"] == 0


def test_load_is_stable_after_grade_change(temp_db):
    tracker = MasteryTracker()
    db.ensure_user("kid", grade="2")
    tracker.load("kid", "division")
    db.set_user_grade("kid", "6")
    assert tracker.load("kid", "division")["types_complete"] == []


def test_micro_tokens_credit_user_and_record(temp_db):
    tracker = MasteryTracker()
    assert tracker.record_micro_tokens("ana", "addition", 7) == 2
    assert db.get_user("ana")["tokens"] == 2
    assert db.get_mastery_record("ana", "addition")["tokens_earned"] == 2

    assert tracker.record_micro_tokens("ana", "addition", 2) == 0
    assert db.get_user("ana")["tokens"] == 2


def test_concurrent_micro_tokens_are_not_lost(temp_db):
    tracker = MasteryTracker()
    db.ensure_user("busy")
    tracker.load("busy", "addition")

    threads = [
        threading.Thread(target=tracker.record_micro_tokens, args=("busy", "addition", 3))
        for _ in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert db.get_user("busy")["tokens"] == 8
    assert db.get_mastery_record("busy", "addition")["tokens_earned"] == 8


def test_apply_practice_tracks_streaks_and_session_counters(temp_db):
    tracker = MasteryTracker()
    progress = tracker.apply_practice("eli", "subtraction", [True, True, False, True, True, True], tokens=3)
    assert progress.passed
    assert (progress.streak_current, progress.streak_best) == (3, 3)
    assert (progress.good_attempts, progress.bad_attempts) == (1, 0)

    progress = tracker.apply_practice("eli", "subtraction", [True, False])
    assert not progress.passed
    assert (progress.streak_current, progress.streak_best) == (0, 4)
    assert (progress.good_attempts, progress.bad_attempts) == (0, 1)

    record = db.get_mastery_record("eli", "subtraction")
    assert record["sessions_completed"] == 2
    assert record["total_questions_answered"] == 8
    assert record["correct_answers"] == 6
    assert record["tokens_earned"] == 3
    assert record["last_played"]


def test_streak_continues_across_sessions(temp_db):
    tracker = MasteryTracker()
    tracker.apply_practice("max", "addition", [True, True])
    progress = tracker.apply_practice("max", "addition", [True, True, True, True, True])
    assert progress.streak_current == 7
    assert progress.streak_best == 7


def test_helpers():
    assert continue_streak(2, 4, [True, True, True]) == (5, 5)
    assert continue_streak(2, 4, [True, False, True]) == (1, 4)
    assert session_passed(16, 20)
    assert not session_passed(15, 20)
    assert not session_passed(0, 0)


def test_load_raises_when_record_cannot_be_read_back(temp_db, monkeypatch):
    monkeypatch.setattr(db, "get_mastery_record", lambda *args, **kwargs: None)
    with pytest.raises(RuntimeError, match="was not created"):
        MasteryTracker().load("lost", "addition")
