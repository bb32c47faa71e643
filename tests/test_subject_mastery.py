import pytest

import db
from engines.subject_mastery import decide_grade_change, mastery_percent, record_attempts


@pytest.mark.parametrize(
    "correct, total, expected",
    [(0, 0, 0), (2, 3, 67), (1, 8, 13), (5, 5, 100), (1, 3, 33), (24, 30, 80)],
)
def test_mastery_percent_rounds_half_up(correct, total, expected):
    assert mastery_percent(correct, total) == expected


@pytest.mark.parametrize(
    "level, attempts, expected",
    [
        (80, 30, "advance"),
        (100, 45, "advance"),
        (79, 30, None),
        (80, 29, None),
        (49, 10, "downgrade"),
        (0, 12, "downgrade"),
        (49, 9, None),
        (50, 10, None),
    ],
)
def test_decide_grade_change(level, attempts, expected):
    assert decide_grade_change(level, attempts) == expected


def test_advance_unlocks_next_grade(temp_db):
    db.ensure_user("ria", grade="3")
    decision = record_attempts("ria", "addition", "3", 30, 24)
    assert decision.decision == "advance"
    assert decision.level_changed
    assert decision.new_grade == "4"
    assert db.get_user("ria")["grade"] == "4"

    current = db.get_subject_mastery("ria", "addition", "3")
    assert current["mastery_level"] == 80
    assert current["next_grade_unlocked"] is True
    assert db.get_subject_mastery("ria", "addition", "4")["is_unlocked"] is True


def test_evidence_accumulates_before_advancing(temp_db):
    db.ensure_user("tom", grade="2")
    first = record_attempts("tom", "multiplication", "2", 20, 20)
    assert first.decision is None
    assert not first.level_changed
    second = record_attempts("tom", "multiplication", "2", 10, 10)
    assert second.decision == "advance"
    assert second.total_attempts == 30
    assert db.get_user("tom")["grade"] == "3"


def test_downgrade_moves_one_grade_down(temp_db):
    db.ensure_user("lou", grade="3")
    decision = record_attempts("lou", "division", "3", 10, 4)
    assert decision.decision == "downgrade"
    assert decision.new_grade == "2"
    assert db.get_user("lou")["grade"] == "2"
    assert db.get_subject_mastery("lou", "division", "2")["downgraded"] is True


def test_grade_changes_stop_at_the_caps(temp_db):
    db.ensure_user("kay", grade="K")
    low = record_attempts("kay", "subtraction", "K", 10, 1)
    assert low.decision == "downgrade"
    assert not low.level_changed
    assert db.get_user("kay")["grade"] == "K"

    db.ensure_user("six", grade="6")
    high = record_attempts("six", "addition", "6", 30, 30)
    assert high.decision == "advance"
    assert not high.level_changed
    assert high.new_grade == "6"
    assert db.get_user("six")["grade"] == "6"


def test_rejects_impossible_counts(temp_db):
    with pytest.raises(ValueError):
        record_attempts("bad", "addition", "3", 5, 6)
