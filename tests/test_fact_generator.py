import random

import pytest

from number_ranges import Operation, get_range
from engines.fact_generator import (
    build_options,
    check_answer,
    difficulty_for_grade,
    generate,
    generate_batch,
    question_signature,
)

GRADES = ["K", "1", "2", "3", "4", "5", "6", "9", "junk", None]


@pytest.mark.parametrize("operation", list(Operation))
@pytest.mark.parametrize("grade", GRADES)
def test_generate_is_total_and_well_formed(operation, grade):
    rng = random.Random(99)
    seen: set[str] = set()
    for _ in range(60):
        fact = generate(operation, grade, seen, rng=rng)
        answer = int(fact.answer)
        assert answer >= 0
        assert fact.answer in fact.options
        assert len(fact.options) == 4
        assert len(set(fact.options)) == 4
        assert all(int(option) >= 0 for option in fact.options)
        assert fact.fact_type is None
        assert fact.source == "generated"
        if operation is Operation.DIVISION:
            assert fact.operand2 != 0
            assert fact.operand1 % fact.operand2 == 0
        assert Operation(operation).apply(fact.operand1, fact.operand2) == answer


def test_operands_respect_grade_ranges(rng):
    bounds = get_range("addition", "3")
    for _ in range(100):
        fact = generate("addition", "3", set(), rng=rng)
        assert bounds.first[0] <= fact.operand1 <= bounds.first[1]
        assert bounds.second[0] <= fact.operand2 <= bounds.second[1]

    sub = get_range("subtraction", "1")
    for _ in range(100):
        fact = generate("subtraction", "1", set(), rng=rng)
        assert sub.first[0] <= fact.operand2 <= sub.first[1]
        assert sub.second[0] <= int(fact.answer) <= sub.second[1]


def test_difficulty_tracks_grade():
    assert difficulty_for_grade("K") == 1
    assert difficulty_for_grade("1") == 2
    assert difficulty_for_grade("2") == 3
    assert difficulty_for_grade("6") == 3


def test_signature_sorts_commutative_operands():
    assert question_signature("addition", 7, 3) == "3+7"
    assert question_signature("multiplication", 3, 7) == question_signature("multiplication", 7, 3)
    assert question_signature("subtraction", 7, 3) == "7-3"
    assert question_signature("division", 12, 4) == "12÷4"


def test_generate_records_signature(rng):
    seen: set[str] = set()
    fact = generate("multiplication", "4", seen, rng=rng)
    assert seen == {fact.signature}


def test_seen_set_is_cleared_when_over_capacity(rng):
    seen = {f"x{i}" for i in range(101)}
    generate("addition", "2", seen, rng=rng)
    assert len(seen) == 1

    seen = {f"x{i}" for i in range(100)}
    generate("addition", "2", seen, rng=rng)
    assert len(seen) == 101


def test_duplicate_accepted_after_retry_limit(rng):
    seen = {question_signature("addition", n, n) for n in range(11)}
    fact = generate("addition", "2", seen, stage="Doubles to 20", rng=rng)
    assert fact.operand1 == fact.operand2
    assert fact.signature in seen
    assert len(seen) == 11


def test_avoids_seen_signatures_when_possible(rng):
    seen = {question_signature("addition", n, n) for n in range(10)}
    fact = generate("addition", "2", seen, stage="Doubles to 20", rng=rng, max_attempts=200)
    assert (fact.operand1, fact.operand2) == (10, 10)


def test_seen_commutative_fact_blocks_both_orders(rng):
    for _ in range(300):
        seen = {"3+7"}
        fact = generate("addition", "1", seen, rng=rng)
        assert {fact.operand1, fact.operand2} != {3, 7}
        assert fact.signature != "3+7"


def test_only_unseen_commutative_pair_is_served(rng):
    seen = {question_signature("addition", a, b) for a in range(1, 6) for b in range(a, 6)}
    seen.discard("2+4")
    for _ in range(10):
        fact = generate("addition", "K", set(seen), rng=rng, max_attempts=500)
        assert sorted((fact.operand1, fact.operand2)) == [2, 4]


@pytest.mark.parametrize(
    "operation, stage, check",
    [
        ("addition", "Adding 10", lambda a, b: 10 in (a, b)),
        ("addition", "Make 10", lambda a, b: a + b == 10),
        ("addition", "Doubles to 20", lambda a, b: a == b),
        ("subtraction", "Subtract From 10", lambda a, b: a == 10 and 0 <= b <= 10),
        ("subtraction", "Subtraction Half of a Double", lambda a, b: a == 2 * b),
        ("multiplication", "Multiply by 7", lambda a, b: 7 in (a, b)),
        ("multiplication", "Multiply Doubles", lambda a, b: a == b),
        ("division", "Divide by 7", lambda a, b: b == 7 and a % 7 == 0),
        ("division", "Mixed 2-6", lambda a, b: 2 <= b <= 6),
    ],
)
def test_stage_family_shapes_operands(operation, stage, check, rng):
    for _ in range(40):
        fact = generate(operation, "3", set(), stage=stage, rng=rng)
        assert fact.fact_type == stage
        assert check(fact.operand1, fact.operand2), (fact.operand1, fact.operand2)
        assert int(fact.answer) >= 0


def test_build_options_small_answer(rng):
    assert set(build_options(5, rng)) == {"5", "6", "4", "9"}
    assert set(build_options(0, rng)) == {"0", "1", "3", "4"}


def test_build_options_uses_ten_percent_offsets(rng):
    assert set(build_options(20, rng)) == {"20", "21", "19", "22"}


def test_build_options_shuffle_is_seeded():
    assert build_options(37, random.Random(5)) == build_options(37, random.Random(5))


def test_check_answer_normalises_whitespace():
    assert check_answer(" 12 ", "12")
    assert check_answer(12, "12")
    assert not check_answer("13", "12")
    assert not check_answer(None, "12")


def test_generate_batch_cycles_stages(rng):
    stages = ["Adding 2", "Adding 3"]
    batch = generate_batch("addition", "1", 6, stages=stages, rng=rng)
    assert [fact.fact_type for fact in batch] == stages * 3


def test_to_dict_exposes_text_and_symbol(rng):
    fact = generate("division", "4", set(), rng=rng)
    payload = fact.to_dict()
    assert payload["operation"] == "division"
    assert payload["operation_symbol"] == "÷"
    assert payload["text"] == f"{fact.operand1} ÷ {fact.operand2} = ?"
