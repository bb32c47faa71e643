import pytest

from grade_levels import grade_to_token, next_grade, normalize_grade, parse_grade
from number_ranges import NUMBER_RANGES, Operation, UnknownOperationError, get_range


@pytest.mark.parametrize(
    "token, expected",
    [("K", 0), ("k", 0), ("0", 0), ("3", 3), (5, 5), ("grade 2", 2), (" 4 ", 4), ("9", 9)],
)
def test_parse_grade_accepts_tokens(token, expected):
    assert parse_grade(token) == expected


@pytest.mark.parametrize("token", [None, "", "abc", -1, "-2", True])
def test_parse_grade_rejects_junk(token):
    assert parse_grade(token) is None


def test_grade_helpers_clamp_to_k_through_6():
    assert normalize_grade("junk") == 3
    assert normalize_grade("12") == 6
    assert grade_to_token(0) == "K"
    assert grade_to_token(4) == "4"
    assert next_grade("6", "up") == 6
    assert next_grade("K", "down") == 0
    assert next_grade("3", "up") == 4
    with pytest.raises(ValueError):
        next_grade("3", "sideways")


def test_operation_parse_is_case_insensitive():
    assert Operation.parse(" Addition ") is Operation.ADDITION
    assert Operation.parse(Operation.DIVISION) is Operation.DIVISION
    with pytest.raises(UnknownOperationError):
        Operation.parse("modulo")


def test_operation_symbols_and_apply():
    assert [op.symbol for op in Operation] == ["+", "-", "×", "÷"]
    assert Operation.SUBTRACTION.apply(9, 4) == 5
    assert Operation.DIVISION.apply(42, 7) == 6
    assert Operation.ADDITION.commutative and not Operation.SUBTRACTION.commutative


def test_every_operation_has_k_to_6_and_default():
    for op in Operation:
        assert set(NUMBER_RANGES[op]) == {0, 1, 2, 3, 4, 5, 6, None}


def test_grade_three_addition_bounds():
    bounds = get_range("addition", "3")
    assert bounds.first == (10, 59)
    assert bounds.second == (10, 59)
    assert not bounds.is_default


def test_unknown_and_high_grades_use_default_bucket():
    assert get_range("multiplication", "9").is_default
    assert get_range("multiplication", "nonsense").is_default
    assert get_range("multiplication", None).first == (1, 20)


def test_operand_bounds_for_constructed_operations():
    subtraction = get_range("subtraction", "K")
    assert subtraction.operand_bounds() == ((1, 7), (1, 3))
    division = get_range("division", "3")
    assert division.operand_bounds() == ((2, 90), (2, 10))
