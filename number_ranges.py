"""Per-operation, per-grade numeric bounds for generated math facts.

The table is closed over the four operations and grades K-6. Anything above
grade 6, or a grade token that cannot be parsed, resolves to the ``default``
bucket of the operation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple, Union

from grade_levels import GradeToken, MAX_GRADE, parse_grade

Bounds = Tuple[int, int]


class UnknownOperationError(ValueError):
    """Raised when an operator name outside the closed set is supplied."""


class Operation(str, Enum):
    ADDITION = "addition"
    SUBTRACTION = "subtraction"
    MULTIPLICATION = "multiplication"
    DIVISION = "division"

    @property
    def symbol(self) -> str:
        return _SYMBOLS[self]

    @property
    def commutative(self) -> bool:
        return self in (Operation.ADDITION, Operation.MULTIPLICATION)

    def apply(self, operand1: int, operand2: int) -> int:
        if self is Operation.ADDITION:
            return operand1 + operand2
        if self is Operation.SUBTRACTION:
            return operand1 - operand2
        if self is Operation.MULTIPLICATION:
            return operand1 * operand2
        return operand1 // operand2

    @classmethod
    def parse(cls, value: Union[str, "Operation"]) -> "Operation":
        """Resolve ``value`` to an operation or raise ``UnknownOperationError``."""

        if isinstance(value, Operation):
            return value
        key = str(value or "").strip().lower()
        try:
            return cls(key)
        except ValueError:
            raise UnknownOperationError(f"Unknown operation: {value!r}") from None


_SYMBOLS = {
    Operation.ADDITION: "+",
    Operation.SUBTRACTION: "-",
    Operation.MULTIPLICATION: "×",
    Operation.DIVISION: "÷",
}


@dataclass(frozen=True)
class NumberRange:
    """Inclusive operand bounds for one (operation, grade) bucket.

    ``first``/``second`` mean different things per operation:

    * addition, multiplication: the two operands
    * subtraction: subtrahend and difference (minuend = subtrahend + difference)
    * division: divisor and quotient (dividend = divisor * quotient)
    """

    operation: Operation
    grade_level: Optional[int]
    first: Bounds
    second: Bounds

    @property
    def is_default(self) -> bool:
        return self.grade_level is None

    def operand_bounds(self) -> Tuple[Bounds, Bounds]:
        """Bounds of the operands as displayed (``operand1``, ``operand2``)."""

        if self.operation is Operation.SUBTRACTION:
            minuend = (self.first[0] + self.second[0], self.first[1] + self.second[1])
            return minuend, self.first
        if self.operation is Operation.DIVISION:
            dividend = (self.first[0] * self.second[0], self.first[1] * self.second[1])
            return dividend, self.first
        return self.first, self.second


def _bucket(operation: Operation, rows: Mapping[Union[int, str], Tuple[Bounds, Bounds]]):
    table: Dict[Optional[int], NumberRange] = {}
    for grade, (first, second) in rows.items():
        key = None if grade == "default" else int(grade)
        table[key] = NumberRange(operation, key, first, second)
    return table


NUMBER_RANGES: Dict[Operation, Dict[Optional[int], NumberRange]] = {
    Operation.ADDITION: _bucket(
        Operation.ADDITION,
        {
            0: ((1, 5), (1, 5)),
            1: ((1, 10), (1, 10)),
            2: ((1, 20), (1, 20)),
            3: ((10, 59), (10, 59)),
            4: ((10, 99), (10, 99)),
            5: ((10, 109), (10, 109)),
            6: ((10, 109), (10, 109)),
            "default": ((10, 109), (10, 109)),
        },
    ),
    Operation.SUBTRACTION: _bucket(
        Operation.SUBTRACTION,
        {
            0: ((1, 3), (0, 4)),
            1: ((1, 5), (0, 9)),
            2: ((1, 10), (0, 19)),
            3: ((1, 30), (0, 49)),
            4: ((1, 50), (0, 99)),
            5: ((1, 50), (0, 99)),
            6: ((1, 50), (0, 99)),
            "default": ((1, 50), (0, 99)),
        },
    ),
    # K-2 multiplication and division are enrichment ranges.
    Operation.MULTIPLICATION: _bucket(
        Operation.MULTIPLICATION,
        {
            0: ((1, 5), (1, 5)),
            1: ((1, 5), (1, 5)),
            2: ((1, 5), (1, 5)),
            3: ((1, 10), (1, 10)),
            4: ((1, 12), (1, 12)),
            5: ((1, 20), (1, 12)),
            6: ((1, 20), (1, 12)),
            "default": ((1, 20), (1, 12)),
        },
    ),
    Operation.DIVISION: _bucket(
        Operation.DIVISION,
        {
            0: ((2, 5), (1, 4)),
            1: ((2, 5), (1, 4)),
            2: ((2, 5), (1, 4)),
            3: ((2, 10), (1, 9)),
            4: ((2, 12), (1, 9)),
            5: ((2, 12), (1, 20)),
            6: ((2, 12), (1, 20)),
            "default": ((2, 12), (1, 20)),
        },
    ),
}


def get_range(operation: Union[str, Operation], grade: Optional[GradeToken]) -> NumberRange:
    """Return the bounds for ``operation`` at ``grade``, falling back to ``default``."""

    op = Operation.parse(operation)
    buckets = NUMBER_RANGES[op]
    level = parse_grade(grade)
    if level is None or level > MAX_GRADE:
        return buckets[None]
    return buckets.get(level, buckets[None])
