"""Synthetic arithmetic fact generation.

Questions are built so that every draw is valid: subtraction minuends are
constructed as ``subtrahend + difference`` and division dividends as
``divisor * quotient``. Generation never touches I/O and always returns a
well-formed question, which keeps it cheap enough to run on every request.
"""

from __future__ import annotations

import logging
import random
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, MutableSet, Optional, Tuple, Union
from uuid import uuid4

from grade_levels import GradeToken, parse_grade
from number_ranges import Bounds, NumberRange, Operation, get_range
from progression_table import FactFamily, get_stage

_LOGGER = logging.getLogger(__name__)

DEFAULT_SEEN_CAPACITY = 100
DEFAULT_MAX_ATTEMPTS = 20
OPTION_COUNT = 4
MAX_DIFFICULTY = 3

_SYSTEM_RANDOM = random.Random()


@dataclass
class MathFact:
    """A single multiple-choice arithmetic question."""

    operation: Operation
    operand1: int
    operand2: int
    answer: str
    options: List[str]
    grade_level: Optional[int]
    difficulty: int
    fact_type: Optional[str] = None
    source: str = "generated"
    id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def symbol(self) -> str:
        return self.operation.symbol

    @property
    def text(self) -> str:
        return f"{self.operand1} {self.symbol} {self.operand2} = ?"

    @property
    def signature(self) -> str:
        return question_signature(self.operation, self.operand1, self.operand2)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["operation"] = self.operation.value
        payload["operation_symbol"] = self.symbol
        payload["text"] = self.text
        return payload


def question_signature(operation: Union[str, Operation], operand1: int, operand2: int) -> str:
    """Return ``a<sym>b``, with operands sorted for commutative operations."""

    op = Operation.parse(operation)
    if op.commutative and operand1 > operand2:
        operand1, operand2 = operand2, operand1
    return f"{operand1}{op.symbol}{operand2}"


def difficulty_for_grade(grade: Optional[GradeToken]) -> int:
    level = parse_grade(grade)
    if level is None:
        level = 1
    return min(MAX_DIFFICULTY, level + 1)


def check_answer(response: Any, answer: str) -> bool:
    """Compare a learner response with the stored answer string."""

    if response is None:
        return False
    return str(response).strip() == str(answer).strip()


def _draw(rng: random.Random, bounds: Bounds) -> int:
    low, high = bounds
    return rng.randint(low, high)


def _operands_from_range(op: Operation, bounds: NumberRange, rng: random.Random) -> Tuple[int, int]:
    if op is Operation.SUBTRACTION:
        subtrahend = _draw(rng, bounds.first)
        difference = _draw(rng, bounds.second)
        return subtrahend + difference, subtrahend
    if op is Operation.DIVISION:
        divisor = _draw(rng, bounds.first)
        quotient = _draw(rng, bounds.second)
        return divisor * quotient, divisor
    return _draw(rng, bounds.first), _draw(rng, bounds.second)


def _operands_from_family(op: Operation, family: FactFamily, rng: random.Random) -> Tuple[int, int]:
    pattern = family.pattern
    if pattern == "double":
        value = _draw(rng, family.first)
        return value, value
    if pattern == "make":
        value = _draw(rng, family.first)
        return value, family.total - value
    if pattern == "from":
        minuend = _draw(rng, family.first)
        return minuend, rng.randint(0, minuend)
    if pattern == "half":
        half = _draw(rng, family.first)
        return half * 2, half

    if op is Operation.SUBTRACTION:
        subtrahend = _draw(rng, family.first)
        return subtrahend + _draw(rng, family.second), subtrahend
    if op is Operation.DIVISION:
        divisor = _draw(rng, family.first)
        return divisor * _draw(rng, family.second), divisor
    first = _draw(rng, family.first)
    second = _draw(rng, family.second)
    # "Adding 2" means 2 + x as well as x + 2
    if rng.random() < 0.5:
        first, second = second, first
    return first, second


def build_options(answer: int, rng: Optional[random.Random] = None) -> List[str]:
    """Return exactly four distinct option strings that include ``answer``."""

    rng = rng or _SYSTEM_RANDOM
    candidates = [answer, answer + 1, answer - 1]
    if answer > 10:
        offset = answer // 10
        candidates.extend([answer + offset, answer - offset])

    options: List[str] = []
    for candidate in candidates:
        if candidate < 0:
            continue
        text = str(candidate)
        if text not in options:
            options.append(text)

    pad = len(options) + 1
    while len(options) < OPTION_COUNT:
        text = str(answer + pad)
        if text not in options:
            options.append(text)
        pad += 1

    options = options[:OPTION_COUNT]
    rng.shuffle(options)
    return options


def generate(
    operation: Union[str, Operation],
    grade: Optional[GradeToken],
    seen: Optional[MutableSet[str]] = None,
    *,
    stage: Optional[str] = None,
    rng: Optional[random.Random] = None,
    capacity: int = DEFAULT_SEEN_CAPACITY,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> MathFact:
    """Generate one question for ``operation`` at ``grade``.

    ``seen`` is updated in place with the signature of the returned question.
    When it has grown beyond ``capacity`` it is cleared first. Up to
    ``max_attempts`` draws are made to avoid a signature already in ``seen``;
    after that the duplicate is accepted.
    """

    op = Operation.parse(operation)
    rng = rng or _SYSTEM_RANDOM
    if seen is None:
        seen = set()
    family = get_stage(op, stage).family if stage else None
    bounds = get_range(op, grade)

    if len(seen) > capacity:
        _LOGGER.debug("Seen set for %s exceeded %s entries; clearing", op.value, capacity)
        seen.clear()

    attempts = max(1, int(max_attempts))
    for _ in range(attempts):
        if family is not None:
            operand1, operand2 = _operands_from_family(op, family, rng)
        else:
            operand1, operand2 = _operands_from_range(op, bounds, rng)
        signature = question_signature(op, operand1, operand2)
        if signature not in seen:
            break
    else:
        _LOGGER.debug("No fresh %s fact after %s attempts; reusing %s", op.value, attempts, signature)

    seen.add(signature)
    answer = op.apply(operand1, operand2)
    return MathFact(
        operation=op,
        operand1=operand1,
        operand2=operand2,
        answer=str(answer),
        options=build_options(answer, rng),
        grade_level=parse_grade(grade),
        difficulty=difficulty_for_grade(grade),
        fact_type=stage,
    )


def generate_batch(
    operation: Union[str, Operation],
    grade: Optional[GradeToken],
    count: int,
    *,
    stages: Optional[List[Optional[str]]] = None,
    rng: Optional[random.Random] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> List[MathFact]:
    """Generate ``count`` questions sharing one seen set.

    ``stages`` is cycled over so a batch can cover several stages evenly.
    """

    seen: set[str] = set()
    cycle = stages or [None]
    return [
        generate(
            operation,
            grade,
            seen,
            stage=cycle[idx % len(cycle)],
            rng=rng,
            capacity=max(DEFAULT_SEEN_CAPACITY, count),
            max_attempts=max_attempts,
        )
        for idx in range(max(0, int(count)))
    ]
