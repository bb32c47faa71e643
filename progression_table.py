"""Ordered fact-type stages for each operator.

Every operator owns a fixed curriculum of named stages ("Adding 2",
"Mixed 0-5", ...). Each stage carries a :class:`FactFamily` that describes the
operands a question of that stage is built from, so the generator and the
catalog tooling can produce stage-tagged facts without a database.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from grade_levels import GradeToken, parse_grade
from number_ranges import Bounds, Operation


AUTO_SKIP_MIN_GRADE = 6
_UNKNOWN_GRADE_FALLBACK = 3


class UnknownStageError(ValueError):
    """Raised when a stage name does not belong to the operator's curriculum."""


@dataclass(frozen=True)
class FactFamily:
    """How the two operands of a stage are drawn.

    ``pattern`` is one of:

    ``pair``
        one value from ``first`` and one from ``second``. For subtraction these
        are subtrahend and difference, for division divisor and quotient.
    ``double``
        the same value from ``first`` twice.
    ``make``
        a value from ``first`` plus its complement to ``total``.
    ``from``
        subtraction only: a minuend from ``first`` minus anything up to it.
    ``half``
        subtraction only: ``2k - k`` with ``k`` from ``first``.
    """

    pattern: str
    first: Bounds
    second: Bounds = (0, 0)
    total: int = 0


@dataclass(frozen=True)
class ProgressionStage:
    name: str
    position: int
    family: FactFamily


def _stages(entries: Sequence[Tuple[str, FactFamily]]) -> Tuple[ProgressionStage, ...]:
    return tuple(
        ProgressionStage(name=name, position=idx, family=family)
        for idx, (name, family) in enumerate(entries)
    )


def _adding(n: int) -> FactFamily:
    return FactFamily("pair", (n, n), (0, 10))


def _subtract_from(n: int) -> FactFamily:
    return FactFamily("from", (n, n))


def _multiply_by(n: int) -> FactFamily:
    return FactFamily("pair", (n, n), (0, 12))


def _divide_by(n: int) -> FactFamily:
    return FactFamily("pair", (n, n), (1, 12))


PROGRESSIONS: Dict[Operation, Tuple[ProgressionStage, ...]] = {
    Operation.ADDITION: _stages(
        [
            ("Adding 0 and 1", FactFamily("pair", (0, 1), (0, 10))),
            ("Adding 10", _adding(10)),
            ("Adding 2", _adding(2)),
            ("Adding 3", _adding(3)),
            ("Adding 4", _adding(4)),
            ("Adding 5", _adding(5)),
            ("Mixed 0-5", FactFamily("pair", (0, 5), (0, 5))),
            ("Adding 6", _adding(6)),
            ("Adding 7", _adding(7)),
            ("Adding 8", _adding(8)),
            ("Adding 9", _adding(9)),
            ("Doubles to 20", FactFamily("double", (0, 10))),
            ("Make 10", FactFamily("make", (0, 10), total=10)),
            ("Mixed 6-10", FactFamily("pair", (6, 10), (0, 10))),
        ]
    ),
    Operation.SUBTRACTION: _stages(
        [
            ("Subtract From 0-3", FactFamily("from", (0, 3))),
            ("Subtract From 10", _subtract_from(10)),
            ("Subtract From 4", _subtract_from(4)),
            ("Subtract From 5", _subtract_from(5)),
            ("Subtraction Mixed 0-5", FactFamily("from", (0, 5))),
            ("Subtract From 6", _subtract_from(6)),
            ("Subtract From 7", _subtract_from(7)),
            ("Subtract From 8", _subtract_from(8)),
            ("Subtract From 9", _subtract_from(9)),
            ("Subtraction Half of a Double", FactFamily("half", (1, 10))),
            ("Subtraction Mixed 6-10", FactFamily("from", (6, 10))),
            ("Subtraction Odd Balls", FactFamily("pair", (2, 9), (2, 9))),
        ]
    ),
    Operation.MULTIPLICATION: _stages(
        [
            ("Multiply by 0 and 1", FactFamily("pair", (0, 1), (0, 12))),
            ("Multiply by 2", _multiply_by(2)),
            ("Multiply by 3", _multiply_by(3)),
            ("Multiply by 4", _multiply_by(4)),
            ("Multiply by 5", _multiply_by(5)),
            ("Mixed 0-5", FactFamily("pair", (0, 5), (0, 12))),
            ("Multiply by 6", _multiply_by(6)),
            ("Multiply by 7", _multiply_by(7)),
            ("Multiply by 8", _multiply_by(8)),
            ("Multiply by 9", _multiply_by(9)),
            ("Multiply by 10", _multiply_by(10)),
            ("Multiply by 11", _multiply_by(11)),
            ("Multiply by 12", _multiply_by(12)),
            ("Multiply Doubles", FactFamily("double", (1, 12))),
            ("Mixed 6-12", FactFamily("pair", (6, 12), (0, 12))),
        ]
    ),
    Operation.DIVISION: _stages(
        [
            ("Divide by 2", _divide_by(2)),
            ("Divide by 3", _divide_by(3)),
            ("Divide by 4", _divide_by(4)),
            ("Divide by 5", _divide_by(5)),
            ("Divide by 6", _divide_by(6)),
            ("Mixed 2-6", FactFamily("pair", (2, 6), (1, 12))),
            ("Divide by 7", _divide_by(7)),
            ("Divide by 8", _divide_by(8)),
            ("Divide by 9", _divide_by(9)),
            ("Divide by 10", _divide_by(10)),
            ("Divide by 11", _divide_by(11)),
            ("Divide by 12", _divide_by(12)),
            ("Mixed 7-12", FactFamily("pair", (7, 12), (1, 12))),
        ]
    ),
}

# Stages a learner above grade 5 never has to practise.
AUTO_SKIP_STAGES: Dict[Operation, Tuple[str, ...]] = {
    Operation.ADDITION: (),
    Operation.SUBTRACTION: (),
    Operation.MULTIPLICATION: ("Multiply by 0 and 1", "Multiply by 2"),
    Operation.DIVISION: ("Divide by 2",),
}


def stages_for(operation: Union[str, Operation]) -> Tuple[ProgressionStage, ...]:
    return PROGRESSIONS[Operation.parse(operation)]


def stage_names(operation: Union[str, Operation]) -> Tuple[str, ...]:
    return tuple(stage.name for stage in stages_for(operation))


def get_stage(operation: Union[str, Operation], name: str) -> ProgressionStage:
    for stage in stages_for(operation):
        if stage.name == name:
            return stage
    raise UnknownStageError(f"{name!r} is not a stage of {Operation.parse(operation).value}")


def auto_skip_types(operation: Union[str, Operation], grade: Optional[GradeToken]) -> List[str]:
    """Stages auto-marked complete for a learner at ``grade``."""

    level = parse_grade(grade)
    if level is None:
        level = _UNKNOWN_GRADE_FALLBACK
    if level < AUTO_SKIP_MIN_GRADE:
        return []
    return list(AUTO_SKIP_STAGES[Operation.parse(operation)])


def current_step(
    operation: Union[str, Operation],
    types_complete: Iterable[str],
    grade: Optional[GradeToken],
) -> int:
    """Index of the first stage still to play, or the stage count when done."""

    completed = set(types_complete)
    skipped = set(auto_skip_types(operation, grade))
    stages = stages_for(operation)
    for stage in stages:
        if stage.name in completed or stage.name in skipped:
            continue
        return stage.position
    return len(stages)


def next_stage(
    operation: Union[str, Operation],
    types_complete: Iterable[str],
    grade: Optional[GradeToken],
) -> Optional[str]:
    """Name of the next stage to serve, ``None`` once the curriculum is exhausted."""

    stages = stages_for(operation)
    step = current_step(operation, types_complete, grade)
    if step >= len(stages):
        return None
    return stages[step].name


def is_progression_complete(
    operation: Union[str, Operation],
    types_complete: Iterable[str],
    grade: Optional[GradeToken],
) -> bool:
    completed = set(types_complete)
    skipped = set(auto_skip_types(operation, grade))
    return all(
        stage.name in completed or stage.name in skipped for stage in stages_for(operation)
    )


def required_stages(operation: Union[str, Operation], grade: Optional[GradeToken]) -> List[str]:
    """Stages the learner has to master at ``grade`` (the curriculum minus auto-skips)."""

    skipped = set(auto_skip_types(operation, grade))
    return [stage.name for stage in stages_for(operation) if stage.name not in skipped]
