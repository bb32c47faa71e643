"""Grade token helpers shared by the generator and the progression engines."""

from __future__ import annotations

from typing import Optional, Union

GradeToken = Union[str, int]

KINDERGARTEN = 0
MIN_GRADE = KINDERGARTEN
MAX_GRADE = 6

GRADE_SEQUENCE = ("K", "1", "2", "3", "4", "5", "6")


def parse_grade(grade: Optional[GradeToken]) -> Optional[int]:
    """Return the numeric grade for ``grade`` or ``None`` when it is not a grade.

    ``"K"`` maps to 0. Numbers outside K-6 are returned as-is so callers can
    decide between a fallback bucket and clamping.
    """

    if grade is None or isinstance(grade, bool):
        return None
    if isinstance(grade, int):
        return grade if grade >= 0 else None
    token = str(grade).strip()
    if not token:
        return None
    if token.upper() == "K":
        return KINDERGARTEN
    if token.lower().startswith("grade"):
        token = token[5:].strip()
    try:
        value = int(token)
    except ValueError:
        return None
    return value if value >= 0 else None


def clamp_grade(grade: int) -> int:
    return max(MIN_GRADE, min(MAX_GRADE, int(grade)))


def normalize_grade(grade: Optional[GradeToken], default: int = 3) -> int:
    """Parse ``grade`` and clamp it into K-6, using ``default`` for junk."""

    value = parse_grade(grade)
    if value is None:
        return clamp_grade(default)
    return clamp_grade(value)


def grade_to_token(grade: int) -> str:
    """Convert a numeric grade back to its display token (0 -> ``"K"``)."""

    if grade <= KINDERGARTEN:
        return "K"
    return str(int(grade))


def next_grade(grade: Optional[GradeToken], direction: str) -> int:
    """Move one grade ``"up"`` or ``"down"``, capped at 6 and floored at K."""

    current = normalize_grade(grade)
    if direction == "up":
        return min(MAX_GRADE, current + 1)
    if direction == "down":
        return max(MIN_GRADE, current - 1)
    raise ValueError(f"direction must be 'up' or 'down', got {direction!r}")
