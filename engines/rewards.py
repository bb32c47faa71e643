"""Token rewards for practice sessions."""

from __future__ import annotations

from dataclasses import dataclass

MAX_TOKEN_AMOUNT = 2_147_483_647
CORRECT_PER_MICRO_TOKEN = 3


@dataclass(frozen=True)
class TimeSetting:
    name: str
    seconds: int
    tokens_per_5: int
    bonus_perfect: int


SHORT = TimeSetting("SHORT", seconds=60, tokens_per_5=3, bonus_perfect=20)
LONG = TimeSetting("LONG", seconds=90, tokens_per_5=2, bonus_perfect=15)


def time_setting_for(duration_seconds: float) -> TimeSetting:
    """Sessions of up to 60 seconds (inclusive) are SHORT, everything else LONG."""

    return SHORT if duration_seconds <= SHORT.seconds else LONG


def calculate_tokens(correct: int, total: int, duration_seconds: float) -> int:
    """Tokens for a session with ``correct`` right answers out of ``total``.

    Each full block of five correct answers earns the tier's rate. A perfect
    session (``correct == total`` with at least one question) adds the tier's
    bonus. Inconsistent inputs earn nothing.
    """

    if correct < 0 or total < 0 or duration_seconds < 0 or correct > total:
        return 0

    setting = time_setting_for(duration_seconds)
    base = (correct // 5) * setting.tokens_per_5
    bonus = setting.bonus_perfect if correct == total and total > 0 else 0
    return max(0, min(base + bonus, MAX_TOKEN_AMOUNT))


def micro_tokens(correct_count: int) -> int:
    """One token for every three correct answers."""

    if correct_count <= 0:
        return 0
    return min(correct_count // CORRECT_PER_MICRO_TOKEN, MAX_TOKEN_AMOUNT)


def validate_token_amount(amount: object) -> bool:
    return (
        isinstance(amount, int)
        and not isinstance(amount, bool)
        and 0 <= amount <= MAX_TOKEN_AMOUNT
    )
