"""
Human-readable identifiers: receipt numbers, student/teacher codes, contract numbers.

Format: PREFIX-YYYYMMDD-NNNN (contracts: CONTRACT-YYYY-NNNNN).
These are presentational only; uniqueness is enforced by the database and callers
regenerate on collision.
"""

import secrets
from datetime import datetime
from typing import Optional


def _random_digits(low: int, high: int) -> int:
    """Random integer in [low, high]."""
    return low + secrets.randbelow(high - low + 1)


def _dated_code(prefix: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{prefix}-{now:%Y%m%d}-{_random_digits(1000, 9999)}"


def generate_receipt_number(now: Optional[datetime] = None) -> str:
    """
    Receipt number for a payment.

    Example:
        RCP-20261019-4821
    """
    return _dated_code("RCP", now)


def generate_student_code(now: Optional[datetime] = None) -> str:
    return _dated_code("STD", now)


def generate_teacher_code(now: Optional[datetime] = None) -> str:
    return _dated_code("TCH", now)


def generate_contract_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"CONTRACT-{now:%Y}-{_random_digits(10000, 99999)}"
