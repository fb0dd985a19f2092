"""
rrl_core/numeric.py — Checked unsigned 128-bit arithmetic.

Python integers never overflow, so the u128 range is enforced here
explicitly: every step that could leave [0, U128_MAX] is checked BEFORE
its result is used, and a violation raises InvalidInput.
"""

from __future__ import annotations

from .errors import InvalidInput

U128_MAX = 2**128 - 1


def _check_operand(value: int, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0 or value > U128_MAX:
        raise InvalidInput(f"{name} outside unsigned 128-bit range: {value}")


def checked_add(a: int, b: int, limit: int = U128_MAX) -> int:
    """a + b, rejecting results above limit."""
    _check_operand(a, "left operand")
    _check_operand(b, "right operand")
    if a > limit - b:
        raise InvalidInput(f"Arithmetic overflow: {a} + {b} exceeds {limit}")
    return a + b


def checked_sub(a: int, b: int) -> int:
    """a - b, rejecting underflow below zero."""
    _check_operand(a, "left operand")
    _check_operand(b, "right operand")
    if b > a:
        raise InvalidInput(f"Arithmetic underflow: {a} - {b} is negative")
    return a - b


def checked_mul(a: int, b: int, limit: int = U128_MAX) -> int:
    """a * b, rejecting results above limit (checked by division first)."""
    _check_operand(a, "left operand")
    _check_operand(b, "right operand")
    if a != 0 and b > limit // a:
        raise InvalidInput(f"Arithmetic overflow: {a} * {b} exceeds {limit}")
    return a * b


def bump(value: int, ceiling: int, name: str = "counter") -> int:
    """Increment a counter that must stay strictly below its safety ceiling."""
    _check_operand(value, name)
    if value >= ceiling:
        raise InvalidInput(f"{name} reached its safety ceiling ({ceiling})")
    return value + 1


def require_below_ceiling(value: int, ceiling: int, name: str = "counter") -> None:
    """Precondition form of bump(): fail without computing anything."""
    if value >= ceiling:
        raise InvalidInput(f"{name} reached its safety ceiling ({ceiling})")
