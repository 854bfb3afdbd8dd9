from __future__ import annotations


def is_valid_order_number(number: str) -> bool:
    """Return True when ``number`` is a non-empty digit string passing Luhn."""

    if not number or not number.isascii() or not number.isdigit():
        return False

    total = 0
    for idx, ch in enumerate(reversed(number)):
        digit = ord(ch) - ord("0")
        if idx % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


__all__ = ["is_valid_order_number"]
