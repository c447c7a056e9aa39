"""Reconnection delay schedule."""


def compute_backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnection ``attempt`` (1-based): ``min(base * 2^(attempt-1), cap)``."""
    if attempt < 1:
        return 0.0
    # Clamp the exponent so very large attempt numbers cannot overflow.
    return min(base * (2 ** min(attempt - 1, 32)), cap)
