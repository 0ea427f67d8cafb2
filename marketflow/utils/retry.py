from __future__ import annotations

import random


def compute_backoff(
    attempt: int, initial: float = 30.0, multiplier: float = 2.0, jitter: float = 0.0
) -> float:
    """Compute exponential backoff for the given 1-based attempt.

    ``attempt=1`` yields ``initial``, each further attempt multiplies it.
    """
    if attempt < 1:
        attempt = 1
    delay = initial * multiplier ** (attempt - 1)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay
