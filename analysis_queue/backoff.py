"""
Retry delay computation.

Delays grow exponentially with the attempt number, are capped, and carry a
uniform jitter so jobs that failed together do not retry together.
"""

import random


def compute_backoff_seconds(
    attempts: int,
    base_seconds: float,
    max_seconds: float,
    jitter_seconds: float,
    rng: random.Random | None = None,
) -> float:
    """
    Compute the delay before the next attempt.

    Args:
        attempts: Attempts made so far, including the one that just failed (>= 1).
        base_seconds: Delay after the first failure.
        max_seconds: Upper bound on the exponential term.
        jitter_seconds: Width of the uniform jitter window [0, jitter).
        rng: Optional random source.

    Returns:
        Delay in seconds: min(base * 2^(attempts-1), max) + jitter.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    exponent = attempts - 1
    # Avoid huge intermediate floats once the cap is clearly exceeded
    if exponent >= 64:
        delay = max_seconds
    else:
        delay = min(base_seconds * (2**exponent), max_seconds)

    jitter = (rng or random).random() * jitter_seconds if jitter_seconds > 0 else 0.0
    return delay + jitter

