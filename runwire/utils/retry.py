from __future__ import annotations

import random


def compute_backoff(attempt: int, base: float = 0.05, jitter: float = 0.05) -> float:
    """Compute exponential backoff with jitter."""
    delay = base * (2 ** (attempt - 1))
    return delay + random.uniform(0, jitter)
