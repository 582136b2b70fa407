"""Backoff for bounded conditional-update retries."""

import random
import time


BASE_DELAY_SECONDS = 0.005
MAX_DELAY_SECONDS = 0.1


def compute_backoff(attempt: int) -> float:
    """Exponential backoff with full jitter, capped at MAX_DELAY_SECONDS.

    ``attempt`` is the number of attempts already made (1 for the first retry).
    """
    ceiling = min(MAX_DELAY_SECONDS, BASE_DELAY_SECONDS * (2 ** max(attempt - 1, 0)))
    return random.uniform(0, ceiling)


def sleep_before_retry(attempt: int) -> None:
    time.sleep(compute_backoff(attempt))
