# jobs/retry.py
"""
Retry policy for failed crawl jobs.

Backoff doubles per attempt from a one minute base, is capped at 24 hours
and is perturbed by a uniform +/-20% jitter band. The same formula applies
to every job regardless of what the job does.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

BASE_DELAY = timedelta(minutes=1)
MAX_DELAY = timedelta(hours=24)
JITTER_LOW = 0.8
JITTER_HIGH = 1.2

# 2**11 minutes already exceeds the 24h ceiling
_MAX_EXPONENT = 11

_system_random = random.SystemRandom()


@dataclass(frozen=True)
class RetryDecision:
    terminal: bool
    retry_count: int
    visible_at: datetime | None = None
    delay: timedelta | None = None


def base_delay(retry_count: int) -> timedelta:
    exponent = min(max(retry_count, 0), _MAX_EXPONENT)
    return min(BASE_DELAY * (2 ** exponent), MAX_DELAY)


def retry_delay(retry_count: int, rng: random.Random | None = None) -> timedelta:
    """Jittered delay before the next attempt of a job that has failed ``retry_count`` times so far."""
    factor = (rng or _system_random).uniform(JITTER_LOW, JITTER_HIGH)
    return base_delay(retry_count) * factor


def decide(
    retry_count: int,
    max_retries: int,
    now: datetime,
    rng: random.Random | None = None,
) -> RetryDecision:
    """
    Terminal once another retry would exceed ``max_retries``; otherwise the
    job becomes visible again after the jittered delay with one more retry
    counted.
    """
    if retry_count + 1 > max_retries:
        return RetryDecision(terminal=True, retry_count=retry_count)

    delay = retry_delay(retry_count, rng)
    return RetryDecision(
        terminal=False,
        retry_count=retry_count + 1,
        visible_at=now + delay,
        delay=delay,
    )


def honor_delay(decision: RetryDecision, now: datetime, delay: timedelta) -> RetryDecision:
    """Keep the later of the backoff and an explicitly requested delay."""
    if decision.terminal or now + delay <= decision.visible_at:
        return decision
    return replace(decision, visible_at=now + delay, delay=delay)
