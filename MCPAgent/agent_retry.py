#!/usr/bin/env python3
"""
agent_retry.py: Resilient request executor.

with_retry() wraps exactly one network call. It keeps no state between
invocations; the attempt counter lives in the call frame.

Classification:
  retryable      LLMError whose status_code is in policy.retryable_status_codes,
                 LLMError(NETWORK_ERROR), requests.ConnectionError / Timeout
  not retryable  configuration errors (MISSING_API_KEY, NOT_IMPLEMENTED,
                 UNSUPPORTED_PROVIDER) and everything else

Delay before retry n (0-based):
  min(initial_delay * backoff_factor ** n, max_delay) + uniform(0, jitter)
"""

import random
import time
from typing import Callable, Optional, TypeVar

import requests

from agent_core import Log, LLMError, RetryPolicy

T = TypeVar("T")

DEFAULT_RETRY_POLICY = RetryPolicy()


def is_retryable(error: BaseException, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> bool:
    if isinstance(error, LLMError):
        if error.is_configuration_error:
            return False
        if error.status_code is not None and error.status_code in policy.retryable_status_codes:
            return True
        return error.code == LLMError.NETWORK_ERROR
    return isinstance(error, (requests.ConnectionError, requests.Timeout, ConnectionError))


def compute_delay(attempt: int, policy: RetryPolicy = DEFAULT_RETRY_POLICY,
                  rng: Callable[[], float] = random.random) -> float:
    """Seconds to sleep after failed attempt number *attempt* (0-based)."""
    base = min(policy.initial_delay * (policy.backoff_factor ** attempt), policy.max_delay)
    return base + rng() * policy.jitter


def with_retry(fn: Callable[[], T],
               policy: Optional[RetryPolicy] = None,
               context: str = "LLM request",
               sleep: Callable[[float], None] = time.sleep) -> T:
    """Call *fn* until it succeeds, fails non-retryably, or attempts run out.

    The error that escapes carries a ``retryable`` attribute reflecting the
    classification of the last attempt.
    """
    policy   = policy or DEFAULT_RETRY_POLICY
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return fn()
        except Exception as e:
            retryable = is_retryable(e, policy)
            if retryable and attempt < attempts - 1:
                delay = compute_delay(attempt, policy)
                Log.warning(f"{context} failed, retrying in {delay * 1000:.0f}ms "
                            f"(attempt {attempt + 1}/{attempts}): {str(e)[:120]}")
                sleep(delay)
                continue
            try:
                e.retryable = retryable
            except AttributeError:
                pass
            if retryable:
                Log.error(f"{context} failed after {attempts} attempts: {str(e)[:200]}")
            raise
    raise AssertionError("unreachable")
