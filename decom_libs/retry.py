"""Bounded retry policies shared by the decommission steps."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from spicerack.decorators import retry

LOGGER = logging.getLogger(__name__)


class AttemptFailed(Exception):
    """Risen by the retry executor when an attempt did not succeed, to trigger the next one."""


@dataclass(frozen=True)
class RetryPolicy:
    """How many times, how often and for how long to try a step.

    The backoff_mode is any of the ones supported by spicerack.decorators.retry, 'constant' means a fixed interval
    between attempts.
    """

    max_attempts: int
    interval: timedelta
    per_attempt_timeout: timedelta
    backoff_mode: str = "constant"

    def __post_init__(self):
        """Validate the policy."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.per_attempt_timeout.total_seconds() <= 0:
            raise ValueError(f"per_attempt_timeout must be positive, got {self.per_attempt_timeout}")

    def run(self, attempt: Callable[[timedelta], bool], description: str) -> bool:
        """Call `attempt` until it returns True or the attempts are exhausted.

        The attempt gets the per attempt timeout and must enforce it itself. Returning False (or raising
        AttemptFailed) counts as a failed attempt, any other exception is propagated untouched.

        Returns whether any of the attempts succeeded.
        """
        attempts_done = 0

        @retry(
            tries=self.max_attempts,
            delay=self.interval,
            backoff_mode=self.backoff_mode,
            exceptions=(AttemptFailed,),
            failure_message=f"{description} did not succeed yet",
        )
        def _attempt() -> None:
            nonlocal attempts_done
            attempts_done += 1
            if not attempt(self.per_attempt_timeout):
                raise AttemptFailed(f"{description} failed on attempt {attempts_done}/{self.max_attempts}")

        try:
            _attempt()
        except AttemptFailed:
            LOGGER.warning("%s: giving up after %d attempts", description, attempts_done)
            return False

        return True


DRAIN_RETRY_POLICY = RetryPolicy(
    max_attempts=3, interval=timedelta(seconds=2), per_attempt_timeout=timedelta(seconds=60)
)
JOB_COMPLETION_RETRY_POLICY = RetryPolicy(
    max_attempts=10, interval=timedelta(seconds=2), per_attempt_timeout=timedelta(seconds=15)
)
WORKLOADS_GONE_RETRY_POLICY = RetryPolicy(
    max_attempts=30, interval=timedelta(seconds=10), per_attempt_timeout=timedelta(seconds=15)
)
