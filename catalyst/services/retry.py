"""Retry policy for ledger writes made while handling recurring payments."""

import logging
from dataclasses import dataclass

from tenacity import Retrying, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base_delay, base_delay * multiplier, ...

    The defaults give 3 attempts with 1s then 2s between them. The last
    error is re-raised unchanged once attempts run out.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0

    @classmethod
    def from_config(cls, config):
        return cls(
            max_attempts=config.get("LEDGER_RETRY_ATTEMPTS", 3),
            base_delay=config.get("LEDGER_RETRY_BASE_DELAY", 1.0),
            multiplier=config.get("LEDGER_RETRY_MULTIPLIER", 2.0),
        )

    def _log_failed_attempt(self, retry_state):
        remaining = self.max_attempts - retry_state.attempt_number
        error = retry_state.outcome.exception()
        logger.error(
            f"Retry failed: {error}. Attempts remaining: {remaining}"
        )

    def call(self, fn, *args, before_retry=None, **kwargs):
        """Call fn(*args, **kwargs) until it succeeds or attempts run out.

        before_retry runs after a failed attempt when another one follows.
        The reconciler passes the session rollback here; a dropped connection
        leaves the transaction invalid until it is rolled back.
        """
        before_sleep = None
        if before_retry is not None:
            def before_sleep(retry_state):
                before_retry()

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier),
            after=self._log_failed_attempt,
            before_sleep=before_sleep,
            reraise=True,
        )
        return retrying(fn, *args, **kwargs)
