"""
Concurrency guard.

    retry_with_backoff   generic retry combinator with a retryable-error predicate
    is_serialization_failure   default predicate (serialization, deadlock, lock, timeout)
    TransactionGuard     one isolated, time-boxed transaction per attempt

Every mutating engine operation runs its whole read-modify-write body
through ``TransactionGuard.run``. An attempt either commits completely or
is rolled back completely; only then is the next attempt started.
"""

import logging
import time

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from changeflow.core.exceptions import ConcurrencyError, TransactionTimeoutError

logger = logging.getLogger(__name__)

# SQLSTATE serialization_failure / deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}
_RETRYABLE_MESSAGES = ("database is locked", "could not serialize access", "deadlock detected")


def is_serialization_failure(exc: BaseException) -> bool:
    """Return True for errors that a fresh attempt of the same body may not hit."""
    if isinstance(exc, TransactionTimeoutError):
        return True
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if sqlstate in _RETRYABLE_SQLSTATES:
            return True
        message = str(orig).lower()
        return any(m in message for m in _RETRYABLE_MESSAGES)
    return False


def retry_with_backoff(
    fn,
    *,
    attempts: int,
    base_delay: float,
    is_retryable=is_serialization_failure,
    sleep=time.sleep,
    on_retry=None,
):
    """
    Call ``fn(attempt)`` until it succeeds or the attempt budget is spent.

    Only errors for which ``is_retryable(exc)`` is true are retried; any
    other error propagates immediately. The delay before attempt ``n + 1``
    is ``base_delay * 2 ** (n - 1)``. Exhausting the budget raises
    ``ConcurrencyError`` chained from the last retryable error.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_exc = None
    for attempt in range(1, attempts + 1):
        try:
            return fn(attempt)
        except Exception as exc:
            if not is_retryable(exc):
                raise
            last_exc = exc
            if attempt == attempts:
                break
            delay = base_delay * (2 ** (attempt - 1))
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            sleep(delay)

    raise ConcurrencyError(details={"attempts": attempts}) from last_exc


class TransactionGuard:
    """
    Runs a transaction body at the configured isolation level with bounded retry.

    Args:
        session: SQLAlchemy session the body operates on.
        settings: ``EngineSettings`` (isolation level, attempts, delays, timeout).
        sleep: injectable for tests.
        monotonic: injectable wall clock for the per-attempt timeout.
    """

    def __init__(self, session, settings, sleep=time.sleep, monotonic=time.monotonic):
        self.session = session
        self.settings = settings
        self._sleep = sleep
        self._monotonic = monotonic

    @classmethod
    def for_context(cls, ctx):
        return cls(ctx.session, ctx.settings, sleep=ctx.sleep)

    def run(self, body, *, label="transaction", document_id=None):
        """Execute ``body(session)`` and commit; return whatever the body returns."""

        def _attempt(attempt):
            self.session.rollback()
            started = self._monotonic()
            try:
                self._begin()
                result = body(self.session)
                self.session.flush()
                elapsed = self._monotonic() - started
                if elapsed > self.settings.transaction_timeout:
                    raise TransactionTimeoutError(
                        f"{label} exceeded {self.settings.transaction_timeout}s",
                        details={"elapsed": round(elapsed, 3)},
                    )
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
            if attempt > 1:
                logger.info(
                    "%s committed on attempt %d", label, attempt,
                    extra={"document_id": document_id, "attempt": attempt},
                )
            return result

        def _on_retry(attempt, exc, delay):
            logger.warning(
                "%s attempt %d failed (%s); retrying in %.2fs", label, attempt, exc, delay,
                extra={"document_id": document_id, "attempt": attempt, "event_type": "transaction.retry"},
            )

        try:
            return retry_with_backoff(
                _attempt,
                attempts=self.settings.retry_attempts,
                base_delay=self.settings.retry_base_delay,
                sleep=self._sleep,
                on_retry=_on_retry,
            )
        except ConcurrencyError as exc:
            logger.error(
                "%s gave up after %d attempts: %s", label, self.settings.retry_attempts, exc.__cause__,
                extra={"document_id": document_id, "event_type": "transaction.exhausted"},
            )
            raise

    def _begin(self):
        options = {}
        if self.settings.isolation_level:
            options["isolation_level"] = self.settings.isolation_level
        conn = self.session.connection(execution_options=options) if options else self.session.connection()
        if conn.dialect.name == "postgresql":
            timeout_ms = int(self.settings.transaction_timeout * 1000)
            conn.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
