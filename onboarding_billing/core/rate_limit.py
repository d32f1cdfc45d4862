import time

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from onboarding_billing.models.rate_limit import CheckoutAttemptWindow


class FixedWindowRateLimiter:
    """Counts attempts per key in fixed windows on a shared table.

    Every worker increments the same row for a (key, window) pair, so the
    limit holds across processes. The increment is committed straight away:
    an attempt counts even when the work it guards fails afterwards.
    """

    def __init__(self, *, max_attempts: int, window_seconds: int):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    def window_start(self, now: float) -> int:
        return int(now // self.window_seconds) * self.window_seconds

    def check_and_consume(self, db: Session, key: str, *, now: float | None = None) -> int:
        """
        Consume one attempt for the key.
        Returns retry-after seconds when blocked, otherwise 0.
        """
        now = time.time() if now is None else now
        window_start = self.window_start(now)
        count = self._increment(db, key, window_start)
        if count > self.max_attempts:
            retry_after = int((window_start + self.window_seconds) - now) + 1
            return max(retry_after, 1)
        return 0

    def attempts(self, db: Session, key: str, *, now: float | None = None) -> int:
        now = time.time() if now is None else now
        count = db.execute(
            select(CheckoutAttemptWindow.attempt_count).where(
                CheckoutAttemptWindow.scope_key == key,
                CheckoutAttemptWindow.window_start == self.window_start(now),
            )
        ).scalar_one_or_none()
        return int(count or 0)

    def _increment(self, db: Session, key: str, window_start: int) -> int:
        if not self._bump_existing(db, key, window_start):
            db.add(CheckoutAttemptWindow(scope_key=key, window_start=window_start, attempt_count=1))
            try:
                db.flush()
            except IntegrityError:
                # Another worker opened the window first.
                db.rollback()
                self._bump_existing(db, key, window_start)
        db.commit()
        return self.attempts(db, key, now=float(window_start))

    def _bump_existing(self, db: Session, key: str, window_start: int) -> bool:
        result = db.execute(
            update(CheckoutAttemptWindow)
            .where(
                CheckoutAttemptWindow.scope_key == key,
                CheckoutAttemptWindow.window_start == window_start,
            )
            .values(attempt_count=CheckoutAttemptWindow.attempt_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0
