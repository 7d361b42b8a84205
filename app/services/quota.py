"""
Monthly usage quota.

The store holds raw per-user records; the gate applies the policy on top:
lazy creation of a free-tier record, calendar-month rollover checked on every
read (no background timer), and admission/consumption decisions.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol, Tuple

from app.models.generation import QuotaRecord, QuotaStatus, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MONTHLY_LIMIT = 5


class QuotaStore(Protocol):
    """Persistence boundary for quota records, keyed by user id."""

    def read(self, user_id: str) -> Optional[QuotaRecord]:
        ...

    def write(self, user_id: str, record: QuotaRecord) -> None:
        ...

    def update(
        self,
        user_id: str,
        fn: Callable[[Optional[QuotaRecord]], QuotaRecord],
    ) -> QuotaRecord:
        """Atomically replace the record with `fn(current)` and return the new one."""
        ...


class InMemoryQuotaStore:
    """
    Process-local quota store.

    `update` holds a lock across the read-modify-write, which is what makes
    conditional consumption atomic. A database-backed store would use a
    transaction for the same purpose.
    """

    def __init__(self) -> None:
        self._records: Dict[str, QuotaRecord] = {}
        self._lock = threading.Lock()

    def read(self, user_id: str) -> Optional[QuotaRecord]:
        with self._lock:
            record = self._records.get(user_id)
            return replace(record) if record is not None else None

    def write(self, user_id: str, record: QuotaRecord) -> None:
        with self._lock:
            self._records[user_id] = replace(record)

    def update(
        self,
        user_id: str,
        fn: Callable[[Optional[QuotaRecord]], QuotaRecord],
    ) -> QuotaRecord:
        with self._lock:
            current = self._records.get(user_id)
            updated = fn(replace(current) if current is not None else None)
            self._records[user_id] = replace(updated)
            return replace(updated)


def should_reset_period(period_start: datetime, now: datetime) -> bool:
    """True when `now` falls in a different calendar month than `period_start`."""
    return (period_start.year, period_start.month) != (now.year, now.month)


def _to_status(record: QuotaRecord) -> QuotaStatus:
    return QuotaStatus(
        limit=record.monthly_limit,
        used=record.current_period_used,
        remaining=max(0, record.monthly_limit - record.current_period_used),
        period_start=record.period_start,
    )


class QuotaGate:
    """Policy layer over a QuotaStore."""

    def __init__(
        self,
        store: QuotaStore,
        default_limit: int = DEFAULT_MONTHLY_LIMIT,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._default_limit = default_limit
        self._now = now or utcnow

    def _current(self, record: Optional[QuotaRecord], user_id: str) -> QuotaRecord:
        """Create the default record or roll the period over, as of now."""
        now = self._now()
        if record is None:
            logger.info("Created default quota record for user %s", user_id)
            return QuotaRecord(
                monthly_limit=self._default_limit,
                current_period_used=0,
                period_start=now,
            )
        if should_reset_period(record.period_start, now):
            logger.info("Reset monthly usage for user %s", user_id)
            record.current_period_used = 0
            record.period_start = now
        return record

    def get_status(self, user_id: str) -> QuotaStatus:
        record = self._store.update(user_id, lambda current: self._current(current, user_id))
        return _to_status(record)

    def check(self, user_id: str) -> bool:
        """Whether the user has at least one generation left this month."""
        return self.get_status(user_id).remaining > 0

    def increment(self, user_id: str) -> None:
        """
        Count one generation unconditionally.

        Does not re-check the limit; prefer `try_consume` when admission and
        consumption must be a single step.
        """

        def apply(current: Optional[QuotaRecord]) -> QuotaRecord:
            record = self._current(current, user_id)
            record.current_period_used += 1
            return record

        record = self._store.update(user_id, apply)
        logger.info("Incremented usage for user %s (%d/%d)", user_id, record.current_period_used, record.monthly_limit)

    def try_consume(self, user_id: str) -> Tuple[bool, QuotaStatus]:
        """
        Count one generation only if the user is under the limit.

        The check and the increment happen in one atomic store update, so
        concurrent requests from the same user can never push usage past
        the limit.
        """
        consumed = False

        def apply(current: Optional[QuotaRecord]) -> QuotaRecord:
            nonlocal consumed
            record = self._current(current, user_id)
            if record.current_period_used < record.monthly_limit:
                record.current_period_used += 1
                consumed = True
            return record

        record = self._store.update(user_id, apply)
        if consumed:
            logger.info("Consumed quota for user %s (%d/%d)", user_id, record.current_period_used, record.monthly_limit)
        else:
            logger.warning("Quota exhausted for user %s (%d/%d)", user_id, record.current_period_used, record.monthly_limit)
        return consumed, _to_status(record)
