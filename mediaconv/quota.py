# mediaconv/quota.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from .storage import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRecord:
    identity: str
    conversion_count: int = 0
    reserved: int = 0
    window_start: float = 0.0
    lifetime_count: int = 0


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    remaining: Optional[int]  # None = unlimited


class QuotaTracker:
    """Rolling per-identity conversion counters.

    A reservation taken by ``check_and_reserve`` counts against the quota until
    it is either committed (job succeeded) or released (job failed), so
    concurrent admissions for one identity can never exceed the quota. The
    window is reset lazily whenever a record is touched.
    """

    def __init__(
        self,
        store: KeyValueStore,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._window = window_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def _load(self, identity: str) -> UsageRecord:
        now = self._clock()
        rec = self._store.get(identity)
        if rec is None:
            return UsageRecord(identity=identity, window_start=now)
        if now - rec.window_start > self._window:
            # pending reservations belong to jobs still in flight; keep them
            return replace(rec, conversion_count=0, window_start=now)
        return rec

    @staticmethod
    def _remaining(rec: UsageRecord, quota: Optional[int]) -> Optional[int]:
        if quota is None:
            return None
        return max(quota - rec.conversion_count - rec.reserved, 0)

    def check_and_reserve(self, identity: str, quota: Optional[int]) -> QuotaDecision:
        if quota is None:
            return QuotaDecision(allowed=True, remaining=None)
        with self._lock:
            rec = self._load(identity)
            if rec.conversion_count + rec.reserved >= quota:
                self._store.set(identity, rec)
                return QuotaDecision(allowed=False, remaining=0)
            rec = replace(rec, reserved=rec.reserved + 1)
            self._store.set(identity, rec)
            return QuotaDecision(allowed=True, remaining=self._remaining(rec, quota))

    def commit(self, identity: str, reserved: bool = True) -> None:
        with self._lock:
            rec = self._load(identity)
            pending = rec.reserved - 1 if reserved and rec.reserved > 0 else rec.reserved
            rec = replace(
                rec,
                conversion_count=rec.conversion_count + 1,
                lifetime_count=rec.lifetime_count + 1,
                reserved=pending,
            )
            self._store.set(identity, rec)
        logger.debug("usage committed for %s: %d", identity, rec.conversion_count)

    def release(self, identity: str) -> None:
        with self._lock:
            if self._store.get(identity) is None:
                return
            rec = self._load(identity)
            if rec.reserved > 0:
                rec = replace(rec, reserved=rec.reserved - 1)
            self._store.set(identity, rec)

    def remaining(self, identity: str, quota: Optional[int]) -> Optional[int]:
        with self._lock:
            rec = self._load(identity)
            if self._store.get(identity) is not None:
                self._store.set(identity, rec)
            return self._remaining(rec, quota)

    def record(self, identity: str) -> Optional[UsageRecord]:
        with self._lock:
            if self._store.get(identity) is None:
                return None
            rec = self._load(identity)
            self._store.set(identity, rec)
            return rec

    def total_users(self) -> int:
        return len(self._store)

    def total_conversions(self) -> int:
        return sum(rec.lifetime_count for _, rec in self._store.items())
