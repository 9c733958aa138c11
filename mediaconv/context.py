# mediaconv/context.py
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from .admission import AdmissionController
from .config import Settings, load_settings
from .engine import JobEngine
from .quota import QuotaTracker
from .storage import InMemoryStore, KeyValueStore, TransientStorage
from .sweeper import RetentionSweeper
from .tiers import PremiumRegistry, TierPolicyResolver


@dataclass
class ConverterContext:
    """Everything one deployment (or one test) of the converter owns."""

    settings: Settings
    usage_store: KeyValueStore
    premium_store: KeyValueStore
    job_store: KeyValueStore
    quota: QuotaTracker
    premium: PremiumRegistry
    tiers: TierPolicyResolver
    files: TransientStorage
    engine: JobEngine
    admission: AdmissionController
    sweeper: RetentionSweeper

    # ------------ Capabilities for the payment collaborator ------------
    def grant_premium(self, identity: str) -> None:
        self.premium.grant(identity)

    def revoke_premium(self, identity: str) -> None:
        self.premium.revoke(identity)

    # ------------ Read-only queries for the presentation layer ------------
    def usage(self, identity: str) -> dict:
        policy = self.tiers.resolve(identity)
        return {
            "remaining": self.quota.remaining(identity, policy.quota_per_window),
            "is_premium": policy.is_premium,
            "max_upload_bytes": policy.max_upload_bytes,
        }

    def stats(self) -> dict:
        return {
            "total_users": self.quota.total_users(),
            "total_conversions": self.quota.total_conversions(),
            "active_jobs": self.engine.active_jobs(),
            "premium_count": self.premium.count(),
        }


def build_context(
    settings: Optional[Settings] = None,
    clock: Callable[[], float] = time.time,
    usage_store: Optional[KeyValueStore] = None,
    premium_store: Optional[KeyValueStore] = None,
    job_store: Optional[KeyValueStore] = None,
) -> ConverterContext:
    settings = settings or load_settings()
    settings.ensure_dirs()

    usage_store = usage_store if usage_store is not None else InMemoryStore()
    premium_store = premium_store if premium_store is not None else InMemoryStore()
    job_store = job_store if job_store is not None else InMemoryStore()

    files = TransientStorage(settings.upload_dir, settings.output_dir)
    quota = QuotaTracker(usage_store, settings.tiers.window_seconds, clock=clock)
    premium = PremiumRegistry(premium_store)
    tiers = TierPolicyResolver(premium, settings.tiers)
    engine = JobEngine(settings, files, quota, job_store, clock=clock)
    admission = AdmissionController(
        files,
        tiers,
        quota,
        engine,
        allowed_mime_types=settings.allowed_mime_types,
        chunk_size=settings.chunk_size_bytes,
    )
    sweeper = RetentionSweeper(
        files,
        engine,
        retention_sec=settings.retention_sec,
        interval_sec=settings.sweep_interval_sec,
        clock=clock,
    )
    return ConverterContext(
        settings=settings,
        usage_store=usage_store,
        premium_store=premium_store,
        job_store=job_store,
        quota=quota,
        premium=premium,
        tiers=tiers,
        files=files,
        engine=engine,
        admission=admission,
        sweeper=sweeper,
    )
