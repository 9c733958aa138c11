# mediaconv/tiers.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from .config import TierLimits
from .storage import KeyValueStore

logger = logging.getLogger(__name__)


class PremiumRegistry:
    """Identities currently entitled to the premium tier.

    Entries never expire on their own; whoever confirms payments decides when
    to call ``revoke``.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def grant(self, identity: str) -> None:
        self._store.set(identity, time.time())
        logger.info("premium granted to %s", identity)

    def revoke(self, identity: str) -> None:
        self._store.delete(identity)
        logger.info("premium revoked for %s", identity)

    def is_premium(self, identity: str) -> bool:
        return self._store.get(identity) is not None

    def count(self) -> int:
        return len(self._store)


@dataclass(frozen=True)
class TierPolicy:
    is_premium: bool
    max_upload_bytes: int
    quota_per_window: Optional[int]  # None = unlimited


class TierPolicyResolver:
    def __init__(self, registry: PremiumRegistry, limits: TierLimits) -> None:
        self._registry = registry
        self._limits = limits

    def resolve(self, identity: str) -> TierPolicy:
        if self._registry.is_premium(identity):
            return TierPolicy(
                is_premium=True,
                max_upload_bytes=self._limits.premium_max_upload_bytes,
                quota_per_window=self._limits.premium_quota_per_window,
            )
        return TierPolicy(
            is_premium=False,
            max_upload_bytes=self._limits.free_max_upload_bytes,
            quota_per_window=self._limits.free_quota_per_window,
        )
