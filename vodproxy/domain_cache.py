"""Thread-safe in-memory cache of per-domain edge proxy preferences."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DomainPreference:
    """What we learned about fetching from one upstream domain."""

    needs_edge_proxy: bool
    updated_at: datetime
    success_count: int = 0
    fail_count: int = 0

    def is_expired(self, current_time: datetime, ttl: timedelta) -> bool:
        """Check if the entry is older than the cache TTL."""
        return current_time - self.updated_at > ttl

    def to_dict(self) -> dict:
        return {
            "needs_edge_proxy": self.needs_edge_proxy,
            "updated_at": self.updated_at.isoformat(),
            "success_count": self.success_count,
            "fail_count": self.fail_count,
        }


class DomainPreferenceCache:
    """
    Remembers which domains must be fetched through the edge proxy.

    A domain is marked the first time a direct fetch is refused with 403
    and the edge proxy succeeds. Entries expire after ``ttl_seconds`` so a
    domain that lifts its block is probed directly again. Nothing is
    persisted across restarts.
    """

    def __init__(self, ttl_seconds: int = 300, clock: Callable[[], datetime] = _utcnow):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Lifetime of an entry (default: 5 minutes)
            clock: Time source returning aware datetimes
        """
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._preferences: dict[str, DomainPreference] = {}
        self._lock = threading.RLock()

    def _get_live(self, domain: str) -> Optional[DomainPreference]:
        """
        Return the entry for a domain, dropping it if expired.

        Note: Must be called within a lock context.
        """
        preference = self._preferences.get(domain)
        if preference is None:
            return None
        if preference.is_expired(self._clock(), self._ttl):
            del self._preferences[domain]
            return None
        return preference

    def needs_edge_proxy(self, domain: str) -> bool:
        """Whether requests to this domain should go straight to the edge proxy."""
        with self._lock:
            preference = self._get_live(domain)
            return preference is not None and preference.needs_edge_proxy

    def mark_needs_edge_proxy(self, domain: str) -> None:
        """Record that the edge proxy succeeded where a direct fetch was refused."""
        with self._lock:
            existing = self._get_live(domain)
            self._preferences[domain] = DomainPreference(
                needs_edge_proxy=True,
                updated_at=self._clock(),
                success_count=(existing.success_count if existing else 0) + 1,
                fail_count=existing.fail_count if existing else 0,
            )
        logger.info(f"[DOMAIN-CACHE] Marked domain {domain} as needing edge proxy")

    def mark_direct_ok(self, domain: str) -> None:
        """Record that a direct fetch worked; only touches domains already tracked."""
        with self._lock:
            existing = self._get_live(domain)
            if existing is None:
                return
            existing.needs_edge_proxy = False
            existing.updated_at = self._clock()

    def mark_edge_failed(self, domain: str) -> None:
        """Record a failed edge proxy attempt without changing the preference."""
        with self._lock:
            existing = self._get_live(domain)
            self._preferences[domain] = DomainPreference(
                needs_edge_proxy=existing.needs_edge_proxy if existing else False,
                updated_at=self._clock(),
                success_count=existing.success_count if existing else 0,
                fail_count=(existing.fail_count if existing else 0) + 1,
            )

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._lock:
            expired = [
                domain
                for domain, preference in self._preferences.items()
                if preference.is_expired(now, self._ttl)
            ]
            for domain in expired:
                del self._preferences[domain]
        return len(expired)

    def get_domain_count(self) -> int:
        """Get the number of tracked domains that have not expired."""
        now = self._clock()
        with self._lock:
            return sum(
                1 for preference in self._preferences.values()
                if not preference.is_expired(now, self._ttl)
            )

    def get_stats(self) -> dict[str, dict]:
        """Get live entries as a dictionary for debugging."""
        now = self._clock()
        with self._lock:
            return {
                domain: preference.to_dict()
                for domain, preference in self._preferences.items()
                if not preference.is_expired(now, self._ttl)
            }
