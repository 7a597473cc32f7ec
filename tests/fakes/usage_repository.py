"""In-memory UsageRepository with failure injection."""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from tests.fakes.identity_repository import FakeIdentityRepository

CounterKey = Tuple[str, str, str]


class FakeUsageRepository:
    """Counters keyed by (identity_id, analysis_type, period_start).

    The lock makes check_and_increment atomic across concurrent coroutines,
    the same guarantee the database function gives. merge_identities claims
    the source in ``identities`` exactly like merge_usage_counters claims the
    anonymous_identities row, whether or not the visitor was ever recorded.
    """

    def __init__(self, identities: Optional[FakeIdentityRepository] = None) -> None:
        self.counters: Dict[CounterKey, int] = {}
        self.identities = identities or FakeIdentityRepository()
        self.calls: List[str] = []
        self._lock = asyncio.Lock()
        self._failures: List[BaseException] = []
        self._always_fail: Optional[BaseException] = None

    # -- failure injection ---------------------------------------------------

    def fail_next(self, *errors: BaseException) -> None:
        """Raise these errors, one per call, before behaving normally again."""
        self._failures.extend(errors)

    def fail_always(self, error: Optional[BaseException]) -> None:
        """Raise ``error`` on every call until called again with None."""
        self._always_fail = error

    def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if self._always_fail is not None:
            raise self._always_fail
        if self._failures:
            raise self._failures.pop(0)

    # -- UsageRepository -----------------------------------------------------

    async def check_and_increment(
        self, identity_id: str, analysis_type: str, period_start: datetime, limit: int
    ) -> Tuple[bool, int]:
        self._maybe_fail("check_and_increment")
        key = (identity_id, analysis_type, period_start.isoformat())
        async with self._lock:
            current = self.counters.get(key, 0)
            # Yield inside the critical section so unsafe callers would race
            await asyncio.sleep(0)
            if current >= limit:
                return False, current
            self.counters[key] = current + 1
            return True, current + 1

    async def increment(self, identity_id: str, analysis_type: str, period_start: datetime) -> int:
        self._maybe_fail("increment")
        key = (identity_id, analysis_type, period_start.isoformat())
        async with self._lock:
            self.counters[key] = self.counters.get(key, 0) + 1
            return self.counters[key]

    async def get_counts(self, identity_id: str, period_start: datetime) -> Dict[str, int]:
        self._maybe_fail("get_counts")
        period = period_start.isoformat()
        return {
            analysis_type: count
            for (ident, analysis_type, p), count in self.counters.items()
            if ident == identity_id and p == period
        }

    async def merge_identities(self, source_identity_id: str, target_identity_id: str) -> int:
        self._maybe_fail("merge_identities")
        async with self._lock:
            if source_identity_id in self.identities.retired:
                return 0
            self.identities.retired[source_identity_id] = datetime.now(timezone.utc)
            await asyncio.sleep(0)

            source_keys = [k for k in self.counters if k[0] == source_identity_id and self.counters[k] > 0]
            for key in source_keys:
                target_key = (target_identity_id, key[1], key[2])
                self.counters[target_key] = self.counters.get(target_key, 0) + self.counters[key]
            return len(source_keys)

    async def ping(self) -> None:
        self._maybe_fail("ping")

    # -- helpers -------------------------------------------------------------

    def count_for(self, identity_id: str, analysis_type: str) -> int:
        return sum(
            count for (ident, t, _), count in self.counters.items()
            if ident == identity_id and t == analysis_type
        )

    def reset(self) -> None:
        self.counters.clear()
        self.calls.clear()
        self._failures.clear()
        self._always_fail = None
