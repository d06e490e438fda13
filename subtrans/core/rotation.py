"""
Credential rotation and key health.

Health and the selection counter live in the shared cache store so every
job and every process sees the same picture. The local copy of a health
entry is only a latency shortcut with a short TTL; all writes go through
the store's atomic read-modify-write.
"""

import hashlib
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from subtrans.core.exceptions import TranslationError
from subtrans.core.models import KeyHealth, RotationMode
from subtrans.translation.base import ProviderHandle, handle_ids
from subtrans.utils.cache import CacheStore
from subtrans.utils.logger import get_logger

logger = get_logger(__name__)


class KeyHealthStore:
    """
    Error accounting per (provider, credential).

    A classified failure inside the rolling window increments the error
    count; reaching the threshold puts the credential in cooldown. A
    success clears the count but leaves an active cooldown in place.
    """

    def __init__(
        self,
        store: CacheStore,
        error_threshold: int = 5,
        error_window: float = 3600.0,
        cooldown: float = 3600.0,
        cache_ttl: float = 2.0,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.error_threshold = error_threshold
        self.error_window = error_window
        self.cooldown = cooldown
        self.cache_ttl = cache_ttl
        self.clock = clock
        self._local: Dict[str, Tuple[KeyHealth, float]] = {}

    @staticmethod
    def key_for(handle: ProviderHandle) -> str:
        return f"keyhealth:{handle.provider}:{handle.credential}"

    @property
    def _record_ttl(self) -> float:
        return self.error_window + self.cooldown

    def get(self, handle: ProviderHandle) -> KeyHealth:
        """Current health, served from the local copy while it is fresh."""
        key = self.key_for(handle)
        now = time.monotonic()
        cached = self._local.get(key)
        if cached and now - cached[1] < self.cache_ttl:
            return cached[0]
        health = KeyHealth.from_dict(self.store.get(key))
        self._local[key] = (health, now)
        return health

    def is_cooling(self, handle: ProviderHandle) -> bool:
        return self.get(handle).is_cooling(self.clock())

    def record_failure(self, handle: ProviderHandle) -> KeyHealth:
        now = self.clock()
        state = {}

        def bump(current):
            health = KeyHealth.from_dict(current)
            if health.error_count == 0 or now - health.window_start > self.error_window:
                health.error_count = 0
                health.window_start = now
            health.error_count += 1
            if health.error_count >= self.error_threshold:
                health.cooldown_until = now + self.cooldown
                health.error_count = 0
                health.window_start = now
                state["cooled"] = True
            return health.to_dict()

        health = KeyHealth.from_dict(self.store.update(self.key_for(handle), bump, ttl=self._record_ttl))
        self._local[self.key_for(handle)] = (health, time.monotonic())

        if state.get("cooled"):
            logger.warning(
                f"Credential {handle.handle_id} reached {self.error_threshold} errors, "
                f"cooling down for {self.cooldown:.0f}s"
            )
        return health

    def record_success(self, handle: ProviderHandle) -> KeyHealth:
        key = self.key_for(handle)
        current = self.get(handle)
        if current.error_count == 0:
            return current

        def reset(current):
            health = KeyHealth.from_dict(current)
            health.error_count = 0
            health.window_start = 0.0
            return health.to_dict()

        health = KeyHealth.from_dict(self.store.update(key, reset, ttl=self._record_ttl))
        self._local[key] = (health, time.monotonic())
        return health


class RotationManager:
    """
    Selects the (provider, credential) pair for each call.

    Selection walks a shared counter so concurrent jobs spread over the
    pool. Cooling credentials are skipped unless every candidate is
    cooling. In ``per_request`` mode the last good handle is reused until
    a failure forces a change.
    """

    def __init__(
        self,
        primary: List[ProviderHandle],
        health: KeyHealthStore,
        store: CacheStore,
        fallback: Optional[List[ProviderHandle]] = None,
        mode: RotationMode = RotationMode.PER_BATCH
    ):
        if not primary:
            raise ValueError("RotationManager needs at least one provider handle")
        self.primary = list(primary)
        self.fallback = list(fallback or [])
        self.health = health
        self.store = store
        self.mode = RotationMode(mode)
        self.fallback_active = False
        self._sticky: Optional[ProviderHandle] = None

    @property
    def pool(self) -> List[ProviderHandle]:
        return self.fallback if self.fallback_active else self.primary

    def _counter_key(self) -> str:
        digest = hashlib.sha256(",".join(handle_ids(self.pool)).encode("utf-8")).hexdigest()[:16]
        return f"rotation:{digest}"

    def select(self, exclude: Iterable[str] = ()) -> Optional[ProviderHandle]:
        """
        Pick the next handle from the active pool.

        Args:
            exclude: handle ids already tried for the current batch

        Returns:
            A handle, or None when every handle of the pool is excluded
        """
        excluded = set(exclude)
        candidates = [h for h in self.pool if h.handle_id not in excluded]
        if not candidates:
            return None

        if (
            self.mode is RotationMode.PER_REQUEST
            and self._sticky in candidates
            and not self.health.is_cooling(self._sticky)
        ):
            return self._sticky

        healthy = [h for h in candidates if not self.health.is_cooling(h)]
        if not healthy:
            logger.warning(
                f"All {len(candidates)} candidate credentials are cooling down; using them anyway"
            )
            healthy = candidates

        counter = self.store.incr(self._counter_key())
        handle = healthy[(counter - 1) % len(healthy)]
        self._sticky = handle
        logger.debug(f"Selected {handle.handle_id} (counter {counter}, {len(healthy)} eligible)")
        return handle

    def report_success(self, handle: ProviderHandle) -> None:
        self.health.record_success(handle)

    def report_failure(self, handle: ProviderHandle, error: TranslationError) -> None:
        if error.counts_against_key:
            self.health.record_failure(handle)
        if self._sticky is handle:
            self._sticky = None

    def activate_fallback(self) -> bool:
        """Switch the remaining batches to the fallback pool. False if there is none to switch to."""
        if self.fallback_active or not self.fallback:
            return False
        self.fallback_active = True
        self._sticky = None
        logger.warning(f"Primary providers exhausted; switching to fallback {handle_ids(self.fallback)}")
        return True
