"""
Stampede-safe payload refresh.

One cache entry per subject key, guarded by a short-lived lock entry:

  1. LOOKUP the cache key; a hit returns immediately.
  2. On a miss, SET NX the lock key with a short TTL.
  3. The winner fetches, renders and publishes with a plain SET EX.
  4. Losers poll the cache key with a bounded delay until the winner
     publishes or their budget runs out (RefreshTimedOut).

The lock is never released explicitly. If the winner crashes or its fetch
fails, the lock expires after lock_ttl and the next caller takes over.
The store has no notification primitive, so waiting is plain polling.
"""

import asyncio
import secrets
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from coinframe.config import Settings
from coinframe.errors import CoinframeError, RefreshTimedOut, RenderFailed, UpstreamFetchFailed
from coinframe.models import (
    CoinDetail,
    LockToken,
    MarketChart,
    Payload,
    SubjectSelector,
    dump_record,
    load_record,
)
from coinframe.services.store import KeyValueStore
from coinframe.utils.logging import get_logger, log_context

logger = get_logger(__name__)

LOCK_SUFFIX = ":lock"


class SourceFetcher(Protocol):
    async def fetch(self, selector: SubjectSelector) -> tuple[CoinDetail, MarketChart]:
        ...


class ArtifactRenderer(Protocol):
    def render(self, detail: CoinDetail, chart: MarketChart) -> str:
        ...


class RefreshSource(str, Enum):
    """Where a returned payload came from."""
    CACHE = "cache"
    LIVE = "live"
    WAIT = "wait"


class RefreshCoordinator:
    """Serves the current payload, refreshing it at most once per TTL window."""

    def __init__(
        self,
        store: KeyValueStore,
        source: SourceFetcher,
        renderer: ArtifactRenderer,
        default_selector: SubjectSelector,
        *,
        key_prefix: str = "coinframe",
        cache_ttl: float = 300,
        lock_ttl: float = 10,
        retry_delay: float = 0.5,
        retry_budget: int = 10,
        retry_backoff: float = 1.0,
        retry_max_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if lock_ttl >= cache_ttl:
            raise ValueError("lock_ttl must be shorter than cache_ttl")
        if retry_budget < 1:
            raise ValueError("retry_budget must be at least 1")

        self._store = store
        self._source = source
        self._renderer = renderer
        self._default_selector = default_selector
        self._key_prefix = key_prefix
        self._cache_ttl = cache_ttl
        self._lock_ttl = lock_ttl
        self._retry_delay = retry_delay
        self._retry_budget = retry_budget
        self._retry_backoff = retry_backoff
        self._retry_max_delay = retry_max_delay
        self._sleep = sleep
        self._counters = {
            "hits": 0,
            "misses": 0,
            "refreshes": 0,
            "waits": 0,
            "timeouts": 0,
            "failures": 0,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: KeyValueStore,
        source: SourceFetcher,
        renderer: ArtifactRenderer,
        **kwargs,
    ) -> "RefreshCoordinator":
        return cls(
            store,
            source,
            renderer,
            settings.default_selector(),
            key_prefix=settings.cache_key_prefix,
            cache_ttl=settings.cache_ttl_payload,
            lock_ttl=settings.lock_ttl,
            retry_delay=settings.refresh_retry_delay,
            retry_budget=settings.refresh_retry_budget,
            retry_backoff=settings.refresh_retry_backoff,
            retry_max_delay=settings.refresh_retry_max_delay,
            **kwargs,
        )

    @property
    def cache_ttl(self) -> float:
        return self._cache_ttl

    @property
    def default_selector(self) -> SubjectSelector:
        return self._default_selector

    def cache_key(self, selector: Optional[SubjectSelector] = None) -> str:
        return (selector or self._default_selector).cache_key(self._key_prefix)

    @staticmethod
    def lock_key(cache_key: str) -> str:
        return cache_key + LOCK_SUFFIX

    def stats(self) -> dict:
        """Counters since process start."""
        return dict(self._counters)

    def max_wait(self) -> float:
        """Worst-case time a losing caller spends in WAIT."""
        total = 0.0
        delay = self._retry_delay
        for _ in range(self._retry_budget):
            total += delay
            delay = min(delay * self._retry_backoff, self._retry_max_delay)
        return total

    # ===================
    # Public API
    # ===================

    async def get_or_refresh(self, selector: Optional[SubjectSelector] = None) -> Payload:
        """Return the current payload, refreshing it if necessary."""
        payload, _ = await self.get_or_refresh_with_source(selector)
        return payload

    async def get_or_refresh_with_source(
        self, selector: Optional[SubjectSelector] = None
    ) -> tuple[Payload, RefreshSource]:
        """Like get_or_refresh, also reporting where the payload came from."""
        selector = selector or self._default_selector
        cache_key = self.cache_key(selector)

        with log_context(cache_key=cache_key):
            cached = await self._lookup(cache_key)
            if cached is not None:
                self._counters["hits"] += 1
                return cached, RefreshSource.CACHE

            self._counters["misses"] += 1
            token = LockToken(owner=secrets.token_hex(8))
            won = await self._store.set_if_absent(
                self.lock_key(cache_key), dump_record(token), self._lock_ttl
            )
            if won:
                logger.info("refresh_lock_won", owner=token.owner)
                payload = await self._refresh(cache_key, selector)
                return payload, RefreshSource.LIVE

            logger.debug("refresh_lock_lost")
            payload = await self._wait_for_publish(cache_key)
            return payload, RefreshSource.WAIT

    # ===================
    # States
    # ===================

    async def _lookup(self, cache_key: str) -> Optional[Payload]:
        raw = await self._store.get(cache_key)
        if raw is None:
            return None
        return load_record(Payload, raw, cache_key)

    async def _refresh(self, cache_key: str, selector: SubjectSelector) -> Payload:
        """FETCH, RENDER and PUBLISH. Only ever run by the lock holder."""
        started = time.perf_counter()
        try:
            detail, chart = await self._fetch(cache_key, selector)
            og_image = await self._render(cache_key, detail, chart)
        except CoinframeError as e:
            self._counters["failures"] += 1
            logger.error(
                "refresh_failed",
                error_type=type(e).__name__,
                error=str(e),
                lock_expires_in=self._lock_ttl,
            )
            raise

        payload = Payload(
            coin=detail.to_coin(),
            detail=detail,
            chart=chart,
            og_image_base64=og_image,
        )
        # Unconditional overwrite, no compare-and-set
        await self._store.set_with_expiry(cache_key, dump_record(payload), self._cache_ttl)
        self._counters["refreshes"] += 1
        logger.info(
            "refresh_published",
            coin_id=payload.coin.id,
            points=len(chart.prices),
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return payload

    async def _fetch(self, cache_key: str, selector: SubjectSelector) -> tuple[CoinDetail, MarketChart]:
        try:
            return await self._source.fetch(selector)
        except UpstreamFetchFailed as e:
            if e.key is None:
                e.key = cache_key
            raise
        except CoinframeError:
            raise
        except Exception as e:
            raise UpstreamFetchFailed(f"Source fetch failed: {e}", cache_key) from e

    async def _render(self, cache_key: str, detail: CoinDetail, chart: MarketChart) -> str:
        try:
            # CPU bound
            return await asyncio.to_thread(self._renderer.render, detail, chart)
        except RenderFailed as e:
            if e.key is None:
                e.key = cache_key
            raise
        except CoinframeError:
            raise
        except Exception as e:
            raise RenderFailed(f"Render failed: {e}", cache_key) from e

    async def _wait_for_publish(self, cache_key: str) -> Payload:
        """Poll the cache key until the lock holder publishes."""
        self._counters["waits"] += 1
        delay = self._retry_delay
        waited = 0.0
        for attempt in range(1, self._retry_budget + 1):
            await self._sleep(delay)
            waited += delay
            cached = await self._lookup(cache_key)
            if cached is not None:
                logger.debug("refresh_wait_hit", attempts=attempt, waited=round(waited, 3))
                return cached
            delay = min(delay * self._retry_backoff, self._retry_max_delay)

        self._counters["timeouts"] += 1
        logger.warning("refresh_wait_exhausted", attempts=self._retry_budget, waited=round(waited, 3))
        raise RefreshTimedOut(
            f"Payload not published after {self._retry_budget} polls",
            cache_key,
            waited=waited,
        )
