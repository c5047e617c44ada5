"""
Pytest configuration and fixtures.
"""

import asyncio

import pytest

from coinframe.config import Settings
from coinframe.errors import UpstreamFetchFailed
from coinframe.models import CoinDetail, MarketChart, SubjectSelector
from coinframe.services.refresh import RefreshCoordinator
from coinframe.services.store import MemoryStore


class FakeClock:
    """Monotonic clock the tests move by hand.

    ``sleep`` advances the clock by the requested delay and then yields for a
    scaled-down real interval so other tasks can make progress.
    """

    def __init__(self, start: float = 0.0, real_scale: float = 0.02):
        self.now = start
        self.real_scale = real_scale
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(seconds * self.real_scale)

    async def wait_until(self, t: float, max_spins: int = 10_000) -> None:
        for _ in range(max_spins):
            if self.now >= t:
                return
            await asyncio.sleep(0.001)
        raise AssertionError(f"clock never reached {t}")


class StubSource:
    """Source fetcher that counts calls and can block or fail."""

    def __init__(self, coin_id: str = "higher", fail: Exception | None = None):
        self.coin_id = coin_id
        self.fail = fail
        self.calls = 0
        self.gate: asyncio.Event | None = None
        self.release_at: tuple[FakeClock, float] | None = None

    async def fetch(self, selector: SubjectSelector) -> tuple[CoinDetail, MarketChart]:
        self.calls += 1
        if self.release_at is not None:
            clock, t = self.release_at
            await clock.wait_until(t)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        coin_id = selector.coin_id or self.coin_id
        detail = CoinDetail(
            id=coin_id,
            symbol="hgr",
            name=coin_id.title(),
            price_usd=0.0123,
            market_cap_usd=12_345_678.0,
        )
        chart = MarketChart(
            days=selector.chart_days,
            prices=[(1_700_000_000_000 + i * 3_600_000, 0.01 + i * 0.001) for i in range(5)],
        )
        return detail, chart


class StubRenderer:
    """Renderer that returns a tiny fake data URI."""

    def __init__(self, fail: Exception | None = None):
        self.fail = fail
        self.calls = 0

    def render(self, detail: CoinDetail, chart: MarketChart) -> str:
        self.calls += 1
        if self.fail is not None:
            raise self.fail
        return "data:image/png;base64,aGVsbG8="


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        redis_url=None,
        app_mode="exact",
        exact_coingecko_id="higher",
        chart_days=30,
        cache_ttl_payload=300,
        lock_ttl=10,
        refresh_retry_delay=0.5,
        refresh_retry_budget=10,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def source() -> StubSource:
    return StubSource()


@pytest.fixture
def renderer() -> StubRenderer:
    return StubRenderer()


@pytest.fixture
def make_coordinator(settings, store, source, renderer, clock):
    """Build coordinators sharing one store, like separate app instances."""

    def _make(**overrides) -> RefreshCoordinator:
        kwargs = {
            "store": store,
            "source": source,
            "renderer": renderer,
            "sleep": clock.sleep,
        }
        kwargs.update(overrides)
        return RefreshCoordinator.from_settings(settings, **kwargs)

    return _make


@pytest.fixture
def upstream_error() -> UpstreamFetchFailed:
    return UpstreamFetchFailed("CoinGecko /coins/higher failed: 500", status_code=500)
