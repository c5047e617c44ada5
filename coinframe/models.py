"""
Record types that cross the cache and upstream boundaries.
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from coinframe.errors import CorruptCacheEntry


class Record(BaseModel):
    """Immutable record; replaced wholesale, never patched."""
    model_config = ConfigDict(frozen=True, extra="ignore")


class Coin(Record):
    """Candidate subject as listed by CoinGecko."""
    id: str = Field(min_length=1)
    symbol: str
    name: str


class CoinDetail(Record):
    """Enriched detail for one coin."""
    id: str = Field(min_length=1)
    symbol: str
    name: str
    image_url: Optional[str] = None
    price_usd: Optional[float] = None
    market_cap_usd: Optional[float] = None

    def to_coin(self) -> Coin:
        return Coin(id=self.id, symbol=self.symbol, name=self.name)


class MarketChart(Record):
    """USD price series, as (timestamp_ms, price) points."""
    days: int = Field(ge=1)
    prices: tuple[tuple[float, float], ...] = ()

    @property
    def values(self) -> list[float]:
        return [price for _, price in self.prices]


class Payload(Record):
    """The cached unit of work served to every caller."""
    coin: Coin
    detail: CoinDetail
    chart: MarketChart
    og_image_base64: str
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LockToken(Record):
    """Sentinel stored under the lock key while a refresh is in flight."""
    owner: str
    acquired_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SubjectSelector(Record):
    """Which subject a payload is built for. Determines the cache key."""
    mode: Literal["exact", "random"] = "exact"
    coin_id: Optional[str] = None
    category: str = ""
    chart_days: int = Field(default=30, ge=1)

    @model_validator(mode="after")
    def require_coin_id(self) -> "SubjectSelector":
        if self.mode == "exact" and not self.coin_id:
            raise ValueError("exact mode requires coin_id")
        return self

    def cache_key(self, prefix: str) -> str:
        """Stable key for the whole refresh epoch.

        Random mode keys on the category, not on the drawn coin, so every
        concurrent caller converges on the same lock.
        """
        if self.mode == "exact":
            return f"{prefix}:payload:exact:{self.coin_id}:{self.chart_days}d"
        return f"{prefix}:payload:random:{self.category or 'all'}:{self.chart_days}d"


def dump_record(record: Record) -> str:
    """Serialize a record for storage."""
    return record.model_dump_json()


def load_record(model: type[Record], raw: str, key: Optional[str] = None) -> Record:
    """Deserialize a stored value, failing loudly on anything unexpected."""
    try:
        return model.model_validate_json(raw)
    except ValidationError as e:
        raise CorruptCacheEntry(
            f"Stored value is not a valid {model.__name__}: {e.error_count()} error(s)",
            key,
        ) from e
