"""
Failure taxonomy for payload refresh.

Every failure that can leave the refresh coordinator is one of these, so
callers can tell "try again later" apart from "upstream is broken".
"""

from typing import Optional


class CoinframeError(Exception):
    """Base exception for coinframe errors."""
    def __init__(self, message: str, key: Optional[str] = None):
        self.message = message
        self.key = key
        super().__init__(message)

    def __str__(self) -> str:
        # key may be filled in after construction
        return f"[{self.key}] {self.message}" if self.key else self.message


class StoreUnavailable(CoinframeError):
    """Raised when the key-value store cannot be reached."""
    pass


class CorruptCacheEntry(CoinframeError):
    """Raised when a stored value does not deserialize into its record type."""
    pass


class UpstreamFetchFailed(CoinframeError):
    """Raised when CoinGecko fails or returns malformed data."""
    def __init__(self, message: str, key: Optional[str] = None, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, key)


class UpstreamRateLimited(UpstreamFetchFailed):
    """Raised when CoinGecko answers 429."""
    pass


class RenderFailed(CoinframeError):
    """Raised when the share card cannot be rendered."""
    pass


class RefreshTimedOut(CoinframeError):
    """Raised when a waiting caller exhausts its poll budget."""
    def __init__(self, message: str, key: Optional[str] = None, waited: float = 0.0):
        self.waited = waited
        super().__init__(message, key)
