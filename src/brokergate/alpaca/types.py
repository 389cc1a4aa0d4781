"""
Configuration for the Alpaca REST connector.

Credentials come from APCA_API_KEY_ID / APCA_API_SECRET_KEY when not passed
explicitly. They are never logged.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum


class TradingMode(str, Enum):
    """Alpaca account environment."""

    PAPER = "paper"
    LIVE = "live"

TRADING_BASE_URLS: dict[TradingMode, str] = {
    TradingMode.PAPER: "https://paper-api.alpaca.markets",
    TradingMode.LIVE: "https://api.alpaca.markets",
}
DATA_BASE_URL = "https://data.alpaca.markets"

@dataclass
class AlpacaConfig:
    """
    Alpaca connector configuration.

    Attributes:
        api_key_id: API key id (APCA_API_KEY_ID).
        api_secret_key: API secret (APCA_API_SECRET_KEY).
        mode: Paper or live trading endpoint (APCA_TRADING_MODE).
        data_base_url: Market data API base URL.
        request_timeout_ms: Total timeout per HTTP call.
        account_cache_ttl_ms: Cache TTL for account/positions reads.
    """

    api_key_id: str = ""
    api_secret_key: str = field(default="", repr=False)
    mode: TradingMode = TradingMode.PAPER
    data_base_url: str = DATA_BASE_URL
    request_timeout_ms: int = 10000
    account_cache_ttl_ms: int = 5000

    def __post_init__(self) -> None:
        if not self.api_key_id:
            self.api_key_id = os.environ.get("APCA_API_KEY_ID", "")
        if not self.api_secret_key:
            self.api_secret_key = os.environ.get("APCA_API_SECRET_KEY", "")
        if not self.api_key_id or not self.api_secret_key:
            raise ValueError(
                "Missing Alpaca API credentials. Check APCA_API_KEY_ID and APCA_API_SECRET_KEY"
            )
        if isinstance(self.mode, str) and not isinstance(self.mode, TradingMode):
            try:
                self.mode = TradingMode(self.mode.lower())
            except ValueError:
                msg = f"mode must be 'paper' or 'live', got {self.mode!r}"
                raise ValueError(msg) from None
        if self.request_timeout_ms <= 0:
            raise ValueError(f"request_timeout_ms must be > 0, got {self.request_timeout_ms}")
        if self.account_cache_ttl_ms < 0:
            raise ValueError(
                f"account_cache_ttl_ms must be >= 0, got {self.account_cache_ttl_ms}"
            )

    @classmethod
    def from_env(cls) -> AlpacaConfig:
        """Build config from APCA_* environment variables."""
        return cls(mode=TradingMode(os.environ.get("APCA_TRADING_MODE", "paper").lower()))

    @property
    def trading_base_url(self) -> str:
        """Trading API base URL for the configured mode."""
        return TRADING_BASE_URLS[self.mode]

    def auth_headers(self) -> dict[str, str]:
        """Authentication headers for every request."""
        return {
            "APCA-API-KEY-ID": self.api_key_id,
            "APCA-API-SECRET-KEY": self.api_secret_key,
        }
