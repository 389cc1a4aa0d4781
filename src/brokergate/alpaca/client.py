"""
REST client for the Alpaca trading and market data APIs.

Every call is one scheduler operation:
- The operation performs exactly one HTTP request
- Non-2xx responses raise BrokerageHTTPError with status and Retry-After,
  which the scheduler classifies (429 -> throttle, anything else -> generic)
- Retries, rate gates and caching belong to the scheduler, not this client
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import aiohttp
import orjson

from brokergate.alpaca.types import AlpacaConfig
from brokergate.scheduler.errors import BrokerageHTTPError
from brokergate.scheduler.types import Priority

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from brokergate.scheduler.scheduler import RequestScheduler

logger = logging.getLogger(__name__)

ACCOUNT_CACHE_KEY = "alpaca:account"
POSITIONS_CACHE_KEY = "alpaca:positions"


def parse_retry_after(value: str | None) -> int | None:
    """
    Parse a Retry-After header given in seconds.

    Returns:
        Delay in milliseconds, or None if absent or not numeric
        (HTTP-date values fall back to computed backoff).
    """
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return int(seconds * 1000)


def _error_message(text: str) -> str:
    """Pull the provider's message out of an error body."""
    try:
        data = orjson.loads(text)
    except orjson.JSONDecodeError:
        return text[:200]
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return text[:200]


class AlpacaRestClient:
    """
    Async Alpaca client whose calls all go through a RequestScheduler.

    Usage:
        scheduler = RequestScheduler()
        client = AlpacaRestClient(scheduler, AlpacaConfig.from_env())
        account = await client.get_account()
        await client.close()
    """

    def __init__(
        self,
        scheduler: RequestScheduler,
        config: AlpacaConfig | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            scheduler: Scheduler that gates every call.
            config: Connector configuration (read from APCA_* env vars if None).
        """
        self._scheduler = scheduler
        self._config = config or AlpacaConfig.from_env()
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_ms / 1000)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers=self._config.auth_headers(),
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def _operation(
        self,
        method: str,
        url: str,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Callable[[], Awaitable[Any]]:
        """Build the zero-arg operation performing one HTTP request."""

        async def operation() -> Any:
            session = await self._get_session()
            async with session.request(method, url, params=params, json=json_body) as response:
                if response.status >= 400:
                    text = await response.text()
                    retry_after_ms = parse_retry_after(response.headers.get("Retry-After"))
                    logger.warning(
                        "Alpaca HTTP error",
                        extra={
                            "status": response.status,
                            "url": url,
                            "retry_after_ms": retry_after_ms,
                        },
                    )
                    raise BrokerageHTTPError(
                        f"Alpaca API error {response.status}: {_error_message(text)}",
                        status=response.status,
                        retry_after_ms=retry_after_ms,
                        body=text[:500],
                    )

                if response.status == 204:
                    return {}
                text = await response.text()
                if not text or not text.strip():
                    return {}
                return orjson.loads(text)

        return operation

    async def _call(
        self,
        method: str,
        endpoint: str,
        *,
        priority: Priority,
        data_api: bool = False,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
        cache_key: str | None = None,
    ) -> Any:
        base = self._config.data_base_url if data_api else self._config.trading_base_url
        url = f"{base}{endpoint}"
        ttl = self._config.account_cache_ttl_ms if cache_key is not None else None
        return await self._scheduler.schedule(
            endpoint,
            self._operation(method, url, params, json_body),
            priority,
            cache_key=cache_key,
            cache_ttl_ms=ttl,
        )

    def _invalidate_account_state(self) -> None:
        """Drop cached account/positions after a write changes them."""
        self._scheduler.cache.invalidate(ACCOUNT_CACHE_KEY)
        self._scheduler.cache.invalidate(POSITIONS_CACHE_KEY)

    # ============ ACCOUNT ============

    async def get_account(self) -> dict[str, Any]:
        """Get account information (cached briefly)."""
        return await self._call(
            "GET", "/v2/account", priority=Priority.HIGH, cache_key=ACCOUNT_CACHE_KEY
        )

    async def get_activities(self, **params: str) -> list[dict[str, Any]]:
        """Get account activities (activity_types, date, after, until, direction, page_size)."""
        return await self._call(
            "GET", "/v2/account/activities", priority=Priority.NORMAL, params=params or None
        )

    async def get_portfolio_history(self, **params: str) -> dict[str, Any]:
        """Get portfolio equity history (period, timeframe, date_end, extended_hours)."""
        return await self._call(
            "GET",
            "/v2/account/portfolio/history",
            priority=Priority.NORMAL,
            params=params or None,
        )

    # ============ ORDERS ============

    async def get_orders(self, **params: str) -> list[dict[str, Any]]:
        """List orders (status, limit, after, until, direction, symbols)."""
        return await self._call("GET", "/v2/orders", priority=Priority.NORMAL, params=params or None)

    async def get_order(self, order_id: str) -> dict[str, Any]:
        """Get one order by id."""
        return await self._call("GET", f"/v2/orders/{quote(order_id)}", priority=Priority.NORMAL)

    async def submit_order(self, order: dict[str, Any]) -> dict[str, Any]:
        """
        Submit an order.

        The order body is passed through unchanged; validation is the
        provider's job.
        """
        result = await self._call("POST", "/v2/orders", priority=Priority.HIGH, json_body=order)
        self._invalidate_account_state()
        return result

    async def cancel_order(self, order_id: str) -> dict[str, Any]:
        """Cancel one order."""
        result = await self._call(
            "DELETE", f"/v2/orders/{quote(order_id)}", priority=Priority.HIGH
        )
        self._invalidate_account_state()
        return result

    async def cancel_all_orders(self) -> Any:
        """Cancel every open order."""
        result = await self._call("DELETE", "/v2/orders", priority=Priority.HIGH)
        self._invalidate_account_state()
        return result

    # ============ POSITIONS ============

    async def get_positions(self) -> list[dict[str, Any]]:
        """List open positions (cached briefly)."""
        return await self._call(
            "GET", "/v2/positions", priority=Priority.NORMAL, cache_key=POSITIONS_CACHE_KEY
        )

    async def get_position(self, symbol: str) -> dict[str, Any]:
        """Get the open position for one symbol."""
        return await self._call("GET", f"/v2/positions/{quote(symbol)}", priority=Priority.NORMAL)

    async def close_position(
        self,
        symbol: str,
        qty: str | None = None,
        percentage: str | None = None,
    ) -> dict[str, Any]:
        """Close (part of) a position."""
        params: dict[str, str] = {}
        if qty is not None:
            params["qty"] = qty
        if percentage is not None:
            params["percentage"] = percentage
        result = await self._call(
            "DELETE",
            f"/v2/positions/{quote(symbol)}",
            priority=Priority.HIGH,
            params=params or None,
        )
        self._invalidate_account_state()
        return result

    async def close_all_positions(self, cancel_orders: bool = False) -> Any:
        """Liquidate every position."""
        result = await self._call(
            "DELETE",
            "/v2/positions",
            priority=Priority.HIGH,
            params={"cancel_orders": "true" if cancel_orders else "false"},
        )
        self._invalidate_account_state()
        return result

    # ============ MARKET ============

    async def get_clock(self) -> dict[str, Any]:
        """Get market clock."""
        return await self._call("GET", "/v2/clock", priority=Priority.NORMAL)

    async def get_calendar(self, start: str | None = None, end: str | None = None) -> Any:
        """Get market calendar between optional start/end dates (YYYY-MM-DD)."""
        params = {k: v for k, v in (("start", start), ("end", end)) if v is not None}
        return await self._call(
            "GET", "/v2/calendar", priority=Priority.NORMAL, params=params or None
        )

    async def get_latest_quote(self, symbol: str) -> dict[str, Any]:
        """Latest NBBO quote for a stock."""
        return await self._call(
            "GET",
            f"/v2/stocks/{quote(symbol)}/quotes/latest",
            priority=Priority.NORMAL,
            data_api=True,
        )

    async def get_latest_trade(self, symbol: str) -> dict[str, Any]:
        """Latest trade for a stock."""
        return await self._call(
            "GET",
            f"/v2/stocks/{quote(symbol)}/trades/latest",
            priority=Priority.NORMAL,
            data_api=True,
        )

    async def get_crypto_quote(self, symbol: str) -> dict[str, Any]:
        """Latest quote for a crypto pair (e.g. BTC/USD)."""
        return await self._call(
            "GET",
            "/v1beta3/crypto/us/latest/quotes",
            priority=Priority.NORMAL,
            data_api=True,
            params={"symbols": symbol},
        )
