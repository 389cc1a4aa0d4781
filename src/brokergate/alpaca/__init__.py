"""
Alpaca brokerage REST connector.

Every call is routed through a RequestScheduler:
- Order writes and account reads run at high priority
- Account and positions reads are cached briefly to absorb dashboard polling
- 429 / Retry-After responses surface as BrokerageHTTPError for throttle backoff
"""

from brokergate.alpaca.client import AlpacaRestClient
from brokergate.alpaca.types import AlpacaConfig, TradingMode

__all__ = [
    "AlpacaConfig",
    "AlpacaRestClient",
    "TradingMode",
]
