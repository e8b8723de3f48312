"""
Polymarket channel clients built on the resilient connection core.
"""

from .clob import (
    ClobAuth,
    ClobClient,
    ClobMarketClient,
    ClobUserClient,
    DEFAULT_CLOB_MARKET_URL,
    DEFAULT_CLOB_USER_URL,
)

from .rtds import (
    RtdsClient,
    RtdsClobAuth,
    RtdsGammaAuth,
    RtdsSubscription,
    DEFAULT_RTDS_URL,
)

__all__ = [
    # CLOB
    "ClobAuth",
    "ClobClient",
    "ClobMarketClient",
    "ClobUserClient",
    "DEFAULT_CLOB_MARKET_URL",
    "DEFAULT_CLOB_USER_URL",

    # RTDS
    "RtdsClient",
    "RtdsClobAuth",
    "RtdsGammaAuth",
    "RtdsSubscription",
    "DEFAULT_RTDS_URL",
]
