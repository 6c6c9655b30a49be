from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from models import HolderSummary, RiskRecord, TradingPair

WSOL = "So11111111111111111111111111111111111111112"
NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def raw_pair(
    pair_address: str = "PAIR1",
    created: Optional[datetime] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    """
    A DexScreener-shaped pair that passes the default filter configuration.
    """
    raw = {
        "chainId": "solana",
        "dexId": "raydium",
        "url": f"https://dexscreener.com/solana/{pair_address}",
        "pairAddress": pair_address,
        "baseToken": {"address": f"TOKEN_{pair_address}", "name": "Test Token", "symbol": "TEST"},
        "quoteToken": {"address": WSOL, "name": "Wrapped SOL", "symbol": "SOL"},
        "priceNative": "0.0001",
        "priceUsd": "0.02",
        "volume": {"h24": 5000, "h6": 1200, "h1": 300, "m5": 20},
        "priceChange": {"h24": 12.5, "h6": 3.1, "h1": -0.5, "m5": 0.1},
        "liquidity": {"usd": 10000, "base": 250000, "quote": 50},
        "pairCreatedAt": epoch_ms(created or NOW - timedelta(hours=2)),
    }
    raw.update(overrides)
    return raw


def make_pair(pair_address: str = "PAIR1", created: Optional[datetime] = None, **overrides: Any) -> TradingPair:
    return TradingPair.model_validate(raw_pair(pair_address, created, **overrides))


def make_risk(token_address: str = "TOKEN_PAIR1", **overrides: Any) -> RiskRecord:
    fields = {
        "token_address": token_address,
        "score": 2.0,
        "tags": [],
        "holders": HolderSummary(count=200, top_percentage=12.0),
    }
    fields.update(overrides)
    return RiskRecord(**fields)


def rugcheck_report(score: float = 2.0, **overrides: Any) -> Dict[str, Any]:
    report = {
        "score": score,
        "risks": [],
        "topHolders": [
            {"address": "HolderA", "amount": 100, "pct": 10.0},
            {"address": "HolderB", "amount": 50, "pct": 5.0},
        ],
        "totalHolders": 250,
        "token": {"supply": 1000},
        "freezeAuthority": None,
        "mintAuthority": None,
    }
    report.update(overrides)
    return report


class CountingLimiter:
    """
    Stands in for RateLimiter and records every acquire() call.
    """

    def __init__(self):
        self.calls = 0

    async def acquire(self) -> None:
        self.calls += 1
