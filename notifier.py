import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from collector import USER_AGENT
from models import AlertPayload, FilterOutcome, TradingPair

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertCriteria:
    """
    Stricter-than-filter thresholds a stored pair must meet to raise an alert.
    """

    min_volume_24h: float = 10_000.0
    min_liquidity: float = 20_000.0
    min_holders: int = 100
    max_rug_score: float = 3.0

    def is_eligible(self, outcome: FilterOutcome, pair: TradingPair) -> bool:
        if not outcome.passed:
            return False
        holders = outcome.holder_data.count if outcome.holder_data else 0
        score = outcome.rug_score if outcome.rug_score is not None else float("inf")
        return (
            pair.volume.h24 >= self.min_volume_24h
            and pair.liquidity.usd >= self.min_liquidity
            and holders >= self.min_holders
            and score <= self.max_rug_score
        )


class LogNotifier:
    """
    Fallback sink when no webhook is configured: alerts only go to the log.
    """

    async def notify(self, payload: AlertPayload) -> bool:
        logger.info(
            "ALERT | %s | %s/%s | vol=%.2f | liq=%.2f | holders=%d | rug=%s",
            payload.symbol or payload.pair_address,
            payload.chain_id,
            payload.dex_id,
            payload.volume_24h,
            payload.liquidity_usd,
            payload.holders_count,
            payload.rug_score,
        )
        return True

    async def close(self) -> None:
        return None


class WebhookNotifier:
    """
    POSTs each alert as JSON to a webhook. Best-effort: failures are logged
    and reported as False, never raised.
    """

    def __init__(self, http: httpx.AsyncClient, url: str, secret: Optional[str] = None):
        self.http = http
        self.url = url
        self.headers = {"User-Agent": USER_AGENT, "Content-Type": "application/json"}
        if secret:
            self.headers["X-Webhook-Secret"] = secret

    async def notify(self, payload: AlertPayload) -> bool:
        try:
            resp = await self.http.post(
                self.url,
                content=payload.model_dump_json(),
                headers=self.headers,
            )
            resp.raise_for_status()
        except Exception as e:
            logger.warning("Webhook notification failed for %s: %s", payload.pair_address, e)
            return False
        return True

    async def close(self) -> None:
        await self.http.aclose()
