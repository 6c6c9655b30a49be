import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx
from pydantic import ValidationError

from chains import ChainProfile
from errors import FetchError
from models import TradingPair
from ratelimit import RateLimiter
from retry import RetryPolicy, retry

logger = logging.getLogger(__name__)

USER_AGENT = "token-monitor/1.0.0"


def api_headers(api_key: Optional[str]) -> Dict[str, str]:
    headers: Dict[str, str] = {
        "User-Agent": USER_AGENT,
        "Accept": "application/json",
    }
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def parse_pairs(data: Any) -> List[TradingPair]:
    """
    Turn a DexScreener `/latest/dex/pairs/...` payload into TradingPair
    objects.

    A missing or null `pairs` key means "no data" and yields an empty list.
    A payload that is not a JSON object is a server failure (FetchError).
    Individual malformed pairs are logged and dropped.
    """
    if not isinstance(data, dict):
        raise FetchError("Unexpected top-level JSON type from pair endpoint (expected object)")

    raw_pairs = data.get("pairs")
    if raw_pairs is None:
        return []
    if not isinstance(raw_pairs, list):
        raise FetchError("'pairs' is not a list in pair endpoint response")

    pairs: List[TradingPair] = []
    for raw in raw_pairs:
        try:
            pairs.append(TradingPair.model_validate(raw))
        except ValidationError as e:
            address = raw.get("pairAddress", "N/A") if isinstance(raw, dict) else "N/A"
            logger.warning("Skipping malformed pair %s: %s", address, e.errors()[:1])
    return pairs


class DexScreenerClient:
    """
    Rate-limited, retried client for newly listed pairs.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        limiter: RateLimiter,
        policy: RetryPolicy,
        base_url: str = "https://api.dexscreener.com",
        api_key: Optional[str] = None,
    ):
        self.http = http
        self.limiter = limiter
        self.policy = policy
        self.base_url = base_url.rstrip("/")
        self.headers = api_headers(api_key)

    def pairs_url(self, chain: Optional[str] = None) -> str:
        if chain:
            return f"{self.base_url}/latest/dex/pairs/{chain}"
        return f"{self.base_url}/latest/dex/pairs"

    async def _get_json(self, url: str) -> Any:
        await self.limiter.acquire()
        resp = await self.http.get(url, headers=self.headers)
        if resp.status_code == 429:
            logger.warning("DexScreener rate limit hit - consider increasing delays")
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError as e:
            raise FetchError(f"Malformed JSON from DexScreener: {e}") from e

    async def fetch(self, chain: Optional[str] = None) -> List[TradingPair]:
        """
        Fetch the latest pairs, optionally for one chain.
        Raises (RetriesExhaustedError / FetchError) only on real failures.
        """
        url = self.pairs_url(chain)
        data = await retry(
            lambda: self._get_json(url),
            self.policy,
            description=f"DexScreener GET {url}",
        )
        pairs = parse_pairs(data)
        logger.debug("Fetched %d pairs from %s", len(pairs), url)
        return pairs


def prioritize_pairs(
    pairs: Iterable[TradingPair],
    profiles: Mapping[str, ChainProfile],
    limit: Optional[int] = None,
) -> List[TradingPair]:
    """
    Order candidates by the chain's DEX priority, then by 24h volume
    (highest first), and keep at most `limit` of them.
    """

    def sort_key(pair: TradingPair):
        profile = profiles.get((pair.chain_id or "").lower())
        rank = profile.dex_rank(pair.dex_id) if profile else float("inf")
        return (rank, -pair.volume.h24)

    ordered = sorted(pairs, key=sort_key)
    if limit is not None:
        ordered = ordered[:limit]
    return ordered
