import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Mapping, Optional, Sequence

from analyzer import RiskAssessor
from chains import ChainProfile
from collector import DexScreenerClient, prioritize_pairs
from filters import TokenFilter, utcnow
from models import AlertPayload, CycleResult, FilterOutcome, StoredToken, TradingPair
from notifier import AlertCriteria
from store import TokenRepository

logger = logging.getLogger(__name__)


class IngestionCycle:
    """
    One polling pass: fetch -> prioritise -> per pair (freshness check,
    risk lookup, filter, upsert, alert).

    Pairs are handled one at a time. A failure on one pair is logged and
    counted; it never aborts the rest of the cycle.
    """

    def __init__(
        self,
        fetcher: DexScreenerClient,
        assessor: RiskAssessor,
        token_filter: TokenFilter,
        repository: TokenRepository,
        notifier=None,
        alert_criteria: Optional[AlertCriteria] = None,
        chains: Sequence[str] = ("solana",),
        profiles: Optional[Mapping[str, ChainProfile]] = None,
        max_pairs: Optional[int] = 100,
        freshness_window: timedelta = timedelta(hours=1),
        request_delay: float = 0.2,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.assessor = assessor
        self.token_filter = token_filter
        self.repository = repository
        self.notifier = notifier
        self.alert_criteria = alert_criteria
        self.chains = list(chains)
        self.profiles = profiles if profiles is not None else token_filter.profiles
        self.max_pairs = max_pairs
        self.freshness_window = freshness_window
        self.request_delay = request_delay
        self.clock = clock
        self.sleep = sleep
        self._running = False
        self.last_result: Optional[CycleResult] = None
        self.last_run_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    async def _fetch_candidates(self) -> List[TradingPair]:
        pairs: List[TradingPair] = []
        for chain in self.chains or [None]:
            try:
                fetched = await self.fetcher.fetch(chain)
            except Exception as e:
                logger.error("Failed to fetch pairs for %s: %s", chain or "all chains", e)
                continue
            logger.info("Fetched %d pairs for %s", len(fetched), chain or "all chains")
            pairs.extend(fetched)
        return pairs

    def _is_fresh(self, existing: Optional[StoredToken], now: datetime) -> bool:
        if existing is None or existing.updated_at is None:
            return False
        return now - existing.updated_at < self.freshness_window

    async def run(self) -> CycleResult:
        if self._running:
            logger.warning("Ingestion cycle already in progress, skipping")
            return CycleResult(overlapped=True)

        self._running = True
        try:
            result = await self._run()
        finally:
            self._running = False

        self.last_result = result
        self.last_run_at = self.clock()
        logger.info(
            "Cycle complete: processed=%d saved=%d filtered=%d skipped=%d errors=%d alerts=%d",
            result.processed,
            result.saved,
            result.filtered,
            result.skipped,
            result.errors,
            result.alerts,
        )
        return result

    async def _run(self) -> CycleResult:
        result = CycleResult()

        candidates = await self._fetch_candidates()
        if not candidates:
            logger.info("No new pairs found")
            return result

        candidates = prioritize_pairs(candidates, self.profiles, self.max_pairs)
        logger.info("Processing %d candidate pairs", len(candidates))

        assessed = 0
        for pair in candidates:
            result.processed += 1
            try:
                existing = await self.repository.find_by_pair_address(pair.pair_address)
                if self._is_fresh(existing, self.clock()):
                    logger.debug("Skipping %s: updated recently", pair.pair_address)
                    result.skipped += 1
                    continue

                if assessed and self.request_delay > 0:
                    await self.sleep(self.request_delay)
                assessed += 1

                risk = await self.assessor.assess(pair.base_token.address, pair.chain_id)
                outcome = self.token_filter.filter(pair, risk)

                if not outcome.passed:
                    logger.debug("Filtered %s (%s): %s", pair.label, pair.pair_address, outcome.reason)
                    result.filtered += 1
                    continue

                stored = await self.repository.upsert(
                    StoredToken.from_pipeline(pair, risk, outcome),
                    now=self.clock(),
                )
                result.saved += 1
                logger.info("Saved %s on %s/%s", pair.label, stored.chain_id, stored.dex_id)

                if await self._alert(pair, outcome):
                    result.alerts += 1
            except Exception as e:
                result.errors += 1
                logger.error("Error processing pair %s: %s", pair.pair_address, e)

        return result

    async def _alert(self, pair: TradingPair, outcome: FilterOutcome) -> bool:
        if self.notifier is None or self.alert_criteria is None:
            return False
        if not self.alert_criteria.is_eligible(outcome, pair):
            return False

        payload = AlertPayload(
            pair_address=pair.pair_address,
            chain_id=pair.chain_id,
            dex_id=pair.dex_id,
            symbol=pair.base_token.symbol,
            name=pair.base_token.name,
            price_usd=pair.price_usd,
            volume_24h=pair.volume.h24,
            liquidity_usd=pair.liquidity.usd,
            holders_count=outcome.holder_data.count if outcome.holder_data else 0,
            rug_score=outcome.rug_score or 0.0,
            risks=outcome.risks,
            url=pair.url,
            detected_at=self.clock(),
        )
        try:
            delivered = await self.notifier.notify(payload)
        except Exception as e:
            logger.warning("Notification failed for %s: %s", pair.pair_address, e)
            return False
        if not delivered:
            logger.warning("Notification not delivered for %s", pair.pair_address)
        return bool(delivered)
