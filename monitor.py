import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx

from analyzer import RiskAssessor, RugCheckClient
from chains import CHAIN_PROFILES, chains_by_priority
from collector import DexScreenerClient
from config import AppSettings
from errors import ConfigurationError
from filters import FilterSettings, TokenFilter, utcnow
from ingestion import IngestionCycle
from models import CycleResult, FilterConfiguration, StoredToken
from notifier import AlertCriteria, LogNotifier, WebhookNotifier
from ratelimit import RateLimiter
from retry import RetryPolicy
from scheduler import Scheduler
from store import Database, TokenRepository

logger = logging.getLogger(__name__)


class TokenMonitor:
    """
    Wires the ingestion pipeline together and exposes the operations the
    HTTP layer (or any other caller) needs.

    `transport` replaces the network for every outbound HTTP client.
    """

    def __init__(
        self,
        settings: AppSettings,
        database: Optional[Database] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.database = database or Database(settings.database_url)
        self.repository = TokenRepository(self.database)

        self._dex_http = httpx.AsyncClient(timeout=httpx.Timeout(settings.dexscreener_timeout), transport=transport)
        self._rug_http = httpx.AsyncClient(timeout=httpx.Timeout(settings.rugcheck_timeout), transport=transport)

        policy = RetryPolicy(
            max_attempts=settings.max_retries,
            base_delay=settings.retry_delay_ms / 1000.0,
        )
        self.fetcher = DexScreenerClient(
            self._dex_http,
            RateLimiter(
                settings.dexscreener_rate_limit,
                settings.dexscreener_rate_interval_ms / 1000.0,
                name="DexScreener",
            ),
            policy,
            base_url=settings.dexscreener_url,
            api_key=settings.dexscreener_api_key,
        )
        self.assessor = RiskAssessor(
            RugCheckClient(
                self._rug_http,
                RateLimiter(
                    settings.rugcheck_rate_limit,
                    settings.rugcheck_rate_interval_ms / 1000.0,
                    name="RugCheck",
                ),
                policy,
                base_url=settings.rugcheck_url,
                api_key=settings.rugcheck_api_key,
            ),
            default_score=settings.default_risk_score,
        )

        self.profiles = {c: CHAIN_PROFILES[c] for c in settings.supported_chains if c in CHAIN_PROFILES}
        self.filter_settings = FilterSettings(FilterConfiguration(allowed_chains=settings.supported_chains))
        self.token_filter = TokenFilter(
            self.filter_settings,
            self.profiles,
            net_trader_divisor=settings.net_trader_divisor,
            market_cap_multiplier=settings.market_cap_multiplier,
        )

        if settings.webhook_url:
            self.notifier = WebhookNotifier(
                httpx.AsyncClient(timeout=httpx.Timeout(10.0), transport=transport),
                settings.webhook_url,
                settings.webhook_secret,
            )
        else:
            self.notifier = LogNotifier()

        self.cycle = IngestionCycle(
            fetcher=self.fetcher,
            assessor=self.assessor,
            token_filter=self.token_filter,
            repository=self.repository,
            notifier=self.notifier,
            alert_criteria=AlertCriteria(
                min_volume_24h=settings.alert_min_volume_24h,
                min_liquidity=settings.alert_min_liquidity,
                min_holders=settings.alert_min_holders,
                max_rug_score=settings.alert_max_rug_score,
            ),
            chains=chains_by_priority(settings.supported_chains),
            profiles=self.profiles,
            max_pairs=settings.max_tokens_per_scan,
            freshness_window=timedelta(minutes=settings.freshness_window_minutes),
            request_delay=settings.request_delay_ms / 1000.0,
        )
        self.scheduler = Scheduler(self.run_cycle)

    async def start(self) -> None:
        """
        Validate settings and create the schema. Does not start the scheduler.
        """
        errors = self.settings.validate_settings()
        if errors:
            for error in errors:
                logger.error("Configuration error: %s", error)
            raise ConfigurationError("; ".join(errors))

        await self.database.create_schema()
        logger.info(
            "Token monitor ready (chains: %s, database: %s)",
            ", ".join(self.settings.supported_chains),
            self.database.dialect,
        )

    async def run_cycle(self) -> CycleResult:
        return await self.cycle.run()

    # ---------------------------------------------------------
    # Filter configuration
    # ---------------------------------------------------------
    def get_filter_configuration(self) -> FilterConfiguration:
        return self.filter_settings.current

    def update_filter_configuration(self, partial: Dict[str, Any]) -> FilterConfiguration:
        return self.filter_settings.update(partial)

    async def update_token_status(self, pair_address: str, status: str) -> Optional[StoredToken]:
        return await self.repository.update_status(pair_address, status)

    # ---------------------------------------------------------
    # Scheduling
    # ---------------------------------------------------------
    def start_scheduler(self, period_minutes: Optional[float] = None, run_immediately: bool = True) -> None:
        self.scheduler.start(period_minutes or self.settings.scan_interval_minutes, run_immediately)

    async def stop_scheduler(self) -> None:
        await self.scheduler.stop()

    async def health(self) -> Dict[str, Any]:
        database_ok = await self.database.ping()
        last = self.cycle.last_result
        return {
            "status": "healthy" if database_ok else "unhealthy",
            "timestamp": utcnow().isoformat(),
            "database": "connected" if database_ok else "disconnected",
            "scheduler": "running" if self.scheduler.running else "stopped",
            "cycle_in_progress": self.cycle.running,
            "last_cycle_at": self.cycle.last_run_at.isoformat() if self.cycle.last_run_at else None,
            "last_cycle": last.model_dump() if last else None,
            "chains": self.settings.supported_chains,
        }

    async def close(self) -> None:
        await self.stop_scheduler()
        await self._dex_http.aclose()
        await self._rug_http.aclose()
        await self.notifier.close()
        await self.database.close()
        logger.info("Token monitor stopped")
