import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from chains import ChainProfile
from models import FilterConfiguration, FilterOutcome, RiskRecord, TradingPair

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FilterSettings:
    """
    Owner of the live FilterConfiguration.

    Updates build a new validated object and swap it in; readers always see
    either the old or the new configuration, never a mix.
    """

    def __init__(self, config: Optional[FilterConfiguration] = None):
        self._config = config or FilterConfiguration()

    @property
    def current(self) -> FilterConfiguration:
        return self._config

    def update(self, partial: Dict[str, Any]) -> FilterConfiguration:
        new_config = self._config.merged(partial)
        self._config = new_config
        logger.info("Filter configuration updated: %s", sorted(partial))
        return new_config


# ---------------------------------------------------------
# Estimates
# ---------------------------------------------------------
def estimate_net_traders(volume_24h: float, divisor: float) -> int:
    """
    Approximate trader count as floor(volume / divisor).

    This is a proxy for trade count when no trade feed is available, not a
    measurement. The divisor is configuration (NET_TRADER_DIVISOR).
    """
    return int(math.floor(volume_24h / divisor))


def estimate_market_cap(liquidity_usd: float, multiplier: float) -> float:
    """
    Rough market cap assuming pool liquidity is a roughly constant fraction
    of it (multiplier 20 = liquidity at 5% of market cap).
    """
    return liquidity_usd * multiplier


def native_liquidity(pair: TradingPair, profile: Optional[ChainProfile]) -> Optional[float]:
    """
    Pool reserve in the chain's numéraire, when the pair is quoted in it.
    None when not tracked for this pair.
    """
    if profile is None:
        return None
    if profile.is_numeraire(pair.quote_token.address, pair.quote_token.symbol):
        return pair.liquidity.quote
    if profile.is_numeraire(pair.base_token.address, pair.base_token.symbol):
        return pair.liquidity.base
    return None


def _fail(stage: str, reason: str) -> FilterOutcome:
    return FilterOutcome(passed=False, reason=reason, filters=[stage])


def _usd(value: float) -> str:
    return f"${value:,.2f}"


class TokenFilter:
    """
    Decides whether a discovered pair is worth keeping.

    Stages run in a fixed order and the first failing stage ends the
    evaluation. A stage whose bound is unset (None) is skipped.
    """

    def __init__(
        self,
        settings: FilterSettings,
        profiles: Mapping[str, ChainProfile],
        clock: Callable[[], datetime] = utcnow,
        net_trader_divisor: float = 50.0,
        market_cap_multiplier: float = 20.0,
    ):
        if net_trader_divisor <= 0:
            raise ValueError("net_trader_divisor must be positive")
        self.settings = settings
        self.profiles = profiles
        self.clock = clock
        self.net_trader_divisor = net_trader_divisor
        self.market_cap_multiplier = market_cap_multiplier

    @property
    def config(self) -> FilterConfiguration:
        return self.settings.current

    def filter(self, pair: Optional[TradingPair], risk: RiskRecord) -> FilterOutcome:
        cfg = self.config

        # 1. Structural validation
        if pair is None or not pair.pair_address:
            return _fail("validation", "Invalid pair data")

        # 2. Chain
        chain_id = (pair.chain_id or "").lower()
        if cfg.allowed_chains and chain_id not in cfg.allowed_chains:
            return _fail("chain", f"Chain not allowed: {pair.chain_id} (allowed: {', '.join(cfg.allowed_chains)})")
        profile = self.profiles.get(chain_id)

        # 3. Age
        now = self.clock()
        created = pair.pair_created_at or now
        age_seconds = (now - created).total_seconds()
        age_hours = age_seconds / 3600.0
        age_minutes = age_seconds / 60.0

        if cfg.min_token_age_minutes is not None and age_minutes < cfg.min_token_age_minutes:
            return _fail(
                "age_min",
                f"Token too new: {age_minutes:.1f} minutes (min: {cfg.min_token_age_minutes})",
            )
        if cfg.max_token_age_hours is not None and age_hours > cfg.max_token_age_hours:
            return _fail(
                "age_max",
                f"Token too old: {age_hours:.1f} hours (max: {cfg.max_token_age_hours})",
            )

        # 4. DEX lists
        dex_id = (pair.dex_id or "").lower()
        if dex_id in cfg.blocked_dexs:
            return _fail("dex_blocked", f"DEX blocked: {pair.dex_id}")
        if cfg.allowed_dexs and dex_id not in cfg.allowed_dexs:
            return _fail(
                "dex_allowed",
                f"DEX not allowed: {pair.dex_id} (allowed: {', '.join(cfg.allowed_dexs)})",
            )

        # 5. Volume
        volume_24h = pair.volume.h24
        if cfg.min_volume_24h is not None and volume_24h < cfg.min_volume_24h:
            return _fail(
                "volume_min",
                f"Volume too low: {_usd(volume_24h)} (min: {_usd(cfg.min_volume_24h)})",
            )
        if cfg.max_volume_24h is not None and volume_24h > cfg.max_volume_24h:
            return _fail(
                "volume_max",
                f"Volume too high: {_usd(volume_24h)} (max: {_usd(cfg.max_volume_24h)})",
            )

        # 6. Liquidity
        liquidity_usd = pair.liquidity.usd
        if cfg.min_liquidity is not None and liquidity_usd < cfg.min_liquidity:
            return _fail(
                "liquidity_min",
                f"Liquidity too low: {_usd(liquidity_usd)} (min: {_usd(cfg.min_liquidity)})",
            )
        if cfg.max_liquidity is not None and liquidity_usd > cfg.max_liquidity:
            return _fail(
                "liquidity_max",
                f"Liquidity too high: {_usd(liquidity_usd)} (max: {_usd(cfg.max_liquidity)})",
            )

        pool_native = native_liquidity(pair, profile)
        if (
            cfg.min_native_liquidity is not None
            and pool_native is not None
            and pool_native < cfg.min_native_liquidity
        ):
            symbol = profile.native_symbols[0]
            return _fail(
                "native_liquidity",
                f"{symbol} liquidity too low: {pool_native:.2f} {symbol} (min: {cfg.min_native_liquidity})",
            )

        # 7. Price change
        price_change = pair.price_change.h24
        if cfg.max_price_change_24h is not None and price_change > cfg.max_price_change_24h:
            return _fail(
                "price_change_max",
                f"Price pump too high: {price_change:.2f}% (max: {cfg.max_price_change_24h}%)",
            )
        if cfg.min_price_change_24h is not None and price_change < cfg.min_price_change_24h:
            return _fail(
                "price_change_min",
                f"Price dump too low: {price_change:.2f}% (min: {cfg.min_price_change_24h}%)",
            )

        # 8. Holders
        holders = risk.holders
        if cfg.min_holders is not None and holders.count < cfg.min_holders:
            return _fail("holders_min", f"Not enough holders: {holders.count} (min: {cfg.min_holders})")
        if cfg.max_top_holder_percentage is not None and holders.top_percentage > cfg.max_top_holder_percentage:
            return _fail(
                "holder_concentration",
                f"Top holder owns too much: {holders.top_percentage:.2f}% (max: {cfg.max_top_holder_percentage}%)",
            )

        # 9. Risk score
        if cfg.max_rug_score is not None and risk.score > cfg.max_rug_score:
            return _fail("rug_score", f"Rug score too high: {risk.score:g}/10 (max: {cfg.max_rug_score:g})")

        # 10. Blocked risk tags
        blocked = [tag for tag in risk.tags if tag in cfg.blocked_risk_types]
        if blocked:
            return _fail("risk_types", f"Blocked risk types: {', '.join(blocked)}")

        # 11. Estimated traders
        net_traders = estimate_net_traders(volume_24h, self.net_trader_divisor)
        if cfg.min_net_traders is not None and net_traders < cfg.min_net_traders:
            return _fail(
                "net_traders",
                f"Not enough estimated traders: {net_traders} (min: {cfg.min_net_traders})",
            )

        # 12. Market cap
        market_cap = estimate_market_cap(liquidity_usd, self.market_cap_multiplier)
        if cfg.min_market_cap_usd is not None and market_cap < cfg.min_market_cap_usd:
            return _fail(
                "market_cap_min",
                f"Market cap too low: ~{_usd(market_cap)} (min: {_usd(cfg.min_market_cap_usd)})",
            )
        if cfg.max_market_cap_usd is not None and market_cap > cfg.max_market_cap_usd:
            return _fail(
                "market_cap_max",
                f"Market cap too high: ~{_usd(market_cap)} (max: {_usd(cfg.max_market_cap_usd)})",
            )

        # 13. Authorities
        if profile is not None and profile.authority_checks:
            if risk.freeze_authority:
                return _fail("freeze_authority", f"Token has freeze authority: {risk.freeze_authority}")
            if risk.mint_authority:
                return _fail("mint_authority", f"Token has mint authority: {risk.mint_authority}")

        return FilterOutcome(
            passed=True,
            holder_data=holders,
            net_traders=net_traders,
            rug_score=risk.score,
            risks=list(risk.tags),
            native_liquidity=pool_native,
            estimated_market_cap=market_cap,
        )

    def stats(self) -> Dict[str, Any]:
        cfg = self.config
        return {
            "config": cfg.model_dump(),
            "chains": sorted(self.profiles),
            "estimation": {
                "net_trader_divisor": self.net_trader_divisor,
                "market_cap_multiplier": self.market_cap_multiplier,
            },
            "summary": {
                "minHolders": cfg.min_holders,
                "maxTopHolder": None if cfg.max_top_holder_percentage is None else f"{cfg.max_top_holder_percentage:g}%",
                "minVolume": None if cfg.min_volume_24h is None else _usd(cfg.min_volume_24h),
                "minLiquidity": None if cfg.min_liquidity is None else _usd(cfg.min_liquidity),
                "maxTokenAge": None if cfg.max_token_age_hours is None else f"{cfg.max_token_age_hours:g}h",
                "maxRugScore": cfg.max_rug_score,
                "allowedDEXs": cfg.allowed_dexs,
            },
        }
