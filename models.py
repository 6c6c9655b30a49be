from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from errors import ConfigurationError


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes (SQLite drops the offset on the way back).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------
# Upstream pair data (DexScreener)
# ---------------------------------------------------------
class TokenRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str = ""
    name: Optional[str] = None
    symbol: Optional[str] = None


class WindowStats(BaseModel):
    """
    A metric over the trailing 24h / 6h / 1h / 5m windows.
    """

    model_config = ConfigDict(frozen=True)

    h24: float = 0.0
    h6: float = 0.0
    h1: float = 0.0
    m5: float = 0.0

    @field_validator("h24", "h6", "h1", "m5", mode="before")
    @classmethod
    def _none_is_zero(cls, v: Any) -> Any:
        return 0.0 if v is None else v


class PairLiquidity(BaseModel):
    model_config = ConfigDict(frozen=True)

    usd: float = 0.0
    base: float = 0.0
    quote: float = 0.0

    @field_validator("usd", "base", "quote", mode="before")
    @classmethod
    def _none_is_zero(cls, v: Any) -> Any:
        return 0.0 if v is None else v


class TradingPair(BaseModel):
    """
    A newly listed pair as returned by the pair-fetch endpoint.
    Field aliases follow the DexScreener JSON.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    pair_address: str = Field(alias="pairAddress")
    chain_id: str = Field(alias="chainId")
    dex_id: str = Field("", alias="dexId")
    url: Optional[str] = None
    base_token: TokenRef = Field(default_factory=TokenRef, alias="baseToken")
    quote_token: TokenRef = Field(default_factory=TokenRef, alias="quoteToken")
    price_native: float = Field(0.0, alias="priceNative")
    price_usd: float = Field(0.0, alias="priceUsd")
    volume: WindowStats = Field(default_factory=WindowStats)
    price_change: WindowStats = Field(default_factory=WindowStats, alias="priceChange")
    liquidity: PairLiquidity = Field(default_factory=PairLiquidity)
    pair_created_at: Optional[datetime] = Field(None, alias="pairCreatedAt")

    @field_validator("price_native", "price_usd", mode="before")
    @classmethod
    def _price_none_is_zero(cls, v: Any) -> Any:
        return 0.0 if v is None else v

    @field_validator("volume", "price_change", "liquidity", mode="before")
    @classmethod
    def _missing_block(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("pair_created_at", mode="before")
    @classmethod
    def _epoch_ms(cls, v: Any) -> Any:
        # DexScreener reports creation time as epoch milliseconds
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return datetime.fromtimestamp(v / 1000.0, tz=timezone.utc)
        return v

    @field_validator("pair_created_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @property
    def label(self) -> str:
        return f"{self.base_token.symbol or '?'}/{self.quote_token.symbol or '?'}"


# ---------------------------------------------------------
# Risk assessment
# ---------------------------------------------------------
DATA_UNAVAILABLE = "data_unavailable"


class HolderEntry(BaseModel):
    address: str
    balance: float = 0.0
    percentage: float = 0.0
    classification: str = "holder"  # "holder" | "burn" | "program"


class HolderSummary(BaseModel):
    count: int = 0
    top_percentage: float = 100.0
    distribution: List[HolderEntry] = Field(default_factory=list)


class RiskRecord(BaseModel):
    """
    Normalised output of the reputation lookup for one token address.
    Higher score = riskier.
    """

    token_address: str
    score: float = 0.0
    tags: List[str] = Field(default_factory=list)
    holders: HolderSummary = Field(default_factory=HolderSummary)
    freeze_authority: Optional[str] = None
    mint_authority: Optional[str] = None
    update_authority: Optional[str] = None
    mutable: bool = False

    @classmethod
    def degraded(cls, token_address: str, default_score: float) -> "RiskRecord":
        return cls(
            token_address=token_address,
            score=default_score,
            tags=[DATA_UNAVAILABLE],
        )

    @property
    def is_degraded(self) -> bool:
        return DATA_UNAVAILABLE in self.tags


# ---------------------------------------------------------
# Filtering
# ---------------------------------------------------------
class FilterOutcome(BaseModel):
    passed: bool
    reason: Optional[str] = None
    filters: List[str] = Field(default_factory=list)

    # Derived quantities, set when the pair passes
    holder_data: Optional[HolderSummary] = None
    net_traders: Optional[int] = None
    rug_score: Optional[float] = None
    risks: List[str] = Field(default_factory=list)
    native_liquidity: Optional[float] = None
    estimated_market_cap: Optional[float] = None

    @property
    def stage(self) -> Optional[str]:
        return self.filters[-1] if self.filters else None


BOUND_PAIRS = (
    ("min_token_age_minutes", "max_token_age_hours"),
    ("min_volume_24h", "max_volume_24h"),
    ("min_liquidity", "max_liquidity"),
    ("min_price_change_24h", "max_price_change_24h"),
    ("min_market_cap_usd", "max_market_cap_usd"),
)


class FilterConfiguration(BaseModel):
    """
    Thresholds and allow/block lists used by TokenFilter.
    None means "no bound" and the corresponding stage is skipped.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    allowed_chains: Optional[Tuple[str, ...]] = None

    min_token_age_minutes: Optional[float] = Field(3, ge=0)
    max_token_age_hours: Optional[float] = Field(24, ge=0)

    allowed_dexs: Optional[Tuple[str, ...]] = None
    blocked_dexs: Tuple[str, ...] = ()

    min_volume_24h: Optional[float] = Field(10, ge=0)
    max_volume_24h: Optional[float] = Field(None, ge=0)

    min_liquidity: Optional[float] = Field(100, ge=0)
    max_liquidity: Optional[float] = Field(None, ge=0)
    min_native_liquidity: Optional[float] = Field(5, ge=0)

    min_price_change_24h: Optional[float] = None
    max_price_change_24h: Optional[float] = None

    min_holders: Optional[int] = Field(10, ge=0)
    max_top_holder_percentage: Optional[float] = Field(40, ge=0, le=100)

    max_rug_score: Optional[float] = Field(6, ge=0)
    blocked_risk_types: Tuple[str, ...] = ("honeypot", "mint_function", "proxy_contract", "freeze_authority")

    min_net_traders: Optional[int] = Field(5, ge=0)

    min_market_cap_usd: Optional[float] = Field(None, ge=0)
    max_market_cap_usd: Optional[float] = Field(None, ge=0)

    @field_validator("allowed_chains", "allowed_dexs", "blocked_dexs", "blocked_risk_types", mode="before")
    @classmethod
    def _lowercase_list(cls, v: Any) -> Any:
        if v is None:
            return v
        if isinstance(v, str):
            v = v.split(",")
        return tuple(str(s).strip().lower() for s in v if str(s).strip())

    @model_validator(mode="after")
    def _check_bounds(self) -> "FilterConfiguration":
        for low_name, high_name in BOUND_PAIRS:
            low = getattr(self, low_name)
            high = getattr(self, high_name)
            if low is None or high is None:
                continue
            # age bounds are expressed in different units
            if low_name == "min_token_age_minutes":
                high = high * 60
            if low > high:
                raise ValueError(f"{low_name} must not exceed {high_name}")
        return self

    def merged(self, partial: Dict[str, Any]) -> "FilterConfiguration":
        """
        Shallow merge: keys in `partial` replace current values, everything
        else is kept. Returns a new, validated configuration; raises
        ConfigurationError without touching self.
        """
        unknown = sorted(set(partial) - set(type(self).model_fields))
        if unknown:
            raise ConfigurationError(f"Unknown filter settings: {', '.join(unknown)}")
        try:
            return type(self).model_validate({**self.model_dump(), **partial})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid filter configuration: {e}") from e


# ---------------------------------------------------------
# Persistence
# ---------------------------------------------------------
class TokenStatus(str, Enum):
    ACTIVE = "active"
    FLAGGED = "flagged"
    RUG = "rug"
    DELISTED = "delisted"

    @classmethod
    def values(cls) -> List[str]:
        return [s.value for s in cls]


class StoredToken(BaseModel):
    """
    One persisted pair: flattened pair data plus filter-derived fields.
    """

    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    pair_address: str
    chain_id: str
    dex_id: str
    base_token_address: str
    base_token_name: Optional[str] = None
    base_token_symbol: Optional[str] = None
    quote_token_address: Optional[str] = None
    quote_token_symbol: Optional[str] = None

    price_usd: float = 0.0
    price_native: float = 0.0
    volume_24h: float = 0.0
    volume_6h: float = 0.0
    volume_1h: float = 0.0
    volume_5m: float = 0.0
    price_change_24h: float = 0.0
    price_change_6h: float = 0.0
    price_change_1h: float = 0.0
    price_change_5m: float = 0.0
    liquidity_usd: float = 0.0
    native_liquidity: Optional[float] = None
    pair_created_at: Optional[datetime] = None

    holders_count: int = 0
    top_holder_percentage: float = 0.0
    holder_distribution: List[Dict[str, Any]] = Field(default_factory=list)
    net_traders: int = 0
    estimated_market_cap: Optional[float] = None
    rug_score: float = 0.0
    rug_risks: List[str] = Field(default_factory=list)
    freeze_authority: Optional[str] = None
    mint_authority: Optional[str] = None
    update_authority: Optional[str] = None
    is_mutable: bool = False

    status: TokenStatus = TokenStatus.ACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("pair_created_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @field_validator("holder_distribution", "rug_risks", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @classmethod
    def from_pipeline(cls, pair: TradingPair, risk: RiskRecord, outcome: FilterOutcome) -> "StoredToken":
        holders = outcome.holder_data or risk.holders
        return cls(
            pair_address=pair.pair_address,
            chain_id=pair.chain_id,
            dex_id=pair.dex_id,
            base_token_address=pair.base_token.address,
            base_token_name=pair.base_token.name,
            base_token_symbol=pair.base_token.symbol,
            quote_token_address=pair.quote_token.address,
            quote_token_symbol=pair.quote_token.symbol,
            price_usd=pair.price_usd,
            price_native=pair.price_native,
            volume_24h=pair.volume.h24,
            volume_6h=pair.volume.h6,
            volume_1h=pair.volume.h1,
            volume_5m=pair.volume.m5,
            price_change_24h=pair.price_change.h24,
            price_change_6h=pair.price_change.h6,
            price_change_1h=pair.price_change.h1,
            price_change_5m=pair.price_change.m5,
            liquidity_usd=pair.liquidity.usd,
            native_liquidity=outcome.native_liquidity,
            pair_created_at=pair.pair_created_at,
            holders_count=holders.count,
            top_holder_percentage=holders.top_percentage,
            holder_distribution=[h.model_dump() for h in holders.distribution],
            net_traders=outcome.net_traders or 0,
            estimated_market_cap=outcome.estimated_market_cap,
            rug_score=outcome.rug_score if outcome.rug_score is not None else risk.score,
            rug_risks=list(outcome.risks or risk.tags),
            freeze_authority=risk.freeze_authority,
            mint_authority=risk.mint_authority,
            update_authority=risk.update_authority,
            is_mutable=risk.mutable,
        )


# ---------------------------------------------------------
# Alerts, cycle results, API payloads
# ---------------------------------------------------------
class AlertPayload(BaseModel):
    pair_address: str
    chain_id: str
    dex_id: str
    symbol: Optional[str] = None
    name: Optional[str] = None
    price_usd: float
    volume_24h: float
    liquidity_usd: float
    holders_count: int
    rug_score: float
    risks: List[str] = Field(default_factory=list)
    url: Optional[str] = None
    detected_at: datetime


class CycleResult(BaseModel):
    processed: int = 0
    saved: int = 0
    filtered: int = 0
    skipped: int = 0
    errors: int = 0
    alerts: int = 0
    overlapped: bool = False


class StatusUpdateRequest(BaseModel):
    status: str = Field(..., description="One of: active, flagged, rug, delisted.")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "flagged",
            }
        }
    )
