import logging
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

from chains import CHAIN_PROFILES, get_supported_chains

# Load environment variables from .env file
load_dotenv()


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = _env_str(name)
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = _env_str(name)
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = _env_str(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _database_url() -> str:
    url = _env_str("DATABASE_URL")
    if url:
        return url
    host = _env_str("DB_HOST")
    if host:
        user = _env_str("DB_USER", "postgres")
        password = _env_str("DB_PASSWORD", "")
        port = _env_int("DB_PORT", 5432)
        name = _env_str("DB_NAME", "token_monitor")
        return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"
    return "sqlite+aiosqlite:///./token_monitor.db"


class AppSettings(BaseModel):
    """
    Process-wide settings, read once from the environment.
    """

    model_config = ConfigDict(frozen=True)

    # Application
    port: int = 8000
    debug: bool = False
    api_rate_limit_per_minute: int = 60

    # Monitoring
    scan_interval_minutes: int = 5
    max_tokens_per_scan: int = 100
    freshness_window_minutes: int = 60
    request_delay_ms: int = 200
    supported_chains: List[str] = ["solana"]
    scheduler_enabled: bool = True
    run_on_start: bool = True

    # DexScreener
    dexscreener_url: str = "https://api.dexscreener.com"
    dexscreener_api_key: Optional[str] = None
    dexscreener_timeout: float = 10.0
    dexscreener_rate_limit: int = 300
    dexscreener_rate_interval_ms: int = 60_000

    # RugCheck
    rugcheck_url: str = "https://api.rugcheck.xyz/v1"
    rugcheck_api_key: Optional[str] = None
    rugcheck_timeout: float = 15.0
    rugcheck_rate_limit: int = 100
    rugcheck_rate_interval_ms: int = 60_000

    # Retries
    max_retries: int = 3
    retry_delay_ms: int = 1000

    # Risk / estimation constants
    default_risk_score: float = 5.0
    net_trader_divisor: float = 50.0
    market_cap_multiplier: float = 20.0

    # Persistence
    database_url: str = "sqlite+aiosqlite:///./token_monitor.db"

    # Alerts
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    alert_min_volume_24h: float = 10_000.0
    alert_min_liquidity: float = 20_000.0
    alert_min_holders: int = 100
    alert_max_rug_score: float = 3.0

    # Logging
    log_level: str = "info"
    log_file: str = "logs/token-monitor.log"
    log_enable_file: bool = False

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            port=_env_int("PORT", 8000),
            debug=_env_bool("DEBUG", False),
            api_rate_limit_per_minute=_env_int("API_RATE_LIMIT_REQUESTS_PER_MINUTE", 60),
            scan_interval_minutes=_env_int("SCAN_INTERVAL_MINUTES", 5),
            max_tokens_per_scan=_env_int("MAX_TOKENS_PER_SCAN", 100),
            freshness_window_minutes=_env_int("FRESHNESS_WINDOW_MINUTES", 60),
            request_delay_ms=_env_int("RATE_LIMIT_DELAY_MS", 200),
            supported_chains=get_supported_chains(_env_str("SUPPORTED_CHAINS")),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
            run_on_start=_env_bool("RUN_ON_START", True),
            dexscreener_url=_env_str("DEXSCREENER_API_URL", "https://api.dexscreener.com"),
            dexscreener_api_key=_env_str("DEXSCREENER_API_KEY"),
            rugcheck_url=_env_str("RUGCHECK_API_URL", "https://api.rugcheck.xyz/v1"),
            rugcheck_api_key=_env_str("RUGCHECK_API_KEY"),
            max_retries=_env_int("MAX_RETRIES", 3),
            retry_delay_ms=_env_int("RETRY_DELAY_MS", 1000),
            default_risk_score=_env_float("DEFAULT_RISK_SCORE", 5.0),
            net_trader_divisor=_env_float("NET_TRADER_DIVISOR", 50.0),
            market_cap_multiplier=_env_float("MARKET_CAP_MULTIPLIER", 20.0),
            database_url=_database_url(),
            webhook_url=_env_str("WEBHOOK_URL"),
            webhook_secret=_env_str("WEBHOOK_SECRET"),
            alert_min_volume_24h=_env_float("ALERT_MIN_VOLUME_24H", 10_000.0),
            alert_min_liquidity=_env_float("ALERT_MIN_LIQUIDITY", 20_000.0),
            alert_min_holders=_env_int("ALERT_MIN_HOLDERS", 100),
            alert_max_rug_score=_env_float("ALERT_MAX_RUG_SCORE", 3.0),
            log_level=_env_str("LOG_LEVEL", "info"),
            log_file=_env_str("LOG_FILE", "logs/token-monitor.log"),
            log_enable_file=_env_bool("LOG_ENABLE_FILE", False),
        )

    def validate_settings(self) -> List[str]:
        """
        Return every configuration problem found; empty means usable.
        """
        errors: List[str] = []

        unknown = [c for c in self.supported_chains if c not in CHAIN_PROFILES]
        if unknown:
            errors.append(f"Invalid chains in SUPPORTED_CHAINS: {', '.join(unknown)}")
        if not self.supported_chains:
            errors.append("SUPPORTED_CHAINS must name at least one chain")
        if not 1 <= self.port <= 65535:
            errors.append("PORT must be between 1 and 65535")
        if self.scan_interval_minutes < 1:
            errors.append("SCAN_INTERVAL_MINUTES must be at least 1")
        if self.max_tokens_per_scan < 1:
            errors.append("MAX_TOKENS_PER_SCAN must be at least 1")
        if self.max_retries < 1:
            errors.append("MAX_RETRIES must be at least 1")
        if self.net_trader_divisor <= 0:
            errors.append("NET_TRADER_DIVISOR must be positive")
        if self.market_cap_multiplier <= 0:
            errors.append("MARKET_CAP_MULTIPLIER must be positive")
        if self.freshness_window_minutes < 0:
            errors.append("FRESHNESS_WINDOW_MINUTES must not be negative")

        return errors


# ---------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def setup_logging(settings: AppSettings) -> logging.Logger:
    """
    Configure the root logger: console always, file when enabled.
    Safe to call more than once.
    """
    root = logging.getLogger()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root.setLevel(logging.DEBUG if settings.debug else level)

    formatter = logging.Formatter(LOG_FORMAT)

    if not any(getattr(h, "_token_monitor", False) for h in root.handlers):
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        console._token_monitor = True
        root.addHandler(console)

        if settings.log_enable_file and settings.log_file:
            log_dir = os.path.dirname(settings.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(settings.log_file)
            file_handler.setFormatter(formatter)
            file_handler._token_monitor = True
            root.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root
