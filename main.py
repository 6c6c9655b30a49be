import logging
import math
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates

from chains import dex_info, get_chain_profile
from config import AppSettings, setup_logging
from errors import ConfigurationError, InvalidStatusError
from filters import utcnow
from models import StatusUpdateRequest, StoredToken
from monitor import TokenMonitor
from store import SORTABLE_COLUMNS, TokenQuery

logger = logging.getLogger("token_monitor.api")

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
TEMPLATES_DIR = os.path.join(BASE_DIR, "templates")

templates = Jinja2Templates(directory=TEMPLATES_DIR)

RATE_LIMIT_WINDOW_SEC = 60


# ---------------------------------------------------------
# Simple in-memory rate limiting (per IP, fixed window)
# ---------------------------------------------------------
async def rate_limiter(request: Request):
    store: Dict[str, Tuple[int, float]] = request.app.state.rate_limit_store
    limit = request.app.state.monitor.settings.api_rate_limit_per_minute
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()

    count, window_start = store.get(client_ip, (0, now))

    # Reset window if expired
    if now - window_start > RATE_LIMIT_WINDOW_SEC:
        count = 0
        window_start = now

    count += 1
    store[client_ip] = (count, window_start)

    if count > limit:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded. Try again later.",
        )


def get_monitor(request: Request) -> TokenMonitor:
    return request.app.state.monitor


def _resolve_chain(monitor: TokenMonitor, chain: Optional[str]) -> str:
    chain_id = (chain or monitor.settings.supported_chains[0]).lower()
    if chain_id not in monitor.settings.supported_chains:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Unsupported chain", "supported_chains": monitor.settings.supported_chains},
        )
    return chain_id


def _check_dex(chain_id: str, dex: str) -> None:
    profile = get_chain_profile(chain_id)
    if dex.lower() not in profile.dexes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Invalid DEX", "supported_dexs": list(profile.dexes)},
        )


def _token_json(token: StoredToken) -> Dict[str, Any]:
    data = token.model_dump(mode="json")
    data["dex_info"] = dex_info(token.chain_id, token.dex_id) if token.chain_id else None
    return data


def create_app(monitor: Optional[TokenMonitor] = None) -> FastAPI:
    """
    Build the API around a TokenMonitor. Without one, settings are read
    from the environment when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.monitor is None:
            settings = AppSettings.from_env()
            setup_logging(settings)
            app.state.monitor = TokenMonitor(settings)
        current: TokenMonitor = app.state.monitor
        await current.start()
        if current.settings.scheduler_enabled:
            current.start_scheduler(run_immediately=current.settings.run_on_start)
        try:
            yield
        finally:
            await current.close()

    app = FastAPI(
        title="DEX Token Monitor API",
        version="1.0.0",
        description=(
            "Discovers newly listed DEX pairs, screens them against risk and "
            "market filters, and stores the ones that pass."
        ),
        lifespan=lifespan,
    )
    app.state.monitor = monitor
    app.state.rate_limit_store = {}

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.get("/api/tokens", tags=["Tokens"], dependencies=[Depends(rate_limiter)])
    async def list_tokens(
        chain: Optional[str] = None,
        dex: Optional[str] = None,
        min_volume: Optional[float] = Query(None, alias="minVolume"),
        max_volume: Optional[float] = Query(None, alias="maxVolume"),
        min_liquidity: Optional[float] = Query(None, alias="minLiquidity"),
        max_liquidity: Optional[float] = Query(None, alias="maxLiquidity"),
        min_native_liquidity: Optional[float] = Query(None, alias="minNativeLiquidity"),
        min_holders: Optional[int] = Query(None, alias="minHolders"),
        max_rug_score: Optional[float] = Query(None, alias="maxRugScore"),
        sort_by: str = Query("pair_created_at", alias="sortBy"),
        sort_order: str = Query("DESC", alias="sortOrder"),
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        monitor: TokenMonitor = Depends(get_monitor),
    ):
        """
        Stored active tokens, filtered and paginated.
        """
        chain_id = _resolve_chain(monitor, chain)
        if dex:
            _check_dex(chain_id, dex)
        if sort_by not in SORTABLE_COLUMNS:
            sort_by = "pair_created_at"
        if sort_order.upper() not in ("ASC", "DESC"):
            sort_order = "DESC"

        query = TokenQuery(
            chain_id=chain_id,
            dex_id=dex.lower() if dex else None,
            min_volume=min_volume,
            max_volume=max_volume,
            min_liquidity=min_liquidity,
            max_liquidity=max_liquidity,
            min_native_liquidity=min_native_liquidity,
            min_holders=min_holders,
            max_rug_score=max_rug_score,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
        )
        tokens = await monitor.repository.list_tokens(query)
        total = await monitor.repository.count_tokens(query)
        logger.info("Fetched %d tokens (total %d)", len(tokens), total)

        return {
            "tokens": [t.model_dump(mode="json") for t in tokens],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "pages": math.ceil(total / limit),
            },
            "chain": chain_id,
            "supported_dexs": list(get_chain_profile(chain_id).dexes),
        }

    @app.get("/api/tokens/{pair_address}", tags=["Tokens"], dependencies=[Depends(rate_limiter)])
    async def get_token(pair_address: str, monitor: TokenMonitor = Depends(get_monitor)):
        token = await monitor.repository.find_by_pair_address(pair_address)
        if token is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Token not found")
        return _token_json(token)

    @app.put("/api/tokens/{pair_address}/status", tags=["Tokens"], dependencies=[Depends(rate_limiter)])
    async def update_token_status(
        pair_address: str,
        payload: StatusUpdateRequest,
        monitor: TokenMonitor = Depends(get_monitor),
    ):
        """
        Move a stored token between active / flagged / rug / delisted.
        """
        try:
            token = await monitor.update_token_status(pair_address, payload.status)
        except InvalidStatusError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": str(e), "valid_statuses": e.valid},
            )
        if token is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Token not found")
        return token.model_dump(mode="json")

    @app.get("/api/stats", tags=["Stats"], dependencies=[Depends(rate_limiter)])
    async def stats(chain: Optional[str] = None, monitor: TokenMonitor = Depends(get_monitor)):
        chain_id = _resolve_chain(monitor, chain)
        profile = get_chain_profile(chain_id)
        results = await monitor.repository.stats(chain_id)
        results["metadata"] = {
            "chain": chain_id,
            "supported_dexs": list(profile.dexes),
            "priority_dexs": list(profile.dex_priority),
            "last_updated": utcnow().isoformat(),
        }
        return results

    @app.get("/api/stats/dex/{dex_id}", tags=["Stats"], dependencies=[Depends(rate_limiter)])
    async def dex_stats(dex_id: str, chain: Optional[str] = None, monitor: TokenMonitor = Depends(get_monitor)):
        chain_id = _resolve_chain(monitor, chain)
        _check_dex(chain_id, dex_id)
        return {
            "dex": dex_info(chain_id, dex_id),
            "stats": await monitor.repository.dex_stats(chain_id, dex_id.lower()),
            "chain": chain_id,
            "timestamp": utcnow().isoformat(),
        }

    @app.get("/api/config/filters", tags=["Config"])
    async def get_filters(monitor: TokenMonitor = Depends(get_monitor)):
        return monitor.token_filter.stats()

    @app.put("/api/config/filters", tags=["Config"], dependencies=[Depends(rate_limiter)])
    async def update_filters(
        partial: Dict[str, Any] = Body(...),
        monitor: TokenMonitor = Depends(get_monitor),
    ):
        """
        Shallow-merge new values into the live filter configuration.
        Invalid input is rejected as a whole.
        """
        try:
            config = monitor.update_filter_configuration(partial)
        except ConfigurationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        return config.model_dump()

    @app.get("/api/config/dexs", tags=["Config"])
    async def get_dexs(chain: Optional[str] = None, monitor: TokenMonitor = Depends(get_monitor)):
        chain_id = _resolve_chain(monitor, chain)
        dexs = [dex_info(chain_id, d) for d in get_chain_profile(chain_id).dexes]
        return {
            "chain": chain_id,
            "dexs": sorted(dexs, key=lambda d: d["priority"]),
        }

    @app.get("/api/health", tags=["Health"])
    async def health(monitor: TokenMonitor = Depends(get_monitor)):
        try:
            result = await monitor.health()
        except Exception as e:
            logger.error("Health check failed: %s", e)
            result = {"status": "unhealthy", "error": str(e), "timestamp": utcnow().isoformat()}
        code = status.HTTP_200_OK if result["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=result)

    @app.get("/api/activity", tags=["Tokens"], dependencies=[Depends(rate_limiter)])
    async def activity(
        chain: Optional[str] = None,
        limit: int = Query(20, ge=1, le=200),
        monitor: TokenMonitor = Depends(get_monitor),
    ):
        chain_id = _resolve_chain(monitor, chain)
        tokens = await monitor.repository.recent_activity(chain_id, limit)
        return {
            "activity": [_token_json(t) for t in tokens],
            "chain": chain_id,
            "timestamp": utcnow().isoformat(),
        }

    @app.post("/api/scan", tags=["Monitor"], dependencies=[Depends(rate_limiter)])
    async def scan(monitor: TokenMonitor = Depends(get_monitor)):
        """
        Run one ingestion cycle now and return its counts.
        """
        result = await monitor.run_cycle()
        return result.model_dump()

    @app.get("/", response_class=HTMLResponse, tags=["Frontend"])
    async def index(request: Request, monitor: TokenMonitor = Depends(get_monitor)):
        """
        Render the main dashboard UI.
        """
        chain_id = monitor.settings.supported_chains[0]
        tokens = await monitor.repository.recent_activity(chain_id, 20)
        return templates.TemplateResponse(
            request,
            "index.html",
            {
                "chain": chain_id,
                "tokens": tokens,
                "stats": await monitor.repository.stats(chain_id),
                "config": monitor.get_filter_configuration(),
            },
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = AppSettings.from_env()
    uvicorn.run("main:app", host="0.0.0.0", port=settings.port, reload=settings.debug)
