import asyncio
import json
import logging
from functools import lru_cache
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Optional, Union

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

# --- Imports ---
from yieldtrace.config import Settings, load_settings
from yieldtrace.core.entities.queries import (
    BorrowCostQuery,
    BorrowCostResponse,
    CostBasisQuery,
    CostBasisResponse,
    PeriodType,
    PeriodYieldQuery,
    PeriodYieldResponse,
    RealizedYieldQuery,
    RealizedYieldResponse,
)
from yieldtrace.core.errors import (
    DataSourceError,
    InvalidQueryError,
    InvariantViolationError,
    QueryTimeoutError,
)
from yieldtrace.core.interfaces.cache import ICache
from yieldtrace.core.interfaces.datasource import IDataSource
from yieldtrace.core.services import YieldService
from yieldtrace.infrastructure.cache.redis_service import RedisService, cache_key
from yieldtrace.infrastructure.persistence.postgres_repo import PostgresRepo

RETRY_AFTER_SECONDS = "5"


@lru_cache
def get_settings() -> Settings:
    return load_settings()


# Setup Logging
logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger("YieldTrace")

app = FastAPI(
    title="YieldTrace API",
    version="1.0.0",
    description="Yield and cost-basis attribution for lending protocol positions"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Dependency Injection ---


@lru_cache
def _postgres_repo(settings: Settings) -> PostgresRepo:
    return PostgresRepo(
        settings.database_url,
        settings.lp_token_address,
        emission_token_address=settings.emission_token_address,
        min_conn=settings.db_pool_min,
        max_conn=settings.db_pool_max
    )


def get_datasource(settings: Settings = Depends(get_settings)) -> IDataSource:
    if not settings.database_url:
        raise HTTPException(status_code=503, detail="Database not configured")
    try:
        return _postgres_repo(settings)
    except DataSourceError as e:
        logger.error(f"Failed to connect to DB: {e}")
        raise HTTPException(
            status_code=503,
            detail="Database unavailable",
            headers={"Retry-After": RETRY_AFTER_SECONDS}
        )


@lru_cache
def _redis_cache(redis_url: Optional[str]) -> RedisService:
    return RedisService(redis_url)


def get_cache(settings: Settings = Depends(get_settings)) -> ICache:
    return _redis_cache(settings.redis_url)


def get_yield_service(
    datasource: IDataSource = Depends(get_datasource),
    settings: Settings = Depends(get_settings)
) -> YieldService:
    return YieldService(datasource, settings)


# --- Error Mapping ---

@app.exception_handler(InvalidQueryError)
async def invalid_query_handler(request: Request, exc: InvalidQueryError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(DataSourceError)
async def datasource_error_handler(request: Request, exc: DataSourceError):
    logger.error(f"Upstream store failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Data source unavailable, retry later"},
        headers={"Retry-After": RETRY_AFTER_SECONDS}
    )


@app.exception_handler(QueryTimeoutError)
async def timeout_handler(request: Request, exc: QueryTimeoutError):
    return JSONResponse(status_code=504, content={"detail": str(exc)})


@app.exception_handler(InvariantViolationError)
async def invariant_handler(request: Request, exc: InvariantViolationError):
    logger.error(f"Invariant violation on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal calculation error"})


# --- Helpers ---

def _json_param(name: str, raw: Optional[str]) -> Dict[str, Any]:
    """Dashboard routes pass maps as JSON-encoded query parameters."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        raise InvalidQueryError(f"{name} is not valid JSON")
    if not isinstance(value, dict):
        raise InvalidQueryError(f"{name} must be a JSON object")
    return value


def _wallets(userAddress: Optional[str], userAddresses: Optional[str]) -> List[str]:
    """`userAddress` and a comma-separated `userAddresses` list, merged in order."""
    wallets = [userAddress] if userAddress else []
    if userAddresses:
        wallets += [a.strip() for a in userAddresses.split(",") if a.strip()]
    if not wallets:
        raise InvalidQueryError("userAddress or userAddresses is required")
    return list(dict.fromkeys(wallets))


def _build_query(model, **fields):
    try:
        return model.model_validate(fields)
    except ValidationError as e:
        raise InvalidQueryError(
            "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        )


async def _cached(
    cache: ICache,
    key: str,
    ttl_seconds: int,
    compute: Callable[[], Awaitable[BaseModel]]
):
    # Redis client is blocking; keep it off the event loop
    hit = await asyncio.to_thread(cache.get, key)
    if hit is not None:
        logger.debug(f"Cache hit {key}")
        return hit
    result = await compute()
    await asyncio.to_thread(cache.set, key, result, ttl_seconds)
    return result


# --- Endpoints ---

@app.get("/health")
async def health(settings: Settings = Depends(get_settings)):
    return {
        "status": "healthy",
        "database": bool(settings.database_url),
        "cache": bool(settings.redis_url)
    }


@app.get("/v1/period-yield", response_model=PeriodYieldResponse)
async def get_period_yield(
    userAddress: str = Query(..., description="User wallet address"),
    period: PeriodType = Query(PeriodType.ONE_MONTH, description="1W, 1M, 1Y or All"),
    timezone: str = Query("UTC", description="IANA time zone used to bucket events into days"),
    sdkPrices: Optional[str] = Query(None, description="JSON: asset address -> current USD price"),
    currentBalances: Optional[str] = Query(None, description="JSON: poolId-assetAddress -> tokens"),
    backstopPositions: Optional[str] = Query(None, description="JSON: backstop pool -> LP tokens"),
    currentDebts: Optional[str] = Query(None, description="JSON: poolId-assetAddress -> debt tokens"),
    lpTokenPrice: float = Query(0.0, description="Current USD price of the backstop LP token"),
    service: YieldService = Depends(get_yield_service),
    cache: ICache = Depends(get_cache),
    settings: Settings = Depends(get_settings)
):
    """
    Splits each position's value change over the period into protocol
    yield and price change, and totals them.
    """
    query = _build_query(
        PeriodYieldQuery,
        user_address=userAddress,
        period=period,
        timezone=timezone,
        sdk_prices=_json_param("sdkPrices", sdkPrices),
        current_balances=_json_param("currentBalances", currentBalances),
        backstop_positions=_json_param("backstopPositions", backstopPositions),
        current_debts=_json_param("currentDebts", currentDebts),
        lp_token_price=lpTokenPrice,
    )
    return await _cached(
        cache,
        cache_key("period-yield", query),
        settings.cache_ttl_seconds,
        lambda: service.period_yield(query)
    )


@app.post(
    "/v1/yield/query",
    response_model=Union[PeriodYieldResponse, BorrowCostResponse, CostBasisResponse, RealizedYieldResponse]
)
async def post_yield_query(
    query: Annotated[
        Union[PeriodYieldQuery, BorrowCostQuery, CostBasisQuery, RealizedYieldQuery],
        Body(discriminator="kind")
    ],
    service: YieldService = Depends(get_yield_service),
    cache: ICache = Depends(get_cache),
    settings: Settings = Depends(get_settings)
):
    """
    Typed entry point. The body's `kind` selects period_yield, borrow_cost,
    cost_basis or realized_yield and the response carries the same kind.
    """
    return await _cached(
        cache,
        cache_key(query.kind, query),
        settings.cache_ttl_seconds,
        lambda: service.run(query)
    )


@app.get("/v1/cost-basis", response_model=CostBasisResponse)
async def get_cost_basis(
    userAddress: Optional[str] = Query(None, description="User wallet address"),
    userAddresses: Optional[str] = Query(None, description="Comma-separated wallets merged into one portfolio"),
    timezone: str = Query("UTC"),
    sdkPrices: Optional[str] = Query(None, description="JSON: asset address -> current USD price"),
    currentBalances: Optional[str] = Query(None, description="JSON: poolId-assetAddress -> tokens"),
    currentDebts: Optional[str] = Query(None, description="JSON: poolId-assetAddress -> debt tokens"),
    backstopPositions: Optional[str] = Query(None, description="JSON: backstop pool -> LP tokens"),
    lpTokenPrice: float = Query(0.0),
    service: YieldService = Depends(get_yield_service),
    cache: ICache = Depends(get_cache),
    settings: Settings = Depends(get_settings)
):
    """
    All-time average-cost basis per position, using the price on each
    deposit's own day. With current balances it also splits everything
    earned since the first deposit into protocol yield and price change.
    """
    wallets = _wallets(userAddress, userAddresses)
    query = _build_query(
        CostBasisQuery,
        user_address=wallets[0],
        user_addresses=wallets[1:],
        timezone=timezone,
        sdk_prices=_json_param("sdkPrices", sdkPrices),
        current_balances=_json_param("currentBalances", currentBalances),
        current_debts=_json_param("currentDebts", currentDebts),
        backstop_positions=_json_param("backstopPositions", backstopPositions),
        lp_token_price=lpTokenPrice,
    )
    return await _cached(
        cache,
        cache_key("cost-basis", query),
        settings.cache_ttl_seconds,
        lambda: service.cost_basis(query)
    )


@app.get("/v1/realized-yield", response_model=RealizedYieldResponse)
async def get_realized_yield(
    userAddress: Optional[str] = Query(None, description="User wallet address"),
    userAddresses: Optional[str] = Query(None, description="Comma-separated wallets merged into one portfolio"),
    timezone: str = Query("UTC"),
    sdkPrices: Optional[str] = Query(None, description="JSON: token address -> current USD price"),
    lpTokenPrice: float = Query(0.0, description="Current USD price of the backstop LP token"),
    service: YieldService = Depends(get_yield_service),
    cache: ICache = Depends(get_cache),
    settings: Settings = Depends(get_settings)
):
    """
    Withdrawn minus deposited USD plus claimed emissions, each flow valued
    on its own day, with ROI against total deposits.
    """
    wallets = _wallets(userAddress, userAddresses)
    query = _build_query(
        RealizedYieldQuery,
        user_address=wallets[0],
        user_addresses=wallets[1:],
        timezone=timezone,
        sdk_prices=_json_param("sdkPrices", sdkPrices),
        lp_token_price=lpTokenPrice,
    )
    return await _cached(
        cache,
        cache_key("realized-yield", query),
        settings.cache_ttl_seconds,
        lambda: service.realized_yield(query)
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
