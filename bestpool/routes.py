from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from typing import List
import structlog
from datetime import datetime, timezone

from .allocation import AllocationEngine
from .config import RiskTolerance
from .market_data import MarketDataClient
from .models import (
    AllocationRequest, OptimalRange, PairConfig, PoolSnapshot, PortfolioResult,
    PriceSnapshot, StreamStatus, YieldMetrics
)
from .price_stream import PriceStream

logger = structlog.get_logger()

router = APIRouter(prefix="/api")


def get_market_data(request: Request) -> MarketDataClient:
    return request.app.state.market_data

def get_engine(request: Request) -> AllocationEngine:
    return request.app.state.engine

def get_stream(request: Request) -> PriceStream:
    return request.app.state.stream


@router.get("/health")
async def health_check(request: Request):
    """Simple health check endpoint"""
    try:
        cache_health = await request.app.state.cache.health_check()
        return {
            "status": "healthy",
            "cache": cache_health,
            "stream_connected": request.app.state.stream.is_connected,
            "errors_last_hour": request.app.state.error_collector.get_error_summary(hours=1)["total_errors"],
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )

@router.get("/pools", response_model=List[PairConfig])
async def list_pools(market_data: MarketDataClient = Depends(get_market_data)):
    return market_data.registry.all()

@router.get("/pools/{pair_id}", response_model=PoolSnapshot)
async def get_pool(pair_id: str, market_data: MarketDataClient = Depends(get_market_data)):
    return await market_data.get_pool_snapshot(pair_id.upper())

@router.get("/pools/{pair_id}/price", response_model=PriceSnapshot)
async def get_price(pair_id: str, market_data: MarketDataClient = Depends(get_market_data)):
    return await market_data.get_price_snapshot(pair_id.upper())

@router.get("/pools/{pair_id}/range", response_model=OptimalRange)
async def get_range(
    pair_id: str,
    risk_tolerance: str = RiskTolerance.MEDIUM,
    market_data: MarketDataClient = Depends(get_market_data)
):
    return await market_data.get_optimal_range(pair_id.upper(), risk_tolerance.lower())

@router.get("/pools/{pair_id}/yield", response_model=YieldMetrics)
async def get_yield(pair_id: str, market_data: MarketDataClient = Depends(get_market_data)):
    return await market_data.get_yield_metrics(pair_id.upper())

@router.post("/allocation", response_model=PortfolioResult)
async def compute_allocation(
    allocation_request: AllocationRequest,
    engine: AllocationEngine = Depends(get_engine)
):
    """Recommended allocation across the requested pairs"""
    return await engine.compute_allocation(
        allocation_request.total_investment,
        allocation_request.pair_ids,
        allocation_request.risk_tolerance
    )

@router.post("/cache/clear")
async def clear_cache(market_data: MarketDataClient = Depends(get_market_data)):
    removed = await market_data.clear_cache()
    return {
        "status": "cleared",
        "entries_removed": removed,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

@router.get("/stream/status", response_model=StreamStatus)
async def stream_status(stream: PriceStream = Depends(get_stream)):
    return StreamStatus(
        state=stream.state,
        connected=stream.is_connected,
        subscriptions=stream.subscriptions,
        reconnect_attempts=stream.reconnect_attempts
    )
