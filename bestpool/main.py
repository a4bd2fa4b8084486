from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import structlog
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from .allocation import AllocationEngine
from .cache import create_cache_backend
from .config import settings
from .error_handling import (
    BestPoolError, DataUnavailable, ErrorCollector, InvalidInput, NoDataAvailable, UpstreamError
)
from .market_data import MarketDataClient
from .pools import default_registry
from .price_stream import PriceStream
from .routes import router
from .upstream import SimulatedUpstreamSource, create_upstream_source


def configure_logging(level: str = settings.LOG_LEVEL):
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger()

# Application lifespan manager
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline components and tear them down on shutdown"""
    startup_start_time = time.time()
    logger.info("Starting BestPool allocator")

    try:
        error_collector = ErrorCollector()
        cache = await create_cache_backend()
        source = create_upstream_source()

        reference_prices = {}
        if isinstance(source, SimulatedUpstreamSource):
            reference_prices = source.reference_prices(
                {pair.address: pair.id for pair in default_registry.all()}
            )

        market_data = MarketDataClient(source, cache, default_registry, error_collector=error_collector)
        stream = PriceStream(default_registry, reference_prices=reference_prices, error_collector=error_collector)
        engine = AllocationEngine(market_data, default_registry)

        app.state.cache = cache
        app.state.source = source
        app.state.market_data = market_data
        app.state.stream = stream
        app.state.engine = engine
        app.state.error_collector = error_collector

        # Returns after the first attempt; a down feed keeps retrying in the background
        await stream.connect()

        logger.info("✅ BestPool allocator ready",
                    pairs=len(default_registry.ids()),
                    stream_connected=stream.is_connected,
                    startup_time_seconds=round(time.time() - startup_start_time, 2))
    except Exception as e:
        logger.error("Failed to start BestPool allocator", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("Shutting down BestPool allocator")
    try:
        await app.state.stream.disconnect()
        await app.state.source.close()
        await app.state.cache.close()
        logger.info("BestPool allocator shutdown complete")
    except Exception as e:
        logger.error("Error during shutdown", error=str(e))

# Create FastAPI app
app = FastAPI(
    title="BestPool Allocator",
    description="Liquidity pool data aggregation and portfolio allocation service",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    logger.info("Request completed",
                method=request.method,
                url=str(request.url),
                status_code=response.status_code,
                process_time=round(process_time, 3))

    response.headers["X-Process-Time"] = str(process_time)
    return response

ERROR_STATUS_CODES = {
    InvalidInput: 400,
    DataUnavailable: 404,
    NoDataAvailable: 404,
    UpstreamError: 502,
}

@app.exception_handler(BestPoolError)
async def pipeline_exception_handler(request: Request, exc: BestPoolError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
        500
    )

    logger.warning("Pipeline error",
                   method=request.method,
                   url=str(request.url),
                   status_code=status_code,
                   error=str(exc),
                   error_type=type(exc).__name__)

    return JSONResponse(
        status_code=status_code,
        content={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )

app.include_router(router)

@app.get("/")
async def root():
    """Service information"""
    return {
        "service": "BestPool Allocator",
        "version": "1.0.0",
        "status": "operational",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "endpoints": {
            "health": "/api/health",
            "pools": "/api/pools",
            "allocation": "/api/allocation",
            "stream": "/api/stream/status",
            "docs": "/docs"
        }
    }
