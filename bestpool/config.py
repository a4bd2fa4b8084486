from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Service
    SERVICE_PORT: int = 8002

    # Redis cache backend
    ENABLE_REDIS: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"

    # Upstream data source
    UPSTREAM_MODE: str = "simulated"  # simulated | http
    UPSTREAM_BASE_URL: str = "https://api.mainnet.orca.so/v1"
    UPSTREAM_TIMEOUT_SECONDS: float = 10.0

    # Cache freshness windows
    POOL_CACHE_TTL_SECONDS: float = 30.0
    PRICE_CACHE_TTL_SECONDS: float = 5.0
    CACHE_PREFIX: str = "bestpool_cache:"

    # Price stream
    TICK_INTERVAL_SECONDS: float = 5.0
    TICK_JITTER: float = 0.005  # +/-0.5% per tick
    MAX_RECONNECT_ATTEMPTS: int = 5
    RECONNECT_BASE_DELAY_SECONDS: float = 1.0
    RECONNECT_MAX_DELAY_SECONDS: float = 30.0
    VOLATILITY_WINDOW: int = 20
    VOLATILITY_MIN_SAMPLES: int = 5
    PRICE_ALERT_THRESHOLD: float = 5.0
    PRICE_ALERT_HIGH_THRESHOLD: float = 10.0

    # Allocation policy
    HEDGE_TRIGGER_CHANGE_PCT: float = 5.0
    HEDGE_BOOST: float = 0.10
    HEDGE_MAX_WEIGHT: float = 0.40
    MIN_POOL_WEIGHT: float = 0.05
    TREND_THRESHOLD_PCT: float = 2.0
    TICK_MERGE_THRESHOLD_PCT: float = 2.0
    MAX_EXPECTED_YIELD: float = 50.0

    # Portfolio tracker
    REFRESH_INTERVAL_SECONDS: float = 30.0
    DEFAULT_VOLATILITY_THRESHOLD: float = 5.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

# Global settings instance
settings = Settings()

# Risk tolerance selectors
class RiskTolerance:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    ALL = (LOW, MEDIUM, HIGH)

# Pair risk tiers
class RiskTier:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

# Hedge classification of a pair
class HedgeClass:
    BLUECHIP = "bluechip"
    STABLECOIN = "stablecoin"
    HEDGE = "hedge"

class Trend:
    BULL = "bull"
    BEAR = "bear"
    STABLE = "stable"

class AlertSeverity:
    MEDIUM = "medium"
    HIGH = "high"

# Stream event names
class StreamEvent:
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    PRICE_UPDATE = "priceUpdate"
    VOLUME_UPDATE = "volumeUpdate"
    PRICE_ALERT = "priceAlert"
    VOLATILITY_ALERT = "volatilityAlert"
    ERROR = "error"

    ALL = (
        CONNECTED,
        DISCONNECTED,
        PRICE_UPDATE,
        VOLUME_UPDATE,
        PRICE_ALERT,
        VOLATILITY_ALERT,
        ERROR,
    )

# Cache key namespaces
class CacheKeys:
    POOL = "pool_"
    PRICE = "price_"

# Range half-width per risk tolerance
RANGE_WIDTHS = {
    RiskTolerance.LOW: 0.05,
    RiskTolerance.MEDIUM: 0.10,
    RiskTolerance.HIGH: 0.20,
}

# Score used for the weighted portfolio risk
RISK_TIER_SCORES = {
    RiskTier.LOW: 1,
    RiskTier.MEDIUM: 2,
    RiskTier.HIGH: 3,
}
