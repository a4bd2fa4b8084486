#!/usr/bin/env python3
"""
BestPool Allocator Startup Script

Usage:
    python run.py [--port PORT] [--host HOST] [--env ENV]

Environment Variables:
    SERVICE_PORT: Port to run the service on (default: 8002)
    ENV: Environment (development/production)
    LOG_LEVEL: Logging level (DEBUG/INFO/WARNING/ERROR)
    ENABLE_REDIS: Use Redis for the snapshot cache
    UPSTREAM_MODE: simulated or http
"""

import argparse
import sys

import structlog
import uvicorn

from bestpool.config import settings

logger = structlog.get_logger()

def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="BestPool Allocator - liquidity pool allocation service"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.SERVICE_PORT,
        help=f"Port to run the service on (default: {settings.SERVICE_PORT})"
    )

    parser.add_argument(
        "--host", "-H",
        type=str,
        default="0.0.0.0",
        help="Host to bind the service to (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--env", "-e",
        type=str,
        choices=["development", "production"],
        default=settings.ENV if settings.ENV in ("development", "production") else "development",
        help=f"Environment mode (default: {settings.ENV})"
    )

    parser.add_argument(
        "--reload", "-r",
        action="store_true",
        help="Enable auto-reload for development"
    )

    parser.add_argument(
        "--log-level", "-l",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL,
        help=f"Log level (default: {settings.LOG_LEVEL})"
    )

    return parser.parse_args()

def validate_environment():
    """Check settings that would otherwise fail at startup"""
    errors = []

    if settings.UPSTREAM_MODE not in ("simulated", "http"):
        errors.append(f"Invalid UPSTREAM_MODE: {settings.UPSTREAM_MODE}")

    if settings.ENABLE_REDIS and not settings.REDIS_URL.startswith(("redis://", "rediss://")):
        errors.append("Invalid REDIS_URL format")

    if errors:
        print("❌ Environment validation failed:")
        for error in errors:
            print(f"   - {error}")
        return False

    return True

def main():
    """Main entry point"""
    args = parse_arguments()

    if not validate_environment():
        sys.exit(1)

    # Ticks and the price stream live in-process, so a single worker only
    uvicorn_config = {
        "app": "bestpool.main:app",
        "host": args.host,
        "port": args.port,
        "log_level": args.log_level.lower(),
        "access_log": True,
        "reload": args.reload or args.env == "development",
    }

    try:
        logger.info("Starting BestPool allocator",
                    host=args.host,
                    port=args.port,
                    env=args.env,
                    upstream=settings.UPSTREAM_MODE)
        uvicorn.run(**uvicorn_config)
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    except Exception as e:
        logger.error("Failed to start server", error=str(e))
        sys.exit(1)

if __name__ == "__main__":
    main()
