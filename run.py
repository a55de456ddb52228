#!/usr/bin/env python3
"""
Production startup script for the OrganMatch matching engine API
"""
import uvicorn
import logging
import sys
from organmatch.core.config import get_settings
from organmatch.core.logging import setup_logging

logger = logging.getLogger(__name__)


def main():
    """Start the FastAPI application."""
    settings = get_settings()
    setup_logging(settings)

    logger.info(f"Starting {settings.APP_NAME} Server")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug Mode: {settings.DEBUG}")
    logger.info(f"Match store: {'database' if settings.DATABASE_URL else 'in-memory'}")

    # Configure uvicorn
    config = {
        "app": "organmatch.main:get_application",
        "factory": True,
        "host": settings.HOST,
        "port": settings.PORT,
        "reload": settings.DEBUG,
        "log_level": settings.LOG_LEVEL.lower(),
        "access_log": True,
        "use_colors": settings.DEBUG,
    }

    if not settings.DEBUG:
        # Production settings
        config.update({
            "workers": settings.WORKERS,
            "loop": "uvloop",
            "http": "httptools",
            "lifespan": "on",
        })

    logger.info(f"Starting server on {config['host']}:{config['port']}")

    try:
        uvicorn.run(**config)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
