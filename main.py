#!/usr/bin/env python3
"""
CasaMatch - Main Application
Buyer/property matching API with periodic buyer re-matching
"""

import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from casamatch.core.config import settings


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.log_file),
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)

from casamatch.services.api import app as api_app, SessionLocal
from casamatch.services.scheduler import MatchingScheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the re-matching scheduler on startup, stop it on shutdown"""
    logger.info("=" * 60)
    logger.info("CasaMatch Starting...")
    logger.info("=" * 60)

    scheduler = MatchingScheduler(session_factory=SessionLocal)
    scheduler.start()
    app.state.scheduler = scheduler

    logger.info(f"API available at: http://{settings.api_host}:{settings.api_port}")

    yield

    logger.info("Shutting down gracefully...")
    scheduler.stop()
    logger.info("Application stopped successfully")


app = FastAPI(title="CasaMatch", lifespan=lifespan)

# Mount all routes from the API app
app.mount("/", api_app)


if __name__ == "__main__":
    try:
        uvicorn.run(
            app,
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.log_level.lower()
        )
    except KeyboardInterrupt:
        logger.info("Application stopped by user")
    except Exception as e:
        logger.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)
