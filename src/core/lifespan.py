from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from client.registry import build_task_clients
from core.config import settings
from model.database import create_db_and_tables
from utility.logger import setup_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    # === 시작 ===
    setup_logger()
    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION}")

    create_db_and_tables()
    logger.info(f"Database ready ({settings.DATABASE_URL})")

    app.state.task_clients = build_task_clients(settings)
    if not settings.PUBLIC_BASE_URL:
        logger.warning("PUBLIC_BASE_URL not set - vendor webhooks disabled, relying on monitor polling")

    app.state.settings = settings

    yield

    # === 종료 ===
    app.state.task_clients.close()
    logger.info("Shutting down")
