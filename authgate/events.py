import logging

from fastapi import FastAPI

from authgate.core.settings import settings
from authgate.db.session import engine
from authgate.utils.redis_client import close_redis_client

logger = logging.getLogger(__name__)


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info(
            "AuthGate starting environment=%s challenge_path=%s trusted_device_days=%s",
            settings.environment,
            settings.mfa_challenge_path,
            settings.trusted_device_days,
        )

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("AuthGate shutting down")
        await close_redis_client()
        await engine.dispose()
