"""FastAPI application bootstrap and lifecycle wiring."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from gym_sniper.controllers.classes_controller import router as classes_router
from gym_sniper.controllers.snipes_controller import router as snipes_router
from gym_sniper.repository.queue_repository import SnipeQueueRepository
from gym_sniper.services.auth_service import AuthService
from gym_sniper.services.queue_service import SnipeQueueService
from gym_sniper.services.session_client import PortalSessionClient
from gym_sniper.utils.clock import Clock, SystemClock
from gym_sniper.utils.config import PortalConfig, Settings, get_settings, load_portal_config
from gym_sniper.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    portal_config: Optional[PortalConfig] = None,
    client: Optional[PortalSessionClient] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """Build the app with its portal client and queue wired onto app.state."""
    settings = settings or get_settings()
    portal_config = portal_config or load_portal_config(settings.config_path)
    clock = clock or SystemClock()
    client = client or PortalSessionClient(portal_config, settings=settings, clock=clock)
    repository = SnipeQueueRepository(settings)
    queue_service = SnipeQueueService(
        repository,
        client=client,
        settings=settings,
        clock=clock,
        tz=portal_config.tz,
    )
    auth_service = AuthService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "API ready for club %s (auth %s)",
            portal_config.gym.club_id,
            "enabled" if auth_service.auth_enabled else "disabled",
        )
        yield
        client.close()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.include_router(classes_router)
    app.include_router(snipes_router)

    app.state.settings = settings
    app.state.portal_client = client
    app.state.queue_service = queue_service
    app.state.auth_service = auth_service

    return app
