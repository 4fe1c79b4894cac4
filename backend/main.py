#!/usr/bin/env python3
"""
DockPilot Supervisor - self-upgrade service

Runs beside the DockPilot container and replaces it with a newer image on
request, verifying health and rolling back on failure.

All routes are served under DOCKPILOT_SUPERVISOR_BASE_PATH (default
/supervisor):
    GET  /health
    GET  /version
    GET  /self-upgrade
    POST /self-upgrade
    POST /self-upgrade/rollback
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from config.settings import APP_VERSION, HealthCheckFilter, SupervisorSettings, setup_logging
from supervisor.routes import register_error_handlers, router as supervisor_router
from supervisor.self_upgrade import SelfUpgradeSupervisor
from utils.command_runner import SubprocessCommandRunner

logger = logging.getLogger(__name__)


def create_app(settings: SupervisorSettings, supervisor: Optional[SelfUpgradeSupervisor] = None) -> FastAPI:
    """
    Build the supervisor application.

    Without an explicit supervisor one is created at startup; creating it
    recovers an interrupted operation before any request is served.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting DockPilot supervisor {APP_VERSION} on {settings.http_addr}{settings.base_path}")

        # Reapply health check filter to uvicorn access logger (must be done after uvicorn starts)
        logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())

        if getattr(app.state, "supervisor", None) is None:
            app.state.supervisor = SelfUpgradeSupervisor.create(settings, SubprocessCommandRunner())

        yield

        logger.info("Shutting down DockPilot supervisor...")
        await app.state.supervisor.wait_idle()
        logger.info("DockPilot supervisor shutdown complete")

    app = FastAPI(
        title="DockPilot Supervisor",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.supervisor = supervisor

    register_error_handlers(app)
    app.include_router(supervisor_router, prefix=settings.base_path)
    return app


def main():
    settings = SupervisorSettings.from_env()
    setup_logging(settings.log_level, 'supervisor.log')
    host, port = settings.split_http_addr()
    uvicorn.run(create_app(settings), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
