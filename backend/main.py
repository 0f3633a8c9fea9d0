#!/usr/bin/env python3
"""
Game Server Manager Backend - compose-based game server deployment

Validates single-service Docker Compose files against the host security
policy and deploys them through the compose CLI. Every successful deploy
registers (or refreshes) a managed game server keyed by container name.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.paths import ensure_data_dirs
from config.settings import AppConfig, HealthCheckFilter, setup_logging
from database import DatabaseManager
from compose import (
    ComposeClient,
    ComposeDeploymentService,
    ComposeFileStorage,
    ComposeValidator,
    DockerStatusProvider,
    TemplateManager,
    routes as compose_routes,
)

# Configure logging
setup_logging(AppConfig.LOG_LEVEL)
logger = logging.getLogger(__name__)


def create_compose_service(db: DatabaseManager) -> ComposeDeploymentService:
    """Wire the compose pipeline from configuration."""
    client = ComposeClient(AppConfig.COMPOSE_COMMAND)
    return ComposeDeploymentService(
        db=db,
        validator=ComposeValidator(client=client),
        storage=ComposeFileStorage(AppConfig.COMPOSE_FILES_DIR),
        client=client,
        status_provider=DockerStatusProvider(),
        settle_delay=AppConfig.DEPLOY_SETTLE_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Startup
    # Validate configuration early to fail fast on misconfiguration
    AppConfig.validate()

    logger.info("Starting game server manager backend...")

    # Reapply health check filter to uvicorn access logger (must be done after uvicorn starts)
    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())

    ensure_data_dirs()
    db = DatabaseManager(AppConfig.DATABASE_URL)

    compose_service = create_compose_service(db)
    interrupted = compose_service.recover_interrupted_deployments()
    if interrupted:
        logger.warning(f"Marked {interrupted} interrupted deployment(s) as failed")

    compose_routes.set_compose_service(compose_service)
    compose_routes.set_template_manager(TemplateManager(AppConfig.TEMPLATES_DIR))
    logger.info(f"Compose services initialized (command: {' '.join(AppConfig.COMPOSE_COMMAND)})")

    yield

    # Shutdown
    logger.info("Shutting down game server manager backend...")
    db.engine.dispose()


app = FastAPI(
    title="Game Server Manager API",
    version="1.0.0",
    lifespan=lifespan
)

cors_config = AppConfig.CORS_ORIGINS
if cors_config:
    # Specific origins configured
    origins_list = [origin.strip() for origin in cors_config.split(',')]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    logger.info(f"CORS configured for specific origins: {origins_list}")
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=".*",
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    logger.info("CORS configured to allow all origins")

app.include_router(compose_routes.router)
app.include_router(compose_routes.template_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for Docker health checks"""
    return {"status": "healthy", "service": "gsm-backend"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=AppConfig.HOST,
        port=AppConfig.PORT,
        log_level=AppConfig.LOG_LEVEL.lower(),
    )
