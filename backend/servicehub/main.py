import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.middleware.trustedhost import TrustedHostMiddleware

from servicehub.config import Settings, get_settings
from servicehub.gateway.factory import create_gateway
from servicehub.routers import auth, bookings, chat, pages, services
from servicehub.sessions import SessionRegistry

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gateway = create_gateway(settings)
        app.state.gateway = gateway
        app.state.sessions = SessionRegistry(gateway, settings)
        logger.info("ServiceHub started with %s gateway", gateway.backend_name)
        try:
            yield
        finally:
            await app.state.sessions.close_all()
            await gateway.close()
            logger.info("ServiceHub stopped")

    app = FastAPI(title="ServiceHub API", version="0.1.0", lifespan=lifespan)

    allow_any_origin = len(settings.cors_origins) == 1 and settings.cors_origins[0] == "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        # Browsers reject wildcard CORS with credentials enabled.
        allow_credentials=not allow_any_origin,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if not (len(settings.trusted_hosts) == 1 and settings.trusted_hosts[0] == "*"):
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_hosts)

    app.include_router(auth.router)
    app.include_router(services.router)
    app.include_router(bookings.router)
    app.include_router(chat.router)

    if settings.gateway_backend == "sqlite" and settings.blob_base_url.startswith("/"):
        app.mount(
            settings.blob_base_url,
            StaticFiles(directory=settings.blob_dir, check_dir=False),
            name="blobs",
        )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/ready")
    def ready(request: Request):
        return {
            "status": "ready",
            "gateway": request.app.state.gateway.backend_name,
            "sessions": len(request.app.state.sessions),
        }

    # Page routes include "/" so they go last.
    app.include_router(pages.router)
    return app


app = create_app()
