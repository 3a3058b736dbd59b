"""FastAPI application factory for Planward-Engine."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from planward_engine.common.config import get_settings
from planward_engine.common.logging import setup_logging
from planward_engine.common.schemas import HealthResponse


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from planward_engine.deps import get_db, get_provider
        db = get_db()
        await db.init()
        await db.create_all()
        yield
        await get_provider().close()
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            version=settings.api_version, billing_enabled=settings.billing_enabled
        )

    from planward_engine.billing.router import router as billing_router
    app.include_router(billing_router, prefix=settings.api_prefix, tags=["billing"])

    return app
