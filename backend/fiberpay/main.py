import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fiberpay.api.v1 import api_v1_router
from fiberpay.platform.config import settings
from fiberpay.platform.session import FiberSession


def create_app(session: FiberSession | None = None) -> FastAPI:
    logging.getLogger("fiberpay").setLevel(settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.fiber_session.aclose()

    app = FastAPI(title="Fiber Streaming Payments API", lifespan=lifespan)
    app.state.fiber_session = session or FiberSession.from_settings()

    allowed_origins = [o.strip() for o in str(settings.allowed_origins).split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_v1_router, prefix="/api/v1")
    return app


app = create_app()
