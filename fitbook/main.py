from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .database import Base, engine
from .observability import AccessLogMiddleware, add_exception_handlers, configure_logging
from .routers import bookings, class_instances, credits, health, payments, webhooks

ROUTERS = (health, bookings, class_instances, credits, payments, webhooks)

# Tables exist even when TestClient is used without entering the lifespan
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    application = FastAPI(title="Fitbook API", version="0.1.0", lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(AccessLogMiddleware)
    add_exception_handlers(application)

    for module in ROUTERS:
        application.include_router(module.router)
    return application


app = create_app()
