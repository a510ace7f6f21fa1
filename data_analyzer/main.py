from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from data_analyzer.api import router as data_analyzer_router
from data_analyzer.api import shutdown_services
from data_analyzer.logging_config import configure_logging
from data_analyzer.settings import load_settings


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    shutdown_services()


def create_app() -> FastAPI:
    configure_logging()
    settings = load_settings()
    application = FastAPI(title="Data Analyzer Backend", version="0.1.0", lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(data_analyzer_router)
    return application


app = create_app()
