"""
FastAPI application entrypoint.

Run locally:  uvicorn rxcore.main:app --reload
"""

import logging

from fastapi import FastAPI

from rxcore.api.routes import router
from rxcore.config import settings
from rxcore.models.database import Base, engine
from rxcore.services.container import shutdown_services

logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s")

app = FastAPI(
    title="RxCore Clinical Integration API",
    description=(
        "Prescription registry access, clinical validation and medication "
        "adherence tracking for community pharmacies."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)


@app.on_event("shutdown")
def on_shutdown():
    shutdown_services()
