import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from backend.routers import admin, auth, capture, core, courses, sessions
from backend.services.controllers import close_all_controllers
from database.db import create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Rollcall API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

app.include_router(core.router)
app.include_router(auth.router)
app.include_router(courses.router)
app.include_router(sessions.router)
app.include_router(capture.router)
app.include_router(admin.router)


@app.on_event("startup")
def _startup():
    create_tables()
    logger.info("Rollcall API ready")


@app.on_event("shutdown")
def _shutdown():
    # Releases any camera still held by a live capture session.
    closed = close_all_controllers()
    if closed:
        logger.info("Closed %d live controller(s) on shutdown", closed)
