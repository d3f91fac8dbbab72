from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .routes_reviews import router as reviews_router
from .routes_scheduler import router as scheduler_router
from .routes_sync import router as sync_router
from .services.pipeline import build_pipeline
from .services.scheduler import scheduler_service
from .settings import get_settings

logger = logging.getLogger("app")

settings = get_settings()
app = FastAPI(title=settings.app_name)
app.state.pipeline = build_pipeline(settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(sync_router)
app.include_router(reviews_router)
app.include_router(scheduler_router)


@app.on_event("startup")
async def startup_event():
    pipeline = app.state.pipeline
    logger.info(
        "Review pipeline ready: platforms=%s ai_drafts=%s",
        sorted(pipeline.clients),
        pipeline.generator is not None,
    )
    scheduler_service.configure(settings.async_database_url, pipeline)
    scheduler_service.start()


@app.on_event("shutdown")
async def shutdown_event():
    scheduler_service.stop()
