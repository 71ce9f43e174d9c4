"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from mediavariants import config as app_config
from mediavariants.api.routes import router
from mediavariants.config import CORS_ORIGINS, logger as config_logger
from mediavariants.conversion import service as conversion_service
from mediavariants.db import dispose_engine, init_db

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    conversion_service.get_conversion_service().recover_interrupted_jobs()
    config_logger.info("Media variant API started")
    yield
    svc = conversion_service._conversion_service
    if svc is not None:
        svc.shutdown()
    dispose_engine()
    config_logger.info("Media variant API shutting down")


app = FastAPI(
    title="Media Variant API",
    description="Derive WebP/AVIF and AV1/WebM variants of uploaded media and serve the best available one.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)
# Originals and variants, served under the URL prefix used for URL synthesis
if app_config.MEDIA_BASE_URL.startswith("/"):
    app.mount(app_config.MEDIA_BASE_URL, StaticFiles(directory=str(app_config.MEDIA_ROOT), check_dir=False), name="media")


if __name__ == "__main__":
    import uvicorn
    from mediavariants.config import HOST, PORT
    uvicorn.run("mediavariants.main:app", host=HOST, port=PORT, reload=True)
