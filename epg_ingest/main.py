from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from epg_ingest.config import settings, setup_logging
from epg_ingest.database import close_db, init_db
from epg_ingest.services.scheduler_service import epg_scheduler

from epg_ingest.routers import main_router


setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database and scheduler for the lifetime of the app"""
    logger.info("="*60)
    logger.info("Starting EPG Ingest (database=%s, sync cron='%s')", settings.database_path, settings.epg_sync_cron)

    try:
        await init_db()
        epg_scheduler.start()
    except Exception as e:
        logger.error(f"Failed to start EPG Ingest: {e}", exc_info=True)
        raise

    logger.info("EPG Ingest started successfully")
    logger.info("="*60)

    yield

    logger.info("Shutting down EPG Ingest...")

    try:
        epg_scheduler.shutdown()
    except Exception as e:
        logger.error(f"Error during scheduler shutdown: {e}", exc_info=True)

    await close_db()
    logger.info("EPG Ingest stopped")


app = FastAPI(
    title="EPG Ingest",
    version="0.1.0",
    lifespan=lifespan
)

app.include_router(main_router)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors and return them in a serializable form"""
    logger.error(f"Validation error for {request.method} {request.url.path}: {exc.errors()}")

    errors = [
        {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": str(error.get("input", ""))[:100]
        }
        for error in exc.errors()
    ]

    return JSONResponse(status_code=422, content={"detail": errors})
