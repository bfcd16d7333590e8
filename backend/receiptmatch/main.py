from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from receiptmatch.routers import matching, jobs, config
from receiptmatch.config import settings
from receiptmatch.exceptions import MatchingError, ValidationError, ConfigInvalidError
from receiptmatch.services.job_processor import job_processor
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("="*60)
    logger.info("Starting Receipt Matching API")
    logger.info("="*60)
    logger.info(f"Job workers: {settings.job_worker_count}, max attempts: {settings.job_max_attempts}")
    logger.info(f"Default thresholds: auto={settings.default_auto_match_threshold}, suggest={settings.default_suggest_threshold}")
    logger.info("="*60)
    await job_processor.start()
    try:
        yield
    finally:
        await job_processor.stop()
        logger.info("Receipt Matching API stopped")


app = FastAPI(
    title="Receipt Matching API",
    description="API for matching bank transactions to receipts",
    version="1.0.0",
    lifespan=lifespan
)


# Parse CORS origins from config
def parse_cors_origins(origins_str: str) -> list:
    """Parse CORS origins string into a list, skipping blanks."""
    return [origin.strip() for origin in origins_str.split(",") if origin.strip()]


cors_origins = parse_cors_origins(settings.cors_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Include routers
app.include_router(matching.router)
app.include_router(jobs.router)
app.include_router(config.router)


@app.get("/")
def root():
    return {"message": "Receipt Matching API", "version": "1.0.0"}


@app.get("/health")
def health_check():
    return {"status": "healthy", "job_workers_running": job_processor.running}


@app.exception_handler(MatchingError)
async def matching_exception_handler(request: Request, exc: MatchingError):
    """Map matching engine errors to their HTTP status"""
    content = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, (ValidationError, ConfigInvalidError)) and exc.field:
        content["field"] = exc.field
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler so clients always get a JSON body"""
    logging.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error: {str(exc)}"}
    )
