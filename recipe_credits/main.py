import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

# Import after dotenv is loaded
from recipe_credits.core.config import settings, validate_config
from recipe_credits.core.database import create_all_tables
from recipe_credits.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from recipe_credits.core.logging import LOGGER_NAME, configure_logging
from recipe_credits.core.middleware.request_id import RequestIdMiddleware
from recipe_credits.core.validation import validate_env
from recipe_credits.api import achievements, admin, billing, credits, health, streaks, usage

configure_logging(settings.ENV, settings.LOG_LEVEL)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger(LOGGER_NAME)
    logger.info("Starting recipe credits service...")
    app.state.startup_time = time.time()
    if settings.AUTO_CREATE_SCHEMA:
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping recipe credits service...")


app = FastAPI(title="Recipe Credits", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(credits.router)
app.include_router(usage.router)
app.include_router(achievements.router)
app.include_router(streaks.router, tags=["streaks"])
app.include_router(billing.router)
app.include_router(admin.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("recipe_credits.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
