import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

load_dotenv()

from captionai.core.config import settings, validate_config  # noqa: E402
from captionai.core.deps import get_gate, get_receiver  # noqa: E402
from captionai.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from captionai.core.logging import configure_logging  # noqa: E402
from captionai.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from captionai.core.validation import validate_env  # noqa: E402
from captionai.api import billing, entitlements, generate, health  # noqa: E402

configure_logging(settings.ENV, settings.LOG_LEVEL, settings.LOG_IDENTITIES)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("captionai")
    logger.info("Starting Caption AI backend...")
    # load VIP list and storage once, before the first request
    gate = get_gate()
    get_receiver()
    logger.info("[startup] free generation limit", extra={"free_limit": gate.free_limit})
    try:
        yield
    finally:
        logging.getLogger("captionai").info("Stopping Caption AI backend...")


app = FastAPI(title="Caption AI - Backend", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ALLOW_ORIGINS.split(",") if o.strip()],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(generate.router)
app.include_router(entitlements.router)
app.include_router(billing.router)
app.include_router(health.root_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("captionai.main:app", host="0.0.0.0", port=8000)
