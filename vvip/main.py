import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from vvip/.env (tests configure the environment themselves)
app_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(app_dir, ".env"))

# Import after dotenv is loaded
from vvip.core.config import settings, validate_config  # noqa: E402
from vvip.core.database import create_all_tables  # noqa: E402
from vvip.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from vvip.core.logging import configure_logging  # noqa: E402
from vvip.core.middleware.ratelimit import RateLimitMiddleware  # noqa: E402
from vvip.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from vvip.core.ratelimit import build_rate_limit_config_from_env  # noqa: E402
from vvip.core.validation import validate_env  # noqa: E402
from vvip.api import billing, health  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("vvip")
    logger.info("Starting THE VVIP billing service...")
    app.state.startup_time = time.time()
    if os.getenv("AUTO_CREATE_TABLES", "1") == "1":
        # Idempotent; production schemas are managed by migrations
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping THE VVIP billing service...")


app = FastAPI(title="THE VVIP - Billing", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(RateLimitMiddleware, config=build_rate_limit_config_from_env(os.environ))

app.add_exception_handler(AppError, app_error_handler)
# Starlette base class so router 404/405 share the error shape
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(health.router, tags=["health"])
app.include_router(health.root_router, tags=["health"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("vvip.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
