import time
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from pymongo.errors import ConnectionFailure

from pawdia.core.config import get_settings
from pawdia.core.exceptions import (
    AppError,
    StoreUnavailableError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from pawdia.core.logging import bind_request_id, configure_logging, get_logger
from pawdia.db.init import init_db, ping_db
from pawdia.routers import admin, auth, credits, generate, payments, subscriptions
from pawdia.services.rate_limit import close_redis

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="Pawdia AI API",
    description="Accounts, credit ledger, paid AI pet portrait generation and PayPal checkout.",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Retry-After"],
)


@app.middleware("http")
async def request_context(request, call_next):
    """Bind a request id for logs and error bodies; log one line per request."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    bind_request_id(request_id)
    started = time.perf_counter()
    response = await call_next(request)
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

API_ROUTERS = [
    (auth.router, "auth"),
    (credits.router, "credits"),
    (generate.router, "generate"),
    (subscriptions.router, "subscriptions"),
    (payments.router, "payments"),
    (admin.router, "admin"),
]
for router, name in API_ROUTERS:
    app.include_router(router, prefix=f"/v1/{name}", tags=[name])


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    await init_db()
    log.info("startup", msg="DB connected", db=settings.mongodb_db_name)


@app.on_event("shutdown")
async def shutdown():
    await close_redis()


@app.get("/health")
async def health():
    """Liveness for load balancers; does not touch the database."""
    return {"status": "ok"}


@app.get("/health/ready")
async def ready():
    """Readiness: the credit store must answer before this instance takes traffic."""
    try:
        await ping_db()
    except ConnectionFailure as e:
        raise StoreUnavailableError() from e
    return {"status": "ready"}
