import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, List

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

import metrics
from config import Settings, load_settings
from db_adapter import DatabaseClient, SqlClickLog, SqlRowStore
from errors import AppError, ConfigError, InvalidArgument, RateLimited, StoreError, StoreUnavailable, format_exception_response
from increment import RemoteCounterStore
from rate_limit import RateLimiter
from rest_client import RestClickLog, RestClient, RestRowStore
from storage import ClickLog, CounterStore, MemoryClickLog, MemoryCounterStore

logger = logging.getLogger(__name__)

# maximum entries returned by list endpoints
MAX_LIMIT = 100

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "same-site",
}


def security_headers(settings: Settings) -> Dict[str, str]:
    headers = dict(SECURITY_HEADERS)
    if settings.hsts:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return headers


class CounterOut(BaseModel):
    key: str
    value: int


class CounterIn(BaseModel):
    value: int = Field(ge=0, strict=True)


class VisitsOut(BaseModel):
    page: str
    visits: int


class ValueOut(BaseModel):
    value: int


class ClickIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str = Field(alias="cardTitle")


class ClickOut(BaseModel):
    id: int | str | None = None
    subject: str
    clicked_at: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class LeaderboardEntry(BaseModel):
    subject: str
    clicks: int


class AnalyticsOut(BaseModel):
    subject: str
    total_clicks: int
    recent_clicks: List[str]
    first_click: str | None = None
    last_click: str | None = None


def build_stores(
    settings: Settings, counters: CounterStore | None = None, clicks: ClickLog | None = None
) -> tuple[CounterStore, ClickLog]:
    """Construct whichever of the counter store and click log was not supplied, for the configured backend."""
    if counters is not None and clicks is not None:
        return counters, clicks

    if settings.backend == "sql":
        client = DatabaseClient(settings.database_url, settings.counter_table, settings.clicks_table)
        try:
            client.create_schema()
        except StoreUnavailable as e:
            # the database may come up later; requests will report 500 until then
            logger.warning("could not create schema: %s", e)
        if counters is None:
            counters = RemoteCounterStore(SqlRowStore(client))
        if clicks is None:
            clicks = SqlClickLog(client)
        return counters, clicks

    if settings.backend == "supabase":
        client = RestClient(settings.supabase_url, settings.supabase_key)
        if counters is None:
            counters = RemoteCounterStore(RestRowStore(client, settings.counter_table, settings.increment_rpc))
        if clicks is None:
            clicks = RestClickLog(client, settings.clicks_table, settings.click_counts_view)
        return counters, clicks

    return counters or MemoryCounterStore(), clicks or MemoryClickLog()


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def get_counters(request: Request) -> CounterStore:
    return request.app.state.counters


def get_clicks(request: Request) -> ClickLog:
    return request.app.state.clicks


def enforce_rate_limit(request: Request):
    limiter: RateLimiter = request.app.state.rate_limiter
    caller = client_address(request)
    if not limiter.allow(caller):
        metrics.incr("rate_limited")
        raise RateLimited(retry_after=limiter.retry_after(caller))


router = APIRouter(dependencies=[Depends(enforce_rate_limit)])


@router.get("/")
def index():
    return {"message": "Visit Counter API is running!"}


# --- counters ---


@router.get("/counts")
def list_counts(counters: CounterStore = Depends(get_counters)) -> Dict[str, int]:
    return counters.list_all()


# keys are page paths and may contain slashes, so the increment route goes first
@router.post("/count/{key:path}/increment", response_model=CounterOut)
def increment_count(key: str, counters: CounterStore = Depends(get_counters)):
    value = counters.increment(key)
    metrics.incr("counter_increment")
    return {"key": key, "value": value}


@router.get("/count/{key:path}", response_model=CounterOut)
def get_count(key: str, counters: CounterStore = Depends(get_counters)):
    return {"key": key, "value": counters.get(key)}


@router.put("/count/{key:path}", response_model=CounterOut)
def set_count(key: str, payload: CounterIn, counters: CounterStore = Depends(get_counters)):
    return {"key": key, "value": counters.set(key, payload.value)}


@router.delete("/count/{key:path}", response_model=CounterOut)
def reset_count(key: str, counters: CounterStore = Depends(get_counters)):
    return {"key": key, "value": counters.reset(key)}


# --- page visits ---


@router.get("/api/visits", response_model=List[VisitsOut])
def list_visits(limit: int = Query(MAX_LIMIT, ge=1), counters: CounterStore = Depends(get_counters)):
    """Pages ordered by visit count, busiest first."""
    return [{"page": page, "visits": visits} for page, visits in counters.ranked(min(limit, MAX_LIMIT))]


@router.post("/api/visits", response_model=VisitsOut)
def increment_root_visits(counters: CounterStore = Depends(get_counters)):
    value = counters.increment("/")
    metrics.incr("counter_increment")
    return {"page": "/", "visits": value}


@router.get("/api/visits/{page:path}", response_model=VisitsOut)
def get_visits(page: str, counters: CounterStore = Depends(get_counters)):
    page = page or "/"
    return {"page": page, "visits": counters.get(page)}


@router.post("/api/visits/{page:path}", response_model=VisitsOut)
def increment_visits(page: str, counters: CounterStore = Depends(get_counters)):
    page = page or "/"
    value = counters.increment(page)
    metrics.incr("counter_increment")
    return {"page": page, "visits": value}


@router.post("/api/count/visitors/increment", response_model=ValueOut)
def increment_visitors(counters: CounterStore = Depends(get_counters)):
    value = counters.increment("/")
    metrics.incr("counter_increment")
    return {"value": value}


# --- click tracking ---


@router.post("/log-click", response_model=ClickOut, status_code=201)
def log_click(payload: ClickIn, request: Request, clicks: ClickLog = Depends(get_clicks)):
    record = clicks.record(payload.subject, client_address(request), request.headers.get("user-agent"))
    metrics.incr("click_logged")
    return record


@router.get("/leaderboard", response_model=List[LeaderboardEntry])
def leaderboard(
    limit: int = Query(10, ge=1),
    min_clicks: int = Query(1, alias="minClicks", ge=0),
    clicks: ClickLog = Depends(get_clicks),
):
    return clicks.leaderboard(limit=min(limit, MAX_LIMIT), min_clicks=min_clicks)


@router.get("/analytics/{subject}", response_model=AnalyticsOut)
def analytics(subject: str, recent: int = Query(10, ge=1, le=MAX_LIMIT), clicks: ClickLog = Depends(get_clicks)):
    return clicks.analytics(subject, recent=recent)


# --- error handling ---


def _error_response(request: Request, exc: Exception, message: str | None = None) -> JSONResponse:
    """Return structured error JSON and log the failure with its request_id.

    Format: {error_code, message, request_id, timestamp}
    """
    if isinstance(exc, StoreError) and getattr(exc, "status_code", 500) >= 500:
        metrics.incr("store_error")
        message = message or "failed to reach the data store"
    status_code, body, logrec = format_exception_response(exc, message)

    if status_code >= 500:
        logger.error(
            "%s %s -> %s [%s] %s\n%s",
            request.method, request.url.path, logrec["error_code"], logrec["request_id"], logrec["message"], logrec["stack"],
        )
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, status_code, logrec["message"])

    headers = security_headers(request.app.state.settings)
    if isinstance(exc, RateLimited) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def app_error_handler(request: Request, exc: AppError):
    return _error_response(request, exc)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return _error_response(request, InvalidArgument("; ".join(parts) or "invalid request"))


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(request, exc, str(exc.detail))


async def unhandled_error_handler(request: Request, exc: Exception):
    return _error_response(request, exc)


def create_app(
    settings: Settings | None = None,
    counters: CounterStore | None = None,
    clicks: ClickLog | None = None,
) -> FastAPI:
    """Build the application. Stores not passed in are built from settings."""
    settings = settings or load_settings()
    counters, clicks = build_stores(settings, counters, clicks)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("%s started with %s backend", settings.service_name, settings.backend)
        try:
            yield
        finally:
            logger.info("shutting down stores")
            counters.close()
            clicks.close()

    app = FastAPI(title="Visit Counter API", lifespan=lifespan)
    app.state.settings = settings
    app.state.counters = counters
    app.state.clicks = clicks
    app.state.rate_limiter = RateLimiter(settings.rate_limit_max, settings.rate_limit_window_seconds)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        try:
            response = await call_next(request)
        except Exception as exc:
            # answered here so the 500 still passes back through CORS
            response = _error_response(request, exc)
        for name, value in security_headers(settings).items():
            response.headers.setdefault(name, value)
        return response

    # added last so it wraps every response, errors included
    origins = list(settings.cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials="*" not in origins,
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/health")
    def health():
        """Liveness payload; never rate limited and never touches the store."""
        payload = metrics.health_check()
        payload.update({"service": settings.service_name, "backend": settings.backend})
        return payload

    app.include_router(router)
    return app


def run():
    try:
        settings = load_settings()
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.critical("invalid configuration: %s", e)
        sys.exit(1)

    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    import uvicorn

    logger.info("Visit counter server running on port %d", settings.port)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
