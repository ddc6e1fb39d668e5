import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from contact_store import SqliteContactStore
from db_models import FinalResponse, IdentifyRequest
from db_setup import init_db
from exceptions import ContactNotFoundError, IdentityConsistencyError, IdentityError
from identity_service import IdentityResolver
from log_setup import configure_logging

SERVICE_NAME = "Bitespeed Identity Reconciliation"
VERSION = "1.0.0"

logger = structlog.get_logger()

router = APIRouter()


def get_resolver(request: Request) -> IdentityResolver:
    return request.app.state.resolver


@router.get("/")
async def root():
    return {
        "message": f"{SERVICE_NAME} Service",
        "version": VERSION,
        "endpoints": {
            "identify": "POST /identify",
            "health": "GET /health",
        },
    }


@router.get("/health")
async def health():
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
    }


@router.post("/identify", response_model=FinalResponse)
async def identify(request: IdentifyRequest, resolver: IdentityResolver = Depends(get_resolver)):
    contact = await run_in_threadpool(resolver.identify, request.email, request.phoneNumber)
    return FinalResponse(contact=contact)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [error["msg"] for error in exc.errors()]
    logger.info("Rejected request", path=request.url.path, details=details)
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return JSONResponse(
            status_code=404,
            content={"error": "Endpoint not found", "path": request.url.path},
        )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


async def identity_error_handler(request: Request, exc: IdentityError):
    if isinstance(exc, ContactNotFoundError):
        logger.error("Update targeted a missing contact", contact_id=exc.contact_id)
    elif isinstance(exc, IdentityConsistencyError):
        logger.error("Contact graph is inconsistent", error=str(exc))
    else:
        logger.error("Identity reconciliation failed", error=str(exc))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", path=request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(settings: Settings = None, store=None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if store is None:
            init_db(settings.database_path)
        logger.info("Starting identity reconciliation service", version=VERSION)
        yield
        logger.info("Shutting down identity reconciliation service")

    app = FastAPI(
        title="Bitespeed Contact Reconciliation API",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.resolver = IdentityResolver(store or SqliteContactStore(settings.database_path))

    app.include_router(router)

    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(IdentityError, identity_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.middleware("http")
    async def enforce_timeout(request: Request, call_next):
        try:
            return await asyncio.wait_for(call_next(request), timeout=settings.request_timeout_seconds)
        except asyncio.TimeoutError:
            # The identify call keeps running in the threadpool and its writes still commit.
            logger.warning(
                "Request timed out, writes may still complete",
                method=request.method,
                path=request.url.path,
            )
            return JSONResponse(
                status_code=408,
                content={
                    "error": "Request timeout",
                    "message": "The request took too long to process",
                },
            )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "Handled request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
