"""FastAPI application: the HTTP surface over the Queue Engine."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__
from .config import Settings
from .engine import QueueEngine
from .errors import (
    ErrorResponse,
    InvalidTransition,
    NotFound,
    StoreUnavailable,
    TokenError,
    ValidationError,
    VerificationRequired,
)
from .models import Token
from .otp import OtpIssuer
from .runtime import Runtime, build_runtime
from .schemas import (
    CatalogOut,
    OtpSendRequest,
    OtpSendResponse,
    OtpVerifyRequest,
    OtpVerifyResponse,
    QueueBoardOut,
    SubmitTokenRequest,
    TokenOut,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses first.
HTTP_STATUS: list[tuple[type[TokenError], int]] = [
    (ValidationError, 400),
    (VerificationRequired, 401),
    (NotFound, 404),
    (InvalidTransition, 409),
    (StoreUnavailable, 503),
]


def http_status_for(exc: TokenError) -> int:
    for cls, status in HTTP_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


# -------------------- dependencies --------------------


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise StoreUnavailable("service is starting up")
    return runtime


def get_engine(runtime: Runtime = Depends(get_runtime)) -> QueueEngine:
    return runtime.engine


def _optional(token: Optional[Token]):
    if token is None:
        return Response(status_code=204)
    return TokenOut.from_token(token)


# -------------------- routes --------------------

router = APIRouter()


@router.get("/healthz", tags=["health"])
def healthcheck(runtime: Runtime = Depends(get_runtime)):
    try:
        runtime.store.count_waiting(runtime.engine.queues[0])
    except StoreUnavailable as e:
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": str(e)})
    return {"status": "healthy", "queues": list(runtime.engine.queues)}


@router.get("/services", response_model=CatalogOut, tags=["catalog"])
def list_services(engine: QueueEngine = Depends(get_engine)):
    return CatalogOut(queues={q: list(s) for q, s in engine.catalog.services.items()})


@router.post("/tokens", status_code=201, response_model=TokenOut, tags=["tokens"])
def submit_token(body: SubmitTokenRequest, engine: QueueEngine = Depends(get_engine)):
    token = engine.submit_token(
        body.queue,
        body.service,
        body.name,
        body.mobile,
        verification=body.verification,
    )
    return TokenOut.from_token(token)


@router.get("/tokens/{token_id}", response_model=TokenOut, tags=["tokens"])
def get_token(token_id: str, engine: QueueEngine = Depends(get_engine)):
    return TokenOut.from_token(engine.find_by_id(token_id))


@router.post("/tokens/{token_id}/serve", response_model=TokenOut, tags=["admin"])
def serve_token(token_id: str, engine: QueueEngine = Depends(get_engine)):
    return TokenOut.from_token(engine.serve_specific(token_id))


@router.post(
    "/queues/{queue}/serve-next",
    response_model=TokenOut,
    responses={204: {"description": "No tokens waiting"}},
    tags=["admin"],
)
def serve_next(queue: str, engine: QueueEngine = Depends(get_engine)):
    return _optional(engine.serve_next(queue))


@router.get("/queues/{queue}/waiting", response_model=List[TokenOut], tags=["queues"])
def list_waiting(queue: str, engine: QueueEngine = Depends(get_engine)):
    return [TokenOut.from_token(t) for t in engine.find_waiting(queue)]


@router.get(
    "/queues/{queue}/serving",
    response_model=TokenOut,
    responses={204: {"description": "Nobody is being served"}},
    tags=["queues"],
)
def current_serving(queue: str, engine: QueueEngine = Depends(get_engine)):
    return _optional(engine.current_serving(queue))


@router.get(
    "/queues/{queue}/recent",
    response_model=TokenOut,
    responses={204: {"description": "No tokens issued yet"}},
    tags=["queues"],
)
def most_recent(queue: str, engine: QueueEngine = Depends(get_engine)):
    return _optional(engine.most_recent_issued(queue))


@router.get("/queues/{queue}", response_model=QueueBoardOut, tags=["queues"])
def queue_board(queue: str, engine: QueueEngine = Depends(get_engine)):
    return QueueBoardOut.from_board(engine.board(queue))


def _issuer(runtime: Runtime) -> OtpIssuer:
    if not isinstance(runtime.otp, OtpIssuer):
        raise NotFound("OTP verification is disabled")
    return runtime.otp


@router.post("/otp/send", response_model=OtpSendResponse, tags=["otp"])
def send_otp(body: OtpSendRequest, runtime: Runtime = Depends(get_runtime)):
    challenge = _issuer(runtime).send_code(body.mobile)
    return OtpSendResponse(
        mobile=challenge.mobile,
        expires_in=challenge.expires_in,
        code=challenge.code if runtime.settings.otp_expose_codes else None,
    )


@router.post("/otp/verify", response_model=OtpVerifyResponse, tags=["otp"])
def verify_otp(body: OtpVerifyRequest, runtime: Runtime = Depends(get_runtime)):
    verification = _issuer(runtime).verify(body.mobile, body.code)
    return OtpVerifyResponse(verification=verification.handle, expires_in=verification.expires_in)


# -------------------- error handling / middleware --------------------


async def handle_token_error(request: Request, exc: TokenError) -> JSONResponse:
    status = http_status_for(exc)
    if status >= 500:
        logger.warning("%s %s -> %d %s", request.method, request.url.path, status, exc)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=status, content=exc.to_response().to_message(), headers=headers)


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    content = ErrorResponse("validation_error", "invalid request").to_message(
        details={"errors": jsonable_encoder(exc.errors())}
    )
    return JSONResponse(status_code=400, content=content)


async def request_logging_middleware(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TokenError, handle_token_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)


def create_app(runtime: Runtime | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the API.

    Pass `runtime` to serve an existing engine (tests, embedding). Otherwise
    a Runtime is built from `settings` on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: Runtime | None = None
        if app.state.runtime is None:
            owned = build_runtime(settings or Settings())
            app.state.runtime = owned
        try:
            yield
        finally:
            if owned is not None:
                owned.close()
                app.state.runtime = None

    app = FastAPI(
        title="Salon Token API",
        version=__version__,
        description="Queue numbers for salon walk-ins",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.middleware("http")(request_logging_middleware)
    register_exception_handlers(app)
    app.include_router(router)
    return app
