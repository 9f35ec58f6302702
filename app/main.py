"""Condition verifier FastAPI application."""
import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import sessionmaker

from app.logging_config import configure_logging, normalize_level
from app.verifier.api_models import ErrorCode, VerifyRequest, err, success
from app.verifier.conditions import validate_identifier
from app.verifier.exceptions import ValidationError, VerifierError
from app.verifier.history import HistoryStore
from app.verifier.ledger import IdentityLedger, create_identity_ledger
from app.verifier.notifications import (
    SUBSCRIPTION_DROPPED,
    InMemoryChannel,
    NotificationChannel,
    NotificationPublisher,
    create_notification_channel,
)
from app.verifier.resolver import IdentityResolver
from app.verifier.verify import VerificationService

configure_logging()
log = logging.getLogger("verifier")


def configure_services(
    app: FastAPI,
    ledger: IdentityLedger,
    channel: NotificationChannel,
    session_factory: Optional[sessionmaker],
    ledger_timeout: Optional[float] = None,
    clock: Optional[Callable[[], datetime]] = None,
    await_side_effects: Optional[bool] = None,
) -> VerificationService:
    """Wire the engine's collaborators onto app.state.

    Called once at startup (or by tests with in-memory collaborators).
    """
    resolver = IdentityResolver(ledger, timeout_seconds=ledger_timeout)
    history = HistoryStore(session_factory) if session_factory is not None else None
    publisher = NotificationPublisher(channel)
    service = VerificationService(
        resolver,
        history=history,
        publisher=publisher,
        clock=clock,
        await_side_effects=await_side_effects,
    )
    app.state.ledger = ledger
    app.state.channel = channel
    app.state.resolver = resolver
    app.state.history = history
    app.state.publisher = publisher
    app.state.service = service
    return service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build default collaborators unless they were injected beforehand."""
    log.info("Starting condition verifier...")
    engine = None
    owned = getattr(app.state, "service", None) is None

    if owned:
        from app.core.config import DATABASE_URL
        from app.db.session import create_db_engine, create_session_factory, init_database

        try:
            engine = create_db_engine(DATABASE_URL)
            init_database(engine)
            configure_services(
                app,
                ledger=create_identity_ledger(),
                channel=create_notification_channel(),
                session_factory=create_session_factory(engine),
            )
        except Exception as e:
            log.error(f"Failed to initialize verifier: {e}")
            raise
    log.info("Condition verifier started")

    yield

    log.info("Shutting down condition verifier...")
    await app.state.service.drain()
    if owned:
        await app.state.channel.close()
        await app.state.ledger.close()
        if engine is not None:
            engine.dispose()
        app.state.service = None
    log.info("Condition verifier stopped")


def _request_id(request: Request) -> str:
    for header in ("X-Request-ID", "X-Correlation-ID", "Request-Id"):
        if header in request.headers:
            return request.headers[header]
    return "-"


def create_app() -> FastAPI:
    app = FastAPI(title="Condition Verifier", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(VerifierError)
    async def verifier_error_handler(request: Request, exc: VerifierError):
        validation = getattr(exc, "validation", None) or None
        return JSONResponse(
            status_code=exc.status,
            content=err(exc.message, status=exc.status, code=exc.code, validation=validation),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        validation = {}
        for error in exc.errors():
            field = ".".join(str(part) for part in error.get("loc", ())[1:]) or "body"
            validation.setdefault(field, []).append(error.get("msg", "invalid"))
        return JSONResponse(
            status_code=400,
            content=err("Validation failed", status=400, code=ErrorCode.VALIDATION_ERROR,
                        validation=validation),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        log.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(
            status_code=500,
            content=err(f"Internal server error: {exc}", code=ErrorCode.SERVER_ERROR),
        )

    @app.middleware("http")
    async def req_log(request: Request, call_next):
        start = time.time()
        route = request.url.path
        remote = request.client.host if request.client else "-"
        resp = await call_next(request)
        duration_ms = int((time.time() - start) * 1000)
        log.info(f"request_complete status={resp.status_code} duration_ms={duration_ms}",
                 extra={"request_id": _request_id(request), "route": route, "remote_addr": remote})
        return resp

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.post("/verify")
    async def verify(req: VerifyRequest, request: Request):
        service: VerificationService = request.app.state.service
        result = await service.verify(
            req.user_address,
            req.verifier_id,
            req.conditions,
            requested_at=req.timestamp,
        )
        log.info("verify_called", extra={"request_id": _request_id(request), "route": "/verify",
                                         "remote_addr": request.client.host if request.client else "-"})
        return JSONResponse(success(result.to_dict()))

    @app.get("/verify/history")
    async def verify_history(
        request: Request,
        verifier_id: Optional[str] = Query(default=None, alias="verifierId"),
        limit: Optional[int] = Query(default=None),
    ):
        """Past verifications for a verifier, newest first (at most 50)."""
        history: Optional[HistoryStore] = request.app.state.history
        # Validate before touching the store so a bad id is always a 400
        verifier_id = validate_identifier(verifier_id, "verifierId")
        if history is None:
            return JSONResponse(success([]))
        records = await asyncio.to_thread(history.list_by_verifier, verifier_id, limit)
        return JSONResponse(success([record.to_dict() for record in records]))

    @app.get("/user/{address}")
    async def user(address: str, request: Request):
        """Subject attribute lookup through the bounded resolver."""
        resolver: IdentityResolver = request.app.state.resolver
        try:
            address = validate_identifier(address, "address")
            subject = await resolver.resolve_subject(address)
        except VerifierError:
            raise
        except Exception as e:
            log.error(f"Error fetching user data: {e}")
            return JSONResponse(
                status_code=500,
                content=err(f"Failed to fetch user data: {e}", code=ErrorCode.SERVER_ERROR),
            )
        return JSONResponse(success(subject.to_dict()))

    @app.get("/certificates/{address}")
    async def certificates(address: str, request: Request):
        """Every certificate held by a subject (possibly none)."""
        resolver: IdentityResolver = request.app.state.resolver
        try:
            address = validate_identifier(address, "address")
            certs = await resolver.resolve_certificates(address)
        except VerifierError:
            raise
        except Exception as e:
            log.error(f"Error fetching certificate data: {e}")
            return JSONResponse(
                status_code=500,
                content=err(f"Failed to fetch certificate data: {e}", code=ErrorCode.SERVER_ERROR),
            )
        return JSONResponse(success({"certificates": [c.to_dict() for c in certs]}))

    @app.websocket("/ws/verifier/{verifier_id}")
    async def verifier_events(websocket: WebSocket, verifier_id: str):
        """Stream `new-verification` events for one verifier.

        Only available with the in-memory notification channel.
        """
        channel = websocket.app.state.channel
        try:
            verifier_id = validate_identifier(verifier_id, "verifierId")
        except ValidationError as e:
            await websocket.close(code=1008, reason=e.message)
            return
        if not isinstance(channel, InMemoryChannel):
            await websocket.close(code=1011, reason="Live channel not served by this instance")
            return

        name = NotificationPublisher.channel_name(verifier_id)
        await websocket.accept()
        queue = channel.subscribe(name)
        log.info(f"WebSocket subscribed: {name}")

        async def forward():
            while True:
                message = await queue.get()
                if message is SUBSCRIPTION_DROPPED:
                    log.warning(f"WebSocket subscriber dropped: {name}")
                    await websocket.close(code=1013, reason="Subscriber fell behind")
                    return
                await websocket.send_json({"event": message["event"], "data": message["data"]})

        async def receive():
            # Client messages are ignored; reading only detects the disconnect
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    log.info(f"WebSocket closed by client: {name}")
                    return

        tasks = [asyncio.create_task(forward()), asyncio.create_task(receive())]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            channel.unsubscribe(name, queue)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, WebSocketDisconnect):
                log.warning(f"WebSocket {name} ended with error: {result}")

    @app.get("/version")
    def version():
        # GIT_SHA is injected at deploy time
        return {"git_sha": os.getenv("GIT_SHA", "unknown")}

    @app.get("/admin")
    def admin(request: Request):
        """Return all configurable items for operator visibility.

        Gated by ADMIN_ENDPOINT_ENABLED (default: True for dev, False for prod).
        """
        from app.core.config import (
            ADMIN_ENDPOINT_ENABLED,
            AWAIT_SIDE_EFFECTS,
            HISTORY_PAGE_LIMIT,
            LEDGER_BACKEND,
            LEDGER_CONTRACT_ADDRESS,
            LEDGER_RPC_URL,
            NOTIFY_BACKEND,
            NOTIFY_TIMEOUT_SECONDS,
        )

        if not ADMIN_ENDPOINT_ENABLED:
            return JSONResponse(
                status_code=404,
                content={"detail": "Admin endpoint disabled"}
            )

        resolver = getattr(request.app.state, "resolver", None)
        channel = getattr(request.app.state, "channel", None)
        return {
            "policy": {
                "ledger_timeout_seconds": resolver.timeout_seconds if resolver else None,
                "history_page_limit": HISTORY_PAGE_LIMIT,
                "await_side_effects": AWAIT_SIDE_EFFECTS,
                "notify_timeout_seconds": NOTIFY_TIMEOUT_SECONDS,
            },
            "ledger": {
                "backend": LEDGER_BACKEND,
                "rpc_url": LEDGER_RPC_URL,
                "contract_address": LEDGER_CONTRACT_ADDRESS,
            },
            "notifications": {
                "backend": NOTIFY_BACKEND,
                "live_subscribers": (
                    channel.subscriber_count() if isinstance(channel, InMemoryChannel) else None
                ),
            },
            "environment": {
                "log_level": logging.getLogger().getEffectiveLevel(),
                "log_level_name": logging.getLevelName(logging.getLogger().getEffectiveLevel()),
            },
        }

    class LogLevelRequest(BaseModel):
        level: str

        @field_validator("level")
        @classmethod
        def known_level(cls, value: str) -> str:
            return normalize_level(value)

    @app.post("/admin/log-level")
    def set_log_level(req: LogLevelRequest):
        """Set the root log level; unknown names are a VALIDATION_ERROR."""
        from app.core.config import ADMIN_ENDPOINT_ENABLED

        if not ADMIN_ENDPOINT_ENABLED:
            return JSONResponse(status_code=404, content={"detail": "Admin endpoint disabled"})

        logging.getLogger().setLevel(req.level)
        log.warning(f"Root log level set to {req.level}")
        return JSONResponse(success({"logLevel": req.level}))

    return app


app = create_app()
