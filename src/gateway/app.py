from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from src.audit.recorder import AuditRecorder
from src.config.settings import get_settings
from src.gateway.auth import Authorizer, StaticTokenAuthorizer
from src.gateway.dispatch import OperationGateway
from src.gateway.protocol import (
    encode_frame,
    event_to_frame,
    parse_operation_params,
    rejection_frame,
)
from src.infra.errors import HostOpsError, Unauthorized
from src.infra.logging import setup_logging
from src.operations.models import Principal, SessionEvent
from src.session.database import create_db_engine, ensure_schema, make_session_factory
from src.session.manager import SessionManager
from src.stacks.reconciler import StackReconciler, StackView
from src.stacks.repository import StackRepository
from src.stacks.runtime import PodmanRuntime

logger = structlog.get_logger()

_MAX_AUDIT_LIMIT = 500


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize shared state on startup."""
    settings = get_settings()
    setup_logging(json_output=settings.logging.json_output, log_level=settings.logging.level)

    # DB is mandatory; startup fails if DB/schema unavailable.
    engine = await create_db_engine(settings.database)
    await ensure_schema(engine, settings.database.schema_)
    db_session_factory = make_session_factory(engine)
    logger.info("db_connected")

    session_manager = SessionManager()
    audit_recorder = AuditRecorder(db_session_factory)
    stack_repository = StackRepository(db_session_factory, base_dir=settings.stacks.base_dir)
    authorizer = StaticTokenAuthorizer.from_settings(settings.auth)
    if not settings.auth.tokens:
        logger.warning("auth_no_tokens_configured")

    runtime = PodmanRuntime(
        settings.stacks.runtime, timeout_seconds=settings.stacks.runtime_timeout_seconds,
    )
    reconciler = StackReconciler(
        stack_repository,
        runtime,
        session_manager,
        poll_interval_seconds=settings.stacks.poll_interval_seconds,
    )
    reconciler_task = asyncio.create_task(reconciler.run(), name="stack_reconciler")

    app.state.session_manager = session_manager
    app.state.audit_recorder = audit_recorder
    app.state.stack_reconciler = reconciler
    app.state.authorizer = authorizer
    app.state.operation_gateway = OperationGateway(
        authorizer=authorizer,
        sessions=session_manager,
        audit=audit_recorder,
        stacks=stack_repository,
        commands=settings.commands,
        progress=settings.progress,
        gateway=settings.gateway,
    )
    logger.info(
        "gateway_started",
        host=settings.gateway.host,
        port=settings.gateway.port,
        package_manager=settings.commands.package_manager,
        compose=settings.commands.compose,
    )

    yield

    # Cleanup
    reconciler_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await reconciler_task
    await session_manager.cancel_all()
    await engine.dispose()
    logger.info("db_engine_disposed")


app = FastAPI(title="HostOps Gateway", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# WebSocket transport
# ---------------------------------------------------------------------------


class WebSocketChannel:
    """ClientChannel over a Starlette WebSocket.

    A background reader drains client frames so a disconnect is noticed while
    the operation is still producing output.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._closed = asyncio.Event()
        self._client_gone = False
        self._reader: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_until_closed(), name="ws_reader")

    async def send(self, event: SessionEvent) -> None:
        await self._websocket.send_text(encode_frame(event_to_frame(event)))

    async def wait_closed(self) -> None:
        await self._closed.wait()

    @property
    def client_gone(self) -> bool:
        return self._client_gone

    async def aclose(self) -> None:
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader

    async def _read_until_closed(self) -> None:
        try:
            while True:
                message = await self._websocket.receive()
                if message["type"] == "websocket.disconnect":
                    self._client_gone = True
                    break
                # Nothing is expected after the request; extra frames are dropped.
                logger.debug("ws_message_ignored")
        except (WebSocketDisconnect, RuntimeError):
            self._client_gone = True
        finally:
            self._closed.set()


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.websocket("/ws/operations")
async def operations_endpoint(websocket: WebSocket, token: str | None = None) -> None:
    await websocket.accept()
    logger.info("ws_connected")
    try:
        raw = await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("ws_disconnected_before_request")
        return
    await _handle_operation(websocket, raw, token)


async def _handle_operation(websocket: WebSocket, raw: str, token: str | None) -> None:
    """Run one operation request; the stream ends with exactly one terminal frame."""
    gateway: OperationGateway = websocket.app.state.operation_gateway
    channel = WebSocketChannel(websocket)
    try:
        params = parse_operation_params(raw)
        prepared = await gateway.prepare(token, params)
        channel.start()
        await gateway.run(prepared, channel)
    except HostOpsError as e:
        logger.warning("operation_rejected", code=e.code, error=str(e))
        await _send_terminal(websocket, encode_frame(rejection_frame(e)))
    except Exception:
        logger.exception("unhandled_error")
        await _send_terminal(websocket, encode_frame(rejection_frame(
            HostOpsError("An internal error occurred"),
        )))
    finally:
        await channel.aclose()

    if not channel.client_gone:
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await websocket.close()
    logger.info("ws_operation_closed")


async def _send_terminal(websocket: WebSocket, payload: str) -> None:
    try:
        await websocket.send_text(payload)
    except (RuntimeError, WebSocketDisconnect):
        logger.info("ws_terminal_undeliverable")


# ---------------------------------------------------------------------------
# REST: stack status and audit trail
# ---------------------------------------------------------------------------


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def _principal(request: Request, authorization: str | None, *, privileged: bool) -> Principal:
    authorizer: Authorizer = request.app.state.authorizer
    try:
        principal = await authorizer.authenticate(_bearer(authorization))
    except Unauthorized as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
    if privileged and not principal.privileged:
        raise HTTPException(status_code=403, detail="Privileged role required")
    return principal


def _stack_payload(view: StackView) -> dict[str, Any]:
    return {
        "id": view.id,
        "name": view.name,
        "status": view.status.value,
        "container_count": view.container_count,
        "running_count": view.running_count,
        "containers": [
            {
                "service": c.service,
                "name": c.container_name,
                "image": c.image,
                "status": c.status,
                "ports": list(c.ports),
            }
            for c in view.containers
        ],
    }


@app.get("/stacks")
async def list_stacks(
    request: Request, authorization: str | None = Header(default=None),
) -> list[dict[str, Any]]:
    await _principal(request, authorization, privileged=False)
    reconciler: StackReconciler = request.app.state.stack_reconciler
    return [_stack_payload(v) for v in await reconciler.reconcile_all()]


@app.get("/stacks/{stack_id}/status")
async def stack_status(
    stack_id: str, request: Request, authorization: str | None = Header(default=None),
) -> dict[str, Any]:
    await _principal(request, authorization, privileged=False)
    reconciler: StackReconciler = request.app.state.stack_reconciler
    view = await reconciler.get(stack_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Stack '{stack_id}' not found")
    return _stack_payload(view)


@app.get("/operations/active")
async def active_operations(
    request: Request, authorization: str | None = Header(default=None),
) -> list[dict[str, Any]]:
    await _principal(request, authorization, privileged=False)
    session_manager: SessionManager = request.app.state.session_manager
    return [
        {
            "session_id": s.session_id,
            "operation": s.request.type.value,
            "targets": list(s.request.targets),
            "actor": s.request.requester.identity,
            "requested_at": s.request.requested_at.isoformat(),
            "last_sequence": s.last_sequence,
        }
        for s in session_manager.active_sessions()
    ]


@app.get("/audit")
async def audit_entries(
    request: Request,
    authorization: str | None = Header(default=None),
    limit: int = Query(100, ge=1, le=_MAX_AUDIT_LIMIT),
    action: str | None = None,
    actor: str | None = None,
) -> list[dict[str, Any]]:
    await _principal(request, authorization, privileged=True)
    recorder: AuditRecorder = request.app.state.audit_recorder
    entries = await recorder.list_entries(limit=limit, action_prefix=action, actor=actor)
    return [
        {
            "session_id": e.session_id,
            "actor": e.actor,
            "action": e.action,
            "target": e.target,
            "success": e.success,
            "outcome": e.outcome,
            "detail": e.detail,
            "timestamp": e.timestamp.isoformat(),
        }
        for e in entries
    ]
