import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import PlainTextResponse

from replydesk.completion import CompletionClient, build_completion
from replydesk.config import Settings, get_settings
from replydesk.credentials import CredentialStore
from replydesk.errors import NotConnectedError, PersistenceError, TransportError
from replydesk.logging_utils import RequestLoggingMiddleware, log_send_data, setup_logging
from replydesk.metrics import get_metrics, get_metrics_content_type
from replydesk.pipeline import ReplyPipeline
from replydesk.reply_policy import ReplyPolicy
from replydesk.schemas import (
    AnalyticsOverview,
    ErrorResponse,
    HealthResponse,
    Message,
    SendRequest,
    SendResponse,
    SessionStatus,
)
from replydesk.session import SessionManager
from replydesk.storage import StorageAdapter, create_storage
from replydesk.transport import Transport, build_transport
from replydesk.utils import render_pairing_qr, verify_api_token

logger = logging.getLogger(__name__)

HISTORY_MAX_LIMIT = 500

_UNSET = object()


def create_app(
    settings: Optional[Settings] = None,
    transport=_UNSET,
    storage: Optional[StorageAdapter] = None,
    completion=_UNSET,
) -> FastAPI:
    """
    Build the application.

    Collaborators default to what settings describe; tests pass their own
    transport, storage or completion client.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: open storage, wire session -> pipeline, start the session
        - Shutdown: stop the session and the worker, release storage
        """
        store = storage or create_storage(settings)
        store.init()

        live_transport: Optional[Transport] = (
            build_transport(settings.TRANSPORT, Path(settings.SESSIONS_DIR))
            if transport is _UNSET else transport
        )
        completion_client: Optional[CompletionClient] = (
            build_completion(settings) if completion is _UNSET else completion
        )

        session = SessionManager(
            transport=live_transport,
            credentials=CredentialStore(Path(settings.SESSIONS_DIR) / "credentials.json"),
            default_address=settings.SELF_ADDRESS,
            base_delay=settings.RECONNECT_BASE_DELAY,
            max_delay=settings.RECONNECT_MAX_DELAY,
        )
        pipeline = ReplyPipeline(
            storage=store,
            policy=ReplyPolicy.from_settings(settings, completion_client),
            session=session,
            queue_size=settings.INBOUND_QUEUE_SIZE,
        )
        session.subscribe(pipeline.submit)

        app.state.settings = settings
        app.state.storage = store
        app.state.session = session
        app.state.pipeline = pipeline

        pipeline.start()
        await session.start()
        try:
            yield
        finally:
            await session.stop()
            await pipeline.stop()
            store.close()

    app = FastAPI(
        title="replydesk",
        description="Auto-reply service for a single business messaging session",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    _register_routes(app)
    return app


# =============================================================================
# Dependencies
# =============================================================================

def get_storage(request: Request) -> StorageAdapter:
    return request.app.state.storage


def get_session(request: Request) -> SessionManager:
    return request.app.state.session


def get_pipeline(request: Request) -> ReplyPipeline:
    return request.app.state.pipeline


def require_token(
    request: Request,
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    """Enforce the bearer token when API_TOKEN is configured."""
    expected = request.app.state.settings.API_TOKEN
    if not expected:
        return
    if not verify_api_token(authorization, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")


def _register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    def health_ready(response: Response, storage: StorageAdapter = Depends(get_storage)) -> HealthResponse:
        """
        Readiness probe - returns 200 only if the storage backend is reachable
        and its schema is applied, otherwise 503.
        """
        if not storage.ping():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="Storage not reachable or schema not applied")
        return HealthResponse(status="ready")

    # =========================================================================
    # Session Routes
    # =========================================================================

    @app.get("/api/session", response_model=SessionStatus)
    async def session_status(session: SessionManager = Depends(get_session)) -> SessionStatus:
        """Connection state and, while awaiting pairing, the pairing code."""
        return session.status()

    @app.get("/api/session/qr", response_class=PlainTextResponse, responses={404: {"model": ErrorResponse}})
    async def session_qr(session: SessionManager = Depends(get_session)) -> str:
        """The current pairing code as a terminal-scannable QR code."""
        if not session.pairing_code:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no pairing code")
        return render_pairing_qr(session.pairing_code)

    @app.post("/api/session/start", response_model=SessionStatus, dependencies=[Depends(require_token)])
    async def session_start(session: SessionManager = Depends(get_session)) -> SessionStatus:
        """Start connecting. Does nothing if a connection is already active or in progress."""
        await session.start()
        return session.status()

    # =========================================================================
    # Messages Routes
    # =========================================================================

    @app.get(
        "/api/messages",
        response_model=list[Message],
        dependencies=[Depends(require_token)],
        responses={503: {"model": ErrorResponse}},
    )
    def list_messages(
        request: Request,
        limit: Annotated[Optional[int], Query(ge=1, le=HISTORY_MAX_LIMIT, description="Maximum number of messages")] = None,
        peer: Annotated[Optional[str], Query(description="Only messages sent to or from this address")] = None,
        storage: StorageAdapter = Depends(get_storage),
    ) -> list[Message]:
        """
        Message history, newest first.

        Ordering: created_at DESC, then insertion order DESC.
        """
        limit = limit or request.app.state.settings.HISTORY_DEFAULT_LIMIT
        try:
            messages = storage.get_messages(limit, peer)
        except PersistenceError:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="persistence-error")
        logger.info(f"GET /api/messages: returned {len(messages)} messages (limit={limit}, peer={peer})")
        return messages

    @app.post(
        "/api/send",
        response_model=SendResponse,
        dependencies=[Depends(require_token)],
        responses={
            409: {"model": ErrorResponse, "description": "Transport not connected"},
            502: {"model": ErrorResponse, "description": "Dispatch failed"},
            503: {"model": ErrorResponse, "description": "Sent but not persisted"},
        },
    )
    async def send_message(
        body: SendRequest,
        request: Request,
        pipeline: ReplyPipeline = Depends(get_pipeline),
    ) -> SendResponse:
        """Send a text to a peer through the live session and store it."""
        try:
            message_id = await pipeline.send(body.to, body.text)
        except NotConnectedError:
            log_send_data(request, peer=body.to, result="not_connected")
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="not-connected")
        except TransportError:
            log_send_data(request, peer=body.to, result="dispatch_failed")
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="dispatch-failed")
        except PersistenceError:
            log_send_data(request, peer=body.to, result="persistence_error")
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="persistence-error")
        log_send_data(request, peer=body.to, result="sent", message_id=message_id)
        return SendResponse(success=True, id=message_id)

    # =========================================================================
    # Analytics Route
    # =========================================================================

    @app.get(
        "/api/analytics/overview",
        response_model=AnalyticsOverview,
        dependencies=[Depends(require_token)],
        responses={503: {"model": ErrorResponse}},
    )
    def analytics_overview(request: Request, storage: StorageAdapter = Depends(get_storage)) -> AnalyticsOverview:
        """
        Totals by direction, per-day counts over the trailing window and the
        most active peers.
        """
        settings = request.app.state.settings
        try:
            return AnalyticsOverview(
                totals=storage.get_totals(),
                by_day=storage.get_counts_by_day(settings.ANALYTICS_DAYS),
                top_contacts=storage.get_top_peers(settings.ANALYTICS_TOP_PEERS),
            )
        except PersistenceError:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="persistence-error")

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus text exposition of the service metrics."""
        return Response(content=get_metrics(), media_type=get_metrics_content_type())


app = create_app()
