import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated, AsyncIterator, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from smsthreads.account import AccountSession
from smsthreads.config import Settings, settings
from smsthreads.errors import InitializationError, SendFailedError
from smsthreads.logging_utils import RequestLoggingMiddleware, log_thread_data, setup_logging
from smsthreads.metrics import get_metrics, get_metrics_content_type
from smsthreads.remote import TwilioSource
from smsthreads.schemas import (
    CurrentUser,
    ErrorResponse,
    HealthResponse,
    MarkReadRequest,
    MarkReadResponse,
    Message,
    MessagePage,
    SendMessageRequest,
    SessionCredentials,
    StatusResponse,
    SyncStatus,
    ThreadPage,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Seconds between SSE pings
EVENT_KEEPALIVE_SECONDS = 15


def _configured_credentials(app_settings: Settings) -> Optional[dict]:
    """
    Credentials from the environment, or None when none are configured.

    Raises:
        InitializationError: If only some of the three values are set
    """
    values = {
        "sid": app_settings.TWILIO_ACCOUNT_SID,
        "token": app_settings.TWILIO_AUTH_TOKEN,
        "number": app_settings.TWILIO_NUMBER,
    }
    if not any(values.values()):
        return None
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise InitializationError(f"Incomplete Twilio credentials, missing: {', '.join(missing)}")
    return values


async def start_account(app: FastAPI, credentials) -> AccountSession:
    """Replace the app's account session with a freshly initialized one."""
    if app.state.account is not None:
        await app.state.account.dispose()
        app.state.account = None

    account = AccountSession(app.state.settings, source=app.state.source_factory())
    try:
        await account.init(credentials)
    except Exception:
        await account.dispose()
        raise
    app.state.account = account
    app.state.init_error = None
    return account


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - Startup: start the account session when credentials are configured
    - Shutdown: stop polling and close the cache
    """
    app.state.account = None
    app.state.init_error = None
    try:
        credentials = _configured_credentials(app.state.settings)
        if credentials is None:
            logger.info("No Twilio credentials configured, waiting for POST /session")
        else:
            await start_account(app, credentials)
    except InitializationError as e:
        # Reported once; the account stays unusable until a new session is posted
        logger.error(f"Account initialization failed: {e}")
        app.state.init_error = str(e)

    yield

    if app.state.account is not None:
        await app.state.account.dispose()
        app.state.account = None


app = FastAPI(
    title="SMS Threads",
    description="Thread-structured local cache of a Twilio message log",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.settings = settings
app.state.source_factory = TwilioSource
app.state.account = None
app.state.init_error = None

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(InitializationError)
async def initialization_error_handler(request: Request, exc: InitializationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=ErrorResponse(detail=str(exc)).model_dump(),
    )


@app.exception_handler(SendFailedError)
async def send_failed_handler(request: Request, exc: SendFailedError) -> JSONResponse:
    log_thread_data(request, thread_id=exc.thread_key, result="send_failed")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content=ErrorResponse(detail=str(exc)).model_dump(),
    )


def get_account(request: Request) -> AccountSession:
    """
    Dependency returning the initialized account session.
    Raises InitializationError (503) while there is none.
    """
    account = request.app.state.account
    if account is None or not account.ready:
        raise InitializationError(request.app.state.init_error or "No account session")
    return account


def _bad_cursor(e: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. An account session is initialized
    2. Its cache is reachable and the schema is applied
    3. The sync loop has not crashed

    Otherwise returns 503 (Service Unavailable).
    """
    account: Optional[AccountSession] = request.app.state.account
    if account is None or not account.ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason=request.app.state.init_error or "No account session"
        )

    if not account.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    sync_status = account.sync_status()
    if sync_status is not None and sync_status.error:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason=f"Sync stopped: {sync_status.error}")

    return HealthResponse(status="ready")


# =============================================================================
# Session Routes
# =============================================================================

@app.post("/session", response_model=CurrentUser)
async def create_session(request: Request, credentials: SessionCredentials) -> CurrentUser:
    """
    Log in with Twilio credentials and start syncing.
    Replaces any existing account session.
    """
    logger.info(f"POST /session for {credentials.number}")
    account = await start_account(request.app, credentials)
    return account.get_current_user()


@app.delete("/session", response_model=StatusResponse)
async def delete_session(request: Request) -> StatusResponse:
    """Stop syncing and close the account's cache."""
    account = request.app.state.account
    if account is not None:
        await account.dispose()
        request.app.state.account = None
    return StatusResponse(status="ok")


@app.get("/me", response_model=CurrentUser)
async def current_user(account: AccountSession = Depends(get_account)) -> CurrentUser:
    return account.get_current_user()


# =============================================================================
# Thread and Message Routes
# =============================================================================

@app.get("/threads", response_model=ThreadPage)
async def list_threads(
    cursor: Annotated[str | None, Query(description="oldest_cursor of the previous thread page")] = None,
    limit: Annotated[int | None, Query(ge=1, description="Maximum number of threads to return (clamped to MAX_PAGE_LIMIT)")] = None,
    account: AccountSession = Depends(get_account),
) -> ThreadPage:
    """
    List threads, most recently active first.

    All threads are derived from the local cache on every call and sliced
    locally; has_more means the page came back full.
    """
    logger.info(f"GET /threads: cursor={cursor}, limit={limit}")
    try:
        page = account.get_threads(cursor=cursor, limit=limit)
    except ValueError as e:
        raise _bad_cursor(e)
    logger.info(f"GET /threads: returned {len(page.items)} threads")
    return page


@app.get("/threads/{thread_key}/messages", response_model=MessagePage)
async def list_thread_messages(
    request: Request,
    thread_key: str,
    cursor: Annotated[str | None, Query(description="Timestamp of the oldest message already seen")] = None,
    limit: Annotated[int | None, Query(ge=1, description="Maximum number of messages to return (clamped to MAX_PAGE_LIMIT)")] = None,
    account: AccountSession = Depends(get_account),
) -> MessagePage:
    """
    One page of a thread's messages, oldest first.

    Query Parameters:
        - cursor: oldest_cursor of the previous page; omit for the newest page
        - limit: maximum messages per page (default DEFAULT_PAGE_LIMIT, clamped to MAX_PAGE_LIMIT)
    """
    log_thread_data(request, thread_id=thread_key)
    try:
        page = account.get_messages(thread_key, cursor=cursor, limit=limit)
    except ValueError as e:
        raise _bad_cursor(e)
    logger.info(f"GET /threads/{thread_key}/messages: returned {len(page.items)} messages")
    return page


@app.post(
    "/threads/{thread_key}/messages",
    response_model=Message,
    responses={
        502: {"model": ErrorResponse, "description": "Provider rejected the message"},
    }
)
async def send_message(
    request: Request,
    thread_key: str,
    body: SendMessageRequest,
    account: AccountSession = Depends(get_account),
) -> Message:
    """
    Send a message to the thread's counterpart.
    Failures surface as 502 and leave the cache untouched; nothing is retried.
    """
    message = await account.send_message(thread_key, body.text)
    log_thread_data(request, thread_id=thread_key, message_id=message.id, result="sent")
    return message


@app.post("/threads/{thread_key}/read", response_model=MarkReadResponse)
async def mark_thread_read(
    request: Request,
    thread_key: str,
    body: MarkReadRequest,
    account: AccountSession = Depends(get_account),
) -> MarkReadResponse:
    """
    Mark the thread read up to and including the given message.
    An unknown message id is not an error; nothing changes.
    """
    marked = account.mark_read(thread_key, body.message_id)
    log_thread_data(request, thread_id=thread_key, message_id=body.message_id, result="marked")
    return MarkReadResponse(marked=marked)


@app.get(
    "/messages/{message_id}",
    response_model=Message,
    responses={404: {"model": ErrorResponse, "description": "Message not in cache"}},
)
async def get_message(message_id: str, account: AccountSession = Depends(get_account)) -> Message:
    message = account.get_message(message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found")
    return message


# =============================================================================
# Sync Routes
# =============================================================================

@app.post("/resume", response_model=StatusResponse)
async def resume(account: AccountSession = Depends(get_account)) -> StatusResponse:
    """
    Host woke up: poll right away if the last successful pull is stale.
    """
    polled = account.on_resume()
    return StatusResponse(status="polling" if polled else "ok")


@app.get("/sync/status", response_model=SyncStatus)
async def sync_status(account: AccountSession = Depends(get_account)) -> SyncStatus:
    return account.sync_status() or SyncStatus(running=False)


def event_stream(account: AccountSession) -> AsyncIterator[dict]:
    """
    Subscribe to the account's change notifications right away and return
    a generator of SSE items, one per ServerEvent.

    The subscription is dropped when the generator is closed.
    """
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = account.subscribe(queue.put_nowait)

    async def generate():
        try:
            while True:
                event = await queue.get()
                yield {"event": event.type, "data": event.model_dump_json()}
        finally:
            unsubscribe()

    return generate()


@app.get("/events")
async def events(account: AccountSession = Depends(get_account)) -> EventSourceResponse:
    """
    Server-sent events: one `upsert` event per thread with newly synced messages.
    """
    return EventSourceResponse(event_stream(account), ping=EVENT_KEEPALIVE_SECONDS)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
