import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Generator, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Form, Header, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from twilio.twiml.messaging_response import MessagingResponse

from smsrelay.approval import ApprovalWorkflow
from smsrelay.broadcast import Messenger, broadcast
from smsrelay.carrier import TwilioCarrier
from smsrelay.config import Settings, get_settings
from smsrelay.exceptions import ChatError, InvalidPhoneFormat, InvalidRequest, NotFound, RelayError, Unauthorized
from smsrelay.ledger import list_conversation, list_messages
from smsrelay.logging_utils import RequestLoggingMiddleware, log_request_data, setup_logging
from smsrelay.metrics import get_metrics, get_metrics_content_type, record_inbound_outcome
from smsrelay.phone import normalize_phone
from smsrelay.schemas import (
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesResponse,
    SendRequest,
    SendResponse,
    SubscribeRequest,
    SubscribeResponse,
    SubscriberResponse,
    UsersResponse,
)
from smsrelay.slack import SlackClient
from smsrelay.storage import Database, find_by_phone, list_all, upsert_active
from smsrelay.subscriptions import handle_inbound
from smsrelay.utils import is_valid_api_key, verify_slack_signature

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


# =============================================================================
# Dependencies
# =============================================================================

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = request.app.state.database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_messenger(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> Messenger:
    return Messenger(db, request.app.state.carrier, settings.TWILIO_SEND_NUMBER)


def require_api_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_app_settings),
) -> None:
    token = credentials.credentials if credentials else None
    if not is_valid_api_key(token, settings.api_keys):
        raise Unauthorized()


async def read_slack_body(request: Request, settings: Settings) -> bytes:
    """Raw body of a Slack request, after signature verification."""
    body = await request.body()
    if not verify_slack_signature(
        body,
        request.headers.get("X-Slack-Request-Timestamp"),
        request.headers.get("X-Slack-Signature"),
        settings.SLACK_SIGNING_SECRET,
    ):
        raise Unauthorized("invalid signature")
    return body


# =============================================================================
# Background Slack work
# =============================================================================

def run_slack_event(workflow: ApprovalWorkflow, event: dict) -> None:
    try:
        workflow.handle_event(event)
    except Exception as e:
        logger.error(f"Failed to handle Slack event: {e}", exc_info=True)


def run_slack_action(workflow: ApprovalWorkflow, payload: dict) -> None:
    try:
        outcome = workflow.handle_action(payload)
        logger.info(f"Slack action handled: {outcome}")
    except Exception as e:
        logger.error(f"Failed to handle Slack action: {e}", exc_info=True)


# =============================================================================
# Application factory
# =============================================================================

def _resolve_bot_user_id(chat) -> Optional[str]:
    try:
        return chat.auth_test().get("user_id")
    except ChatError as e:
        logger.warning(f"Could not resolve Slack bot user id: {e.message}")
        return None


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    carrier=None,
    chat=None,
) -> FastAPI:
    """
    Build the relay application.

    Database, carrier and chat clients are created in the lifespan unless
    passed in; injected ones are used as-is (tests pass fakes).
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: connect the database and create tables, build carrier and Slack clients
        - Shutdown: close the Slack client and release database connections
        """
        db = database or Database(settings.DATABASE_URL)
        db.init_db()
        sms = carrier or TwilioCarrier(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        slack = chat or SlackClient(settings.SLACK_BOT_TOKEN)

        bot_user_id = settings.SLACK_BOT_USER_ID or _resolve_bot_user_id(slack)

        app.state.database = db
        app.state.carrier = sms
        app.state.chat = slack
        app.state.approval = ApprovalWorkflow(slack, db, sms, settings, bot_user_id=bot_user_id)
        logger.info("Relay started")

        yield

        if chat is None:
            slack.close()
        db.dispose()
        logger.info("Relay stopped")

    app = FastAPI(
        title="SMS Broadcast Relay",
        description="Approval-gated SMS broadcasts from Slack with keyword subscriptions",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                message=exc.message,
                code=exc.code,
                details=exc.details,
            ).model_dump(exclude_none=True),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        """Malformed bodies and parameters get the same 400 envelope as other input errors."""
        error = InvalidRequest(
            details=[{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
        )
        return JSONResponse(
            status_code=error.status_code,
            content=ErrorResponse(
                message=error.message,
                code=error.code,
                details=error.details,
            ).model_dump(exclude_none=True),
        )

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    def health_ready(request: Request, response: Response) -> HealthResponse:
        """
        Readiness probe - returns 200 only if the DB is reachable and the
        schema is applied, otherwise 503.
        """
        if not request.app.state.database.check_health():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="Database not reachable or schema not applied"
            )
        return HealthResponse(status="ready")

    # =========================================================================
    # Subscriber Routes
    # =========================================================================

    @app.post(
        "/subscribe",
        response_model=SubscribeResponse,
        dependencies=[Depends(require_api_key)],
    )
    def subscribe(
        body: SubscribeRequest,
        db: Session = Depends(get_db),
        messenger: Messenger = Depends(get_messenger),
        settings: Settings = Depends(get_app_settings),
    ) -> SubscribeResponse:
        """
        Opt a phone number in and send it the subscribe confirmation.
        """
        phone = normalize_phone(body.phone)
        subscriber = SubscriberResponse.model_validate(upsert_active(db, phone))

        messenger.send(phone, settings.SUBSCRIBE_MESSAGE)

        return SubscribeResponse(subscriber=subscriber)

    @app.get(
        "/users",
        response_model=UsersResponse,
        dependencies=[Depends(require_api_key)],
    )
    def users(db: Session = Depends(get_db)) -> UsersResponse:
        return UsersResponse(users=[SubscriberResponse.model_validate(s) for s in list_all(db)])

    # =========================================================================
    # Broadcast Route
    # =========================================================================

    @app.post(
        "/send",
        response_model=SendResponse,
        dependencies=[Depends(require_api_key)],
    )
    def send(
        body: SendRequest,
        x_production: Annotated[Optional[str], Header()] = None,
        messenger: Messenger = Depends(get_messenger),
        settings: Settings = Depends(get_app_settings),
    ) -> SendResponse:
        """
        Broadcast a message.

        Headers:
            - x-production: "true" sends to every active subscriber; anything
              else sends a [TEST MODE] copy to TEST_PHONE_NUMBER only
        """
        if not body.message:
            raise InvalidRequest("Message body is required")

        production = x_production == "true"
        result = broadcast(messenger, body.message, production, settings.TEST_PHONE_NUMBER)

        return SendResponse(
            message=f"Message sent to {result.count} users",
            count=result.count,
            production=result.production,
        )

    # =========================================================================
    # Ledger Routes
    # =========================================================================

    @app.get(
        "/messages",
        response_model=MessagesResponse,
        dependencies=[Depends(require_api_key)],
    )
    def messages(
        limit: Annotated[Optional[int], Query(ge=1, description="Maximum number of messages to return")] = None,
        offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
        db: Session = Depends(get_db),
    ) -> MessagesResponse:
        """Full ledger, newest first."""
        rows = list_messages(db, limit=limit, offset=offset)
        return MessagesResponse(messages=[MessageResponse.model_validate(m) for m in rows])

    @app.get(
        "/messages/{phone}",
        response_model=MessagesResponse,
        dependencies=[Depends(require_api_key)],
    )
    def conversation(
        phone: str,
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
    ) -> MessagesResponse:
        """Messages between one phone number and the system number, newest first."""
        subscriber = find_by_phone(db, normalize_phone(phone.strip()))
        system = find_by_phone(db, settings.TWILIO_SEND_NUMBER)
        if subscriber is None or system is None:
            raise NotFound()

        rows = list_conversation(db, subscriber.id, system.id)
        return MessagesResponse(messages=[MessageResponse.model_validate(m) for m in rows])

    # =========================================================================
    # Carrier Webhook
    # =========================================================================

    @app.post("/inbound")
    def inbound(
        request: Request,
        Body: Optional[str] = Form(None),
        From: Optional[str] = Form(None),
        To: Optional[str] = Form(None),
        messenger: Messenger = Depends(get_messenger),
        settings: Settings = Depends(get_app_settings),
    ) -> Response:
        """
        Twilio inbound SMS webhook.

        Always answers 200 with an empty TwiML response: a failure status would
        make Twilio retry and duplicate ledger rows.
        """
        try:
            result = handle_inbound(messenger.db, messenger, settings, From, To, Body)
            outcome = result.result
        except InvalidPhoneFormat:
            logger.warning("Inbound SMS with unsupported phone number format")
            outcome = "invalid_phone"
        except Exception as e:
            logger.error(f"Error processing inbound message: {e}", exc_info=True)
            outcome = "error"

        record_inbound_outcome(outcome)
        log_request_data(request, result=outcome)

        return Response(content=str(MessagingResponse()), media_type="application/xml")

    # =========================================================================
    # Slack Routes
    # =========================================================================

    @app.post("/slack/events")
    async def slack_events(
        request: Request,
        background_tasks: BackgroundTasks,
        settings: Settings = Depends(get_app_settings),
    ):
        """
        Slack Events API endpoint.

        Answers the url_verification handshake; message events are handled
        after the response so Slack gets its acknowledgement within 3 seconds.
        """
        body = await read_slack_body(request, settings)
        try:
            envelope = json.loads(body)
        except ValueError:
            raise InvalidRequest("Invalid JSON")

        if envelope.get("type") == "url_verification":
            return {"challenge": envelope.get("challenge")}

        # Slack retries events it thinks were not acknowledged; the first delivery already was
        retry_num = request.headers.get("X-Slack-Retry-Num")
        if retry_num:
            logger.info(f"Ignoring Slack event retry {retry_num}")
            return {"status": "ok"}

        if envelope.get("type") == "event_callback":
            background_tasks.add_task(run_slack_event, request.app.state.approval, envelope.get("event") or {})

        return {"status": "ok"}

    @app.post("/slack/actions")
    async def slack_actions(
        request: Request,
        background_tasks: BackgroundTasks,
        settings: Settings = Depends(get_app_settings),
    ):
        """
        Slack interactivity endpoint for the SEND / CANCEL buttons.

        The empty 200 response is the acknowledgement; the action itself runs
        afterwards.
        """
        await read_slack_body(request, settings)
        form = await request.form()
        try:
            payload = json.loads(form.get("payload") or "")
        except ValueError:
            raise InvalidRequest("Invalid interaction payload")

        if payload.get("type") == "block_actions":
            background_tasks.add_task(run_slack_action, request.app.state.approval, payload)

        return Response(status_code=status.HTTP_200_OK)

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    def metrics() -> Response:
        """Expose Prometheus-style metrics."""
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )


app = create_app()


def run() -> None:
    """Console entry point; uvicorn turns SIGINT/SIGTERM into lifespan shutdown."""
    import uvicorn

    uvicorn.run("smsrelay.main:app", host="0.0.0.0", port=3000)
