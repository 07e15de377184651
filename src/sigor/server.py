"""SIGOR HTTP API.

Run with::

    uv run sigor-server

Or with uvicorn::

    uv run uvicorn sigor.server:app --host 0.0.0.0 --port 8000

Without ``SIGOR_JWT_SECRET`` the server runs in dev mode: every request
is handled as a synthetic administrator.
"""

import contextlib
import json
import logging
import os
from datetime import date

import jwt
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from sigor import dashboard
from sigor.alerts.notify import LoggingNotifier, Notifier, PushNotifier
from sigor.alerts.pipeline import AlertPipeline
from sigor.alerts.push import CORS_HEADERS, PushClient, handle_push_request
from sigor.auth import TokenValidator, UserContext, get_current_user, set_current_user
from sigor.chat.store import ChatStore
from sigor.core.config import get_jwt_secret, get_push_endpoint, local_now
from sigor.core.store import Backend
from sigor.fleet import tools as crew_tools
from sigor.occurrences import tools as occurrence_tools
from sigor.preferences import tools as preference_tools
from sigor.reports.pdf import render_shift_report, report_filename
from sigor.reports.shifts import fetch_shifts

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Logging: module-level so it runs on import (uvicorn reimports the app)
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
# Silence Azure SDK HTTP-level noise (request/response headers)
logging.getLogger("azure.core.pipeline.policies.http_logging_policy").setLevel(logging.WARNING)
logging.getLogger("azure.cosmos._cosmos_http_logging_policy").setLevel(logging.WARNING)
logging.getLogger("azure.identity").setLevel(logging.WARNING)

WATCHED_CONTAINERS = ("occurrences", "dispatches", "vehicle_crew", "chat_messages")
PUBLIC_PATHS = frozenset({"/health", "/push-notification"})
ROOM_TYPES = frozenset({"occurrence", "vehicle"})
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

DEV_USER = UserContext(
    user_id="00000000-0000-0000-0000-000000000000",
    email="dev@localhost",
    name="Dev User",
    roles=frozenset({"admin"}),
)


class AuthMiddleware(BaseHTTPMiddleware):
    """Validate the Bearer token and set the current user for the request."""

    def __init__(self, app, validator: TokenValidator | None = None) -> None:
        super().__init__(app)
        self.validator = validator

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        if self.validator is None:
            set_current_user(DEV_USER)
            return await call_next(request)

        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        try:
            user = self.validator.validate_token(token)
        except jwt.InvalidTokenError as e:
            logger.info("Rejected token: %s", e)
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        set_current_user(user)
        return await call_next(request)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _backend(request: Request) -> Backend:
    return request.app.state.backend


async def _json_body(request: Request) -> dict:
    """Request body as a dict; empty body reads as ``{}``."""
    raw = await request.body()
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def _result(data: dict, status_code: int = 200) -> JSONResponse:
    """Tool results carrying ``error`` become 400 responses."""
    if "error" in data:
        return JSONResponse(data, status_code=400)
    return JSONResponse(data, status_code=status_code)


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=400)


def _sse(event: str, data) -> str:
    """One server-sent event frame with a JSON payload."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _event_stream(events) -> StreamingResponse:
    return StreamingResponse(events, media_type="text/event-stream", headers=SSE_HEADERS)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


async def health(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        {"status": "ok", "service": "sigor", "version": os.getenv("BUILD_VERSION", "dev")}
    )


async def dashboard_data(request: Request) -> JSONResponse:
    data = await dashboard.get_dashboard(_backend(request))
    return JSONResponse(data)


async def dashboard_page(request: Request) -> HTMLResponse:
    html = await dashboard.render_dashboard_html(_backend(request))
    return HTMLResponse(html)


async def create_occurrence(request: Request) -> JSONResponse:
    try:
        body = await _json_body(request)
    except ValueError as e:
        return _bad_request(str(e))
    result = await occurrence_tools.create_occurrence(_backend(request), **body)
    return _result(result, status_code=201)


async def dispatch_vehicle(request: Request) -> JSONResponse:
    try:
        body = await _json_body(request)
    except ValueError as e:
        return _bad_request(str(e))
    if not body.get("vehicle_id"):
        return _bad_request("vehicle_id is required")
    result = await occurrence_tools.dispatch_vehicle(
        _backend(request),
        request.path_params["occurrence_id"],
        body["vehicle_id"],
        body.get("notes"),
    )
    return _result(result, status_code=201)


async def cancel_occurrence(request: Request) -> JSONResponse:
    try:
        body = await _json_body(request)
    except ValueError as e:
        return _bad_request(str(e))
    result = await occurrence_tools.cancel_occurrence(
        _backend(request), request.path_params["occurrence_id"], body.get("notes")
    )
    return _result(result)


async def update_dispatch_status(request: Request) -> JSONResponse:
    try:
        body = await _json_body(request)
    except ValueError as e:
        return _bad_request(str(e))
    if not body.get("status"):
        return _bad_request("status is required")
    result = await occurrence_tools.update_dispatch_status(
        _backend(request), request.path_params["dispatch_id"], body["status"], body.get("notes")
    )
    return _result(result)


async def occurrence_history(request: Request) -> JSONResponse:
    result = await occurrence_tools.get_history(
        _backend(request), request.path_params["occurrence_id"]
    )
    return _result(result)


async def chat_room(request: Request) -> JSONResponse:
    room_type = request.path_params["room_type"]
    room_id = request.path_params["room_id"]
    if room_type not in ROOM_TYPES:
        return JSONResponse({"error": f"Unknown room type: {room_type}"}, status_code=404)

    chat = ChatStore(_backend(request))
    if request.method == "GET":
        messages = await chat.list_room(room_type, room_id)
        return JSONResponse({"messages": messages, "count": len(messages)})

    try:
        body = await _json_body(request)
        message = await chat.post(room_type, room_id, str(body.get("message", "")))
    except ValueError as e:
        return _bad_request(str(e))
    return JSONResponse(message.to_cosmos(), status_code=201)


async def chat_stream(request: Request) -> Response:
    """Stream new messages in a room as server-sent events."""
    room_type = request.path_params["room_type"]
    room_id = request.path_params["room_id"]
    if room_type not in ROOM_TYPES:
        return JSONResponse({"error": f"Unknown room type: {room_type}"}, status_code=404)

    chat = ChatStore(_backend(request))
    # Subscribe now so messages posted while the response starts are kept
    sub = chat.subscribe_room(room_type, room_id)

    async def event_generator():
        async with sub:
            async for event in sub:
                row = dict(event.new)
                names = await chat.author_names([row["user_id"]])
                row["author_name"] = names.get(row["user_id"])
                yield _sse("message", row)

    return _event_stream(event_generator())


async def crew_join(request: Request) -> JSONResponse:
    try:
        body = await _json_body(request)
    except ValueError as e:
        return _bad_request(str(e))
    if not body.get("vehicle_id"):
        return _bad_request("vehicle_id is required")
    result = await crew_tools.join_vehicle(_backend(request), body["vehicle_id"])
    return _result(result, status_code=201)


async def crew_leave(request: Request) -> JSONResponse:
    return _result(await crew_tools.leave_vehicle(_backend(request)))


async def alert_stream(request: Request) -> Response:
    """Stream dispatch alerts for the current user's vehicle.

    Runs one :class:`AlertPipeline` per connection. Emits ``ready`` once
    subscribed, ``alert`` for each new dispatch and ``dismiss`` when the
    alert is cleared. The stream ends when the server shuts down.
    """
    backend = _backend(request)
    user = get_current_user()

    async def event_generator():
        async with contextlib.AsyncExitStack() as stack:
            notifier: Notifier = LoggingNotifier()
            if get_push_endpoint():
                push = await stack.enter_async_context(PushClient())
                notifier = PushNotifier(push)
            pipeline = await stack.enter_async_context(
                AlertPipeline(backend, user.user_id, notifier=notifier)
            )
            active = request.app.state.alert_pipelines.setdefault(user.user_id, set())
            active.add(pipeline)
            stack.callback(active.discard, pipeline)
            yield _sse("ready", {"vehicle_id": pipeline.current_vehicle_id})
            async for alert in pipeline.events():
                if alert is None:
                    yield _sse("dismiss", None)
                    continue
                data = alert.model_dump(mode="json")
                data["navigation_url"] = alert.navigation_url
                yield _sse("alert", data)

    return _event_stream(event_generator())


async def alerts_dismiss(request: Request) -> JSONResponse:
    """Dismiss the current alert on every open alert stream of the user."""
    user = get_current_user()
    pipelines = request.app.state.alert_pipelines.get(user.user_id, set())
    for pipeline in list(pipelines):
        pipeline.dismiss()
    return JSONResponse({"dismissed": len(pipelines)})


async def preferences(request: Request) -> JSONResponse:
    backend = _backend(request)
    if request.method == "GET":
        return JSONResponse(await preference_tools.get_preferences(backend))

    try:
        body = await _json_body(request)
    except ValueError as e:
        return _bad_request(str(e))
    return _result(await preference_tools.update_preferences(backend, **body))


async def shift_report(request: Request) -> Response:
    """Shift report PDF (administrators and dispatchers only)."""
    user = get_current_user()
    if not (user.is_admin or user.is_dispatcher):
        return JSONResponse({"error": "Forbidden"}, status_code=403)

    params = request.query_params
    try:
        start = date.fromisoformat(params["start"])
        end = date.fromisoformat(params["end"])
    except (KeyError, ValueError):
        return _bad_request("start and end are required (YYYY-MM-DD)")
    if start > end:
        return _bad_request("start must not be after end")

    records = await fetch_shifts(
        _backend(request),
        start,
        end,
        user_id=params.get("user_id") or None,
        vehicle_id=params.get("vehicle_id") or None,
    )
    now = local_now()
    pdf = render_shift_report(records, start, end, now=now)
    return Response(
        pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{report_filename(now)}"'},
    )


async def push_notification(request: Request) -> Response:
    """Push notification stub; any origin may call it."""
    if request.method == "OPTIONS":
        return Response("ok", headers=CORS_HEADERS)

    try:
        payload = await request.json()
        return JSONResponse(handle_push_request(payload), headers=CORS_HEADERS)
    except Exception as e:
        logger.error("Push notification request failed: %s", e)
        return JSONResponse({"error": str(e)}, status_code=500, headers=CORS_HEADERS)


# ---------------------------------------------------------------------------
# ASGI App assembly
# ---------------------------------------------------------------------------


def create_app(backend: Backend | None = None, secret: str | None = None) -> Starlette:
    """Build the ASGI app.

    Args:
        backend: Already-connected backend to use; by default one is
            opened for the app's lifetime
        secret: Token signing secret; defaults to ``SIGOR_JWT_SECRET``
    """
    secret = get_jwt_secret() if secret is None else secret
    validator = TokenValidator(secret) if secret else None
    if validator is None:
        logger.warning("No SIGOR_JWT_SECRET set, running without auth (dev mode)")

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        if backend is not None:
            app.state.backend = backend
            yield
            return
        async with Backend() as owned:
            owned.watch(*WATCHED_CONTAINERS)
            app.state.backend = owned
            yield

    routes = [
        Route("/health", health),
        Route("/dashboard", dashboard_data),
        Route("/dashboard.html", dashboard_page),
        Route("/occurrences", create_occurrence, methods=["POST"]),
        Route("/occurrences/{occurrence_id}/dispatch", dispatch_vehicle, methods=["POST"]),
        Route("/occurrences/{occurrence_id}/cancel", cancel_occurrence, methods=["POST"]),
        Route("/occurrences/{occurrence_id}/history", occurrence_history),
        Route("/dispatches/{dispatch_id}/status", update_dispatch_status, methods=["POST"]),
        Route("/chat/{room_type}/{room_id}", chat_room, methods=["GET", "POST"]),
        Route("/chat/{room_type}/{room_id}/stream", chat_stream),
        Route("/crew/join", crew_join, methods=["POST"]),
        Route("/crew/leave", crew_leave, methods=["POST"]),
        Route("/alerts/stream", alert_stream),
        Route("/alerts/dismiss", alerts_dismiss, methods=["POST"]),
        Route("/preferences", preferences, methods=["GET", "PATCH"]),
        Route("/reports/shifts.pdf", shift_report),
        Route("/push-notification", push_notification, methods=["POST", "OPTIONS"]),
    ]
    app = Starlette(
        routes=routes,
        middleware=[Middleware(AuthMiddleware, validator=validator)],
        lifespan=lifespan,
    )
    app.state.alert_pipelines = {}
    if backend is not None:
        app.state.backend = backend
    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the SIGOR server with uvicorn."""
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info("Starting SIGOR server on %s:%d", host, port)
    uvicorn.run(
        "sigor.server:app",
        host=host,
        port=port,
        log_level="info",
    )
