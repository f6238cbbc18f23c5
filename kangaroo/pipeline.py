#!/usr/bin/env python3
"""
=====================================================================
Cloudy Kangaroo Request Pipeline
=====================================================================
Every request passes through these stages, in this order:

  1. identify        request id, start time, empty kv_log
  2. client metadata user agent -> os/browser/platform/bot/mobile
  3. session         signed cookie -> user id -> identity (or None)
  4. csrf            issue the session token, reject mutating
                     requests that do not echo it
  5. metrics         mark the rate meter, start the request timer
  6. dispatch        Flask routing, static folder, 404
  7. completion      one access-log entry, timer stopped

Stage 1 and stage 7 live in AccessLogMiddleware, which wraps the WSGI
app. The completion step is attached to the response iterable's
close(), so it runs once whether the response finished normally, an
error page was rendered, or the client went away mid-stream.
Stages 2-5 are Flask before_request hooks registered in order.
=====================================================================
"""

import time
import uuid
import hmac
import secrets
import logging
import threading
from functools import wraps
from typing import Any, Callable, Dict, Optional

from flask import Flask, abort, current_app, flash, g, redirect, request, session, url_for
from user_agents import parse as parse_ua
from werkzeug.wsgi import ClosingIterator

from kangaroo.logging_utils import ACCESS_LOGGER_NAME, safe_extra
from kangaroo.session_manager import SessionError

logger = logging.getLogger(__name__)
access_logger = logging.getLogger(ACCESS_LOGGER_NAME)

ENVIRON_KEY = "kangaroo.request_context"
MUTATING_METHODS = frozenset(("POST", "PUT", "PATCH", "DELETE"))
CSRF_SESSION_KEY = "csrf_token"
CSRF_FORM_FIELDS = ("_csrf", "csrf_token")
CSRF_HEADERS = ("X-CSRF-Token", "CSRF-Token", "X-XSRF-Token")

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

# Fields only the completion step may overwrite
COMPLETION_FIELDS = frozenset(("status", "response_time"))


class RequestContext:
    """Per-request state shared by the pipeline stages."""

    def __init__(self, request_id: Optional[str] = None):
        self.request_id = request_id or str(uuid.uuid4())
        self.start_time = time.time()
        self.user_agent: Dict[str, Any] = {}
        self.kv_log: Dict[str, Any] = {"request_id": self.request_id}
        self.level = "info"
        self.session_id: Optional[str] = None
        self.stopwatch = None
        self._finished = False
        self._lock = threading.Lock()

    def annotate(self, key: str, value: Any) -> bool:
        """
        Add a field to kv_log. A key set by an earlier stage is kept.

        Returns False when the key was already present.
        """
        if key in COMPLETION_FIELDS or key in self.kv_log:
            logger.debug(f"kv_log field {key!r} already set; keeping the earlier value")
            return False
        self.kv_log[key] = value
        return True

    def set_level(self, level: str) -> None:
        """Severity of the access-log entry; only ever raised, never lowered."""
        level = level.lower()
        if level not in LEVELS:
            raise ValueError(f"unknown log level {level!r}")
        if LEVELS[level] > LEVELS[self.level]:
            self.level = level

    def claim_finish(self) -> bool:
        """True exactly once: for whichever caller completes the request."""
        with self._lock:
            if self._finished:
                return False
            self._finished = True
            return True


def parse_user_agent(ua_string: Optional[str]) -> Dict[str, Any]:
    """Structured fields from a User-Agent header."""
    ua = parse_ua(ua_string or "")
    platform = ua.device.family if ua.device.family and ua.device.family != "Other" else ua.os.family
    return {
        "source": ua_string or "",
        "os": ua.os.family,
        "browser": ua.browser.family,
        "platform": platform,
        "is_bot": bool(ua.is_bot),
        "is_mobile": bool(ua.is_mobile or ua.is_tablet),
        "is_desktop": bool(ua.is_pc),
    }


def get_request_context() -> RequestContext:
    ctx = getattr(g, "request_context", None)
    if ctx is None:
        ctx = request.environ.get(ENVIRON_KEY)
        if ctx is None:
            ctx = RequestContext(request.headers.get("X-Request-ID"))
            request.environ[ENVIRON_KEY] = ctx
        g.request_context = ctx
    return ctx


# =====================================================================
# STAGES 1 AND 7: WSGI MIDDLEWARE
# =====================================================================

class AccessLogMiddleware:
    """
    Creates the RequestContext before Flask sees the request and writes the
    access-log entry when the response is closed.
    """

    def __init__(self, wsgi_app: Callable, trust_proxy: bool = True):
        self.wsgi_app = wsgi_app
        self.trust_proxy = trust_proxy

    def __call__(self, environ, start_response):
        ctx = RequestContext(environ.get("HTTP_X_REQUEST_ID"))
        environ[ENVIRON_KEY] = ctx
        state = {"status": None}

        def _start_response(status, headers, exc_info=None):
            state["status"] = int(status.split(" ", 1)[0])
            headers.append(("X-Request-ID", ctx.request_id))
            return start_response(status, headers, exc_info)

        try:
            app_iter = self.wsgi_app(environ, _start_response)
        except BaseException:
            ctx.set_level("error")
            self.finish(ctx, environ, 500)
            raise

        return ClosingIterator(app_iter, lambda: self.finish(ctx, environ, state["status"]))

    def _remote_address(self, environ) -> str:
        forwarded = environ.get("HTTP_X_FORWARDED_FOR")
        if self.trust_proxy and forwarded:
            return forwarded.split(",")[0].strip()
        return environ.get("REMOTE_ADDR", "")

    @staticmethod
    def _original_url(environ) -> str:
        url = environ.get("REQUEST_URI") or environ.get("RAW_URI")
        if url:
            return url
        url = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
        if environ.get("QUERY_STRING"):
            url += "?" + environ["QUERY_STRING"]
        return url

    def finish(self, ctx: RequestContext, environ, status: Optional[int]) -> None:
        if not ctx.claim_finish():
            return

        try:
            elapsed = ctx.stopwatch.end() if ctx.stopwatch is not None else None
            if status is None:
                status = 500
                ctx.set_level("error")

            # Stage 2 may not have run when an earlier stage short-circuited
            if not ctx.user_agent:
                ctx.user_agent = parse_user_agent(environ.get("HTTP_USER_AGENT"))
            for key, value in ctx.user_agent.items():
                ctx.annotate(key, value)

            ctx.annotate("method", environ.get("REQUEST_METHOD"))
            ctx.annotate("original_url", self._original_url(environ))
            ctx.annotate("referer", environ.get("HTTP_REFERER") or "none")
            ctx.annotate("remote_address", self._remote_address(environ))
            entry = dict(ctx.kv_log)
            entry["status"] = status
            if elapsed is None:
                elapsed = max(0.0, time.time() - ctx.start_time)
            entry["response_time"] = round(elapsed * 1000.0, 3)
            entry["log_level"] = ctx.level

            extra = safe_extra(entry)
            # Flask has already popped its context here, so the filter cannot see it
            extra["correlation_id"] = ctx.request_id
            if ctx.session_id:
                extra["session_id"] = ctx.session_id
            access_logger.log(LEVELS[ctx.level], "request analytics", extra=extra)
        except Exception:
            logger.exception(f"Failed to write access log entry for request {ctx.request_id}")


# =====================================================================
# STAGES 2-5: FLASK HOOKS
# =====================================================================

def identify():
    """Bind the middleware's RequestContext to g; a hook must return None."""
    get_request_context()


def parse_client_metadata():
    ctx = get_request_context()
    ctx.user_agent = parse_user_agent(request.headers.get("User-Agent"))
    for key, value in ctx.user_agent.items():
        ctx.annotate(key, value)


def resolve_session():
    from kangaroo.context import get_context

    ctx = get_request_context()
    if "sid" not in session:
        session["sid"] = uuid.uuid4().hex
    ctx.session_id = session["sid"]
    g.user = None

    user_id = session.get("user_id")
    if not user_id:
        ctx.annotate("username", "none")
        return

    try:
        g.user = get_context().sessions.resolve(user_id)
    except SessionError as e:
        logger.debug(f"Dropping unusable session identity: {e}")
        session.pop("user_id", None)
        g.user = None

    ctx.annotate("username", g.user.username if g.user else "none")


def csrf_token() -> str:
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = secrets.token_urlsafe(32)
        session[CSRF_SESSION_KEY] = token
    return token


def _supplied_csrf_token() -> Optional[str]:
    for field in CSRF_FORM_FIELDS:
        value = request.form.get(field) or request.args.get(field)
        if value:
            return value
    for header in CSRF_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        return body.get("_csrf") or body.get("csrf_token")
    return None


def enforce_csrf():
    expected = csrf_token()
    if request.method not in MUTATING_METHODS:
        return None

    supplied = _supplied_csrf_token()
    if not supplied or not hmac.compare_digest(str(supplied), expected):
        ctx = get_request_context()
        ctx.set_level("warning")
        ctx.annotate("rejected", "csrf")
        logger.warning(f"CSRF token missing or invalid for {request.method} {request.path}")
        abort(403)
    return None


def start_request_metrics():
    from kangaroo.context import get_context

    ctx = get_request_context()
    metrics = get_context().metrics
    metrics.mark()
    ctx.stopwatch = metrics.start_timer()


def install_request_pipeline(app: Flask) -> None:
    """Wrap the WSGI app and register stages 2-5 in order."""
    app.wsgi_app = AccessLogMiddleware(app.wsgi_app, trust_proxy=app.config.get("TRUST_PROXY", True))

    app.before_request(identify)
    app.before_request(parse_client_metadata)
    app.before_request(resolve_session)
    app.before_request(enforce_csrf)
    app.before_request(start_request_metrics)

    @app.context_processor
    def inject_pipeline_values():
        return {"csrf_token": csrf_token(), "user": getattr(g, "user", None)}


# =====================================================================
# ROUTE GUARDS
# =====================================================================

def _log_denied(message: str) -> None:
    user = getattr(g, "user", None)
    ctx = get_request_context()
    logger.debug(
        message,
        extra={
            "username": user.username if user else "none",
            "request_id": ctx.request_id,
            "session_id": ctx.session_id,
        },
    )


def login_required(view: Callable) -> Callable:
    """Page guard: anonymous users are sent to the login form."""
    @wraps(view)
    def decorated(*args, **kwargs):
        if getattr(g, "user", None) is None:
            _log_denied("user is not authenticated")
            flash("Please log in to continue.", "error")
            return redirect(url_for("login", next=request.full_path.rstrip("?")))
        return view(*args, **kwargs)
    return decorated


def api_login_required(view: Callable) -> Callable:
    """API guard: anonymous callers get a bare 403."""
    @wraps(view)
    def decorated(*args, **kwargs):
        if getattr(g, "user", None) is None:
            _log_denied("API client is not authenticated")
            return current_app.response_class(status=403)
        return view(*args, **kwargs)
    return decorated


def require_group(group: str, api: bool = False) -> Callable:
    """
    Guard a view on directory group membership.

    Page routes redirect to the login form, API routes answer 403.
    """
    from kangaroo.directory import Authenticator

    def decorator(view: Callable) -> Callable:
        @wraps(view)
        def decorated(*args, **kwargs):
            user = getattr(g, "user", None)
            if Authenticator.has_group(user, group):
                return view(*args, **kwargs)

            if user is not None:
                _log_denied(f"{user.username} is not a member of {group}")
            else:
                _log_denied("this request requires authentication")
            if api:
                return current_app.response_class(status=403)
            flash(f"Membership in {group} is required for that page.", "error")
            return redirect(url_for("login", next=request.full_path.rstrip("?")))
        return decorated
    return decorator
