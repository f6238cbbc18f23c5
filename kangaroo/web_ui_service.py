#!/usr/bin/env python3
"""
=====================================================================
Cloudy Kangaroo Operations Dashboard (Web UI & API)
=====================================================================
Authenticated dashboard that joins Sensu (monitoring), PuppetDB
(inventory) and Ubersmith (ticketing/billing) into one view.

It provides:
- Current events with silence/unsilence/escalate actions at '/'
- Combined fleet view at '/devices'
- Per-device view at '/device/<hostname>'
- Login/logout against Atlassian Crowd at '/account/*'
- JSON API at '/api/v1/*'
- Health check at '/health'
- Prometheus metrics at '/metrics'

Key Features:
- Ordered request pipeline with one access-log entry per request
- Sessions resolved from Redis ("user:<id>")
- CSRF protection on every mutating request
- Parallel upstream fan-out with bounded timeouts
- Background metrics reporter and Ubersmith device sync
- Vault integration with token renewal
- Graceful shutdown

Author: Cloudy Kangaroo Team
License: MIT
=====================================================================
"""

import sys
import logging
import signal
from typing import Any, Dict, Optional

import requests
from flask import Flask, Response, flash, g, jsonify, redirect, render_template_string, request, session
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from prometheus_flask_exporter import PrometheusMetrics
from werkzeug.exceptions import InternalServerError

from kangaroo import __version__
from kangaroo.config import Config, testing_mode
from kangaroo.context import CONTEXT_KEY, DashboardContext
from kangaroo.credential_store import CredentialStore, StoreError, get_redis_pool
from kangaroo.directory import Authenticator, CrowdDirectory, DirectoryVerifier
from kangaroo.fanout import AggregationError, gather
from kangaroo.fleet import FleetAggregator, facts_by_name
from kangaroo.logging_utils import (
    ACCESS_LOGGER_NAME,
    AUDIT_LOGGER_NAME,
    add_file_handler,
    setup_json_logging,
)
from kangaroo.pipeline import (
    api_login_required,
    get_request_context,
    install_request_pipeline,
    login_required,
    require_group,
)
from kangaroo.puppetdb_client import PuppetDBClient
from kangaroo.request_metrics import MetricsReporter, RequestMetrics
from kangaroo.sensu_client import SILENCE_PREFIX, SensuClient, silence_path
from kangaroo.session_manager import IdentityRoster, SessionManager
from kangaroo.silence_helper import DEFAULT_SILENCE_HOURS, MAX_SILENCE_HOURS
from kangaroo.ubersmith_client import UbersmithClient, UbersmithSync
from kangaroo.upstream import UpstreamError, upstream_latency_histogram
from kangaroo.vault_secrets import load_secrets, start_vault_token_renewal
from kangaroo.web_templates import (
    HTML_ACCOUNT,
    HTML_DASHBOARD,
    HTML_DEVICE,
    HTML_DEVICES,
    HTML_ERROR,
    HTML_LOGIN,
    register_filters,
)

SERVICE_NAME = "kangaroo-dashboard"

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)


# =====================================================================
# STARTUP HELPERS
# =====================================================================

def fetch_secrets(app: Flask) -> None:
    """Loads secrets (Vault or environment) and starts token renewal."""
    config = app.config["KANGAROO_CONFIG"]

    try:
        secrets, vault_client = load_secrets(config)
    except Exception as e:
        logger.error(f"FATAL: Failed to load secrets: {e}", exc_info=True)
        sys.exit(1)

    app.config["SECRETS"] = secrets
    if vault_client is not None:
        app.config["VAULT_CLIENT"] = vault_client
        thread, stop_event = start_vault_token_renewal(config, vault_client)
        app.config["VAULT_RENEWAL_THREAD"] = thread
        app.config["VAULT_RENEWAL_STOP"] = stop_event


def create_redis_pool(app: Flask) -> None:
    """Creates a Redis connection pool and stores it on the app."""
    config = app.config["KANGAROO_CONFIG"]
    secrets = app.config["SECRETS"]

    try:
        logger.info(f"Connecting to Redis at {config.REDIS_HOST}:{config.REDIS_PORT}...")
        app.config["REDIS_POOL"] = get_redis_pool(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            tls_enabled=config.REDIS_TLS_ENABLED,
            ca_cert_path=config.REDIS_CA_CERT_PATH,
            password_current=secrets.get('REDIS_PASS_CURRENT'),
            password_next=secrets.get('REDIS_PASS_NEXT'),
            max_connections=config.REDIS_MAX_CONNECTIONS,
            logger=logger,
        )
        logger.info("Successfully connected to Redis (dual-password aware)")
    except StoreError as e:
        logger.error(f"FATAL: Could not create Redis connection pool: {e}", exc_info=True)
        sys.exit(1)


def create_store(app: Flask) -> CredentialStore:
    create_redis_pool(app)
    return CredentialStore.from_pool(app.config["REDIS_POOL"])


def http_session(service: str) -> requests.Session:
    """One requests.Session per upstream service."""
    http = requests.Session()
    http.headers.update({'Accept': 'application/json', 'User-Agent': f'{SERVICE_NAME}/{__version__}'})
    return http


def create_verifier(config: Config, secrets: Dict[str, Any]) -> DirectoryVerifier:
    return CrowdDirectory(
        server=config.CROWD_SERVER,
        application=config.CROWD_APPLICATION,
        password=secrets.get('CROWD_PASSWORD') or '',
        timeout=config.CROWD_TIMEOUT,
        session=http_session('crowd'),
    )


def build_context(app: Flask) -> DashboardContext:
    """Wires the store, upstream clients, aggregators and metrics together."""
    config = app.config["KANGAROO_CONFIG"]
    secrets = app.config["SECRETS"]

    store = create_store(app)
    if not store.self_test():
        logger.warning("Redis startup self-test failed; sessions may not persist")

    metrics = RequestMetrics()
    latency = upstream_latency_histogram(metrics.registry)

    sensu = SensuClient(config.SENSU_URI, timeout=config.SENSU_TIMEOUT,
                        session=http_session('sensu'), latency=latency)
    puppetdb = PuppetDBClient(config.PUPPETDB_URI, timeout=config.PUPPETDB_TIMEOUT,
                              session=http_session('puppetdb'), latency=latency)
    ubersmith = UbersmithClient(
        config.UBERSMITH_URL,
        username=secrets.get('UBERSMITH_USER'),
        password=secrets.get('UBERSMITH_PASS'),
        timeout=config.UBERSMITH_TIMEOUT,
        session=http_session('ubersmith'),
        latency=latency,
    )

    roster = IdentityRoster()
    fleet_timeout = max(config.SENSU_TIMEOUT, config.PUPPETDB_TIMEOUT) * 2
    return DashboardContext(
        config=config,
        store=store,
        sessions=SessionManager(store, ttl=config.SESSION_TTL),
        roster=roster,
        authenticator=Authenticator(create_verifier(config, secrets), roster),
        sensu=sensu,
        puppetdb=puppetdb,
        ubersmith=ubersmith,
        fleet=FleetAggregator(puppetdb, sensu, store,
                              max_workers=config.FANOUT_MAX_WORKERS, timeout=fleet_timeout),
        metrics=metrics,
        reporter=MetricsReporter(metrics, interval_ms=config.METRICS_INTERVAL_MS),
        ubersmith_sync=UbersmithSync(ubersmith, store, interval=config.UBERSMITH_SYNC_INTERVAL),
    )


def _audit(action: str, result: str, **fields) -> None:
    user = getattr(g, "user", None)
    audit_logger.info(
        f"{action} {result}",
        extra={"action": action, "result": result, "actor": user.username if user else "none", **fields},
    )


def _safe_next(target: Optional[str]) -> str:
    # Only same-site relative paths
    if target and target.startswith('/') and not target.startswith('//'):
        return target
    return '/'


def _wants_json() -> bool:
    return request.path.startswith('/api/')


def _silenced_stashes(sensu: SensuClient) -> set:
    """Silenced 'client' and 'client/check' keys, without the stash prefix."""
    prefix = SILENCE_PREFIX + '/'
    return {path[len(prefix):] for path in sensu.silenced_paths() if path}


def _mark_silenced(events, stashes: set):
    for event in events:
        client = (event.get('client') or {}).get('name', '')
        check = (event.get('check') or {}).get('name', '')
        if f"{client}/{check}" in stashes:
            event['silenced'] = f"{client}/{check}"
        elif client in stashes:
            event['silenced'] = client
        else:
            event['silenced'] = False
    return events


def _silence_expiry() -> int:
    """Seconds from the form/JSON 'expires' field; 0 means no expiry."""
    body = request.get_json(silent=True) or {}
    raw = request.form.get('expires', body.get('expires'))
    if raw in (None, ''):
        return 0
    expires = int(raw)
    if expires <= 0 or expires > MAX_SILENCE_HOURS * 3600:
        raise ValueError(f"expires must be between 1 and {MAX_SILENCE_HOURS * 3600} seconds")
    return expires


# =====================================================================
# APPLICATION FACTORY
# =====================================================================

def create_app(config: Optional[Config] = None, start_background: Optional[bool] = None) -> Flask:
    """Creates and configures the Flask application."""

    setup_json_logging(service_name="web_ui", version=__version__)

    app = Flask(__name__, static_folder='static', static_url_path='')

    # Load configuration
    app.config["KANGAROO_CONFIG"] = config or Config()
    config = app.config["KANGAROO_CONFIG"]
    app.config["TRUST_PROXY"] = config.TRUST_PROXY

    add_file_handler(ACCESS_LOGGER_NAME, config.ACCESS_LOG_PATH, "web_ui", __version__)
    add_file_handler(AUDIT_LOGGER_NAME, config.AUDIT_LOG_PATH, "web_ui", __version__)

    fetch_secrets(app)
    app.secret_key = app.config["SECRETS"]["COOKIE_SECRET"]

    ctx = build_context(app)
    app.config[CONTEXT_KEY] = ctx

    install_request_pipeline(app)
    register_filters(app)

    # Prometheus instrumentation on the dashboard's own registry; /metrics is served below
    PrometheusMetrics(app, path=None, registry=ctx.metrics.registry)

    if start_background is None:
        start_background = not testing_mode()
    if start_background:
        ctx.start_background()

    def page(template: str, status: int = 200, **values):
        return render_template_string(template, title=config.TITLE, **values), status

    # ================================================================
    # ERROR HANDLERS
    # ================================================================

    @app.errorhandler(AggregationError)
    @app.errorhandler(UpstreamError)
    def upstream_failure(e):
        get_request_context().set_level("error")
        logger.error(f"Upstream failure on {request.path}: {e}")
        if _wants_json():
            return jsonify({"error": str(e)}), 502
        return page(HTML_ERROR, 502, heading="Upstream service unavailable", message=str(e),
                    request_id=get_request_context().request_id)

    @app.errorhandler(InternalServerError)
    def internal_error(e):
        rctx = get_request_context()
        rctx.set_level("error")
        original = getattr(e, "original_exception", None)
        logger.error(
            f"Unhandled error on {request.method} {request.path}: {original or e}",
            exc_info=original if isinstance(original, BaseException) else None,
            extra={"request_id": rctx.request_id, "session_id": rctx.session_id},
        )
        if _wants_json():
            return jsonify({"error": "internal server error", "request_id": rctx.request_id}), 500
        return page(HTML_ERROR, 500, heading="Something went wrong",
                    message="The request could not be completed.", request_id=rctx.request_id)

    # ================================================================
    # PUBLIC ENDPOINTS (NO AUTH)
    # ================================================================

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check for load balancers and orchestrators."""
        try:
            ctx.store.ping()
            return jsonify({
                "status": "healthy",
                "service": SERVICE_NAME,
                "version": __version__,
                "redis": "connected",
            }), 200
        except StoreError as e:
            logger.error(f"Health check failed: {e}")
            return jsonify({
                "status": "unhealthy",
                "service": SERVICE_NAME,
                "version": __version__,
                "error": str(e),
            }), 503

    @app.route('/metrics', methods=['GET'])
    def prometheus_metrics():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(ctx.metrics.registry), mimetype=CONTENT_TYPE_LATEST)

    # ================================================================
    # ACCOUNT
    # ================================================================

    @app.route('/account/login', methods=['GET', 'POST'])
    def login():
        next_url = _safe_next(request.values.get('next'))
        if request.method == 'GET':
            if g.user is not None:
                return redirect(next_url)
            return page(HTML_LOGIN, next_url=next_url, username='')

        username = (request.form.get('username') or '').strip()
        identity = ctx.authenticator.verify({
            'username': username,
            'password': request.form.get('password') or '',
        })
        if identity is None:
            _audit("login", "failure", username=username)
            flash("Invalid username or password.", "error")
            return page(HTML_LOGIN, next_url=next_url, username=username)

        try:
            session['user_id'] = ctx.sessions.create(identity)
        except StoreError as e:
            logger.error(f"Could not store session for {identity.username}: {e}")
            flash("Login is temporarily unavailable. Please try again.", "error")
            return page(HTML_LOGIN, next_url=next_url, username=username)

        g.user = identity
        _audit("login", "success", username=identity.username)
        return redirect(next_url)

    @app.route('/account/logout', methods=['GET'])
    def logout():
        if g.user is not None:
            _audit("logout", "success", username=g.user.username)
        session.pop('user_id', None)
        g.user = None
        flash("You have been logged out.", "info")
        return redirect('/account/login')

    @app.route('/account', methods=['GET'])
    @login_required
    def account():
        return page(HTML_ACCOUNT)

    # ================================================================
    # PAGES
    # ================================================================

    @app.route('/', methods=['GET'])
    @login_required
    def index():
        """Current Sensu events with their silenced state."""
        error = None
        events = []
        try:
            events = _mark_silenced(ctx.sensu.list_events(), _silenced_stashes(ctx.sensu))
        except UpstreamError as e:
            logger.error(f"Could not load events: {e}")
            error = f"Could not load events from Sensu: {e}"
        return page(
            HTML_DASHBOARD,
            events=events,
            error=error,
            max_silence_hours=MAX_SILENCE_HOURS,
            default_silence_hours=DEFAULT_SILENCE_HOURS,
        )

    @app.route('/devices', methods=['GET'])
    @login_required
    def devices():
        rows = ctx.fleet.summarize(ctx.fleet.list_devices())
        return page(HTML_DEVICES, rows=rows)

    @app.route('/device/<hostname>', methods=['GET'])
    @login_required
    def device(hostname: str):
        """Sensu and PuppetDB views of one host, fetched in parallel."""
        sensu_result, puppet_result = gather(
            [lambda: ctx.sensu.get_device(hostname), lambda: ctx.puppetdb.get_device(hostname)],
            timeout=(config.SENSU_TIMEOUT + config.PUPPETDB_TIMEOUT) * 2,
        )
        sensu = sensu_result.data if sensu_result.ok else {
            "error": str(sensu_result.error), "node": {}, "events": [],
        }
        puppet = puppet_result.data if puppet_result.ok else {
            "error": str(puppet_result.error), "node": {}, "facts": {},
        }
        facts = [
            {"name": name, "value": value}
            for name, value in sorted(facts_by_name(puppet.get('facts')).items(), key=lambda kv: str(kv[0]))
        ]
        return page(HTML_DEVICE, hostname=hostname, sensu=sensu, puppet=puppet, facts=facts)

    # ================================================================
    # JSON API
    # ================================================================

    @app.route('/api/v1/sensu/events', methods=['GET'])
    @api_login_required
    def api_sensu_events():
        return jsonify(_mark_silenced(ctx.sensu.list_events(), _silenced_stashes(ctx.sensu)))

    @app.route('/api/v1/sensu/device/<hostname>', methods=['GET'])
    @api_login_required
    def api_sensu_device(hostname: str):
        return jsonify(ctx.sensu.get_device(hostname))

    @app.route('/api/v1/puppet/device/<hostname>', methods=['GET'])
    @api_login_required
    def api_puppet_device(hostname: str):
        return jsonify(ctx.puppetdb.get_device(hostname))

    @app.route('/api/v1/devices', methods=['GET'])
    @api_login_required
    def api_devices():
        return jsonify(ctx.fleet.list_devices())

    @app.route('/api/v1/sensu/silence/client/<client>', methods=['GET'])
    @app.route('/api/v1/sensu/silence/client/<client>/check/<check>', methods=['GET'])
    @api_login_required
    def api_silence_status(client: str, check: Optional[str] = None):
        return jsonify({
            "path": silence_path(client, check),
            "silenced": ctx.sensu.is_silenced(client, check),
        })

    @app.route('/api/v1/sensu/silence/client/<client>', methods=['POST'])
    @app.route('/api/v1/sensu/silence/client/<client>/check/<check>', methods=['POST'])
    @require_group(config.OPERATIONS_GROUP, api=True)
    def api_silence(client: str, check: Optional[str] = None):
        try:
            expires = _silence_expiry()
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        stash = ctx.sensu.silence(client, check, expires=expires or None, user=g.user.username)
        _audit("silence", "success", target=stash["path"], expires=expires)
        return jsonify(stash), 201

    @app.route('/api/v1/sensu/silence/client/<client>', methods=['DELETE'])
    @app.route('/api/v1/sensu/silence/client/<client>/check/<check>', methods=['DELETE'])
    @require_group(config.OPERATIONS_GROUP, api=True)
    def api_unsilence(client: str, check: Optional[str] = None):
        path = silence_path(client, check)
        if not ctx.sensu.unsilence(client, check):
            return jsonify({"path": path, "deleted": False, "error": "not silenced"}), 404
        _audit("unsilence", "success", target=path)
        return jsonify({"path": path, "deleted": True})

    @app.route('/api/v1/ubersmith/tickets/ticketid/<ticket_id>/posts', methods=['POST'])
    @require_group(config.OPERATIONS_GROUP, api=True)
    def api_ticket_post(ticket_id: str):
        fields = request.get_json(silent=True) or request.form.to_dict()
        try:
            reply = ctx.ubersmith.post_ticket(ticket_id, fields)
        except UpstreamError as e:
            _audit("escalate", "failure", target=ticket_id, error=str(e))
            get_request_context().set_level("error")
            return jsonify({"status": False, "error_message": str(e)}), 502

        _audit("escalate", "success" if reply.get('status') else "rejected", target=ticket_id)
        return jsonify(reply)

    logger.info(f"Dashboard initialized (version {__version__})")
    return app


# =====================================================================
# GRACEFUL SHUTDOWN
# =====================================================================

def setup_signal_handlers(app: Flask) -> None:
    """Set up signal handlers for graceful shutdown."""

    def shutdown_handler(signum, frame):
        sig_name = 'SIGTERM' if signum == signal.SIGTERM else 'SIGINT'
        logger.warning(f"{sig_name} received. Initiating graceful shutdown...")

        ctx = app.config.get(CONTEXT_KEY)
        if ctx is not None:
            logger.info("Stopping metrics reporter and Ubersmith sync...")
            if ctx.reporter is not None:
                ctx.reporter.flush()
            ctx.stop_background()

        if "VAULT_RENEWAL_STOP" in app.config:
            logger.info("Stopping Vault token renewal thread...")
            app.config["VAULT_RENEWAL_STOP"].set()
            if "VAULT_RENEWAL_THREAD" in app.config:
                app.config["VAULT_RENEWAL_THREAD"].join(timeout=5)
                logger.info("Vault token renewal thread stopped")

        if "REDIS_POOL" in app.config:
            logger.info("Closing Redis connection pool...")
            app.config["REDIS_POOL"].disconnect()

        logger.info("Graceful shutdown complete. Exiting.")
        sys.exit(0)

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)
    logger.info("Signal handlers registered for graceful shutdown")


def main() -> None:
    app = create_app()
    setup_signal_handlers(app)
    config = app.config["KANGAROO_CONFIG"]
    app.run(host='0.0.0.0', port=config.PORT, threaded=True)


if __name__ == '__main__':
    main()
