# storefront/main.py
import logging
import time

import click
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from storefront.auth import create_token_command, require_auth
from storefront.blueprints import ALL_BLUEPRINTS
from storefront.config import Config
from storefront.database import Base, close_db, engine, get_db
from storefront.errors import StorefrontError
from storefront.models import Privilege
from storefront.observability import (
    check_database_health,
    configure_logging,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from storefront.observability.logging_config import ensure_request_id
from storefront.services.notification_service import NotificationDispatcher

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
for blueprint in ALL_BLUEPRINTS:
    app.register_blueprint(blueprint)
app.cli.add_command(create_token_command)

logger = logging.getLogger(__name__)


# Initialize database tables
def init_database():
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)

# Initialize database on startup
init_database()


@app.before_request
def before_request_logging():
    g.current_user = None
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )

@app.after_request
def after_request_logging(response):
    started = getattr(g, 'request_started_at', None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    if response.status_code >= 500:
        increment_counter(
            "http_errors_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    request_id = getattr(g, "request_id", None)
    if request_id:
        response.headers[Config.REQUEST_ID_HEADER] = request_id
    return response

@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


# ---------------------------------------------
# Error handling
# ---------------------------------------------

@app.errorhandler(StorefrontError)
def handle_storefront_error(error: StorefrontError):
    increment_counter(
        "api_errors_total",
        labels={"error": type(error).__name__, "status": str(error.status_code)},
    )
    logger.warning(
        "Request rejected: %s",
        error.message,
        extra={"error": type(error).__name__, "status_code": error.status_code},
    )
    return jsonify(error.to_dict()), error.status_code

@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    return jsonify({
        "error": error.name.replace(" ", ""),
        "message": error.description,
        "details": {},
    }), error.code

@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    db = g.get("db")
    if db is not None:
        db.rollback()
    logger.exception("Unhandled error while processing request")
    return jsonify({
        "error": "InternalServerError",
        "message": "An unexpected error occurred",
        "details": {},
    }), 500


# ---------------------------------------------
# Operations
# ---------------------------------------------

@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status
        }
    }), status_code

@app.route('/admin/metrics', methods=['GET'])
@require_auth(Privilege.ALL)
def admin_metrics():
    return jsonify(get_metrics_snapshot())


@app.cli.command("init-db")
def init_db_command():
    """Create all tables."""
    init_database()
    click.echo("Database initialized.")

@app.cli.command("dispatch-notifications")
@click.option("--limit", type=int, default=None, help="Maximum messages to deliver.")
def dispatch_notifications_command(limit):
    """Deliver pending notification messages."""
    result = NotificationDispatcher(get_db()).dispatch_pending(limit)
    click.echo(f"Delivered {result['delivered']}, failed {result['failed']}.")
