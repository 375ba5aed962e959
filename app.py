import os
import logging
import uuid

import requests.exceptions
import sentry_sdk
from flask import Flask, request, jsonify, g, abort
from flask_cors import CORS
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv
from lf_trace import TraceContext, set_trace, clear_trace
from library_finder import (
    GoogleMapsClient,
    SearchResponse,
    search,
)

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
def _sentry_before_send(event, hint):
    """Demote Google Maps timeouts to breadcrumbs; everything else is reported.

    Unknown ZIPs and cities never get here: the search paths turn them
    into 400 responses.
    """
    exc_info = hint.get("exc_info")
    if exc_info:
        exc_type, exc_value, _ = exc_info
        if exc_type is not None and issubclass(exc_type, requests.exceptions.Timeout):
            sentry_sdk.add_breadcrumb(
                category="google_maps",
                message=str(exc_value) if exc_value else "",
                level="warning",
            )
            return None
    return event


_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    from sentry_sdk.integrations.flask import FlaskIntegration

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Proxy fix: Railway (and most PaaS) run behind a reverse proxy that sets
# X-Forwarded-For.  ProxyFix rewrites request.remote_addr to the real
# client IP so logging sees the correct address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# The search API is called from a separately hosted frontend.
CORS(app, resources={r"/api/*": {"origins": "*"}})

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Startup: warn immediately if required config is missing
# ---------------------------------------------------------------------------
if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "GOOGLE_MAPS_API_KEY is not set. "
        "Library searches will fail until it is configured. "
        "For local development, add it to a .env file."
    )


# ---------------------------------------------------------------------------
# Request ID middleware: every request gets a unique ID for tracing
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


# ---------------------------------------------------------------------------
# Builder mode
# ---------------------------------------------------------------------------
BUILDER_MODE_ENV = os.environ.get("BUILDER_MODE", "").lower() == "true"
BUILDER_SECRET = os.environ.get("BUILDER_SECRET", "")


def _is_builder(req):
    """
    Check if current request is in builder mode.

    Enabled if:
      1. BUILDER_MODE=true env var is set, OR
      2. Query param ?builder_key=<secret> matches a configured BUILDER_SECRET
    """
    if BUILDER_MODE_ENV:
        return True
    if BUILDER_SECRET and req.args.get("builder_key") == BUILDER_SECRET:
        return True
    return False


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()
    g.is_builder = _is_builder(request)


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "unknown")
    return response


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("GOOGLE_MAPS_API_KEY"):
        missing.append("GOOGLE_MAPS_API_KEY")
    return (len(missing) == 0, missing)


def _run_search(query, request_id):
    """Run one traced search.  Returns (SearchResponse, TraceContext)."""
    maps = GoogleMapsClient(os.environ.get("GOOGLE_MAPS_API_KEY"))
    trace_ctx = TraceContext(trace_id=request_id, query=query)
    set_trace(trace_ctx)
    try:
        response = search(query, maps)
        if not response.ok:
            trace_ctx.outcome_message = response.error
        return response, trace_ctx
    finally:
        trace_ctx.log_summary()
        clear_trace()


def _missing_config_response(missing_keys):
    error = (
        "Library search is unavailable because required API keys are not "
        "configured: " + ", ".join(missing_keys) + "."
    )
    return jsonify(SearchResponse.failure(error).to_dict()), 503


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/api/libraries/search")
def search_libraries():
    query = request.args.get("q", "")
    request_id = getattr(g, "request_id", "unknown")
    logger.info("[%s] GET /api/libraries/search q=%r", request_id, query)

    config_ok, missing_keys = _check_service_config()
    if not config_ok:
        logger.error("[%s] Missing required env vars: %s", request_id, missing_keys)
        return _missing_config_response(missing_keys)

    try:
        response, _ = _run_search(query, request_id)
    except Exception as e:
        logger.exception("[%s] Library search failed for q=%r", request_id, query)
        return jsonify(SearchResponse.failure(f"Internal error: {e}").to_dict()), 500

    if not response.ok:
        return jsonify(response.to_dict()), 400
    return jsonify(response.to_dict())


@app.route("/healthz")
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
    }), 200 if config_ok else 503


@app.route("/debug/search")
def debug_search():
    """Run a search and return full trace data. Builder-only."""
    if not g.is_builder:
        abort(404)

    query = request.args.get("q", "")
    config_ok, missing_keys = _check_service_config()
    if not config_ok:
        return jsonify({"error": "missing config", "missing_keys": missing_keys}), 503

    request_id = getattr(g, "request_id", "unknown")
    try:
        response, trace_ctx = _run_search(query, request_id)
        return jsonify({
            "query": query,
            "response": response.to_dict(),
            "trace": trace_ctx.full_trace_dict(),
        })
    except Exception as e:
        logger.exception("[%s] Debug search failed for q=%r", request_id, query)
        return jsonify({
            "query": query,
            "error": str(e),
        }), 500


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
def internal_error(e):
    return jsonify(SearchResponse.failure("Internal error").to_dict()), 500


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
