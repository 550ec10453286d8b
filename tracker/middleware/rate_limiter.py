"""
Rate limits on workflow writes.

The Limiter instance in tracker/__init__.py has no default limits.  Mutating
routes of the workflow blueprints share WORKFLOW_RATE_LIMIT, bucketed per
acting user (X-User-Id) and falling back to the remote address for anonymous
callers.  Reads and the health check are never limited.
"""

import logging

from flask import request

logger = logging.getLogger(__name__)

_MUTATING = ("POST", "PUT", "PATCH", "DELETE")

_WORKFLOW_BLUEPRINTS = ("access", "settings", "planning", "baseline", "variation")


def actor_key():
    """Limiter bucket: the acting user where known, else the caller's address."""
    actor = request.headers.get("X-User-Id", "").strip()
    if actor:
        return f"actor:{actor}"
    return request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    limit = app.config.get("WORKFLOW_RATE_LIMIT", "120 per minute")
    limited = [name for name in _WORKFLOW_BLUEPRINTS if name in app.blueprints]
    for name in limited:
        limiter.limit(limit, key_func=actor_key, methods=list(_MUTATING))(app.blueprints[name])

    app.logger.info("Workflow write limit %s on %s", limit, ", ".join(limited))
