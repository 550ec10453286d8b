"""
Request timing and correlation.

Every response carries ``X-Request-ID`` (echoed from the caller or generated)
and ``X-Request-Duration-Ms``.  Each workflow request is logged once with the
project / subject / actor it touched, so a failed approval can be traced from
the access log to its AuditEntry.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

_QUIET_PATHS = frozenset({"/api/v1/health"})

SLOW_THRESHOLD_MS = 1000

# URL parameters that name the subject of a workflow request.
_SUBJECT_ARGS = ("entity_id", "variation_id")


def _request_scope() -> dict:
    view_args = request.view_args or {}
    subject_id = next((view_args[k] for k in _SUBJECT_ARGS if k in view_args), None)
    return {
        "project_id": view_args.get("project_id"),
        "entity_id": subject_id,
        "actor_id": request.headers.get("X-User-Id"),
    }


def _level_for(status: int, duration_ms: float) -> int:
    if status >= 500:
        return logging.ERROR
    if duration_ms > SLOW_THRESHOLD_MS:
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _stamp_response(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"

        if request.path in _QUIET_PATHS:
            return response

        logger.log(
            _level_for(response.status_code, duration_ms),
            "%s %s %d (%.0fms)", request.method, request.path, response.status_code, duration_ms,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": round(duration_ms, 1),
                "remote_addr": request.remote_addr,
                "request_id": g.request_id,
                **_request_scope(),
            },
        )
        return response
