"""JSON error bodies for the workflow API.

Every error response has the shape ``{"error": message, "code": ERR_*}``
plus an optional ``details`` object (missing authority, allowed roles,
validation problems)::

    return api_error(E.NOT_FOUND, "Milestone not found")
    return api_error(E.AUTHORIZATION_DENIED, "Denied", details={"allowed_roles": [...]})
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes carried in the ``code`` field."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    NOT_FOUND = "ERR_NOT_FOUND"

    AUTHORIZATION_DENIED = "ERR_AUTHORIZATION_DENIED"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    STALE_VERSION = "ERR_STALE_VERSION"
    BASELINE_LOCKED = "ERR_BASELINE_LOCKED"
    ALREADY_BASELINED = "ERR_ALREADY_BASELINED"
    VARIATION_NOT_APPROVED = "ERR_VARIATION_NOT_APPROVED"
    PARTIAL_APPLY = "ERR_PARTIAL_APPLY"

    INTERNAL = "ERR_INTERNAL"


# Workflow refusals that are not listed here are conflicts with current state.
_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.AUTHORIZATION_DENIED: 403,
    E.NOT_FOUND: 404,
    E.PARTIAL_APPLY: 500,
    E.INTERNAL: 500,
}


def status_for(code: str) -> int:
    """HTTP status for *code*: 409 for other ``ERR_*`` codes, 400 for unknown ones."""
    if code in _STATUS_BY_CODE:
        return _STATUS_BY_CODE[code]
    return 409 if code.startswith("ERR_") else 400


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Return ``(response, status)`` for a Flask view."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or status_for(code)
