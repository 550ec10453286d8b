"""Shared parsing and lookup helpers for services and blueprints.

get_or_404:   tuple-return lookup, NOT abort
parse_date:   returns None on bad input
parse_amount: finite Decimal or None, raises ValueError on garbage, NaN or Infinity
actor_id_from_request: X-User-Id header, falling back to ``actor_id`` in the body
"""
import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from flask import jsonify, request

from tracker.core.exceptions import ValidationError
from tracker.models import db
from tracker.utils.errors import E

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

        obj, err = get_or_404(Project, pid)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found", "code": E.NOT_FOUND}), 404)
    return obj, None


_DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y")


def parse_date(value):
    """Plan dates arrive as ISO (optionally with a time part) or DD.MM.YYYY; None when unparseable."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text[:10] if fmt == "%Y-%m-%d" else text, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(value):
    """Parse hours / money to Decimal.  Empty input → None."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("Boolean is not an amount")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return amount


def actor_id_from_request(body=None):
    """Identity supplied by the upstream identity provider."""
    raw = request.headers.get("X-User-Id")
    if raw is None and body:
        raw = body.get("actor_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def expected_version_from(body):
    """The version the client pinned, or None.  A pin that is not an integer is a 422."""
    raw = (body or {}).get("expected_version")
    if raw is None:
        return None
    try:
        if isinstance(raw, bool):
            raise TypeError("boolean version")
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(
            "expected_version must be an integer", details={"field": "expected_version"}
        ) from None
