"""
Project Delivery Tracker
Blueprint registry and shared error rendering.
"""

import logging

from flask import request

from tracker.core.exceptions import NotFoundError, ValidationError, WorkflowError
from tracker.services import approvals
from tracker.utils.errors import api_error
from tracker.utils.helpers import actor_id_from_request

logger = logging.getLogger(__name__)


def register_error_handlers(bp):
    """Render the service exception hierarchy as ``{error, code, details}``."""

    @bp.errorhandler(WorkflowError)
    def _handle_workflow(error: WorkflowError):
        return api_error(error.code, error.message, details=error.details)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(error.code, f"{error.resource} not found")

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(error.code, str(error), details=error.details)

    return bp


def body():
    return request.get_json(silent=True) or {}


def require_reader(project_id):
    """Resolve the requester; role ``none`` (outsider or anonymous) is refused with 403."""
    return approvals.require_access(actor_id_from_request(), project_id)
