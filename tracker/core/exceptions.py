"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them
once and get consistent HTTP status codes and error codes everywhere.

Two families live here:

  * Generic service errors (NotFoundError, ValidationError).
  * Workflow errors (WorkflowError subclasses) raised by the authorization
    and workflow engine.  Each carries a machine-readable ``code`` from
    ``tracker.utils.errors.E`` and a ``details`` dict that names the
    specific missing authority / role so user-facing messages are never
    opaque.

Usage:
    from tracker.core.exceptions import AuthorizationDenied, InvalidTransition

    raise InvalidTransition("milestone", "signed_off", "in_progress")
    raise AuthorizationDenied("Customer PM approval required",
                              details={"authority": "customer_only"})
"""

from tracker.utils.errors import E


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-project lookups so the
    caller cannot discover whether another tenant's rows exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Project", "Variation").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
    """

    code = E.NOT_FOUND

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = E.VALIDATION_INVALID

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Workflow engine errors ───────────────────────────────────────────────────


class WorkflowError(Exception):
    """Base class for every error the workflow engine surfaces to callers."""

    code = E.INTERNAL

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class AuthorizationDenied(WorkflowError):
    """Actor's role is not in the allowed set for the required authority.

    Recoverable by the caller obtaining the right role or asking the right
    actor; never retried automatically.
    """

    code = E.AUTHORIZATION_DENIED


class InvalidTransition(WorkflowError):
    """Requested state is not a legal successor of the current status."""

    code = E.INVALID_TRANSITION

    def __init__(self, entity_type: str, to_state: str, from_state: str, allowed=None) -> None:
        allowed = sorted(allowed or [])
        super().__init__(
            f"Invalid {entity_type} transition: {from_state} → {to_state}",
            details={
                "entity_type": entity_type,
                "from_state": from_state,
                "to_state": to_state,
                "allowed": allowed,
            },
        )


class StaleVersionConflict(WorkflowError):
    """Stored version changed since the caller last read the row."""

    code = E.STALE_VERSION

    def __init__(self, resource: str, resource_id, expected=None, actual=None) -> None:
        super().__init__(
            f"{resource} id={resource_id} was modified by another request; re-read and retry",
            details={"expected_version": expected, "current_version": actual},
        )


class BaselineLocked(WorkflowError):
    """Structural change attempted on a baselined plan outside a Variation."""

    code = E.BASELINE_LOCKED


class AlreadyBaselined(WorkflowError):
    """Direct baseline commit attempted on a project that already has one."""

    code = E.ALREADY_BASELINED


class VariationNotApproved(WorkflowError):
    """Implement attempted on a Variation that is not in ``approved``."""

    code = E.VARIATION_NOT_APPROVED


class PartialApplyFailure(WorkflowError):
    """Variation implementation failed mid-transaction and was rolled back."""

    code = E.PARTIAL_APPLY
