"""
Variation Blueprint — change control after the baseline.

Routes:
  POST   /projects/<pid>/variations                 – create draft (with changes)
  GET    /projects/<pid>/variations?status=          – list
  GET    /projects/<pid>/variations/summary          – counts and implemented impact
  GET    /variations/<vid>                           – detail incl. changes
  POST   /variations/<vid>/changes                   – add a change to a draft
  DELETE /variations/<vid>                           – soft delete
  POST   /variations/<vid>/submit|approve|reject|implement
  GET    /variations/<vid>/history                   – decisions + audit trail
"""

import logging

from flask import Blueprint, jsonify, request

from tracker.blueprints import body, register_error_handlers, require_reader
from tracker.models.tenancy import Project
from tracker.services import approvals
from tracker.services.variation_processor import processor
from tracker.utils.errors import E, api_error
from tracker.utils.helpers import actor_id_from_request, expected_version_from, get_or_404

logger = logging.getLogger(__name__)

variation_bp = register_error_handlers(Blueprint("variation", __name__, url_prefix="/api/v1"))


# ── Drafting ─────────────────────────────────────────────────────────────────


@variation_bp.route("/projects/<int:project_id>/variations", methods=["POST"])
def create_variation(project_id):
    data = body()
    variation = processor.create(project_id, data, actor_id_from_request(data))
    return jsonify(variation.to_dict(include_changes=True)), 201


@variation_bp.route("/projects/<int:project_id>/variations", methods=["GET"])
def list_variations(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    require_reader(project_id)
    variations = processor.list_for_project(project_id, status=request.args.get("status"))
    return jsonify([v.to_dict() for v in variations])


@variation_bp.route("/projects/<int:project_id>/variations/summary", methods=["GET"])
def variation_summary(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    require_reader(project_id)
    return jsonify(processor.summary(project_id))


@variation_bp.route("/variations/<int:variation_id>", methods=["GET"])
def get_variation(variation_id):
    variation = processor.get(variation_id)
    require_reader(variation.project_id)
    return jsonify(variation.to_dict(include_changes=True))


@variation_bp.route("/variations/<int:variation_id>/changes", methods=["POST"])
def add_change(variation_id):
    variation = processor.get(variation_id)
    data = body()
    change = processor.add_change(variation, data, actor_id_from_request(data))
    return jsonify(change.to_dict()), 201


@variation_bp.route("/variations/<int:variation_id>", methods=["DELETE"])
def delete_variation(variation_id):
    variation = processor.get(variation_id)
    data = body()
    processor.delete(variation, actor_id_from_request(data))
    return jsonify({"deleted": True, "id": variation_id})


# ── Workflow ─────────────────────────────────────────────────────────────────


@variation_bp.route("/variations/<int:variation_id>/<action>", methods=["POST"])
def variation_action(variation_id, action):
    """submit / approve / reject / implement.

    Returns 200 with the transition result; a dual approval with one party
    still outstanding reports ``advanced: false`` and the pending party.
    """
    if action not in ("submit", "approve", "reject", "implement"):
        return api_error(E.NOT_FOUND, f"Unknown variation action '{action}'", status=404)

    variation = processor.get(variation_id)
    data = body()
    actor_id = actor_id_from_request(data)
    expected_version = expected_version_from(data)

    if action == "submit":
        result = processor.submit(variation, actor_id, expected_version=expected_version)
    elif action == "approve":
        result = processor.approve(variation, actor_id, expected_version=expected_version,
                                   comment=data.get("comment"))
    elif action == "reject":
        reason = (data.get("reason") or "").strip()
        if not reason:
            return api_error(E.VALIDATION_REQUIRED, "A reason is required to reject a variation")
        result = processor.reject(variation, actor_id, reason=reason, expected_version=expected_version)
    else:
        result = processor.implement(variation, actor_id, expected_version=expected_version)

    payload = result.to_dict()
    payload["subject"] = result.subject.to_dict(include_changes=True)
    return jsonify(payload)


@variation_bp.route("/variations/<int:variation_id>/history", methods=["GET"])
def variation_history(variation_id):
    variation = processor.get(variation_id)
    require_reader(variation.project_id)
    return jsonify(approvals.history("variation", variation.id))
