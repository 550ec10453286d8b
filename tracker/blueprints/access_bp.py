"""
Access Blueprint — effective roles and project membership.

Endpoints:
    GET    /api/v1/projects/<pid>/access?user_id=<uid>
           Returns: 200 with the resolved EffectiveAccess.

    GET    /api/v1/memberships/visible
           Header: X-User-Id.  Returns the requester's own membership rows.

    GET    /api/v1/projects/accessible
           Header: X-User-Id.  Project ids reachable by the requester.

    GET    /api/v1/projects/<pid>/members
    POST   /api/v1/projects/<pid>/members     Body: { "user_id", "role" }
    DELETE /api/v1/projects/<pid>/members     Body: { "user_id" }

Layer contract:
    - Blueprint: parse input, call service, return JSON.
    - Role checks live in membership_service.
"""

import logging

from flask import Blueprint, jsonify, request

from tracker.blueprints import body, register_error_handlers, require_reader
from tracker.models.tenancy import Project
from tracker.services import membership_service, tenancy_resolver
from tracker.utils.errors import E, api_error
from tracker.utils.helpers import actor_id_from_request, get_or_404

logger = logging.getLogger(__name__)

access_bp = register_error_handlers(Blueprint("access", __name__, url_prefix="/api/v1"))


@access_bp.route("/projects/<int:project_id>/access", methods=["GET"])
def effective_access(project_id):
    """Resolve a user's effective role on a project.

    ``user_id`` defaults to the requester.  An unknown project or user
    resolves to role ``none`` rather than 404.  Looking up someone else
    needs a role on the project.
    """
    requester_id = actor_id_from_request()
    user_id = request.args.get("user_id", type=int)
    if user_id is None:
        user_id = requester_id
    if user_id is None:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    if user_id != requester_id:
        require_reader(project_id)
    return jsonify(tenancy_resolver.resolve(user_id, project_id).to_dict())


@access_bp.route("/memberships/visible", methods=["GET"])
def visible_memberships():
    requester_id = actor_id_from_request()
    rows = tenancy_resolver.visible_memberships(requester_id)
    return jsonify([m.to_dict() for m in rows])


@access_bp.route("/projects/accessible", methods=["GET"])
def accessible_projects():
    requester_id = actor_id_from_request()
    return jsonify({"project_ids": tenancy_resolver.accessible_project_ids(requester_id)})


# ── Membership administration ────────────────────────────────────────────────


@access_bp.route("/projects/<int:project_id>/members", methods=["GET"])
def list_members(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    require_reader(project_id)
    return jsonify([m.to_dict() for m in membership_service.list_members(project_id)])


@access_bp.route("/projects/<int:project_id>/members", methods=["POST"])
def grant_member(project_id):
    data = body()
    user_id = data.get("user_id")
    role = (data.get("role") or "").strip()
    if not user_id or not role:
        return api_error(E.VALIDATION_REQUIRED, "user_id and role are required")

    membership = membership_service.grant(project_id, user_id, role, actor_id_from_request(data))
    return jsonify(membership.to_dict()), 201


@access_bp.route("/projects/<int:project_id>/members", methods=["DELETE"])
def revoke_member(project_id):
    data = body()
    user_id = data.get("user_id") or request.args.get("user_id", type=int)
    if not user_id:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")

    membership_service.revoke(project_id, user_id, actor_id_from_request(data))
    return jsonify({"revoked": True, "user_id": user_id})
