"""
Planning & Workflow Blueprint — tracked entities and their transitions.

Endpoints:
    POST   /api/v1/projects/<pid>/entities
           Body: { "entity_type", "name", "parent_id"?, dates?, amounts? }
    GET    /api/v1/projects/<pid>/entities?entity_type=&include_closed=
    GET    /api/v1/entities/<id>
    PATCH  /api/v1/entities/<id>             Body: editable fields + expected_version?
    DELETE /api/v1/entities/<id>             soft close

    GET    /api/v1/entities/<id>/transitions
           Next states with whether the requester may take each one.
    POST   /api/v1/entities/<id>/transition
           Body: { "to_state", "expected_version"?, "comment"?, "context"? }
           Returns: 200 with { advanced, status, pending_parties, warnings, subject }.
    POST   /api/v1/entities/<id>/reverse-approval
           Body: { "reason", "expected_version"? }  (admin only)
    GET    /api/v1/entities/<id>/history

The requester is identified by the X-User-Id header (or ``actor_id`` in the
body).  Reads need a role on the owning project; authorization, state rules
and auditing of writes are owned by the services.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from tracker.blueprints import body, register_error_handlers, require_reader
from tracker.core.exceptions import StaleVersionConflict
from tracker.models import db
from tracker.models.tenancy import Project
from tracker.models.tracking import TrackedEntity
from tracker.services import approvals, baseline_tracker, planning_service
from tracker.services.variation_processor import processor
from tracker.services.workflow_engine import machine
from tracker.utils.errors import E, api_error
from tracker.utils.helpers import actor_id_from_request, expected_version_from, get_or_404

logger = logging.getLogger(__name__)

planning_bp = register_error_handlers(Blueprint("planning", __name__, url_prefix="/api/v1"))


def _entity_payload(entity: TrackedEntity) -> dict:
    data = entity.to_dict()
    data["variance"] = baseline_tracker.variance(entity)
    data["has_pending_variation"] = processor.has_pending_variation(entity.id)
    return data


# ═════════════════════════════════════════════════════════════════════════════
# ENTITY CRUD
# ═════════════════════════════════════════════════════════════════════════════


@planning_bp.route("/projects/<int:project_id>/entities", methods=["POST"])
def create_entity(project_id):
    data = body()
    if not data.get("entity_type"):
        return api_error(E.VALIDATION_REQUIRED, "entity_type is required")
    entity = planning_service.create_entity(project_id, data, actor_id_from_request(data))
    return jsonify(entity.to_dict()), 201


@planning_bp.route("/projects/<int:project_id>/entities", methods=["GET"])
def list_entities(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    require_reader(project_id)
    entities = planning_service.list_entities(
        project_id,
        entity_type=request.args.get("entity_type"),
        include_closed=request.args.get("include_closed") == "true",
    )
    return jsonify([e.to_dict() for e in entities])


@planning_bp.route("/entities/<int:entity_id>", methods=["GET"])
def get_entity(entity_id):
    entity, err = get_or_404(TrackedEntity, entity_id, "Entity")
    if err:
        return err
    require_reader(entity.project_id)
    return jsonify(_entity_payload(entity))


@planning_bp.route("/entities/<int:entity_id>", methods=["PATCH"])
def update_entity(entity_id):
    entity, err = get_or_404(TrackedEntity, entity_id, "Entity")
    if err:
        return err
    data = body()
    entity = planning_service.update_entity(
        entity, data, actor_id_from_request(data),
        expected_version=expected_version_from(data),
    )
    payload = _entity_payload(entity)
    payload["warnings"] = []
    if payload["has_pending_variation"]:
        # The edit stands; an open variation may overwrite it on implement.
        payload["warnings"].append({
            "code": "PENDING_VARIATION",
            "message": f"{entity.ref} is the target of an open variation",
        })
    return jsonify(payload)


@planning_bp.route("/entities/<int:entity_id>", methods=["DELETE"])
def close_entity(entity_id):
    entity, err = get_or_404(TrackedEntity, entity_id, "Entity")
    if err:
        return err
    data = body()
    entity = planning_service.close_entity(
        entity, actor_id_from_request(data),
        expected_version=expected_version_from(data),
    )
    return jsonify(entity.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW
# ═════════════════════════════════════════════════════════════════════════════


@planning_bp.route("/entities/<int:entity_id>/transitions", methods=["GET"])
def available_transitions(entity_id):
    entity, err = get_or_404(TrackedEntity, entity_id, "Entity")
    if err:
        return err
    require_reader(entity.project_id)
    options = machine.available_transitions(entity, actor_id_from_request())
    return jsonify({"status": entity.status, "version": entity.version, "transitions": options})


@planning_bp.route("/entities/<int:entity_id>/transition", methods=["POST"])
def transition(entity_id):
    """Request a state change.

    Without an ``expected_version`` a StaleVersionConflict is retried once
    against a fresh read (STALE_RETRY_ENABLED).  A pinned version is never
    retried: the caller asked for that exact state.
    """
    entity, err = get_or_404(TrackedEntity, entity_id, "Entity")
    if err:
        return err

    data = body()
    to_state = (data.get("to_state") or "").strip()
    if not to_state:
        return api_error(E.VALIDATION_REQUIRED, "to_state is required")
    context = data.get("context") if isinstance(data.get("context"), dict) else None
    actor_id = actor_id_from_request(data)
    expected_version = expected_version_from(data)

    def _run(subject):
        return machine.transition(
            subject, to_state, actor_id,
            expected_version=expected_version,
            context=context,
            comment=data.get("comment"),
        )

    try:
        result = _run(entity)
    except StaleVersionConflict:
        if expected_version is not None or not current_app.config.get("STALE_RETRY_ENABLED"):
            raise
        logger.info("Retrying transition after stale read",
                    extra={"entity_id": entity_id, "actor_id": actor_id})
        db.session.expire_all()
        result = _run(db.session.get(TrackedEntity, entity_id))

    return jsonify(result.to_dict())


@planning_bp.route("/entities/<int:entity_id>/reverse-approval", methods=["POST"])
def reverse_approval(entity_id):
    entity, err = get_or_404(TrackedEntity, entity_id, "Entity")
    if err:
        return err
    data = body()
    result = machine.reverse_approval(
        entity,
        actor_id_from_request(data),
        (data.get("reason") or "").strip(),
        expected_version=expected_version_from(data),
    )
    return jsonify(result.to_dict())


@planning_bp.route("/entities/<int:entity_id>/history", methods=["GET"])
def entity_history(entity_id):
    entity, err = get_or_404(TrackedEntity, entity_id, "Entity")
    if err:
        return err
    require_reader(entity.project_id)
    return jsonify(approvals.history(entity.entity_type, entity.id))
