"""
Baseline Blueprint.

    POST /api/v1/projects/<pid>/baseline
         Commit the initial baseline.  Under dual authority the first party's
         call returns 202 with the party still pending.
    GET  /api/v1/projects/<pid>/variance-report
    GET  /api/v1/entities/<id>/baselines
"""

from flask import Blueprint, jsonify

from tracker.blueprints import body, register_error_handlers, require_reader
from tracker.models.tenancy import Project
from tracker.models.tracking import TrackedEntity
from tracker.services import approvals, baseline_tracker
from tracker.utils.helpers import actor_id_from_request, get_or_404

baseline_bp = register_error_handlers(Blueprint("baseline", __name__, url_prefix="/api/v1"))


@baseline_bp.route("/projects/<int:project_id>/baseline", methods=["POST"])
def commit_baseline(project_id):
    data = body()
    result = baseline_tracker.commit(project_id, actor_id_from_request(data))
    return jsonify(result.to_dict()), 201 if result.committed else 202


@baseline_bp.route("/projects/<int:project_id>/baseline/history", methods=["GET"])
def baseline_decisions(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    require_reader(project_id)
    return jsonify(approvals.history("project", project_id))


@baseline_bp.route("/projects/<int:project_id>/variance-report", methods=["GET"])
def variance_report(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    require_reader(project_id)
    return jsonify(baseline_tracker.variance_report(project_id))


@baseline_bp.route("/entities/<int:entity_id>/baselines", methods=["GET"])
def entity_baselines(entity_id):
    entity, err = get_or_404(TrackedEntity, entity_id, "Entity")
    if err:
        return err
    require_reader(entity.project_id)
    return jsonify(baseline_tracker.baseline_history(entity_id))
