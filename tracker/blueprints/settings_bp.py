"""
Workflow Settings Blueprint.

    GET  /api/v1/projects/<pid>/workflow-settings
    PUT  /api/v1/projects/<pid>/workflow-settings
         Body: { "<action_key>": {"required": bool, "authority": "<mode>"}, ... }

Every action is returned, stored overrides merged over the defaults.
"""

from flask import Blueprint, jsonify

from tracker.blueprints import body, register_error_handlers, require_reader
from tracker.models.tenancy import Project
from tracker.services import workflow_settings_service
from tracker.utils.helpers import actor_id_from_request, get_or_404

settings_bp = register_error_handlers(Blueprint("settings", __name__, url_prefix="/api/v1"))


@settings_bp.route("/projects/<int:project_id>/workflow-settings", methods=["GET"])
def get_settings(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    require_reader(project_id)
    return jsonify(workflow_settings_service.load(project_id).to_dict())


@settings_bp.route("/projects/<int:project_id>/workflow-settings", methods=["PUT"])
def update_settings(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    data = body()
    payload = {k: v for k, v in data.items() if k != "actor_id"}
    settings = workflow_settings_service.update(project_id, payload, actor_id_from_request(data))
    return jsonify(settings.to_dict())
