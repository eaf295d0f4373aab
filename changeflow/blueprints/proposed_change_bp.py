"""
Proposed Change Blueprint.

Routes:
  POST   /proposed-changes                       – create document + approval chain
  GET    /proposed-changes/<id>                  – document, chain and history
  GET    /proposed-changes/<id>/approvals        – ordered approval chain
  GET    /proposed-changes/<id>/history          – history, newest first
  DELETE /proposed-changes/<id>                  – soft delete (submitter or admin)
"""

from flask import Blueprint, g, jsonify, request

from changeflow.services.context import build_context
from changeflow.services.proposed_change_service import ProposedChangeService, snapshot
from changeflow.utils.errors import register_error_handlers

proposed_change_bp = Blueprint("proposed_change_bp", __name__, url_prefix="/api/v1")
register_error_handlers(proposed_change_bp)


@proposed_change_bp.route("/proposed-changes", methods=["POST"])
def create_proposed_change():
    """Create a proposed change; the submitter is the authenticated caller.

    Body: { project_name, line_code, department_id, section_department_id, plant_id,
            change_type, description, reason, need_engineering_approval?,
            need_production_approval?, section_code?, cost?, planning_start?, planning_end? }
    """
    data = request.get_json(silent=True) or {}
    result = ProposedChangeService(build_context()).create(data, submitter_id=g.jwt_user_id)
    return jsonify(result), 201


@proposed_change_bp.route("/proposed-changes/<int:doc_id>", methods=["GET"])
def get_proposed_change(doc_id):
    return jsonify(ProposedChangeService(build_context()).detail(doc_id))


@proposed_change_bp.route("/proposed-changes/<int:doc_id>/approvals", methods=["GET"])
def get_approval_chain(doc_id):
    return jsonify(snapshot(build_context().session, doc_id))


@proposed_change_bp.route("/proposed-changes/<int:doc_id>/history", methods=["GET"])
def get_history(doc_id):
    entries = ProposedChangeService(build_context()).history(doc_id)
    return jsonify({"data": [e.to_dict() for e in entries], "total": len(entries)})


@proposed_change_bp.route("/proposed-changes/<int:doc_id>", methods=["DELETE"])
def delete_proposed_change(doc_id):
    ProposedChangeService(build_context()).soft_delete(doc_id, g.jwt_user_id, g.jwt_roles)
    return jsonify({"message": "Proposed change deleted", "id": doc_id})
