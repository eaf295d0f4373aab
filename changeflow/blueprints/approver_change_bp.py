"""
Approver Change Blueprint.

Routes:
  POST   /approver-changes                          – request a new approver for a step
  GET    /approver-changes                          – admin list (?status=pending|approved|rejected|all)
  GET    /approver-changes/by-document/<doc_id>     – admin view grouped by status
  PATCH  /approver-changes/<rid>/process            – admin decision
"""

from flask import Blueprint, jsonify, request

from changeflow.middleware.jwt_auth import current_identity
from changeflow.services.approver_change_service import ApproverChangeService
from changeflow.services.context import build_context
from changeflow.utils.errors import register_error_handlers

approver_change_bp = Blueprint("approver_change_bp", __name__, url_prefix="/api/v1/approver-changes")
register_error_handlers(approver_change_bp)


@approver_change_bp.route("", methods=["POST"])
def create_change_request():
    """Body: { proposed_change_id, step_id, current_approver_id, new_approver_id, reason, urgent? }"""
    data = request.get_json(silent=True) or {}
    result = ApproverChangeService(build_context()).request_change(data, current_identity().authorization_id)
    return jsonify(result), 201


@approver_change_bp.route("", methods=["GET"])
def list_change_requests():
    status = request.args.get("status", "pending")
    rows = ApproverChangeService(build_context()).list_requests(
        current_identity().roles, status=None if status == "all" else status,
    )
    return jsonify({"data": rows, "total": len(rows)})


@approver_change_bp.route("/by-document/<int:doc_id>", methods=["GET"])
def change_requests_for_document(doc_id):
    return jsonify(ApproverChangeService(build_context()).summary_for_document(doc_id, current_identity().roles))


@approver_change_bp.route("/<int:rid>/process", methods=["PATCH"])
def process_change_request(rid):
    """Body: { status: approved|rejected, admin_decision }"""
    identity = current_identity()
    data = request.get_json(silent=True) or {}
    result = ApproverChangeService(build_context()).process(
        rid, data.get("status"), data.get("admin_decision"), identity.authorization_id, identity.roles,
    )
    return jsonify(result)
