"""
Approval Blueprint — decisions, admin bypass and the ongoing-approvals list.

Routes:
  PATCH  /proposed-changes/<id>/approvals/<approver_id>   – submit a decision
  POST   /proposed-changes/<id>/bypass                    – admin bypass (Super Admin)
  GET    /proposed-changes/<id>/bypass-logs               – bypass audit rows
  GET    /approvals/ongoing                               – paginated documents + chains
"""

import logging

from flask import Blueprint, g, jsonify, request
from sqlalchemy import select

from changeflow.core.exceptions import PermissionDeniedError
from changeflow.middleware.jwt_auth import current_identity
from changeflow.models.bypass import BypassLog
from changeflow.services.approval_queries import OngoingApprovalFilter, list_ongoing_approvals
from changeflow.services.approval_state_machine import ApprovalStateMachine
from changeflow.services.bypass_service import BypassController
from changeflow.services.context import build_context
from changeflow.services.proposed_change_service import load_document
from changeflow.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1")
register_error_handlers(approval_bp)


@approval_bp.route("/proposed-changes/<int:doc_id>/approvals/<int:approver_id>", methods=["PATCH"])
def submit_transition(doc_id, approver_id):
    """Record the caller's decision on their own step.

    Body: { status: approved|not_approved|rejected, note?, employee_code? }
    Header: Idempotency-Key (optional) replaces the content signature.
    """
    if g.jwt_user_id != approver_id:
        raise PermissionDeniedError("You can only decide your own approval step")
    data = request.get_json(silent=True) or {}
    result = ApprovalStateMachine(build_context()).transition(
        doc_id,
        approver_id,
        data.get("status"),
        data.get("note") or "",
        employee_code=data.get("employee_code"),
        idempotency_key=request.headers.get("Idempotency-Key"),
    )
    return jsonify(result), 200


@approval_bp.route("/proposed-changes/<int:doc_id>/bypass", methods=["POST"])
def admin_bypass(doc_id):
    """Force-complete stalled steps.

    Body: { target_status: approved (partial) | done (full), reason }
    """
    identity = current_identity()
    data = request.get_json(silent=True) or {}
    summary = BypassController(build_context()).bypass(
        doc_id,
        identity.authorization_id,
        data.get("target_status"),
        data.get("reason"),
        roles=identity.roles,
        ip_address=request.headers.get("X-Forwarded-For", request.remote_addr),
        user_agent=request.headers.get("User-Agent"),
    )
    return jsonify(summary), 200


@approval_bp.route("/proposed-changes/<int:doc_id>/bypass-logs", methods=["GET"])
def list_bypass_logs(doc_id):
    ctx = build_context()
    if not current_identity().has_any_role(ctx.settings.admin_roles):
        raise PermissionDeniedError("Unauthorized: Admin access required")
    load_document(ctx.session, doc_id)
    logs = ctx.session.execute(
        select(BypassLog).where(BypassLog.proposed_change_id == doc_id).order_by(BypassLog.id.desc())
    ).scalars().all()
    return jsonify({"data": [log.to_dict() for log in logs], "total": len(logs)})


@approval_bp.route("/approvals/ongoing", methods=["GET"])
def list_ongoing():
    """Paginated documents with their chains.

    Query: page, limit, sort, direction, search, id, status, change_type, line_code,
           plant_id, department_id, section_department_id, need_engineering_approval,
           need_production_approval, created_by, approver_id, approval_status, employee_code
    """
    filt = OngoingApprovalFilter.from_args(request.args)
    return jsonify(list_ongoing_approvals(build_context().session, filt))
