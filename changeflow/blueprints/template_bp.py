"""
Approval Template Blueprint.

Routes:
  GET    /approval-templates                 – list (filters: search, template_name, line_code, is_active, step_order)
  POST   /approval-templates                 – create                 (admin)
  POST   /approval-templates/bulk            – create many, all-or-nothing (admin)
  POST   /approval-templates/preview         – resolve a chain without persisting
  GET    /approval-templates/<tid>           – get one
  PUT    /approval-templates/<tid>           – update                 (admin)
  PATCH  /approval-templates/<tid>/toggle    – flip is_active         (admin)
  DELETE /approval-templates/<tid>           – soft delete            (admin)
"""

from flask import Blueprint, jsonify, request

from changeflow.core.exceptions import PermissionDeniedError
from changeflow.middleware.jwt_auth import current_identity
from changeflow.services.context import build_context
from changeflow.services.template_service import TemplateFilter, TemplateService
from changeflow.utils.errors import register_error_handlers

template_bp = Blueprint("template_bp", __name__, url_prefix="/api/v1/approval-templates")
register_error_handlers(template_bp)


def _admin_service():
    """Service for a write endpoint, plus the caller's name for audit columns."""
    ctx = build_context()
    identity = current_identity()
    if not identity.has_any_role(ctx.settings.admin_roles):
        raise PermissionDeniedError("Unauthorized: Admin access required")
    return TemplateService(ctx), identity.name or identity.employee_code


@template_bp.route("", methods=["GET"])
def list_templates():
    return jsonify(TemplateService(build_context()).list(TemplateFilter.from_args(request.args)))


@template_bp.route("", methods=["POST"])
def create_template():
    svc, actor = _admin_service()
    return jsonify(svc.create(request.get_json(silent=True) or {}, actor)), 201


@template_bp.route("/bulk", methods=["POST"])
def bulk_create_templates():
    """Body: { templates: [ {...}, ... ] }"""
    svc, actor = _admin_service()
    data = request.get_json(silent=True) or {}
    created = svc.bulk_create(data.get("templates"), actor)
    return jsonify({"data": created, "total": len(created)}), 201


@template_bp.route("/preview", methods=["POST"])
def preview_chain():
    """Body: { line_code, need_engineering_approval?, need_production_approval?, section_department_id? }"""
    return jsonify(TemplateService(build_context()).preview(request.get_json(silent=True) or {}))


@template_bp.route("/<int:tid>", methods=["GET"])
def get_template(tid):
    return jsonify(TemplateService(build_context()).get(tid))


@template_bp.route("/<int:tid>", methods=["PUT"])
def update_template(tid):
    svc, actor = _admin_service()
    return jsonify(svc.update(tid, request.get_json(silent=True) or {}, actor))


@template_bp.route("/<int:tid>/toggle", methods=["PATCH"])
def toggle_template(tid):
    svc, actor = _admin_service()
    return jsonify(svc.toggle(tid, actor))


@template_bp.route("/<int:tid>", methods=["DELETE"])
def delete_template(tid):
    svc, actor = _admin_service()
    svc.delete(tid, actor)
    return jsonify({"message": "Approval template deleted", "id": tid})
