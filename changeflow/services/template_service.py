"""
Approval template management.

CRUD over ApprovalTemplate plus ``preview``, which runs the Template
Resolver for given criteria without persisting anything. Templates are
soft-deleted so chains built from them stay explainable.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import func, or_, select

from changeflow.core.exceptions import NotFoundError, ValidationError
from changeflow.models.template import ApprovalTemplate, HeadModel, SectionMode
from changeflow.services.template_resolver import ChainCriteria, TemplateResolver
from changeflow.utils.helpers import parse_bool, parse_int, require

logger = logging.getLogger(__name__)

_EDITABLE = (
    "template_name", "description", "line_code", "need_engineering_approval", "need_production_approval",
    "step_order", "actor_name", "model_type", "section_mode", "section_id", "priority", "is_active",
)


@dataclass(frozen=True)
class TemplateFilter:
    page: int = 1
    limit: int = 50
    search: str | None = None
    template_name: str | None = None
    line_code: str | None = None
    is_active: bool | None = None
    step_order: int | None = None

    def __post_init__(self):
        if self.page < 1 or not 1 <= self.limit <= 200:
            raise ValidationError("Invalid pagination", details={"page": self.page, "limit": self.limit})

    @classmethod
    def from_args(cls, args):
        return cls(
            page=parse_int(args.get("page"), "page") or 1,
            limit=parse_int(args.get("limit"), "limit") or 50,
            search=args.get("search") or None,
            template_name=args.get("template_name") or None,
            line_code=args.get("line_code") or None,
            is_active=parse_bool(args.get("is_active"), "is_active"),
            step_order=parse_int(args.get("step_order"), "step_order"),
        )


def _clean(data, partial=False):
    """Coerce and validate template fields; returns only the keys present."""
    values = {}
    for key in _EDITABLE:
        if key not in data:
            continue
        value = data[key]
        if key in ("need_engineering_approval", "need_production_approval", "is_active"):
            value = parse_bool(value, key)
        elif key in ("step_order", "section_id", "priority"):
            value = parse_int(value, key)
        elif isinstance(value, str):
            value = value.strip() or None
        values[key] = value

    errors = {}
    if not partial or "template_name" in values:
        if not values.get("template_name"):
            errors["template_name"] = "required"
    if not partial or "actor_name" in values:
        if not values.get("actor_name"):
            errors["actor_name"] = "required"
    if not partial or "step_order" in values:
        if values.get("step_order") is None or values["step_order"] < 1:
            errors["step_order"] = "must be a positive integer"
    if values.get("model_type") is not None and values["model_type"] not in {m.value for m in HeadModel}:
        errors["model_type"] = "must be section or department"
    if values.get("section_mode") is not None and values["section_mode"] not in {m.value for m in SectionMode}:
        errors["section_mode"] = "must be fixed, dynamic or line"
    if "priority" in values and values["priority"] is None:
        values["priority"] = 0
    if "is_active" in values and values["is_active"] is None:
        values["is_active"] = True
    if errors:
        raise ValidationError("Invalid approval template", details=errors)
    return values


class TemplateService:
    def __init__(self, ctx):
        self.ctx = ctx
        self.session = ctx.session

    def _get(self, template_id):
        template = self.session.execute(
            select(ApprovalTemplate).where(ApprovalTemplate.id == template_id, ApprovalTemplate.not_deleted())
        ).scalar_one_or_none()
        if template is None:
            raise NotFoundError("ApprovalTemplate", template_id)
        return template

    @staticmethod
    def _check_section(template):
        if template.section_mode == SectionMode.FIXED.value and not template.section_id:
            raise ValidationError("section_id is required for fixed section mode", details={"section_id": "required"})

    def get(self, template_id):
        return self._get(template_id).to_dict()

    def list(self, filt: TemplateFilter):
        conds = [ApprovalTemplate.not_deleted()]
        if filt.template_name:
            conds.append(ApprovalTemplate.template_name == filt.template_name)
        if filt.line_code:
            conds.append(ApprovalTemplate.line_code == filt.line_code)
        if filt.is_active is not None:
            conds.append(ApprovalTemplate.is_active.is_(filt.is_active))
        if filt.step_order is not None:
            conds.append(ApprovalTemplate.step_order == filt.step_order)
        if filt.search:
            pattern = f"%{filt.search}%"
            conds.append(or_(
                ApprovalTemplate.template_name.ilike(pattern),
                ApprovalTemplate.actor_name.ilike(pattern),
                ApprovalTemplate.line_code.ilike(pattern),
            ))
        total = self.session.execute(select(func.count(ApprovalTemplate.id)).where(*conds)).scalar_one()
        rows = self.session.execute(
            select(ApprovalTemplate)
            .where(*conds)
            .order_by(ApprovalTemplate.step_order, ApprovalTemplate.priority.desc(), ApprovalTemplate.id)
            .offset((filt.page - 1) * filt.limit)
            .limit(filt.limit)
        ).scalars().all()
        return {"data": [t.to_dict() for t in rows], "total": total, "page": filt.page, "limit": filt.limit}

    def create(self, data, actor_name=None):
        template = self._build(data, actor_name)
        self.session.commit()
        logger.info("Approval template %s created", template.id, extra={"event_type": "template.created"})
        return template.to_dict()

    def _build(self, data, actor_name):
        require(data, "template_name", "actor_name", "step_order")
        values = _clean(data)
        template = ApprovalTemplate(**values, created_by=actor_name, updated_by=actor_name)
        template.model_type = template.model_type or HeadModel.SECTION.value
        template.section_mode = template.section_mode or SectionMode.FIXED.value
        self._check_section(template)
        self.session.add(template)
        self.session.flush()
        return template

    def bulk_create(self, items, actor_name=None):
        """All-or-nothing: one invalid item rejects the whole batch."""
        if not isinstance(items, list) or not items:
            raise ValidationError("templates must be a non-empty list", details={"templates": "required"})
        created = []
        try:
            for index, item in enumerate(items):
                try:
                    created.append(self._build(item or {}, actor_name))
                except ValidationError as exc:
                    raise ValidationError(f"Template #{index + 1}: {exc.message}", details=exc.details) from exc
            self.session.commit()
        except ValidationError:
            self.session.rollback()
            raise
        logger.info("Bulk-created %d approval templates", len(created), extra={"event_type": "template.bulk_created"})
        return [t.to_dict() for t in created]

    def update(self, template_id, data, actor_name=None):
        template = self._get(template_id)
        for key, value in _clean(data, partial=True).items():
            setattr(template, key, value)
        template.updated_by = actor_name
        self._check_section(template)
        self.session.commit()
        return template.to_dict()

    def toggle(self, template_id, actor_name=None):
        template = self._get(template_id)
        template.is_active = not template.is_active
        template.updated_by = actor_name
        self.session.commit()
        return template.to_dict()

    def delete(self, template_id, actor_name=None):
        template = self._get(template_id)
        template.soft_delete(self.ctx.clock())
        template.updated_by = actor_name
        self.session.commit()
        logger.info("Approval template %s soft-deleted", template_id, extra={"event_type": "template.deleted"})

    def preview(self, data):
        """Resolve the chain a document with these criteria would get."""
        require(data, "line_code")
        criteria = ChainCriteria(
            line_code=str(data["line_code"]).strip(),
            need_engineering_approval=bool(parse_bool(data.get("need_engineering_approval"), "need_engineering_approval")),
            need_production_approval=bool(parse_bool(data.get("need_production_approval"), "need_production_approval")),
            section_department_id=parse_int(data.get("section_department_id"), "section_department_id"),
        )
        resolver = TemplateResolver(self.session, self.ctx.directory)
        templates = resolver.matching_templates(criteria)
        approvers = resolver.resolve(criteria)
        return {
            "templates": [t.to_dict() for t in templates],
            "approvers": [dict(a.to_dict(), step=i) for i, a in enumerate(approvers, start=1)],
        }
