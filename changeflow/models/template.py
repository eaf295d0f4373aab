"""
Approval template model.

A template is a blueprint for one position of a generated chain. Matching
criteria (``line_code`` and the two category flags) are wildcards when
NULL. Templates sharing a ``step_order`` compete on ``priority``.
"""

from datetime import datetime, timezone
from enum import Enum

from changeflow.models import db
from changeflow.models.soft_delete import SoftDeleteMixin


def _utcnow():
    return datetime.now(timezone.utc)


class SectionMode(str, Enum):
    FIXED = "fixed"          # template.section_id
    DYNAMIC = "dynamic"      # section supplied with the document
    LINE = "line"            # line's manufacturing section


class HeadModel(str, Enum):
    SECTION = "section"
    DEPARTMENT = "department"


class ApprovalTemplate(SoftDeleteMixin, db.Model):
    __tablename__ = "approval_templates"
    __table_args__ = (
        db.Index("idx_template_match", "is_active", "step_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Matching criteria; NULL matches anything
    line_code = db.Column(db.String(30), nullable=True, index=True)
    need_engineering_approval = db.Column(db.Boolean, nullable=True)
    need_production_approval = db.Column(db.Boolean, nullable=True)

    step_order = db.Column(db.Integer, nullable=False)
    actor_name = db.Column(db.String(150), nullable=False)
    model_type = db.Column(db.String(20), nullable=False, default=HeadModel.SECTION.value)
    section_mode = db.Column(db.String(20), nullable=False, default=SectionMode.FIXED.value)
    section_id = db.Column(db.Integer, db.ForeignKey("sections.id", ondelete="SET NULL"), nullable=True)
    priority = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_by = db.Column(db.String(150), nullable=True)
    updated_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "template_name": self.template_name,
            "description": self.description,
            "line_code": self.line_code,
            "need_engineering_approval": self.need_engineering_approval,
            "need_production_approval": self.need_production_approval,
            "step_order": self.step_order,
            "actor_name": self.actor_name,
            "model_type": self.model_type,
            "section_mode": self.section_mode,
            "section_id": self.section_id,
            "priority": self.priority,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ApprovalTemplate {self.id}: step {self.step_order} {self.actor_name}>"
