"""
Proposed-change domain model.

Models:
    - ProposedChange: the aggregate document moving through approval
    - ApprovalStep: one position in a document's ordered approver chain
    - HistoryEntry: append-only audit row for every document event

Status values are closed enums. ``STEP_TRANSITIONS`` is the single table
that decides which step moves are legal; services consult it instead of
comparing strings.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import event as _sa_event

from changeflow.models import db
from changeflow.models.soft_delete import SoftDeleteMixin


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Status enums ─────────────────────────────────────────────────────────────

class DocumentStatus(str, Enum):
    SUBMITTED = "submitted"
    ONPROGRESS = "onprogress"
    APPROVED = "approved"
    NOT_APPROVED = "not_approved"
    REJECTED = "rejected"
    DONE = "done"


class StepStatus(str, Enum):
    PENDING = "pending"
    ON_GOING = "on_going"
    APPROVED = "approved"
    NOT_APPROVED = "not_approved"
    REJECTED = "rejected"


DECISION_STATUSES = frozenset({StepStatus.APPROVED, StepStatus.NOT_APPROVED, StepStatus.REJECTED})


# ── Transition table ─────────────────────────────────────────────────────────
# Keyed by move kind, then by current step status. "decide" is an approver
# decision; "activate" and "bypass" are system moves.

STEP_TRANSITIONS = {
    "decide": {
        StepStatus.PENDING: frozenset(),
        StepStatus.ON_GOING: DECISION_STATUSES,
        StepStatus.NOT_APPROVED: DECISION_STATUSES,
        StepStatus.REJECTED: DECISION_STATUSES,
        StepStatus.APPROVED: frozenset(),
    },
    "activate": {
        StepStatus.PENDING: frozenset({StepStatus.ON_GOING}),
    },
    "bypass": {
        StepStatus.PENDING: frozenset({StepStatus.APPROVED}),
        StepStatus.ON_GOING: frozenset({StepStatus.APPROVED}),
    },
}


def can_transition(kind, current, target):
    """Return True if moving a step from *current* to *target* is legal for *kind*."""
    allowed = STEP_TRANSITIONS.get(kind, {}).get(StepStatus(current), frozenset())
    return StepStatus(target) in allowed


# ── History action types ─────────────────────────────────────────────────────

ACTION_SUBMITTED = "submitted"
ACTION_DECISION = "decision"
ACTION_ADMIN_BYPASS = "admin_bypass"
ACTION_CHANGE_REQUESTED = "change_requested"
ACTION_APPROVER_CHANGED = "approver_changed"
ACTION_CHANGE_REJECTED = "change_rejected"


class ProposedChange(SoftDeleteMixin, db.Model):
    """
    Proposed change document.

    ``status`` and ``progress`` are derived from the chain on every
    decision; they are never edited directly. ``lock_version`` is bumped
    as the first write of every mutating transaction so concurrent
    decisions on the same document serialize on the row.
    """

    __tablename__ = "proposed_changes"

    id = db.Column(db.Integer, primary_key=True)
    project_name = db.Column(db.String(255), nullable=False)
    line_code = db.Column(db.String(30), nullable=False, index=True)
    section_code = db.Column(db.String(30), nullable=True)
    department_id = db.Column(db.Integer, nullable=True, index=True)
    section_department_id = db.Column(db.Integer, nullable=True, index=True)
    plant_id = db.Column(db.Integer, nullable=True, index=True)
    change_type = db.Column(db.String(100), nullable=True)
    description = db.Column(db.Text, default="")
    reason = db.Column(db.Text, default="")
    cost = db.Column(db.String(100), nullable=True)
    planning_start = db.Column(db.Date, nullable=True)
    planning_end = db.Column(db.Date, nullable=True)
    need_engineering_approval = db.Column(db.Boolean, nullable=False, default=False)
    need_production_approval = db.Column(db.Boolean, nullable=False, default=False)

    status = db.Column(db.String(20), nullable=False, default=DocumentStatus.SUBMITTED.value, index=True)
    progress = db.Column(db.Integer, nullable=False, default=0)
    lock_version = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.String(150), nullable=False, comment="Submitter display name")
    submitter_id = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=False, index=True)

    # Bypass metadata
    is_bypassed = db.Column(db.Boolean, nullable=False, default=False)
    bypass_by = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=True)
    bypass_at = db.Column(db.DateTime(timezone=True), nullable=True)
    bypass_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    submitter = db.relationship("Authorization", foreign_keys=[submitter_id], lazy="joined")
    steps = db.relationship(
        "ApprovalStep",
        back_populates="proposed_change",
        order_by="ApprovalStep.step",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_name": self.project_name,
            "line_code": self.line_code,
            "section_code": self.section_code,
            "department_id": self.department_id,
            "section_department_id": self.section_department_id,
            "plant_id": self.plant_id,
            "change_type": self.change_type,
            "description": self.description,
            "reason": self.reason,
            "cost": self.cost,
            "planning_start": _iso(self.planning_start),
            "planning_end": _iso(self.planning_end),
            "need_engineering_approval": self.need_engineering_approval,
            "need_production_approval": self.need_production_approval,
            "status": self.status,
            "progress": self.progress,
            "created_by": self.created_by,
            "submitter_id": self.submitter_id,
            "is_bypassed": self.is_bypassed,
            "bypass_by": self.bypass_by,
            "bypass_at": _iso(self.bypass_at),
            "bypass_reason": self.bypass_reason,
            "is_deleted": self.is_deleted,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ProposedChange {self.id}: {self.status} {self.progress}%>"


class ApprovalStep(db.Model):
    """One approver's position in a document's chain (``step`` is 1-based)."""

    __tablename__ = "approval_steps"
    __table_args__ = (
        db.UniqueConstraint("proposed_change_id", "step", name="uq_approval_step_order"),
        db.UniqueConstraint("proposed_change_id", "approver_id", name="uq_approval_step_approver"),
    )

    id = db.Column(db.Integer, primary_key=True)
    proposed_change_id = db.Column(
        db.Integer, db.ForeignKey("proposed_changes.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step = db.Column(db.Integer, nullable=False)
    actor = db.Column(db.String(200), nullable=False, comment="Role label, e.g. 'Section Head (L01)'")
    approver_id = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=False, index=True)
    employee_code = db.Column(db.String(30), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=StepStatus.PENDING.value, index=True)
    note = db.Column(db.Text, nullable=True)

    # Approver change bookkeeping
    version = db.Column(db.Integer, nullable=False, default=1)
    original_approver_id = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=True)
    is_changed = db.Column(db.Boolean, nullable=False, default=False)

    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    proposed_change = db.relationship("ProposedChange", back_populates="steps")
    approver = db.relationship("Authorization", foreign_keys=[approver_id], lazy="joined")

    def to_dict(self):
        approver = self.approver
        return {
            "id": self.id,
            "proposed_change_id": self.proposed_change_id,
            "step": self.step,
            "actor": self.actor,
            "approver_id": self.approver_id,
            "employee_code": self.employee_code,
            "approver_name": approver.employee_name if approver else None,
            "status": self.status,
            "note": self.note,
            "version": self.version,
            "original_approver_id": self.original_approver_id,
            "is_changed": self.is_changed,
            "decided_at": _iso(self.decided_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ApprovalStep doc={self.proposed_change_id} #{self.step} {self.status}>"


class HistoryEntry(db.Model):
    """Immutable audit row. ``signature`` backs duplicate-submission detection."""

    __tablename__ = "approval_history"
    __table_args__ = (
        db.Index("idx_history_doc_created", "proposed_change_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    proposed_change_id = db.Column(
        db.Integer, db.ForeignKey("proposed_changes.id", ondelete="CASCADE"), nullable=False,
    )
    actor_id = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=True)
    actor_name = db.Column(db.String(150), nullable=True)
    employee_code = db.Column(db.String(30), nullable=True)
    status = db.Column(db.String(20), nullable=False)
    action_type = db.Column(db.String(30), nullable=False, default=ACTION_DECISION)
    note = db.Column(db.Text, default="")
    description = db.Column(db.Text, nullable=False)
    signature = db.Column(db.String(64), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "proposed_change_id": self.proposed_change_id,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "employee_code": self.employee_code,
            "status": self.status,
            "action_type": self.action_type,
            "note": self.note,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<HistoryEntry {self.id}: doc={self.proposed_change_id} {self.status}>"


@_sa_event.listens_for(HistoryEntry, "before_update")
def _history_is_immutable(mapper, connection, target):
    raise ValueError("HistoryEntry rows are append-only")
