"""
Approver change request model.

A participant asks an admin to replace the approver of a step that has
not been decided yet. At most one request per step may be pending.
"""

from datetime import datetime, timezone
from enum import Enum

from changeflow.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class ChangeRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApproverChangeRequest(db.Model):
    __tablename__ = "approver_change_requests"

    id = db.Column(db.Integer, primary_key=True)
    proposed_change_id = db.Column(
        db.Integer, db.ForeignKey("proposed_changes.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_id = db.Column(db.Integer, db.ForeignKey("approval_steps.id", ondelete="CASCADE"), nullable=False, index=True)
    current_approver_id = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=False)
    new_approver_id = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=False)
    requested_by = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=False)
    reason = db.Column(db.Text, nullable=False)
    urgent = db.Column(db.Boolean, nullable=False, default=False)

    status = db.Column(db.String(20), nullable=False, default=ChangeRequestStatus.PENDING.value, index=True)
    admin_id = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=True)
    admin_decision = db.Column(db.Text, nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    current_approver = db.relationship("Authorization", foreign_keys=[current_approver_id], lazy="joined")
    new_approver = db.relationship("Authorization", foreign_keys=[new_approver_id], lazy="joined")
    requester = db.relationship("Authorization", foreign_keys=[requested_by], lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "proposed_change_id": self.proposed_change_id,
            "step_id": self.step_id,
            "current_approver_id": self.current_approver_id,
            "current_approver_name": self.current_approver.employee_name if self.current_approver else None,
            "new_approver_id": self.new_approver_id,
            "new_approver_name": self.new_approver.employee_name if self.new_approver else None,
            "requested_by": self.requested_by,
            "reason": self.reason,
            "urgent": self.urgent,
            "status": self.status,
            "admin_id": self.admin_id,
            "admin_decision": self.admin_decision,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ApproverChangeRequest {self.id}: step={self.step_id} {self.status}>"
