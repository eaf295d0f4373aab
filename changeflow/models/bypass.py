"""
Bypass log model.

One immutable row per administrative override, holding the full
before/after snapshot of the document and every approver it touched.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import event as _sa_event

from changeflow.models import db


class BypassStrategy(str, Enum):
    PARTIAL = "partial"
    FULL = "full"


class BypassLog(db.Model):
    __tablename__ = "bypass_logs"

    id = db.Column(db.Integer, primary_key=True)
    proposed_change_id = db.Column(
        db.Integer, db.ForeignKey("proposed_changes.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    admin_id = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=False)
    admin_name = db.Column(db.String(150), nullable=True)
    strategy = db.Column(db.String(20), nullable=False)
    target_status = db.Column(db.String(20), nullable=False)
    original_status = db.Column(db.String(20), nullable=False)
    original_progress = db.Column(db.Integer, nullable=False)
    new_status = db.Column(db.String(20), nullable=False)
    new_progress = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False)
    affected_approvers = db.Column(db.JSON, nullable=False, default=list)
    next_approver = db.Column(db.JSON, nullable=True, comment="Auto-activated step (partial strategy)")
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "proposed_change_id": self.proposed_change_id,
            "admin_id": self.admin_id,
            "admin_name": self.admin_name,
            "strategy": self.strategy,
            "target_status": self.target_status,
            "original_status": self.original_status,
            "original_progress": self.original_progress,
            "new_status": self.new_status,
            "new_progress": self.new_progress,
            "reason": self.reason,
            "affected_approvers": self.affected_approvers or [],
            "next_approver": self.next_approver,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<BypassLog {self.id}: doc={self.proposed_change_id} {self.strategy}>"


@_sa_event.listens_for(BypassLog, "before_update")
def _bypass_log_is_immutable(mapper, connection, target):
    raise ValueError("BypassLog rows are append-only")
