"""
Notification ledger model.

The unique constraint over (document, recipient email, recipient role,
resulting status, note hash) is the idempotency mechanism: a row is
inserted before any delivery attempt, so at most one caller ever owns a
given logical notification.
"""

from datetime import datetime, timezone
from enum import Enum

from changeflow.models import db


class RecipientRole(str, Enum):
    SUBMITTER = "submitter"
    APPROVER = "approver"
    NEXT_APPROVER = "next_approver"
    BYPASS_APPROVER = "bypass_approver"
    BYPASS_SUBMITTER = "bypass_submitter"
    BYPASS_NEXT_APPROVER = "bypass_next_approver"
    SUBMISSION_SUBMITTER = "submission_submitter"
    SUBMISSION_APPROVER = "submission_approver"
    CHANGE_REQUEST_ADMIN = "change_request_admin"
    CHANGE_RESULT_REQUESTER = "change_result_requester"
    CHANGE_RESULT_NEW_APPROVER = "change_result_new_approver"


class NotificationLedgerEntry(db.Model):
    __tablename__ = "notification_ledger"
    __table_args__ = (
        db.UniqueConstraint(
            "proposed_change_id", "recipient_email", "recipient_role", "status", "note_hash",
            name="uq_notification_event",
        ),
        db.Index("idx_notification_success", "is_success"),
    )

    id = db.Column(db.Integer, primary_key=True)
    proposed_change_id = db.Column(
        db.Integer, db.ForeignKey("proposed_changes.id", ondelete="CASCADE"), nullable=False,
    )
    recipient_email = db.Column(db.String(200), nullable=False)
    recipient_name = db.Column(db.String(150), nullable=True)
    recipient_role = db.Column(db.String(40), nullable=False)
    status = db.Column(db.String(20), nullable=False)
    note_hash = db.Column(db.String(64), nullable=False, default="")

    subject = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, nullable=False)

    is_success = db.Column(db.Boolean, nullable=False, default=False)
    message_id = db.Column(db.String(255), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "proposed_change_id": self.proposed_change_id,
            "recipient_email": self.recipient_email,
            "recipient_role": self.recipient_role,
            "status": self.status,
            "is_success": self.is_success,
            "message_id": self.message_id,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }

    def __repr__(self):
        return f"<NotificationLedgerEntry {self.id}: {self.recipient_role} -> {self.recipient_email}>"
