"""
Notification Dispatcher — at-most-one delivery per logical event.

Runs only after the owning workflow transaction has committed. For each
recipient:

    1. look up the ledger key; skip if a row exists
    2. insert and commit a ledger row, reserving the key (a unique
       violation means a concurrent caller owns it: skip)
    3. deliver; on success mark the row with the provider message id,
       on failure leave it unsuccessful for ``retry_failed``

Ledger key: (document, recipient email, recipient role, resulting status,
event digest). The event digest hashes the note text, scoped by the step
that produced the event where there is one, so two approvers approving
with the same note still reach the submitter twice.

Nothing in this module raises into the caller: delivery and ledger
failures are logged and reported in the returned ``DeliveryReport``.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from changeflow.core.exceptions import NotificationError
from changeflow.models.notification import NotificationLedgerEntry, RecipientRole
from changeflow.models.proposed_change import ApprovalStep, ProposedChange, StepStatus
from changeflow.services import email_service
from changeflow.utils.hashing import content_digest, note_digest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    role: RecipientRole
    email: str | None
    name: str | None
    context: dict = field(default_factory=dict)


@dataclass
class DeliveryReport:
    sent: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    # Exceptions that aborted a whole notification batch before any recipient was tried.
    errors: list = field(default_factory=list)

    def to_dict(self):
        return {
            "sent": len(self.sent),
            "skipped": len(self.skipped),
            "failed": len(self.failed) + len(self.errors),
        }


def event_digest(note, scope=None):
    if scope is None:
        return note_digest(note)
    return content_digest(scope, note or "")


class NotificationDispatcher:
    def __init__(self, ctx):
        self.ctx = ctx
        self.session = ctx.session

    # ── Core protocol ────────────────────────────────────────────────────

    def dispatch(self, document_id, status, note, recipients, *, scope=None) -> DeliveryReport:
        report = DeliveryReport()
        digest = event_digest(note, scope)
        for recipient in recipients:
            log_extra = {"document_id": document_id, "recipient_role": recipient.role.value, "status": status}
            if not recipient.email:
                logger.info("No email address for %s (%s); skipping", recipient.name, recipient.role.value, extra=log_extra)
                report.skipped.append(recipient)
                continue
            try:
                self._deliver_one(document_id, status, note, digest, recipient, report, log_extra)
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.error("Notification ledger error for %s: %s", recipient.email, exc, extra=log_extra)
                report.failed.append(recipient)
            except Exception:
                self.session.rollback()
                logger.exception("Unexpected notification error for %s", recipient.email, extra=log_extra)
                report.failed.append(recipient)
        return report

    def _deliver_one(self, document_id, status, note, digest, recipient, report, log_extra):
        key = dict(
            proposed_change_id=document_id,
            recipient_email=recipient.email,
            recipient_role=recipient.role.value,
            status=status,
            note_hash=digest,
        )
        existing = self.session.execute(select(NotificationLedgerEntry.id).filter_by(**key)).scalar_one_or_none()
        if existing is not None:
            logger.info("Notification already recorded (ledger %s); skipping", existing, extra=log_extra)
            report.skipped.append(recipient)
            return

        context = dict(recipient.context, status=status, note=note, recipient_name=recipient.name)
        try:
            subject, body = email_service.render(recipient.role.value, context)
        except NotificationError as exc:
            logger.error("Cannot render notification: %s", exc, extra=log_extra)
            report.failed.append(recipient)
            return

        entry = NotificationLedgerEntry(
            **key,
            recipient_name=recipient.name,
            subject=subject[:300],
            body=body,
            is_success=False,
            retry_count=0,
            created_at=self.ctx.clock(),
        )
        self.session.add(entry)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.info("Notification claimed by a concurrent sender; skipping", extra=log_extra)
            report.skipped.append(recipient)
            return

        self._send(entry, report, recipient, log_extra)

    def _send(self, entry, report, recipient, log_extra):
        try:
            message_id = self.ctx.mailer.send(
                to_email=entry.recipient_email,
                to_name=entry.recipient_name,
                subject=entry.subject,
                html_body=entry.body,
            )
        except Exception as exc:  # any transport failure stays on the ledger row
            entry.error_message = (str(exc) or type(exc).__name__)[:1000]
            self.session.commit()
            logger.error(
                "Notification delivery failed (ledger %s): %s",
                entry.id,
                exc,
                extra=log_extra,
                exc_info=not isinstance(exc, NotificationError),
            )
            report.failed.append(recipient)
            return

        entry.is_success = True
        entry.message_id = message_id
        entry.sent_at = self.ctx.clock()
        entry.error_message = None
        self.session.commit()
        logger.info("Notification sent (ledger %s) to %s", entry.id, entry.recipient_email, extra=log_extra)
        report.sent.append(recipient)

    def retry_failed(self, limit=50, min_age_seconds=300) -> DeliveryReport:
        """
        Re-attempt unsuccessful ledger rows older than *min_age_seconds*.

        Each row is claimed with a conditional update on ``retry_count`` so
        two concurrent retriers never both send it.
        """
        report = DeliveryReport()
        cutoff = self.ctx.clock() - timedelta(seconds=min_age_seconds)
        rows = self.session.execute(
            select(NotificationLedgerEntry)
            .where(NotificationLedgerEntry.is_success.is_(False), NotificationLedgerEntry.created_at <= cutoff)
            .order_by(NotificationLedgerEntry.id)
            .limit(limit)
        ).scalars().all()

        for entry in rows:
            log_extra = {
                "document_id": entry.proposed_change_id,
                "recipient_role": entry.recipient_role,
                "attempt": entry.retry_count + 1,
            }
            recipient = Recipient(RecipientRole(entry.recipient_role), entry.recipient_email, entry.recipient_name)
            try:
                claimed = self.session.execute(
                    update(NotificationLedgerEntry)
                    .where(
                        NotificationLedgerEntry.id == entry.id,
                        NotificationLedgerEntry.retry_count == entry.retry_count,
                        NotificationLedgerEntry.is_success.is_(False),
                    )
                    .values(retry_count=NotificationLedgerEntry.retry_count + 1)
                    .execution_options(synchronize_session=False)
                ).rowcount
                self.session.commit()
                if not claimed:
                    report.skipped.append(recipient)
                    continue
                self.session.refresh(entry)
                self._send(entry, report, recipient, log_extra)
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.error("Retry of ledger %s failed: %s", entry.id, exc, extra=log_extra)
                report.failed.append(recipient)

        logger.info("Notification retry pass: %s", report.to_dict(), extra={"event_type": "notification.retry"})
        return report

    # ── Event helpers ────────────────────────────────────────────────────

    def _document_context(self, doc):
        return {
            "document_id": doc.id,
            "project_name": doc.project_name,
            "line_code": doc.line_code,
            "progress": doc.progress,
            "document_status": doc.status,
            "link": self.ctx.document_link(doc.id),
        }

    def _load(self, document_id):
        doc = self.session.get(ProposedChange, document_id)
        if doc is None:
            raise NotificationError(f"ProposedChange {document_id} vanished before notification")
        return doc

    def _safely(self, label, document_id, fn):
        try:
            return fn()
        except Exception as exc:  # workflow has already committed
            self.session.rollback()
            logger.error(
                "%s notifications failed: %s",
                label,
                exc,
                extra={"document_id": document_id},
                exc_info=not isinstance(exc, NotificationError),
            )
            return DeliveryReport(errors=[exc])

    def notify_transition(self, document_id, step_id, next_step_id, status, note, is_last_step) -> DeliveryReport:
        """Submitter, acting approver, and (approve path only) the newly activated approver."""
        return self._safely("Transition", document_id, lambda: self._notify_transition(
            document_id, step_id, next_step_id, status, note, is_last_step,
        ))

    def _notify_transition(self, document_id, step_id, next_step_id, status, note, is_last_step):
        doc = self._load(document_id)
        step = self.session.get(ApprovalStep, step_id)
        base = self._document_context(doc)
        approver = step.approver
        base.update(
            step=step.step,
            actor=step.actor,
            actor_name=approver.employee_name if approver else "",
            is_last_approver=is_last_step,
        )

        recipients = []
        submitter = doc.submitter
        if submitter is not None:
            recipients.append(Recipient(RecipientRole.SUBMITTER, submitter.email, submitter.employee_name, base))
        if approver is not None:
            recipients.append(Recipient(RecipientRole.APPROVER, approver.email, approver.employee_name, base))
        if status == StepStatus.APPROVED.value and next_step_id is not None:
            nxt = self.session.get(ApprovalStep, next_step_id)
            if nxt is not None and nxt.approver is not None:
                ctx = dict(base, next_step=nxt.step, next_actor=nxt.actor)
                recipients.append(Recipient(
                    RecipientRole.NEXT_APPROVER, nxt.approver.email, nxt.approver.employee_name, ctx,
                ))
        return self.dispatch(document_id, status, note, recipients, scope=f"step:{step_id}")

    def notify_bypass(self, document_id, summary) -> DeliveryReport:
        """Force-approved approvers, the submitter, and the auto-activated next approver."""
        return self._safely("Bypass", document_id, lambda: self._notify_bypass(document_id, summary))

    def _notify_bypass(self, document_id, summary):
        doc = self._load(document_id)
        base = self._document_context(doc)
        base.update(
            admin_name=summary["admin_name"],
            strategy=summary["strategy"],
            affected_count=len(summary["affected_approvers"]),
        )
        recipients = []
        for item in summary["affected_approvers"]:
            ctx = dict(base, step=item["step"], actor=item["actor"], original_status=item["original_status"])
            recipients.append(Recipient(RecipientRole.BYPASS_APPROVER, item.get("email"), item["employee_name"], ctx))
        submitter = doc.submitter
        if submitter is not None:
            recipients.append(Recipient(RecipientRole.BYPASS_SUBMITTER, submitter.email, submitter.employee_name, base))
        nxt = summary.get("next_approver")
        if nxt:
            ctx = dict(base, step=nxt["step"], actor=nxt["actor"])
            recipients.append(Recipient(RecipientRole.BYPASS_NEXT_APPROVER, nxt.get("email"), nxt["employee_name"], ctx))
        return self.dispatch(
            document_id, summary["new_status"], summary["reason"], recipients,
            scope=f"bypass:{summary['bypass_log_id']}",
        )

    def notify_submission(self, document_id) -> DeliveryReport:
        """Submitter confirmation and the first approver's call to action."""
        return self._safely("Submission", document_id, lambda: self._notify_submission(document_id))

    def _notify_submission(self, document_id):
        doc = self._load(document_id)
        base = self._document_context(doc)
        steps = doc.steps
        first = steps[0] if steps else None
        submitter = doc.submitter
        base.update(
            step_count=len(steps),
            submitter_name=submitter.employee_name if submitter else doc.created_by,
            first_approver_name=first.approver.employee_name if first and first.approver else "",
            first_actor=first.actor if first else "",
        )
        recipients = []
        if submitter is not None:
            recipients.append(Recipient(RecipientRole.SUBMISSION_SUBMITTER, submitter.email, submitter.employee_name, base))
        if first is not None and first.approver is not None:
            ctx = dict(base, step=first.step, actor=first.actor)
            recipients.append(Recipient(
                RecipientRole.SUBMISSION_APPROVER, first.approver.email, first.approver.employee_name, ctx,
            ))
        return self.dispatch(document_id, doc.status, "", recipients, scope="submission")

    def notify_change_request(self, change_request, admins) -> DeliveryReport:
        document_id = change_request.proposed_change_id
        return self._safely("Change request", document_id, lambda: self._notify_change_request(change_request, admins))

    def _change_context(self, change_request):
        doc = self._load(change_request.proposed_change_id)
        step = self.session.get(ApprovalStep, change_request.step_id)
        base = self._document_context(doc)
        base.update(
            request_id=change_request.id,
            step=step.step if step else "",
            actor=step.actor if step else "",
            requester_name=change_request.requester.employee_name if change_request.requester else "",
            current_approver_name=change_request.current_approver.employee_name,
            new_approver_name=change_request.new_approver.employee_name,
            urgent_prefix="[URGENT] " if change_request.urgent else "",
        )
        return base

    def _notify_change_request(self, change_request, admins):
        base = self._change_context(change_request)
        recipients = [
            Recipient(RecipientRole.CHANGE_REQUEST_ADMIN, admin.email, admin.employee_name, base)
            for admin in admins
        ]
        return self.dispatch(
            change_request.proposed_change_id, change_request.status, change_request.reason, recipients,
            scope=f"change_request:{change_request.id}",
        )

    def notify_change_result(self, change_request, admin_name) -> DeliveryReport:
        document_id = change_request.proposed_change_id
        return self._safely("Change result", document_id, lambda: self._notify_change_result(change_request, admin_name))

    def _notify_change_result(self, change_request, admin_name):
        base = self._change_context(change_request)
        base.update(
            admin_name=admin_name,
            decision=change_request.status,
            decision_upper=change_request.status.upper(),
        )
        recipients = []
        requester = change_request.requester
        if requester is not None:
            recipients.append(Recipient(RecipientRole.CHANGE_RESULT_REQUESTER, requester.email, requester.employee_name, base))
        if change_request.status == "approved":
            new = change_request.new_approver
            recipients.append(Recipient(RecipientRole.CHANGE_RESULT_NEW_APPROVER, new.email, new.employee_name, base))
        return self.dispatch(
            change_request.proposed_change_id, change_request.status, change_request.admin_decision, recipients,
            scope=f"change_request:{change_request.id}",
        )
