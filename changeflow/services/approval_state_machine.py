"""
Approval State Machine — advances one step and recomputes the document.

transition(document_id, approver_id, status, note):

  outside the transaction
    - validate ``status`` against the closed decision set
    - duplicate guard: an identical signature inside the dedupe window
      returns the current state unchanged
  inside one guarded transaction
    1. lock the document row; re-check the duplicate signature
    2. legality via STEP_TRANSITIONS (approved is terminal, pending
       steps cannot be decided before activation)
    3. write the step; on approve activate the next pending step, or
       flag the last step
    4. recompute progress and status from persisted step rows
    5. append a HistoryEntry carrying the signature
  after commit
    - notify submitter / approver / next approver (never raises)

Document status is a pure function of step statuses; see
``derive_document_status``.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select

from changeflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from changeflow.models.proposed_change import (
    ACTION_DECISION,
    DECISION_STATUSES,
    ApprovalStep,
    DocumentStatus,
    HistoryEntry,
    StepStatus,
    can_transition,
)
from changeflow.services.concurrency import TransactionGuard
from changeflow.services.notification_dispatcher import NotificationDispatcher
from changeflow.services.proposed_change_service import load_document, snapshot
from changeflow.utils.hashing import content_digest

logger = logging.getLogger(__name__)


# ── Pure derivations ─────────────────────────────────────────────────────────

def compute_progress(step_statuses) -> int:
    """round(100 * approved / total); an empty chain has progress 0."""
    statuses = [StepStatus(s) for s in step_statuses]
    if not statuses:
        return 0
    approved = sum(1 for s in statuses if s is StepStatus.APPROVED)
    return round(100 * approved / len(statuses))


def derive_document_status(step_statuses, last_step_triggered=False) -> DocumentStatus:
    """
    Aggregate status by fixed priority:
    rejected > not_approved > done (last step approved) > approved (100%) > onprogress.
    """
    statuses = [StepStatus(s) for s in step_statuses]
    if StepStatus.REJECTED in statuses:
        return DocumentStatus.REJECTED
    if StepStatus.NOT_APPROVED in statuses:
        return DocumentStatus.NOT_APPROVED
    if last_step_triggered:
        return DocumentStatus.DONE
    if statuses and compute_progress(statuses) == 100:
        return DocumentStatus.APPROVED
    return DocumentStatus.ONPROGRESS


def parse_decision(value) -> StepStatus:
    try:
        status = StepStatus(value)
    except ValueError:
        status = None
    if status not in DECISION_STATUSES:
        raise ValidationError(
            "Invalid status. Must be one of: approved, not_approved, rejected",
            details={"status": value},
        )
    return status


def describe_decision(name, status, repeated=False) -> str:
    if status is StepStatus.APPROVED:
        return f"{name} has approved the Proposed Changes"
    if status is StepStatus.REJECTED:
        return f"{name} has rejected the Proposed Changes"
    if repeated:
        return f"{name} has not approved again the Proposed Changes"
    return f"{name} has not approved the Proposed Changes"


@dataclass(frozen=True)
class _Applied:
    duplicate: bool
    step_id: int | None = None
    next_step_id: int | None = None
    is_last_step: bool = False


class ApprovalStateMachine:
    def __init__(self, ctx, dispatcher=None):
        self.ctx = ctx
        self.session = ctx.session
        self.dispatcher = dispatcher or NotificationDispatcher(ctx)

    # ── Duplicate guard ──────────────────────────────────────────────────

    @staticmethod
    def signature(document_id, approver_id, status, note, idempotency_key=None) -> str:
        if idempotency_key:
            return content_digest("token", document_id, approver_id, idempotency_key)
        return content_digest("transition", document_id, approver_id, StepStatus(status).value, note or "")

    def _recent_duplicate(self, session, document_id, signature) -> bool:
        cutoff = self.ctx.clock() - timedelta(seconds=self.ctx.settings.dedupe_window)
        found = session.execute(
            select(HistoryEntry.id)
            .where(
                HistoryEntry.proposed_change_id == document_id,
                HistoryEntry.signature == signature,
                HistoryEntry.created_at >= cutoff,
            )
            .limit(1)
        ).scalar_one_or_none()
        return found is not None

    # ── Operation ────────────────────────────────────────────────────────

    def transition(self, document_id, approver_id, status, note="", *, employee_code=None, idempotency_key=None):
        """
        Record an approver's decision.

        Returns a dict with the updated document, the ordered chain, a
        ``duplicate`` flag and a human-readable ``message``.
        """
        decision = parse_decision(status)
        note = (note or "").strip()
        sig = self.signature(document_id, approver_id, decision, note, idempotency_key)
        log_extra = {"document_id": document_id, "approver_id": approver_id, "status": decision.value}

        if self._recent_duplicate(self.session, document_id, sig):
            logger.info("Duplicate transition suppressed", extra=dict(log_extra, event_type="transition.duplicate"))
            return self._result(document_id, decision, duplicate=True)

        applied = TransactionGuard.for_context(self.ctx).run(
            lambda session: self._apply(session, document_id, approver_id, decision, note, employee_code, sig),
            label="approval_transition",
            document_id=document_id,
        )
        if applied.duplicate:
            logger.info("Duplicate transition suppressed in transaction",
                        extra=dict(log_extra, event_type="transition.duplicate"))
            return self._result(document_id, decision, duplicate=True)

        logger.info("Approval step updated", extra=dict(log_extra, event_type="transition.committed"))
        report = self.dispatcher.notify_transition(
            document_id, applied.step_id, applied.next_step_id, decision.value, note, applied.is_last_step,
        )
        result = self._result(document_id, decision, duplicate=False)
        result["notifications"] = report.to_dict()
        return result

    def _result(self, document_id, decision, duplicate):
        result = snapshot(self.session, document_id)
        result["duplicate"] = duplicate
        result["message"] = f"Approval has been updated to '{decision.value}' successfully"
        return result

    def _apply(self, session, document_id, approver_id, decision, note, employee_code, sig) -> _Applied:
        doc = load_document(session, document_id, lock=True)
        if self._recent_duplicate(session, document_id, sig):
            return _Applied(duplicate=True)

        step = session.execute(
            select(ApprovalStep).where(
                ApprovalStep.proposed_change_id == document_id,
                ApprovalStep.approver_id == approver_id,
            )
        ).scalar_one_or_none()
        if step is None:
            raise NotFoundError("ApprovalStep", details={"document_id": document_id, "approver_id": approver_id})
        if employee_code and step.employee_code and employee_code != step.employee_code:
            raise ValidationError(
                "employee_code does not match the assigned approver",
                details={"employee_code": employee_code},
            )

        current = StepStatus(step.status)
        if current is StepStatus.APPROVED:
            raise ConflictError(
                "This approval step is already approved and cannot be changed",
                details={"step": step.step, "current_status": current.value},
            )
        if not can_transition("decide", current, decision):
            raise ConflictError(
                f"Step {step.step} is {current.value} and cannot be decided yet",
                details={"step": step.step, "current_status": current.value},
            )

        repeated = decision is StepStatus.NOT_APPROVED and session.execute(
            select(HistoryEntry.id).where(
                HistoryEntry.proposed_change_id == document_id,
                HistoryEntry.actor_id == approver_id,
                HistoryEntry.status == StepStatus.NOT_APPROVED.value,
            ).limit(1)
        ).scalar_one_or_none() is not None

        now = self.ctx.clock()
        step.status = decision.value
        step.note = note
        step.decided_at = now
        step.updated_at = now

        next_step = None
        is_last_step = False
        if decision is StepStatus.APPROVED:
            following = session.execute(
                select(ApprovalStep).where(
                    ApprovalStep.proposed_change_id == document_id,
                    ApprovalStep.step == step.step + 1,
                )
            ).scalar_one_or_none()
            if following is None:
                is_last_step = True
            elif can_transition("activate", following.status, StepStatus.ON_GOING):
                following.status = StepStatus.ON_GOING.value
                following.updated_at = now
                next_step = following

        session.flush()
        statuses = session.execute(
            select(ApprovalStep.status).where(ApprovalStep.proposed_change_id == document_id)
        ).scalars().all()
        doc.progress = compute_progress(statuses)
        doc.status = derive_document_status(statuses, last_step_triggered=is_last_step).value
        doc.updated_at = now

        approver = step.approver
        name = approver.employee_name if approver else f"Approver {approver_id}"
        session.add(HistoryEntry(
            proposed_change_id=document_id,
            actor_id=approver_id,
            actor_name=name,
            employee_code=step.employee_code,
            status=decision.value,
            action_type=ACTION_DECISION,
            note=note,
            description=describe_decision(name, decision, repeated),
            signature=sig,
            created_at=now,
        ))
        return _Applied(
            duplicate=False,
            step_id=step.id,
            next_step_id=next_step.id if next_step else None,
            is_last_step=is_last_step,
        )
