"""
Bypass Controller — administrative override for stalled chains.

Strategies:
    partial (target ``approved``)
        every on_going step → approved; the lowest pending step is
        activated so the chain continues; document stays onprogress
    full (target ``done``)
        every pending / on_going step → approved; document done at 100%

Both refuse a document that is already done at 100%. Each forced step
gets a note naming the admin and reason; one BypassLog row captures the
before/after snapshot, and a HistoryEntry of type ``admin_bypass`` is
appended. Notifications go out after commit.
"""

import logging

from sqlalchemy import select

from changeflow.core.exceptions import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from changeflow.models.bypass import BypassLog, BypassStrategy
from changeflow.models.proposed_change import (
    ACTION_ADMIN_BYPASS,
    ApprovalStep,
    DocumentStatus,
    HistoryEntry,
    StepStatus,
    can_transition,
)
from changeflow.services.approval_state_machine import compute_progress
from changeflow.services.concurrency import TransactionGuard
from changeflow.services.notification_dispatcher import NotificationDispatcher
from changeflow.services.proposed_change_service import load_document, snapshot

logger = logging.getLogger(__name__)

_TARGET_STRATEGY = {
    DocumentStatus.APPROVED.value: BypassStrategy.PARTIAL,
    DocumentStatus.DONE.value: BypassStrategy.FULL,
}


def _approver_entry(step, original_status, reason=None):
    approver = step.approver
    entry = {
        "step_id": step.id,
        "approver_id": step.approver_id,
        "employee_name": approver.employee_name if approver else None,
        "employee_code": step.employee_code,
        "email": approver.email if approver else None,
        "step": step.step,
        "actor": step.actor,
        "original_status": original_status,
        "final_status": step.status,
    }
    if reason is not None:
        entry["reason"] = reason
    return entry


class BypassController:
    def __init__(self, ctx, dispatcher=None):
        self.ctx = ctx
        self.session = ctx.session
        self.dispatcher = dispatcher or NotificationDispatcher(ctx)

    def bypass(self, document_id, admin_id, target_status, reason, *, roles=(), ip_address=None, user_agent=None):
        """Force-complete stalled steps; returns the bypass summary."""
        if not any(r in self.ctx.settings.bypass_roles for r in roles):
            raise PermissionDeniedError("Access denied. Only Super Admin can bypass approvals.")
        strategy = _TARGET_STRATEGY.get(target_status)
        if strategy is None:
            raise ValidationError(
                "target_status must be 'approved' (partial) or 'done' (full)",
                details={"target_status": target_status},
            )
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("reason is required", details={"reason": "required"})

        admin = self.ctx.directory.get_authorization(admin_id)
        if admin is None:
            raise NotFoundError("Authorization", admin_id)
        admin_name = admin.employee_name

        summary = TransactionGuard.for_context(self.ctx).run(
            lambda session: self._apply(
                session, document_id, admin_id, admin_name, strategy, target_status, reason, ip_address, user_agent,
            ),
            label="admin_bypass",
            document_id=document_id,
        )
        logger.info(
            "Bypass applied: %d step(s) force-approved", len(summary["affected_approvers"]),
            extra={"document_id": document_id, "strategy": strategy.value, "event_type": "bypass.committed"},
        )
        summary["notifications"] = self.dispatcher.notify_bypass(document_id, summary).to_dict()
        summary.update(snapshot(self.session, document_id))
        return summary

    def _apply(self, session, document_id, admin_id, admin_name, strategy, target_status, reason, ip, ua):
        doc = load_document(session, document_id, lock=True)
        if doc.status == DocumentStatus.DONE.value and doc.progress == 100:
            raise ConflictError("Document is already completed", details={"status": doc.status, "progress": 100})

        original_status, original_progress = doc.status, doc.progress
        steps = session.execute(
            select(ApprovalStep)
            .where(ApprovalStep.proposed_change_id == document_id)
            .order_by(ApprovalStep.step)
        ).scalars().all()

        if strategy is BypassStrategy.PARTIAL:
            eligible = [s for s in steps if s.status == StepStatus.ON_GOING.value]
            if not eligible:
                raise ConflictError("No on-going approval step to bypass")
        else:
            eligible = [s for s in steps if can_transition("bypass", s.status, StepStatus.APPROVED)]
            if not eligible:
                raise ConflictError("No pending or on-going approval steps to bypass")

        now = self.ctx.clock()
        note = f"Bypassed by {admin_name}: {reason}"
        affected = []
        for step in eligible:
            before = step.status
            step.status = StepStatus.APPROVED.value
            step.note = note
            step.decided_at = now
            step.updated_at = now
            affected.append(_approver_entry(step, before, reason=note))

        next_step = None
        if strategy is BypassStrategy.PARTIAL:
            next_step = next(
                (s for s in steps if can_transition("activate", s.status, StepStatus.ON_GOING)), None,
            )
            if next_step is not None:
                next_step.status = StepStatus.ON_GOING.value
                next_step.note = f"Activated after bypass by {admin_name}"
                next_step.updated_at = now

        session.flush()
        statuses = session.execute(
            select(ApprovalStep.status).where(ApprovalStep.proposed_change_id == document_id)
        ).scalars().all()
        if strategy is BypassStrategy.FULL:
            new_status, new_progress = DocumentStatus.DONE, 100
        else:
            new_progress = compute_progress(statuses)
            all_approved = all(s == StepStatus.APPROVED.value for s in statuses)
            new_status = DocumentStatus.DONE if all_approved else DocumentStatus.ONPROGRESS

        doc.status = new_status.value
        doc.progress = new_progress
        doc.is_bypassed = True
        doc.bypass_by = admin_id
        doc.bypass_at = now
        doc.bypass_reason = reason
        doc.updated_at = now

        next_entry = _approver_entry(next_step, StepStatus.PENDING.value) if next_step else None
        log = BypassLog(
            proposed_change_id=document_id,
            admin_id=admin_id,
            admin_name=admin_name,
            strategy=strategy.value,
            target_status=target_status,
            original_status=original_status,
            original_progress=original_progress,
            new_status=new_status.value,
            new_progress=new_progress,
            reason=reason,
            affected_approvers=affected,
            next_approver=next_entry,
            ip_address=ip,
            user_agent=(ua or "")[:500] or None,
            created_at=now,
        )
        session.add(log)
        session.add(HistoryEntry(
            proposed_change_id=document_id,
            actor_id=admin_id,
            actor_name=admin_name,
            status=new_status.value,
            action_type=ACTION_ADMIN_BYPASS,
            note=reason,
            description=(
                f"{admin_name} bypassed the approval ({strategy.value}): "
                f"{len(affected)} step(s) force-approved"
            ),
            created_at=now,
        ))
        session.flush()

        return {
            "bypass_log_id": log.id,
            "strategy": strategy.value,
            "target_status": target_status,
            "admin_id": admin_id,
            "admin_name": admin_name,
            "reason": reason,
            "original_status": original_status,
            "original_progress": original_progress,
            "new_status": new_status.value,
            "new_progress": new_progress,
            "affected_approvers": affected,
            "next_approver": next_entry,
        }
