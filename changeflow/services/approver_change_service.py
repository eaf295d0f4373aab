"""
Approver change requests.

A participant asks to replace the approver of an undecided step; an admin
approves or rejects the request. Approval swaps the step's approver in a
guarded transaction (the step keeps its position and status, ``version``
is bumped and ``original_approver_id`` remembers the first assignee).
Every request and decision is written to the document history.
"""

import logging

from sqlalchemy import select

from changeflow.core.exceptions import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from changeflow.models.approver_change import ApproverChangeRequest, ChangeRequestStatus
from changeflow.models.proposed_change import (
    ACTION_APPROVER_CHANGED,
    ACTION_CHANGE_REJECTED,
    ACTION_CHANGE_REQUESTED,
    ApprovalStep,
    DocumentStatus,
    HistoryEntry,
    StepStatus,
)
from changeflow.services.concurrency import TransactionGuard
from changeflow.services.notification_dispatcher import NotificationDispatcher
from changeflow.services.proposed_change_service import load_document
from changeflow.utils.helpers import parse_bool, parse_int, require

logger = logging.getLogger(__name__)

_CHANGEABLE = {StepStatus.PENDING.value, StepStatus.ON_GOING.value}
_DECISIONS = {ChangeRequestStatus.APPROVED.value, ChangeRequestStatus.REJECTED.value}


class ApproverChangeService:
    def __init__(self, ctx, dispatcher=None):
        self.ctx = ctx
        self.session = ctx.session
        self.dispatcher = dispatcher or NotificationDispatcher(ctx)

    def _require_admin(self, roles):
        if not any(r in self.ctx.settings.admin_roles for r in roles):
            raise PermissionDeniedError("Unauthorized: Admin access required")

    def _get(self, request_id):
        change = self.session.get(ApproverChangeRequest, request_id)
        if change is None:
            raise NotFoundError("ApproverChangeRequest", request_id)
        return change

    # ── Request ──────────────────────────────────────────────────────────

    def request_change(self, data, requester_id):
        require(data, "proposed_change_id", "step_id", "current_approver_id", "new_approver_id", "reason")
        document_id = parse_int(data["proposed_change_id"], "proposed_change_id")
        step_id = parse_int(data["step_id"], "step_id")
        current_id = parse_int(data["current_approver_id"], "current_approver_id")
        new_id = parse_int(data["new_approver_id"], "new_approver_id")
        urgent = bool(parse_bool(data.get("urgent"), "urgent"))
        reason = data["reason"].strip()

        if current_id == new_id:
            raise ValidationError("The new approver must differ from the current approver",
                                  details={"new_approver_id": new_id})
        new_approver = self.ctx.directory.get_active_authorization(new_id)
        if new_approver is None:
            raise ValidationError("The new approver is not valid or not active", details={"new_approver_id": new_id})

        def _body(session):
            doc = load_document(session, document_id, lock=True)
            if doc.status == DocumentStatus.DONE.value:
                raise ConflictError("The document is completed; approvers can no longer change")
            step = session.get(ApprovalStep, step_id)
            if step is None:
                raise NotFoundError("ApprovalStep", step_id)
            if step.proposed_change_id != document_id:
                raise ValidationError("The approval step does not belong to this document",
                                      details={"step_id": step_id})
            if step.status not in _CHANGEABLE:
                raise ConflictError(f"The approval step is already {step.status} and cannot be changed")
            if step.approver_id != current_id:
                raise ValidationError("current_approver_id does not match the step's approver",
                                      details={"current_approver_id": current_id})
            pending = session.execute(
                select(ApproverChangeRequest.id).where(
                    ApproverChangeRequest.step_id == step_id,
                    ApproverChangeRequest.status == ChangeRequestStatus.PENDING.value,
                ).limit(1)
            ).scalar_one_or_none()
            if pending is not None:
                raise ConflictError("A pending change request already exists for this step",
                                    details={"request_id": pending})

            now = self.ctx.clock()
            change = ApproverChangeRequest(
                proposed_change_id=document_id,
                step_id=step_id,
                current_approver_id=current_id,
                new_approver_id=new_id,
                requested_by=requester_id,
                reason=reason,
                urgent=urgent,
                status=ChangeRequestStatus.PENDING.value,
                created_at=now,
            )
            session.add(change)
            requester = self.ctx.directory.get_authorization(requester_id)
            requester_name = requester.employee_name if requester else f"User {requester_id}"
            session.add(HistoryEntry(
                proposed_change_id=document_id,
                actor_id=requester_id,
                actor_name=requester_name,
                status=ACTION_CHANGE_REQUESTED,
                action_type=ACTION_CHANGE_REQUESTED,
                note=reason,
                description=(
                    f"{requester_name} requested to change the approver of step {step.step} "
                    f"to {new_approver.employee_name}"
                ),
                created_at=now,
            ))
            session.flush()
            return change.id

        request_id = TransactionGuard.for_context(self.ctx).run(
            _body, label="approver_change_request", document_id=document_id,
        )
        logger.info("Approver change request %s created", request_id,
                    extra={"document_id": document_id, "event_type": "approver_change.requested"})
        change = self._get(request_id)
        admins = self.ctx.directory.users_with_roles(self.ctx.settings.admin_roles)
        result = change.to_dict()
        result["notifications"] = self.dispatcher.notify_change_request(change, admins).to_dict()
        return result

    # ── Decision ─────────────────────────────────────────────────────────

    def process(self, request_id, status, admin_decision, admin_id, roles):
        self._require_admin(roles)
        if status not in _DECISIONS:
            raise ValidationError("status must be 'approved' or 'rejected'", details={"status": status})
        admin_decision = (admin_decision or "").strip()
        if not admin_decision:
            raise ValidationError("admin_decision is required", details={"admin_decision": "required"})
        admin = self.ctx.directory.get_authorization(admin_id)
        if admin is None:
            raise NotFoundError("Authorization", admin_id)
        admin_name = admin.employee_name
        document_id = self._get(request_id).proposed_change_id

        def _body(session):
            load_document(session, document_id, lock=True)
            change = session.get(ApproverChangeRequest, request_id)
            if change.status != ChangeRequestStatus.PENDING.value:
                raise ConflictError(f"The request was already processed with status: {change.status}")
            step = session.get(ApprovalStep, change.step_id)
            if step is None or step.status not in _CHANGEABLE:
                raise ConflictError(
                    f"The approval step is already {step.status if step else 'gone'} and cannot be changed",
                )

            now = self.ctx.clock()
            change.status = status
            change.admin_id = admin_id
            change.admin_decision = admin_decision
            change.processed_at = now

            if status == ChangeRequestStatus.APPROVED.value:
                clash = session.execute(
                    select(ApprovalStep.id).where(
                        ApprovalStep.proposed_change_id == step.proposed_change_id,
                        ApprovalStep.approver_id == change.new_approver_id,
                    )
                ).scalar_one_or_none()
                if clash is not None:
                    raise ConflictError("The new approver already holds a step in this chain",
                                        details={"step_id": clash})
                new_approver = self.ctx.directory.get_active_authorization(change.new_approver_id)
                if new_approver is None:
                    raise ConflictError("The new approver is no longer active")
                if step.original_approver_id is None:
                    step.original_approver_id = step.approver_id
                step.approver_id = new_approver.id
                step.employee_code = new_approver.employee_code
                step.version = step.version + 1
                step.is_changed = True
                step.updated_at = now
                description = (
                    f"{admin_name} changed the approver of step {step.step} "
                    f"to {new_approver.employee_name}"
                )
                action = ACTION_APPROVER_CHANGED
            else:
                description = f"{admin_name} rejected the approver change request for step {step.step}"
                action = ACTION_CHANGE_REJECTED

            session.add(HistoryEntry(
                proposed_change_id=change.proposed_change_id,
                actor_id=admin_id,
                actor_name=admin_name,
                status=action,
                action_type=action,
                note=admin_decision,
                description=description,
                created_at=now,
            ))

        TransactionGuard.for_context(self.ctx).run(_body, label="approver_change_process", document_id=document_id)
        logger.info("Approver change request %s %s", request_id, status,
                    extra={"document_id": document_id, "event_type": "approver_change.processed"})

        change = self._get(request_id)
        result = change.to_dict()
        result["notifications"] = self.dispatcher.notify_change_result(change, admin_name).to_dict()
        return result

    # ── Reads ────────────────────────────────────────────────────────────

    def list_requests(self, roles, status=ChangeRequestStatus.PENDING.value, document_id=None):
        """Admin view; ``status=None`` lists every status."""
        self._require_admin(roles)
        stmt = select(ApproverChangeRequest).order_by(
            ApproverChangeRequest.urgent.desc(), ApproverChangeRequest.created_at.asc(), ApproverChangeRequest.id.asc(),
        )
        if status:
            if status not in {s.value for s in ChangeRequestStatus}:
                raise ValidationError("status must be pending, approved or rejected", details={"status": status})
            stmt = stmt.where(ApproverChangeRequest.status == status)
        if document_id is not None:
            stmt = stmt.where(ApproverChangeRequest.proposed_change_id == document_id)
        return [c.to_dict() for c in self.session.execute(stmt).scalars().all()]

    def summary_for_document(self, document_id, roles):
        """Requests of one document grouped by status, as the admin screen shows them."""
        rows = self.list_requests(roles, status=None, document_id=document_id)
        grouped = {s.value: [] for s in ChangeRequestStatus}
        for row in rows:
            grouped[row["status"]].append(row)
        return {
            "proposed_change_id": document_id,
            "requests": grouped,
            "counts": {k: len(v) for k, v in grouped.items()},
        }
