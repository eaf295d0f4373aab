"""
Proposed change service — document creation and reads.

Creation resolves the approval chain from templates and writes the
document, its initial history entry and every approval step in one
guarded transaction. Submission notifications go out after commit.

Usage:
    svc = ProposedChangeService(build_context())
    result = svc.create(payload, submitter_id=g.jwt_user_id)
"""

import logging

from sqlalchemy import select, update

from changeflow.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from changeflow.models.proposed_change import (
    ACTION_SUBMITTED,
    DocumentStatus,
    HistoryEntry,
    ProposedChange,
)
from changeflow.services.chain_builder import build_chain
from changeflow.services.concurrency import TransactionGuard
from changeflow.services.notification_dispatcher import NotificationDispatcher
from changeflow.services.template_resolver import ChainCriteria, TemplateResolver
from changeflow.utils.helpers import parse_bool, parse_date, parse_int, require

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "project_name", "line_code", "department_id", "section_department_id",
    "plant_id", "change_type", "description", "reason",
)


def load_document(session, document_id, *, lock=False):
    """
    Return the live document or raise NotFoundError.

    With ``lock=True`` the document row is written first (``lock_version``
    bump), so concurrent mutating transactions on the same document
    serialize on it before reading anything else.
    """
    if lock:
        bumped = session.execute(
            update(ProposedChange)
            .where(ProposedChange.id == document_id, ProposedChange.not_deleted())
            .values(lock_version=ProposedChange.lock_version + 1)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not bumped:
            raise NotFoundError("ProposedChange", document_id)
    doc = session.execute(
        select(ProposedChange)
        .where(ProposedChange.id == document_id, ProposedChange.not_deleted())
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if doc is None:
        raise NotFoundError("ProposedChange", document_id)
    return doc


def snapshot(session, document_id):
    """Committed document state plus its ordered chain."""
    doc = load_document(session, document_id)
    return {
        "document": doc.to_dict(),
        "approvals": [step.to_dict() for step in doc.steps],
    }


class ProposedChangeService:
    def __init__(self, ctx, dispatcher=None):
        self.ctx = ctx
        self.session = ctx.session
        self.resolver = TemplateResolver(ctx.session, ctx.directory)
        self.dispatcher = dispatcher or NotificationDispatcher(ctx)

    def _criteria(self, data):
        return ChainCriteria(
            line_code=data["line_code"].strip(),
            need_engineering_approval=bool(parse_bool(data.get("need_engineering_approval"), "need_engineering_approval")),
            need_production_approval=bool(parse_bool(data.get("need_production_approval"), "need_production_approval")),
            section_department_id=parse_int(data.get("section_department_id"), "section_department_id"),
        )

    def create(self, data, submitter_id):
        """Create a document with its full approval chain; returns the snapshot."""
        require(data, *REQUIRED_FIELDS)
        submitter = self.ctx.directory.get_active_authorization(submitter_id)
        if submitter is None:
            raise NotFoundError("Authorization", submitter_id)
        submitter_name = submitter.employee_name
        criteria = self._criteria(data)

        fields = dict(
            project_name=data["project_name"].strip(),
            line_code=criteria.line_code,
            section_code=data.get("section_code"),
            department_id=parse_int(data.get("department_id"), "department_id"),
            section_department_id=criteria.section_department_id,
            plant_id=parse_int(data.get("plant_id"), "plant_id"),
            change_type=data.get("change_type"),
            description=data.get("description", ""),
            reason=data.get("reason", ""),
            cost=data.get("cost"),
            planning_start=parse_date(data.get("planning_start"), "planning_start"),
            planning_end=parse_date(data.get("planning_end"), "planning_end"),
            need_engineering_approval=criteria.need_engineering_approval,
            need_production_approval=criteria.need_production_approval,
        )
        if fields["planning_start"] and fields["planning_end"] and fields["planning_end"] < fields["planning_start"]:
            raise ValidationError("planning_end must not be before planning_start",
                                  details={"planning_end": str(fields["planning_end"])})

        def _body(session):
            approvers = self.resolver.resolve(criteria)
            if not approvers:
                raise ValidationError(
                    "No approvers could be resolved for this document; check the approval templates",
                    details={"line_code": criteria.line_code},
                )
            now = self.ctx.clock()
            doc = ProposedChange(
                **fields,
                status=DocumentStatus.SUBMITTED.value,
                progress=0,
                created_by=submitter_name,
                submitter_id=submitter_id,
                created_at=now,
                updated_at=now,
            )
            session.add(doc)
            session.flush()
            session.add(HistoryEntry(
                proposed_change_id=doc.id,
                actor_id=submitter_id,
                actor_name=submitter_name,
                employee_code=submitter.employee_code,
                status=DocumentStatus.SUBMITTED.value,
                action_type=ACTION_SUBMITTED,
                note="This proposed change has been submitted.",
                description=f"{submitter_name} uploaded the Proposed Changes",
                created_at=now,
            ))
            build_chain(session, doc, approvers, now=now)
            return doc.id

        document_id = TransactionGuard.for_context(self.ctx).run(_body, label="create_proposed_change")
        logger.info(
            "Proposed change %s created by %s", document_id, submitter_name,
            extra={"document_id": document_id, "event_type": "document.created"},
        )
        report = self.dispatcher.notify_submission(document_id)
        result = snapshot(self.session, document_id)
        result["notifications"] = report.to_dict()
        return result

    def detail(self, document_id):
        result = snapshot(self.session, document_id)
        result["history"] = [h.to_dict() for h in self.history(document_id)]
        return result

    def history(self, document_id):
        load_document(self.session, document_id)
        return self.session.execute(
            select(HistoryEntry)
            .where(HistoryEntry.proposed_change_id == document_id)
            .order_by(HistoryEntry.created_at.desc(), HistoryEntry.id.desc())
        ).scalars().all()

    def soft_delete(self, document_id, actor_id, roles):
        """Only the submitter or an admin may delete; rows are kept."""
        is_admin = any(r in self.ctx.settings.admin_roles for r in roles)

        def _body(session):
            doc = load_document(session, document_id, lock=True)
            if doc.submitter_id != actor_id and not is_admin:
                raise PermissionDeniedError("Only the submitter or an admin may delete this document")
            doc.soft_delete(self.ctx.clock())

        TransactionGuard.for_context(self.ctx).run(_body, label="delete_proposed_change", document_id=document_id)
        logger.info(
            "Proposed change %s soft-deleted by %s", document_id, actor_id,
            extra={"document_id": document_id, "event_type": "document.deleted"},
        )
