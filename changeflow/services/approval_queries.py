"""
Read side: paginated listing of documents with their approval chains.

``OngoingApprovalFilter`` is a frozen value object validated at
construction; ``from_args`` builds one from a query-string mapping.
"""

from dataclasses import dataclass

from sqlalchemy import func, or_, select

from changeflow.core.exceptions import ValidationError
from changeflow.models.proposed_change import ApprovalStep, DocumentStatus, ProposedChange, StepStatus
from changeflow.utils.helpers import parse_bool, parse_int

SORTABLE_FIELDS = {
    "id": ProposedChange.id,
    "created_at": ProposedChange.created_at,
    "updated_at": ProposedChange.updated_at,
    "project_name": ProposedChange.project_name,
    "status": ProposedChange.status,
    "progress": ProposedChange.progress,
    "line_code": ProposedChange.line_code,
}

MAX_LIMIT = 100

# Steps that still need something from their approver
_AWAITING = (StepStatus.ON_GOING.value, StepStatus.NOT_APPROVED.value)


@dataclass(frozen=True)
class OngoingApprovalFilter:
    page: int = 1
    limit: int = 10
    sort: str = "created_at"
    direction: str = "desc"
    search: str | None = None
    id: int | None = None
    status: str | None = None
    change_type: str | None = None
    line_code: str | None = None
    plant_id: int | None = None
    department_id: int | None = None
    section_department_id: int | None = None
    need_engineering_approval: bool | None = None
    need_production_approval: bool | None = None
    created_by: str | None = None
    approver_id: int | None = None
    approval_status: str | None = None
    employee_code: str | None = None

    def __post_init__(self):
        errors = {}
        if self.page < 1:
            errors["page"] = "must be >= 1"
        if not 1 <= self.limit <= MAX_LIMIT:
            errors["limit"] = f"must be between 1 and {MAX_LIMIT}"
        if self.sort not in SORTABLE_FIELDS:
            errors["sort"] = f"must be one of {sorted(SORTABLE_FIELDS)}"
        if self.direction not in ("asc", "desc"):
            errors["direction"] = "must be asc or desc"
        if self.status is not None and self.status not in {s.value for s in DocumentStatus}:
            errors["status"] = "unknown document status"
        if self.approval_status is not None and self.approval_status not in {s.value for s in StepStatus}:
            errors["approval_status"] = "unknown step status"
        if errors:
            raise ValidationError("Invalid filter", details=errors)

    @classmethod
    def from_args(cls, args) -> "OngoingApprovalFilter":
        def text(key):
            value = args.get(key)
            return value.strip() if value and value.strip() else None

        return cls(
            page=parse_int(args.get("page"), "page") or 1,
            limit=parse_int(args.get("limit"), "limit") or 10,
            sort=text("sort") or "created_at",
            direction=(text("direction") or "desc").lower(),
            search=text("search"),
            id=parse_int(args.get("id"), "id"),
            status=text("status"),
            change_type=text("change_type"),
            line_code=text("line_code"),
            plant_id=parse_int(args.get("plant_id"), "plant_id"),
            department_id=parse_int(args.get("department_id"), "department_id"),
            section_department_id=parse_int(args.get("section_department_id"), "section_department_id"),
            need_engineering_approval=parse_bool(args.get("need_engineering_approval"), "need_engineering_approval"),
            need_production_approval=parse_bool(args.get("need_production_approval"), "need_production_approval"),
            created_by=text("created_by"),
            approver_id=parse_int(args.get("approver_id"), "approver_id"),
            approval_status=text("approval_status"),
            employee_code=text("employee_code"),
        )

    def conditions(self):
        conds = [ProposedChange.not_deleted()]
        for field in ("id", "status", "change_type", "line_code", "plant_id", "department_id",
                      "section_department_id", "need_engineering_approval", "need_production_approval"):
            value = getattr(self, field)
            if value is not None:
                conds.append(getattr(ProposedChange, field) == value)
        if self.created_by:
            conds.append(ProposedChange.created_by.ilike(f"%{self.created_by}%"))
        if self.search:
            pattern = f"%{self.search}%"
            conds.append(or_(
                ProposedChange.project_name.ilike(pattern),
                ProposedChange.line_code.ilike(pattern),
                ProposedChange.change_type.ilike(pattern),
                ProposedChange.created_by.ilike(pattern),
            ))

        step_conds = []
        if self.approver_id is not None:
            step_conds.append(ApprovalStep.approver_id == self.approver_id)
            if self.approval_status is None:
                step_conds.append(ApprovalStep.status.in_(_AWAITING))
        if self.employee_code:
            step_conds.append(ApprovalStep.employee_code == self.employee_code)
        if self.approval_status is not None:
            step_conds.append(ApprovalStep.status == self.approval_status)
        if step_conds:
            conds.append(
                select(ApprovalStep.id)
                .where(ApprovalStep.proposed_change_id == ProposedChange.id, *step_conds)
                .exists()
            )
        return conds


def list_ongoing_approvals(session, filt: OngoingApprovalFilter):
    """Documents matching *filt* with their ordered chains, plus pagination metadata."""
    conds = filt.conditions()
    total = session.execute(select(func.count(ProposedChange.id)).where(*conds)).scalar_one()

    column = SORTABLE_FIELDS[filt.sort]
    order = column.asc() if filt.direction == "asc" else column.desc()
    docs = session.execute(
        select(ProposedChange)
        .where(*conds)
        .order_by(order, ProposedChange.id.desc())
        .offset((filt.page - 1) * filt.limit)
        .limit(filt.limit)
    ).scalars().all()

    total_pages = (total + filt.limit - 1) // filt.limit
    return {
        "data": [dict(doc.to_dict(), approvals=[s.to_dict() for s in doc.steps]) for doc in docs],
        "pagination": {
            "totalCount": total,
            "totalPages": total_pages,
            "currentPage": filt.page,
            "limit": filt.limit,
            "hasNextPage": filt.page < total_pages,
            "hasPreviousPage": filt.page > 1,
        },
    }
