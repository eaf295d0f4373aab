"""
Template management and the ongoing-approvals listing.
"""

import pytest
from sqlalchemy import func, select

from changeflow.core.exceptions import NotFoundError, ValidationError
from changeflow.models import db
from changeflow.models.template import ApprovalTemplate
from changeflow.services.approval_queries import OngoingApprovalFilter, list_ongoing_approvals
from changeflow.services.approval_state_machine import ApprovalStateMachine
from changeflow.services.proposed_change_service import ProposedChangeService
from changeflow.services.template_service import TemplateFilter, TemplateService


def _template_count():
    return db.session.execute(select(func.count(ApprovalTemplate.id))).scalar_one()


class TestTemplateCrud:
    def test_create_defaults(self, ctx, org):
        created = TemplateService(ctx).create(
            {"template_name": "Quality", "actor_name": "Quality Lead", "step_order": "4", "section_id": org.assembly.id},
            actor_name="Ada Admin",
        )
        assert created["step_order"] == 4
        assert created["section_mode"] == "fixed"
        assert created["model_type"] == "section"
        assert created["priority"] == 0
        assert created["is_active"] is True
        assert created["created_by"] == "Ada Admin"

    def test_fixed_mode_requires_section(self, ctx, org):
        with pytest.raises(ValidationError) as exc:
            TemplateService(ctx).create({"template_name": "Q", "actor_name": "Q", "step_order": 4})
        assert exc.value.details == {"section_id": "required"}

    @pytest.mark.parametrize("override", [
        {"step_order": 0},
        {"model_type": "plant"},
        {"section_mode": "roundrobin"},
        {"actor_name": "  "},
    ])
    def test_invalid_fields(self, ctx, org, override):
        body = {"template_name": "Q", "actor_name": "Q", "step_order": 4, "section_mode": "line"}
        body.update(override)
        with pytest.raises(ValidationError):
            TemplateService(ctx).create(body)

    def test_update_toggle_delete(self, ctx, org):
        service = TemplateService(ctx)
        tid = org.templates[0].id

        updated = service.update(tid, {"priority": 3, "line_code": "L01"}, actor_name="Ada Admin")
        assert updated["priority"] == 3
        assert updated["line_code"] == "L01"
        assert updated["updated_by"] == "Ada Admin"

        assert service.toggle(tid)["is_active"] is False
        assert service.toggle(tid)["is_active"] is True

        service.delete(tid)
        with pytest.raises(NotFoundError):
            service.get(tid)
        # row is kept
        assert db.session.get(ApprovalTemplate, tid).deleted_at is not None

    def test_update_cannot_clear_fixed_section(self, ctx, org):
        with pytest.raises(ValidationError):
            TemplateService(ctx).update(org.templates[1].id, {"section_id": None})

    def test_list_filters_and_pages(self, ctx, org):
        service = TemplateService(ctx)
        page = service.list(TemplateFilter(limit=2))
        assert page["total"] == 3
        assert [t["step_order"] for t in page["data"]] == [1, 2]

        assert service.list(TemplateFilter(search="engineering"))["total"] == 1
        assert service.list(TemplateFilter(step_order=3))["data"][0]["actor_name"] == "Production Manager"

        org.templates[2].is_active = False
        db.session.commit()
        assert service.list(TemplateFilter(is_active=False))["total"] == 1

    def test_filter_rejects_bad_paging(self):
        with pytest.raises(ValidationError):
            TemplateFilter(page=0)
        with pytest.raises(ValidationError):
            TemplateFilter.from_args({"limit": "500"})


class TestBulkCreate:
    def test_creates_all(self, ctx, org):
        rows = TemplateService(ctx).bulk_create([
            {"template_name": "A", "actor_name": "A", "step_order": 4, "section_mode": "line"},
            {"template_name": "B", "actor_name": "B", "step_order": 5, "section_mode": "dynamic"},
        ], actor_name="Ada Admin")
        assert [r["template_name"] for r in rows] == ["A", "B"]
        assert _template_count() == 5

    def test_one_bad_item_rejects_the_batch(self, ctx, org):
        with pytest.raises(ValidationError) as exc:
            TemplateService(ctx).bulk_create([
                {"template_name": "A", "actor_name": "A", "step_order": 4, "section_mode": "line"},
                {"template_name": "B", "actor_name": "B"},
            ])
        assert exc.value.message.startswith("Template #2:")
        assert _template_count() == 3

    @pytest.mark.parametrize("items", [[], None, {"template_name": "A"}])
    def test_requires_a_list(self, ctx, org, items):
        with pytest.raises(ValidationError):
            TemplateService(ctx).bulk_create(items)


class TestPreview:
    def test_preview_resolves_without_persisting(self, ctx, org):
        result = TemplateService(ctx).preview({
            "line_code": "L01", "need_engineering_approval": True, "need_production_approval": "false",
        })
        assert [t["actor_name"] for t in result["templates"]] == ["Section Head", "Engineering Manager"]
        assert [(a["step"], a["employee_code"]) for a in result["approvers"]] == [(1, "E101"), (2, "E102")]

    def test_preview_requires_line(self, ctx, org):
        with pytest.raises(ValidationError):
            TemplateService(ctx).preview({})


class TestOngoingApprovals:
    @pytest.fixture()
    def documents(self, ctx, org, payload):
        service = ProposedChangeService(ctx)
        ids = [
            service.create(payload(project_name=f"Change {n}"), submitter_id=org.submitter.id)["document"]["id"]
            for n in range(3)
        ]
        ApprovalStateMachine(ctx).transition(ids[0], org.ayla.id, "approved")
        return ids

    def test_paginates(self, documents):
        result = list_ongoing_approvals(db.session, OngoingApprovalFilter(limit=2, sort="id", direction="asc"))
        assert [d["id"] for d in result["data"]] == documents[:2]
        assert result["pagination"] == {
            "totalCount": 3, "totalPages": 2, "currentPage": 1, "limit": 2,
            "hasNextPage": True, "hasPreviousPage": False,
        }
        assert len(result["data"][0]["approvals"]) == 3

    def test_approver_inbox(self, org, documents):
        burak = list_ongoing_approvals(db.session, OngoingApprovalFilter(approver_id=org.burak.id))
        assert [d["id"] for d in burak["data"]] == [documents[0]]

        ayla = list_ongoing_approvals(db.session, OngoingApprovalFilter(approver_id=org.ayla.id))
        assert sorted(d["id"] for d in ayla["data"]) == documents[1:]

    def test_explicit_step_status(self, org, documents):
        done = list_ongoing_approvals(
            db.session, OngoingApprovalFilter(approver_id=org.ayla.id, approval_status="approved"),
        )
        assert [d["id"] for d in done["data"]] == [documents[0]]

    def test_document_filters(self, documents):
        assert list_ongoing_approvals(db.session, OngoingApprovalFilter(status="onprogress"))["pagination"]["totalCount"] == 1
        assert list_ongoing_approvals(db.session, OngoingApprovalFilter(search="Change 2"))["pagination"]["totalCount"] == 1

    def test_deleted_documents_hidden(self, ctx, org, documents):
        ProposedChangeService(ctx).soft_delete(documents[2], org.submitter.id, ["user"])
        assert list_ongoing_approvals(db.session, OngoingApprovalFilter())["pagination"]["totalCount"] == 2

    @pytest.mark.parametrize("args", [{"sort": "password"}, {"direction": "up"}, {"page": "-1"}, {"status": "lost"}])
    def test_invalid_filter(self, args):
        with pytest.raises(ValidationError):
            OngoingApprovalFilter.from_args(args)
