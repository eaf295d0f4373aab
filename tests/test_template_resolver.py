"""
Template Resolver and Chain Builder.

Covers template matching (line code and category wildcards, priority per
step), the three section modes, head lookup by model type, de-duplication
by employee code and the initial statuses of a built chain.
"""

from changeflow.models import db
from changeflow.models.organization import SectionHead
from changeflow.models.proposed_change import ProposedChange
from changeflow.services.chain_builder import build_chain
from changeflow.services.template_resolver import ChainCriteria, TemplateResolver


def _resolver(ctx):
    return TemplateResolver(ctx.session, ctx.directory)


def _codes(approvers):
    return [a.employee_code for a in approvers]


class TestMatching:
    def test_full_chain_in_step_order(self, ctx, org):
        approvers = _resolver(ctx).resolve(ChainCriteria("L01", True, True, 10))
        assert _codes(approvers) == ["E101", "E102", "E103"]
        assert [a.actor for a in approvers] == ["Section Head (L01)", "Engineering Manager", "Production Manager"]
        assert [a.step_order for a in approvers] == [1, 2, 3]

    def test_category_flags_filter_templates(self, ctx, org):
        approvers = _resolver(ctx).resolve(ChainCriteria("L01", False, False))
        assert _codes(approvers) == ["E101"]

    def test_only_engineering(self, ctx, org):
        approvers = _resolver(ctx).resolve(ChainCriteria("L01", True, False))
        assert _codes(approvers) == ["E101", "E102"]

    def test_line_specific_template_must_match_line(self, ctx, org, make_template):
        make_template(4, "Line 02 Quality", section_mode="fixed", section_id=org.assembly.id, line_code="L02")
        db.session.commit()
        approvers = _resolver(ctx).resolve(ChainCriteria("L01", True, True))
        assert _codes(approvers) == ["E101", "E102", "E103"]

    def test_higher_priority_wins_within_step(self, ctx, org, make_template):
        db.session.add(SectionHead(section_id=org.engineering.id, authorization_id=org.deniz.id))
        make_template(2, "Engineering Lead", section_mode="fixed", model_type="section",
                      section_id=org.engineering.id, priority=5)
        db.session.commit()
        resolver = _resolver(ctx)
        winners = resolver.matching_templates(ChainCriteria("L01", True, True))
        assert [t.actor_name for t in winners] == ["Section Head", "Engineering Lead", "Production Manager"]
        assert _codes(resolver.resolve(ChainCriteria("L01", True, True))) == ["E101", "E104", "E103"]

    def test_priority_tie_keeps_lowest_id(self, ctx, org, make_template):
        make_template(2, "Engineering Duplicate", section_mode="fixed", model_type="department",
                      section_id=org.engineering.id)
        db.session.commit()
        winners = _resolver(ctx).matching_templates(ChainCriteria("L01", True, True))
        assert winners[1].id == org.templates[1].id

    def test_inactive_and_deleted_templates_ignored(self, ctx, org):
        org.templates[1].is_active = False
        org.templates[2].soft_delete()
        db.session.commit()
        assert _codes(_resolver(ctx).resolve(ChainCriteria("L01", True, True))) == ["E101"]

    def test_no_templates_gives_empty_list(self, ctx, org):
        for t in org.templates:
            t.is_active = False
        db.session.commit()
        assert _resolver(ctx).resolve(ChainCriteria("L01", True, True)) == []


class TestSectionModes:
    def test_dynamic_mode_uses_document_section(self, ctx, org):
        org.templates[0].section_mode = "dynamic"
        db.session.commit()
        resolver = _resolver(ctx)
        assert _codes(resolver.resolve(ChainCriteria("L01", False, False, org.production.id))) == ["E103"]
        assert resolver.resolve(ChainCriteria("L01", False, False, None)) == []

    def test_line_without_manufacturing_section_is_skipped(self, ctx, org):
        org.line.manufacturing_section_id = None
        db.session.commit()
        assert _codes(_resolver(ctx).resolve(ChainCriteria("L01", True, True))) == ["E102", "E103"]

    def test_unknown_line_is_skipped(self, ctx, org):
        assert _codes(_resolver(ctx).resolve(ChainCriteria("L99", True, True))) == ["E102", "E103"]

    def test_department_model_reads_department_heads(self, ctx, org):
        org.templates[1].model_type = "section"
        db.session.commit()
        # Engineering has a department head only
        assert _codes(_resolver(ctx).resolve(ChainCriteria("L01", True, False))) == ["E101"]


class TestHeads:
    def test_multiple_heads_each_get_a_step(self, ctx, org):
        db.session.add(SectionHead(section_id=org.assembly.id, authorization_id=org.deniz.id))
        db.session.commit()
        approvers = _resolver(ctx).resolve(ChainCriteria("L01", False, False))
        assert _codes(approvers) == ["E101", "E104"]
        assert {a.actor for a in approvers} == {"Section Head (L01)"}

    def test_duplicate_employee_code_keeps_first_occurrence(self, ctx, org):
        db.session.add(SectionHead(section_id=org.production.id, authorization_id=org.ayla.id))
        db.session.commit()
        approvers = _resolver(ctx).resolve(ChainCriteria("L01", True, True))
        assert _codes(approvers) == ["E101", "E102", "E103"]
        assert approvers[0].actor == "Section Head (L01)"

    def test_deleted_directory_entries_are_skipped(self, ctx, org):
        org.burak.is_deleted = True
        db.session.commit()
        assert _codes(_resolver(ctx).resolve(ChainCriteria("L01", True, True))) == ["E101", "E103"]

    def test_deleted_head_assignment_is_ignored(self, ctx, org):
        head = db.session.execute(
            db.select(SectionHead).where(SectionHead.authorization_id == org.cem.id)
        ).scalar_one()
        head.is_deleted = True
        db.session.commit()
        assert _codes(_resolver(ctx).resolve(ChainCriteria("L01", True, True))) == ["E101", "E102"]


class TestChainBuilder:
    def test_first_step_on_going_rest_pending(self, ctx, org):
        doc = ProposedChange(project_name="P", line_code="L01", created_by="Selin", submitter_id=org.submitter.id)
        db.session.add(doc)
        db.session.flush()
        approvers = _resolver(ctx).resolve(ChainCriteria("L01", True, True))
        steps = build_chain(db.session, doc, approvers)
        db.session.commit()

        assert [s.step for s in steps] == [1, 2, 3]
        assert [s.status for s in steps] == ["on_going", "pending", "pending"]
        assert [s.approver_id for s in steps] == [org.ayla.id, org.burak.id, org.cem.id]
        assert all(s.version == 1 and s.is_changed is False for s in steps)
        assert [s.step for s in doc.steps] == [1, 2, 3]

    def test_single_approver_chain(self, ctx, org):
        doc = ProposedChange(project_name="P", line_code="L01", created_by="Selin", submitter_id=org.submitter.id)
        db.session.add(doc)
        db.session.flush()
        resolved = _resolver(ctx).resolve(ChainCriteria("L01", False, False))
        steps = build_chain(db.session, doc, resolved)
        assert len(steps) == 1 and steps[0].status == "on_going"
