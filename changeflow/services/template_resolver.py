"""
Template Resolver — turns document criteria into an ordered approver list.

Algorithm:
  1. Select active, non-deleted templates whose line code and category
     flags each match exactly or are wildcards (NULL).
  2. Keep one template per ``step_order``: highest ``priority`` wins,
     lowest template id breaks ties.
  3. In step order, resolve each template's acting section:
        dynamic → the section supplied with the document
        line    → the line's manufacturing section (skip with a warning if unbound)
        fixed   → ``template.section_id``
  4. Fetch the section's current head-of holders (section or department
     table, per ``model_type``) and concatenate them in template order.
  5. Deduplicate by employee code, keeping the first (earliest) occurrence.

An empty result is returned as-is; callers decide what a chain with no
approvers means.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import or_, select

from changeflow.models.template import ApprovalTemplate, SectionMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainCriteria:
    line_code: str
    need_engineering_approval: bool = False
    need_production_approval: bool = False
    section_department_id: int | None = None


@dataclass(frozen=True)
class ResolvedApprover:
    approver_id: int
    employee_code: str
    employee_name: str
    email: str | None
    actor: str
    section_id: int
    template_id: int
    step_order: int

    def to_dict(self):
        return {
            "approver_id": self.approver_id,
            "employee_code": self.employee_code,
            "employee_name": self.employee_name,
            "email": self.email,
            "actor": self.actor,
            "section_id": self.section_id,
            "template_id": self.template_id,
            "step_order": self.step_order,
        }


def _flag_matches(column, value):
    return or_(column.is_(None), column == bool(value))


class TemplateResolver:
    def __init__(self, session, directory):
        self.session = session
        self.directory = directory

    def matching_templates(self, criteria: ChainCriteria) -> list[ApprovalTemplate]:
        """Winning template per step order, sorted by step order."""
        stmt = (
            select(ApprovalTemplate)
            .where(
                ApprovalTemplate.is_active.is_(True),
                ApprovalTemplate.not_deleted(),
                or_(ApprovalTemplate.line_code.is_(None), ApprovalTemplate.line_code == criteria.line_code),
                _flag_matches(ApprovalTemplate.need_engineering_approval, criteria.need_engineering_approval),
                _flag_matches(ApprovalTemplate.need_production_approval, criteria.need_production_approval),
            )
            .order_by(
                ApprovalTemplate.step_order.asc(),
                ApprovalTemplate.priority.desc(),
                ApprovalTemplate.id.asc(),
            )
        )
        winners = {}
        for template in self.session.execute(stmt).scalars():
            winners.setdefault(template.step_order, template)
        return [winners[order] for order in sorted(winners)]

    def resolve_section(self, template: ApprovalTemplate, criteria: ChainCriteria):
        mode = SectionMode(template.section_mode)
        if mode is SectionMode.DYNAMIC:
            return criteria.section_department_id
        if mode is SectionMode.LINE:
            section_id = self.directory.line_section(criteria.line_code)
            if section_id is None:
                logger.warning(
                    "Line %s has no manufacturing section; skipping template %s",
                    criteria.line_code, template.id,
                    extra={"event_type": "resolver.line_unbound", "step": template.step_order},
                )
            return section_id
        return template.section_id

    def actor_label(self, template: ApprovalTemplate, criteria: ChainCriteria) -> str:
        if template.section_mode == SectionMode.LINE.value:
            return f"{template.actor_name} ({criteria.line_code})"
        return template.actor_name

    def resolve(self, criteria: ChainCriteria) -> list[ResolvedApprover]:
        templates = self.matching_templates(criteria)
        if not templates:
            logger.warning(
                "No approval templates match line=%s engineering=%s production=%s",
                criteria.line_code, criteria.need_engineering_approval, criteria.need_production_approval,
                extra={"event_type": "resolver.no_templates"},
            )
            return []

        approvers = []
        seen_codes = set()
        for template in templates:
            section_id = self.resolve_section(template, criteria)
            if not section_id:
                logger.warning(
                    "Could not resolve a section for template %s (%s)", template.id, template.template_name,
                    extra={"event_type": "resolver.unresolved_section", "step": template.step_order},
                )
                continue

            actor = self.actor_label(template, criteria)
            heads = self.directory.heads_for_section(template.model_type, section_id)
            if not heads:
                logger.warning(
                    "No %s heads hold section %s for %s", template.model_type, section_id, actor,
                    extra={"event_type": "resolver.no_heads", "step": template.step_order},
                )

            for head in heads:
                if not head.employee_code or head.employee_code in seen_codes:
                    continue
                seen_codes.add(head.employee_code)
                approvers.append(ResolvedApprover(
                    approver_id=head.id,
                    employee_code=head.employee_code,
                    employee_name=head.employee_name,
                    email=head.email,
                    actor=actor,
                    section_id=section_id,
                    template_id=template.id,
                    step_order=template.step_order,
                ))

        logger.info(
            "Resolved %d approver(s) from %d template(s) for line %s",
            len(approvers), len(templates), criteria.line_code,
            extra={"event_type": "resolver.resolved"},
        )
        return approvers
