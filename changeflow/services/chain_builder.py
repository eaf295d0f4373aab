"""
Chain Builder — persists a resolved approver list as ApprovalStep rows.

Step ``n`` is the n-th approver (1-based). Step 1 starts ``on_going``,
every other step starts ``pending``. The builder only adds rows to the
session; the caller owns the transaction so the document, its initial
history entry and its chain commit together.
"""

from changeflow.models.proposed_change import ApprovalStep, StepStatus


def build_chain(session, document, approvers, now=None) -> list[ApprovalStep]:
    """Add one ApprovalStep per approver to *session* and return them in order."""
    steps = []
    for index, approver in enumerate(approvers, start=1):
        step = ApprovalStep(
            proposed_change_id=document.id,
            step=index,
            actor=approver.actor,
            approver_id=approver.approver_id,
            employee_code=approver.employee_code,
            status=(StepStatus.ON_GOING if index == 1 else StepStatus.PENDING).value,
            version=1,
            is_changed=False,
        )
        if now is not None:
            step.created_at = now
            step.updated_at = now
        session.add(step)
        steps.append(step)
    return steps
