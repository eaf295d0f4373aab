"""
changeflow
Email Service.

Renders notification templates and hands them to a mail transport.
When SMTP is not configured, emails are logged but not sent (dev/test mode)
and a synthetic message id is returned so the ledger still records them.

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import html
import logging
import smtplib
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Protocol

from changeflow.core.exceptions import NotificationError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: 'Inter', Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: {header_color}; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">{heading}</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        <table style="width: 100%; border-collapse: collapse; color: #1e293b;">
            <tr><td style="padding: 6px 0; font-weight: 600; width: 35%;">Project</td><td>{project_name}</td></tr>
            <tr><td style="padding: 6px 0; font-weight: 600;">Line</td><td>{line_code}</td></tr>
            <tr><td style="padding: 6px 0; font-weight: 600;">Status</td><td>{status_label}</td></tr>
            <tr><td style="padding: 6px 0; font-weight: 600;">Progress</td><td>{progress}%</td></tr>
        </table>
        <p style="color: #64748b; line-height: 1.6;">{message}</p>
        {note_block}
        <p><a href="{link}" style="color: #2563eb;">Open the document</a></p>
    </div>
    <div style="background: #f1f5f9; padding: 12px 24px; border-radius: 0 0 8px 8px;
                border: 1px solid #e2e8f0; border-top: none; text-align: center;">
        <p style="color: #94a3b8; font-size: 12px; margin: 0;">
            changeflow — Automated approval notification
        </p>
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "submitter": {
        "subject": "[changeflow] Document status: {project_name} - {status_upper}",
        "heading": "Your proposed change was reviewed",
        "message": "{actor_name} ({actor}) set step {step} to <strong>{status_label}</strong>.",
    },
    "approver": {
        "subject": "[changeflow] Document status: {project_name} - {status_upper}",
        "heading": "Your decision was recorded",
        "message": "You set step {step} ({actor}) to <strong>{status_label}</strong>.",
    },
    "next_approver": {
        "subject": "[changeflow] Approval required: {project_name}",
        "heading": "A proposed change is waiting for you",
        "message": "{actor_name} approved step {step}. Step {next_step} ({next_actor}) is now yours to decide.",
    },
    "bypass_approver": {
        "subject": "[URGENT] [changeflow] Approval bypassed - {project_name}",
        "heading": "Your approval step was bypassed",
        "message": "{admin_name} force-approved step {step} ({actor}), previously {original_status}. "
                   "Your decision is no longer required.",
    },
    "bypass_submitter": {
        "subject": "[changeflow] Approval bypassed - {project_name}",
        "heading": "Your proposed change was advanced by an administrator",
        "message": "{admin_name} applied a {strategy} bypass affecting {affected_count} step(s).",
    },
    "bypass_next_approver": {
        "subject": "[changeflow] Approval required: {project_name}",
        "heading": "A proposed change is waiting for you",
        "message": "Earlier steps were bypassed by {admin_name}. Step {step} ({actor}) is now yours to decide.",
    },
    "submission_submitter": {
        "subject": "[changeflow] Proposed change submitted: {project_name}",
        "heading": "Your proposed change was submitted",
        "message": "The approval chain has {step_count} step(s). {first_approver_name} ({first_actor}) reviews first.",
    },
    "submission_approver": {
        "subject": "[changeflow] Approval required: {project_name}",
        "heading": "A new proposed change is waiting for you",
        "message": "{submitter_name} submitted a proposed change. You are step 1 ({actor}).",
    },
    "change_request_admin": {
        "subject": "{urgent_prefix}[changeflow] Approver change request #{request_id} - {project_name}",
        "heading": "Approver change requested",
        "message": "{requester_name} asks to replace {current_approver_name} with {new_approver_name} "
                   "on step {step} ({actor}).",
    },
    "change_result_requester": {
        "subject": "[changeflow] Approver change request #{request_id} {decision_upper} - {project_name}",
        "heading": "Your approver change request was processed",
        "message": "{admin_name} {decision} the request to replace {current_approver_name} "
                   "with {new_approver_name} on step {step}.",
    },
    "change_result_new_approver": {
        "subject": "[changeflow] You were assigned as approver - {project_name}",
        "heading": "You were assigned to an approval step",
        "message": "{admin_name} assigned you to step {step} ({actor}), replacing {current_approver_name}.",
    },
}

_HEADER_COLORS = {
    "approved": "#16a34a",
    "done": "#16a34a",
    "not_approved": "#f59e0b",
    "rejected": "#dc2626",
}

_STATUS_LABELS = {
    "submitted": "Submitted",
    "onprogress": "On progress",
    "on_going": "On going",
    "approved": "Approved",
    "not_approved": "Not approved (revision required)",
    "rejected": "Rejected",
    "done": "Done",
    "pending": "Pending",
}


def render(template_name: str, context: dict[str, Any]) -> tuple[str, str]:
    """
    Render ``(subject, html_body)`` for a recipient role.

    Template variables are interpolated from *context*; missing keys are
    left as ``{key}`` rather than raising.
    """
    template = _TEMPLATES.get(template_name)
    if template is None:
        raise NotificationError(f"Email template not found: {template_name}")

    subject_ctx = _SafeDict(context)
    ctx = _SafeDict(
        {key: html.escape(value) if isinstance(value, str) else value for key, value in context.items()}
    )
    status = str(context.get("status", ""))
    ctx.setdefault("status_upper", html.escape(status.upper()))
    ctx.setdefault("status_label", html.escape(_STATUS_LABELS.get(status, status)))
    ctx.setdefault("header_color", _HEADER_COLORS.get(status, "#1e293b"))
    note = context.get("note")
    ctx.setdefault(
        "note_block",
        f'<blockquote style="border-left: 4px solid #cbd5e1; margin: 0; padding: 8px 12px;">{html.escape(str(note))}</blockquote>'
        if note else "",
    )
    subject_ctx.setdefault("status_upper", status.upper())
    subject_ctx.setdefault("status_label", _STATUS_LABELS.get(status, status))

    # Subjects are plain text headers; only the HTML body is escaped.
    subject = _subject_override(template_name, context) or template["subject"].format_map(subject_ctx)
    ctx["heading"] = template["heading"].format_map(ctx)
    ctx["message"] = template["message"].format_map(ctx)
    return subject, _LAYOUT.format_map(ctx)


def _subject_override(template_name: str, context: dict[str, Any]) -> str | None:
    """Decision mails to the submitter and approver use status-specific subjects."""
    if template_name not in ("submitter", "approver"):
        return None
    project = context.get("project_name", "")
    if context.get("is_last_approver") and context.get("status") == "approved":
        return f"[changeflow] Document fully approved: {project}"
    if context.get("status") == "not_approved":
        return f"[changeflow] Revision required: {project}"
    return None


# ═══════════════════════════════════════════════════════════════════════════
#  Transport
# ═══════════════════════════════════════════════════════════════════════════

class MailTransport(Protocol):
    """Accepts one message; returns the provider message id or raises NotificationError."""

    def send(self, *, to_email: str, to_name: str | None, subject: str, html_body: str) -> str:
        ...


class SmtpMailer:
    """
    SMTP transport.

    In development/test mode (no MAIL_SERVER configured) messages are
    logged and never leave the process.
    """

    def __init__(
        self,
        server: str | None,
        port: int = 587,
        use_tls: bool = True,
        username: str | None = None,
        password: str | None = None,
        sender: str | None = None,
    ) -> None:
        self.server = server
        self.port = port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.sender = sender or f"noreply@{server or 'localhost'}"

    @classmethod
    def from_config(cls, cfg) -> SmtpMailer:
        return cls(
            server=cfg.get("MAIL_SERVER"),
            port=cfg.get("MAIL_PORT", 587),
            use_tls=cfg.get("MAIL_USE_TLS", True),
            username=cfg.get("MAIL_USERNAME"),
            password=cfg.get("MAIL_PASSWORD"),
            sender=cfg.get("MAIL_DEFAULT_SENDER"),
        )

    def is_configured(self) -> bool:
        return bool(self.server)

    def send(self, *, to_email: str, to_name: str | None, subject: str, html_body: str) -> str:
        if not self.is_configured():
            message_id = f"<dev-{uuid.uuid4().hex}@changeflow.local>"
            logger.info("Email (dev mode): to=%s subject='%s'", to_email, subject)
            return message_id

        message_id = make_msgid(domain=self.sender.rsplit("@", 1)[-1])
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(html_body, "html"))

        try:
            with smtplib.SMTP(self.server, self.port, timeout=30) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"SMTP delivery to {to_email} failed: {exc}") from exc

        logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        return message_id


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
