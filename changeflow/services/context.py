"""
Approval context — the explicitly constructed data-access handle.

Every engine service takes an ``ApprovalContext`` in its constructor
instead of importing ``db.session`` or ``current_app``. Views build one
per request with ``build_context()``; tests build them directly with a
fake mail transport and a fixed clock.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from changeflow.services.directory import OrganizationDirectory
from changeflow.services.email_service import MailTransport, SmtpMailer


def _utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EngineSettings:
    """Engine tunables, read once from app config."""

    isolation_level: str | None = "SERIALIZABLE"
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    transaction_timeout: float = 15.0
    dedupe_window: int = 60
    bypass_roles: tuple = ("Super Admin",)
    admin_roles: tuple = ("Admin", "Super Admin")
    app_base_url: str = "http://localhost:3000"

    @classmethod
    def from_config(cls, cfg) -> "EngineSettings":
        return cls(
            isolation_level=cfg.get("APPROVAL_ISOLATION_LEVEL") or None,
            retry_attempts=int(cfg.get("APPROVAL_RETRY_ATTEMPTS", 3)),
            retry_base_delay=float(cfg.get("APPROVAL_RETRY_BASE_DELAY", 0.5)),
            transaction_timeout=float(cfg.get("APPROVAL_TRANSACTION_TIMEOUT", 15)),
            dedupe_window=int(cfg.get("APPROVAL_DEDUPE_WINDOW", 60)),
            bypass_roles=tuple(cfg.get("APPROVAL_BYPASS_ROLES", ("Super Admin",))),
            admin_roles=tuple(cfg.get("APPROVAL_ADMIN_ROLES", ("Admin", "Super Admin"))),
            app_base_url=cfg.get("APP_BASE_URL", "http://localhost:3000"),
        )


@dataclass(frozen=True)
class ApprovalContext:
    session: Any
    directory: OrganizationDirectory
    mailer: MailTransport
    settings: EngineSettings = field(default_factory=EngineSettings)
    clock: Callable[[], datetime] = _utcnow
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def create(cls, session, mailer, settings=None, clock=None, sleep=None) -> "ApprovalContext":
        return cls(
            session=session,
            directory=OrganizationDirectory(session),
            mailer=mailer,
            settings=settings or EngineSettings(),
            clock=clock or _utcnow,
            sleep=sleep or time.sleep,
        )

    def document_link(self, document_id) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}/proposed-changes/{document_id}"


def build_context() -> ApprovalContext:
    """Context for the current Flask request (or app context)."""
    from flask import current_app

    from changeflow.models import db

    cfg = current_app.config
    return ApprovalContext.create(
        session=db.session,
        mailer=current_app.extensions.get("changeflow.mailer") or SmtpMailer.from_config(cfg),
        settings=EngineSettings.from_config(cfg),
    )
