"""
Shared pytest fixtures for the changeflow test suite.

Provides:
    - app: Flask application (session-scoped) wired to a recording mailer
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - mailer: the recording mail transport, emptied per test
    - ctx: ApprovalContext over db.session with zero retry delay
    - org: committed directory, lines, head assignments and templates
    - document: a committed three-step proposed change
    - auth_headers: callable building Bearer headers for a directory entry

Engine operations run inside TransactionGuard, which starts every attempt
with a rollback, so fixtures commit what they create.
"""

from types import SimpleNamespace

import pytest

from changeflow import create_app
from changeflow.core.exceptions import NotificationError
from changeflow.models import db as _db
from changeflow.models.organization import (
    ROLE_ADMIN,
    ROLE_SUPER_ADMIN,
    ROLE_USER,
    Authorization,
    DepartmentHead,
    Line,
    Section,
    SectionHead,
)
from changeflow.models.template import ApprovalTemplate
from changeflow.services.context import ApprovalContext, EngineSettings
from changeflow.services.jwt_service import generate_access_token
from changeflow.services.proposed_change_service import ProposedChangeService


class RecordingMailer:
    """Mail transport double: records messages, fails for chosen addresses."""

    def __init__(self):
        self.sent = []
        self.fail_for = set()

    def send(self, *, to_email, to_name, subject, html_body):
        if to_email in self.fail_for:
            raise NotificationError(f"Mailbox {to_email} unavailable")
        self.sent.append({"to": to_email, "name": to_name, "subject": subject, "body": html_body})
        return f"<msg-{len(self.sent)}@test.local>"

    def recipients(self):
        return [m["to"] for m in self.sent]

    def reset(self):
        self.sent.clear()
        self.fail_for.clear()


_MAILER = RecordingMailer()


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing", mailer=_MAILER)


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _db.create_all()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
    _MAILER.reset()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def mailer():
    return _MAILER


@pytest.fixture()
def settings():
    return EngineSettings(retry_base_delay=0.0)


@pytest.fixture()
def ctx(settings):
    return ApprovalContext.create(_db.session, _MAILER, settings=settings)


# ── Directory & templates ────────────────────────────────────────────────


def _make_person(code, name, role=ROLE_USER, email=True, **kw):
    person = Authorization(
        employee_code=code,
        employee_name=name,
        email=f"{code.lower()}@plant.example" if email else None,
        role_name=role,
        **kw,
    )
    _db.session.add(person)
    return person


def _make_template(step_order, actor_name, **kw):
    kw.setdefault("template_name", f"Template {step_order}")
    template = ApprovalTemplate(step_order=step_order, actor_name=actor_name, **kw)
    _db.session.add(template)
    return template


@pytest.fixture()
def org():
    """
    Line L01 bound to the Assembly section, plus three templates:

        step 1  Section Head      line mode, section heads       → Ayla
        step 2  Engineering Mgr   fixed Engineering, dept heads  → Burak
        step 3  Production Mgr    fixed Production, section heads → Cem
    """
    submitter = _make_person("E001", "Selin Submitter")
    ayla = _make_person("E101", "Ayla Head")
    burak = _make_person("E102", "Burak Engineer")
    cem = _make_person("E103", "Cem Production")
    deniz = _make_person("E104", "Deniz Backup")
    super_admin = _make_person("E900", "Sam Super", role=ROLE_SUPER_ADMIN)
    admin = _make_person("E901", "Ada Admin", role=ROLE_ADMIN)

    assembly = Section(code="ASM", name="Assembly", department_id=10)
    engineering = Section(code="ENG", name="Engineering", department_id=20)
    production = Section(code="PRD", name="Production", department_id=30)
    _db.session.add_all([assembly, engineering, production])
    _db.session.flush()

    line = Line(code="L01", name="Line 01", manufacturing_section_id=assembly.id)
    _db.session.add(line)
    _db.session.flush()
    _db.session.add_all([
        SectionHead(section_id=assembly.id, authorization_id=ayla.id),
        DepartmentHead(section_id=engineering.id, authorization_id=burak.id),
        SectionHead(section_id=production.id, authorization_id=cem.id),
    ])

    t1 = _make_template(1, "Section Head", section_mode="line", model_type="section")
    t2 = _make_template(2, "Engineering Manager", section_mode="fixed", model_type="department",
                       section_id=engineering.id, need_engineering_approval=True)
    t3 = _make_template(3, "Production Manager", section_mode="fixed", model_type="section",
                       section_id=production.id, need_production_approval=True)
    _db.session.commit()

    return SimpleNamespace(
        submitter=submitter, ayla=ayla, burak=burak, cem=cem, deniz=deniz,
        super_admin=super_admin, admin=admin,
        assembly=assembly, engineering=engineering, production=production,
        line=line, templates=[t1, t2, t3],
    )


@pytest.fixture()
def make_person():
    """Factory: add (uncommitted) a directory entry."""
    return _make_person


@pytest.fixture()
def make_template():
    """Factory: add (uncommitted) an approval template."""
    return _make_template


def document_payload(**overrides):
    payload = {
        "project_name": "Torque station retrofit",
        "line_code": "L01",
        "department_id": 10,
        "section_department_id": 10,
        "plant_id": 1,
        "change_type": "Equipment",
        "description": "Replace the manual torque wrench with a controlled spindle",
        "reason": "Recurring torque deviations",
        "need_engineering_approval": True,
        "need_production_approval": True,
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def payload():
    """Factory: request body for a new document, with overrides."""
    return document_payload


@pytest.fixture()
def document(ctx, org):
    """A committed three-step document: Ayla (on_going) → Burak → Cem."""
    result = ProposedChangeService(ctx).create(document_payload(), submitter_id=org.submitter.id)
    _MAILER.reset()
    return result


# ── Auth ─────────────────────────────────────────────────────────────────


@pytest.fixture()
def auth_headers():
    def _headers(person, roles=None):
        token = generate_access_token(
            person.id,
            roles or [person.role_name],
            employee_code=person.employee_code,
            name=person.employee_name,
            email=person.email,
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers
