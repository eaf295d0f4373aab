"""
Organization directory models.

Master data the approval engine reads but never writes during a workflow:
    - Authorization: one directory entry per person who can submit or approve
    - Section: organizational section, owned by a department
    - Line: production line, optionally bound to a manufacturing section
    - SectionHead / DepartmentHead: current head-of holders of a section
"""

from datetime import datetime, timezone

from changeflow.models import db


def _utcnow():
    return datetime.now(timezone.utc)


# ── Roles ────────────────────────────────────────────────────────────────────

ROLE_USER = "user"
ROLE_ADMIN = "Admin"
ROLE_SUPER_ADMIN = "Super Admin"


class Authorization(db.Model):
    """Directory entry for an employee allowed to act on documents."""

    __tablename__ = "authorizations"

    id = db.Column(db.Integer, primary_key=True)
    employee_code = db.Column(db.String(30), nullable=False, unique=True, index=True)
    employee_name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(200), nullable=True)
    gender = db.Column(db.String(10), nullable=True)
    role_name = db.Column(db.String(50), nullable=False, default=ROLE_USER)
    department_id = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "employee_code": self.employee_code,
            "employee_name": self.employee_name,
            "email": self.email,
            "role_name": self.role_name,
            "department_id": self.department_id,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Authorization {self.employee_code}>"


class Section(db.Model):
    __tablename__ = "sections"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), nullable=True)
    name = db.Column(db.String(150), nullable=False)
    department_id = db.Column(db.Integer, nullable=True, index=True)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {"id": self.id, "code": self.code, "name": self.name, "department_id": self.department_id}


class Line(db.Model):
    """Production line; ``manufacturing_section_id`` drives line-derived template resolution."""

    __tablename__ = "lines"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), nullable=False, unique=True, index=True)
    name = db.Column(db.String(150), nullable=True)
    manufacturing_section_id = db.Column(
        db.Integer, db.ForeignKey("sections.id", ondelete="SET NULL"), nullable=True,
    )
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "manufacturing_section_id": self.manufacturing_section_id,
        }


class SectionHead(db.Model):
    """Head-of-section assignment. Several heads may hold one section."""

    __tablename__ = "section_heads"

    id = db.Column(db.Integer, primary_key=True)
    section_id = db.Column(db.Integer, db.ForeignKey("sections.id", ondelete="CASCADE"), nullable=False, index=True)
    authorization_id = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=True)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    authorization = db.relationship("Authorization", lazy="joined")


class DepartmentHead(db.Model):
    """Head-of-department assignment, keyed by the section it covers."""

    __tablename__ = "department_heads"

    id = db.Column(db.Integer, primary_key=True)
    section_id = db.Column(db.Integer, db.ForeignKey("sections.id", ondelete="CASCADE"), nullable=False, index=True)
    authorization_id = db.Column(db.Integer, db.ForeignKey("authorizations.id"), nullable=True)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    authorization = db.relationship("Authorization", lazy="joined")
