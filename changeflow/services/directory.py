"""
Organization directory reader.

Read-only access to authorizations, lines and head-of assignments. The
engine never writes master data; it only asks who currently holds a
section and how to reach them.
"""

import logging

from sqlalchemy import select

from changeflow.models.organization import Authorization, DepartmentHead, Line, SectionHead
from changeflow.models.template import HeadModel

logger = logging.getLogger(__name__)

_HEAD_MODELS = {
    HeadModel.SECTION: SectionHead,
    HeadModel.DEPARTMENT: DepartmentHead,
}


class OrganizationDirectory:
    def __init__(self, session):
        self.session = session

    def get_authorization(self, authorization_id):
        """Return a live directory entry, or None if absent or deleted."""
        if authorization_id is None:
            return None
        auth = self.session.get(Authorization, authorization_id)
        if auth is None or auth.is_deleted:
            return None
        return auth

    def get_active_authorization(self, authorization_id):
        auth = self.get_authorization(authorization_id)
        if auth is None or not auth.is_active:
            return None
        return auth

    def line_section(self, line_code):
        """Manufacturing section bound to *line_code*, or None."""
        return self.session.execute(
            select(Line.manufacturing_section_id).where(
                Line.code == line_code, Line.is_deleted.is_(False),
            )
        ).scalar_one_or_none()

    def heads_for_section(self, model_type, section_id):
        """
        Current head-of holders for a section, in assignment order.

        ``model_type`` selects the section-head or department-head table.
        Assignments without a live directory entry are skipped.
        """
        model = _HEAD_MODELS[HeadModel(model_type)]
        rows = self.session.execute(
            select(model)
            .where(model.section_id == section_id, model.is_deleted.is_(False))
            .order_by(model.id)
        ).scalars().all()

        heads = []
        for row in rows:
            auth = row.authorization
            if auth is None or auth.is_deleted:
                logger.warning(
                    "Skipping %s head assignment %s without a directory entry",
                    model_type, row.id, extra={"event_type": "directory.orphan_head"},
                )
                continue
            heads.append(auth)
        return heads

    def users_with_roles(self, roles):
        """Active directory entries holding any of *roles*, ordered by id."""
        return self.session.execute(
            select(Authorization)
            .where(
                Authorization.role_name.in_(list(roles)),
                Authorization.is_active.is_(True),
                Authorization.is_deleted.is_(False),
            )
            .order_by(Authorization.id)
        ).scalars().all()
