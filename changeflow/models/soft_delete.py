"""
Soft Delete Mixin.

Adds a ``deleted_at`` timestamp column. Documents and approval templates
are never physically removed; deleting one only stamps ``deleted_at`` and
every engine query filters on ``not_deleted()``.

Usage:
    class ProposedChange(SoftDeleteMixin, db.Model):
        ...

    doc.soft_delete()
    select(ProposedChange).where(ProposedChange.not_deleted())
"""

from datetime import datetime, timezone

from changeflow.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to a model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self, when=None):
        """Mark this record as deleted."""
        self.deleted_at = when or datetime.now(timezone.utc)

    def restore(self):
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def not_deleted(cls):
        """SQL clause matching rows that are still live."""
        return cls.deleted_at.is_(None)
