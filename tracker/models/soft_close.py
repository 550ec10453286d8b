"""
Soft Close Mixin

Adds a ``closed_at`` timestamp column.  Baselined plan
entities are never physically deleted; they are soft-closed so historical
approval decisions and audit entries keep pointing at a real row.

Usage:
    class MyModel(SoftCloseMixin, db.Model):
        ...

    obj.soft_close()
    db.session.commit()
"""

from datetime import datetime, timezone

from tracker.models import db


class SoftCloseMixin:
    """Mixin that adds soft close support to any SQLAlchemy model."""

    closed_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_close(self):
        """Mark this record as closed."""
        self.closed_at = datetime.now(timezone.utc)

    @property
    def is_closed(self):
        return self.closed_at is not None
