"""
Activity log sink: records backup events in the activity_events table.
"""

import logging
from typing import Any, Dict

from sqlalchemy import exc as sa_exc

from recordvault import db
from recordvault.models import ActivityEvent

logger = logging.getLogger(__name__)


class DatabaseActivityLog:
    """
    Fire-and-forget activity sink. A failed insert is logged and dropped.
    """

    def __init__(self, category: str = 'backup'):
        self.category = category

    def record(self, event_type: str, metadata: Dict[str, Any]):
        metadata = dict(metadata or {})
        try:
            db.session.add(ActivityEvent(
                event_type=event_type,
                category=self.category,
                actor_id=metadata.pop('actor_id', None),
                details=metadata
            ))
            db.session.commit()
        except (sa_exc.SQLAlchemyError, TypeError, ValueError) as e:
            db.session.rollback()
            logger.warning(f"Failed to record activity event {event_type}: {e}")

    def recent(self, limit: int = 50):
        """Most recent events, newest first."""
        return (
            ActivityEvent.query
            .order_by(ActivityEvent.created_at.desc(), ActivityEvent.id.desc())
            .limit(limit)
            .all()
        )
