"""
Record Store adapter over the live application collections.

Each collection is an ordered list of JSON records kept in the
collection_records table. replace_all() swaps a collection's contents in a
single transaction, so a collection is never left half-replaced.
"""

import logging
from typing import Any, Dict, List

from sqlalchemy import exc as sa_exc

from recordvault import db
from recordvault.models import CollectionRecord
from .errors import AdapterUnavailable, StorageError

logger = logging.getLogger(__name__)


def _is_connection_failure(error: sa_exc.SQLAlchemyError) -> bool:
    if isinstance(error, (sa_exc.DisconnectionError, sa_exc.InterfaceError)):
        return True
    return isinstance(error, sa_exc.DBAPIError) and bool(error.connection_invalidated)


class SQLAlchemyRecordStore:
    """
    RecordStore backed by Flask-SQLAlchemy.

    Must be used inside an application context.
    """

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def read_all(self, collection: str) -> List[Dict[str, Any]]:
        """
        Read every record of a collection in stored order.

        Raises:
            AdapterUnavailable: If the database cannot be reached
            StorageError: If the read fails for this collection
        """
        try:
            rows = (
                self.session.query(CollectionRecord)
                .filter(CollectionRecord.collection == collection)
                .order_by(CollectionRecord.position)
                .all()
            )
            return [row.data for row in rows]
        except sa_exc.SQLAlchemyError as e:
            self.session.rollback()
            if _is_connection_failure(e):
                raise AdapterUnavailable(f"Record store unavailable: {e}")
            raise StorageError(f"Failed to read collection {collection}: {e}")

    def replace_all(self, collection: str, records: List[Dict[str, Any]]):
        """
        Replace a collection's entire contents.

        Raises:
            AdapterUnavailable: If the database cannot be reached
            StorageError: If the replace fails (the transaction is rolled back)
        """
        if not all(isinstance(record, dict) for record in records):
            raise StorageError(f"Collection {collection} contains non-object records")

        try:
            self.session.query(CollectionRecord).filter(
                CollectionRecord.collection == collection
            ).delete(synchronize_session=False)

            self.session.add_all([
                CollectionRecord(collection=collection, position=index, data=record)
                for index, record in enumerate(records)
            ])
            self.session.commit()
            logger.debug(f"Replaced collection {collection} ({len(records)} records)")
        except sa_exc.SQLAlchemyError as e:
            self.session.rollback()
            if _is_connection_failure(e):
                raise AdapterUnavailable(f"Record store unavailable: {e}")
            raise StorageError(f"Failed to replace collection {collection}: {e}")

    def collections(self) -> List[str]:
        """Names of all collections that currently hold records."""
        try:
            rows = self.session.query(CollectionRecord.collection).distinct().all()
            return sorted(name for (name,) in rows)
        except sa_exc.SQLAlchemyError as e:
            self.session.rollback()
            raise StorageError(f"Failed to list collections: {e}")
