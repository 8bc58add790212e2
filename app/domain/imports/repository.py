"""
Database access for the import pipeline.

Methods add and flush; transaction boundaries (commit/rollback) belong to the
caller so a row's client write and its import record land together.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.db.models import Client, ImportBatch, ImportRecord
from app.domain.imports.models import ImportRecordStatus, ImportStatus

logger = logging.getLogger(__name__)

CLIENT_COLUMNS = ("first_name", "last_name", "phone", "email", "internal_id", "address")


class ImportRepository:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def add_batch(self, batch: ImportBatch) -> ImportBatch:
        self.db.add(batch)
        self.db.flush()
        return batch

    def get_batch(self, batch_id: str, org_id: str) -> Optional[ImportBatch]:
        """Get a batch scoped to its organization."""
        return (
            self.db.query(ImportBatch)
            .filter(ImportBatch.id == batch_id, ImportBatch.org_id == org_id)
            .first()
        )

    def list_batches(
        self,
        org_id: str,
        status: Optional[ImportStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[ImportBatch], int]:
        """Newest batches first, plus the total count for pagination."""
        query = self.db.query(ImportBatch).filter(ImportBatch.org_id == org_id)
        if status is not None:
            query = query.filter(ImportBatch.status == status)
        total = query.count()
        batches = query.order_by(ImportBatch.created_at.desc()).offset(offset).limit(limit).all()
        return batches, total

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def add_record(self, record: ImportRecord) -> ImportRecord:
        self.db.add(record)
        self.db.flush()
        return record

    def list_records(
        self,
        batch_id: str,
        status: Optional[ImportRecordStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[ImportRecord], int]:
        query = self.db.query(ImportRecord).filter(ImportRecord.batch_id == batch_id)
        if status is not None:
            query = query.filter(ImportRecord.status == status)
        total = query.count()
        query = query.order_by(ImportRecord.row_number).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return query.all(), total

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def active_clients(self, org_id: str) -> List[Client]:
        return (
            self.db.query(Client)
            .filter(Client.org_id == org_id, Client.deleted_at.is_(None))
            .order_by(Client.created_at, Client.id)
            .all()
        )

    def get_client(self, client_id: str, org_id: str) -> Optional[Client]:
        """Get an active (not soft-deleted) client."""
        return (
            self.db.query(Client)
            .filter(Client.id == client_id, Client.org_id == org_id, Client.deleted_at.is_(None))
            .first()
        )

    def create_client(self, org_id: str, values: Dict[str, Any], created_by: Optional[str] = None) -> Client:
        client = Client(
            org_id=org_id,
            created_by=created_by,
            **{column: values.get(column) for column in CLIENT_COLUMNS},
        )
        self.db.add(client)
        self.db.flush()
        return client

    def update_client(self, client: Client, values: Dict[str, Any]) -> Client:
        """Overwrite the columns present in ``values``; ``None`` values leave the column alone."""
        for column in CLIENT_COLUMNS:
            if values.get(column) is not None:
                setattr(client, column, values[column])
        client.updated_at = datetime.now(timezone.utc)
        self.db.flush()
        return client

    def soft_delete_client(self, client_id: str, org_id: str, deleted_at: Optional[datetime] = None) -> bool:
        client = self.get_client(client_id, org_id)
        if client is None:
            return False
        client.deleted_at = deleted_at or datetime.now(timezone.utc)
        self.db.flush()
        return True

