"""
Rollback of completed import batches.

Only clients the batch created are reverted (soft-deleted); updates made to
existing clients are left in place. Each record is reverted in its own
transaction and failures are reported without stopping the sweep.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from app.db.models import ImportBatch
from app.domain.imports.executor import transition_batch
from app.domain.imports.models import ImportRecordStatus, ImportStatus, RollbackResult
from app.domain.imports.repository import ImportRepository

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def can_rollback(batch: ImportBatch, now: Optional[datetime] = None) -> Tuple[bool, Optional[str]]:
    """Return ``(allowed, reason)``; ``reason`` is ``not_completed`` or ``window_expired`` when refused."""
    now = now or datetime.now(timezone.utc)
    if ImportStatus(batch.status) != ImportStatus.COMPLETED:
        return False, "not_completed"
    if batch.rollback_available_until is None or _as_utc(now) > _as_utc(batch.rollback_available_until):
        return False, "window_expired"
    return True, None


def rollback_import(
    repo: ImportRepository,
    batch_id: str,
    org_id: str,
    now: Optional[datetime] = None,
) -> RollbackResult:
    now = now or datetime.now(timezone.utc)

    batch = repo.get_batch(batch_id, org_id)
    if batch is None:
        return RollbackResult(success=False, batch_id=batch_id, errors=["Batch not found"], reason="not_found")

    allowed, reason = can_rollback(batch, now)
    if not allowed:
        message = (
            "Can only rollback completed imports"
            if reason == "not_completed"
            else "Rollback window has expired"
        )
        logger.info(f"Rollback of batch {batch_id} refused: {reason}")
        return RollbackResult(success=False, batch_id=batch_id, errors=[message], reason=reason)

    records, _ = repo.list_records(batch_id, status=ImportRecordStatus.CREATED)
    rolled_back = 0
    failed = 0
    errors: List[str] = []

    for record in records:
        row_number = record.row_number
        try:
            if not record.created_client_id:
                raise ValueError("record has no created client")
            if not repo.soft_delete_client(record.created_client_id, org_id, now):
                raise ValueError(f"client {record.created_client_id} not found or already deleted")
            record.status = ImportRecordStatus.ROLLED_BACK
            repo.commit()
            rolled_back += 1
        except Exception as e:
            repo.rollback()
            failed += 1
            errors.append(f"Failed to rollback row {row_number}: {e}")
            logger.warning(errors[-1])

    batch = repo.get_batch(batch_id, org_id)
    transition_batch(batch, ImportStatus.ROLLED_BACK)
    batch.rollback_executed_at = now
    repo.commit()

    logger.info(f"Rolled back batch {batch_id}: {rolled_back} reverted, {failed} failed")
    return RollbackResult(
        success=failed == 0,
        batch_id=batch_id,
        rolled_back_count=rolled_back,
        failed_count=failed,
        errors=errors,
    )
