"""
Persistent tracking for long-running import jobs.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from sqlalchemy.orm import Session

from app.db.models import ImportJob
from app.domain.imports.models import JobStatus

logger = logging.getLogger(__name__)


class ProgressTracker(Protocol):
    """Receives progress for one execution; ``progress`` is 0-100."""

    def update(self, job_id: str, progress: int) -> None: ...

    def complete(self, job_id: str, result: Dict[str, Any]) -> None: ...

    def fail(self, job_id: str, message: str) -> None: ...


def _job_to_dict(job: ImportJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "batch_id": job.batch_id,
        "status": job.status.value if job.status else None,
        "progress": job.progress or 0,
        "error_message": job.error_message,
        "result": job.result,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "completed_at": job.completed_at,
    }


def create_import_job(db: Session, batch_id: str, org_id: str) -> ImportJob:
    """Create a queued job row for a batch execution (flushed, not committed)."""
    job = ImportJob(batch_id=batch_id, org_id=org_id, status=JobStatus.QUEUED, progress=0)
    db.add(job)
    db.flush()
    logger.info(f"Queued import job {job.id} for batch {batch_id}")
    return job


def get_import_job(db: Session, job_id: str, org_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    query = db.query(ImportJob).filter(ImportJob.id == job_id)
    if org_id is not None:
        query = query.filter(ImportJob.org_id == org_id)
    job = query.first()
    return _job_to_dict(job) if job else None


class ImportJobTracker:
    """``ProgressTracker`` that writes to ``import_jobs`` and commits each change."""

    def __init__(self, db: Session):
        self.db = db

    def _load(self, job_id: str) -> Optional[ImportJob]:
        job = self.db.query(ImportJob).filter(ImportJob.id == job_id).first()
        if job is None:
            logger.warning(f"Import job {job_id} not found; progress update dropped")
        return job

    def update(self, job_id: str, progress: int) -> None:
        job = self._load(job_id)
        if job is None:
            return
        job.status = JobStatus.RUNNING
        job.progress = max(0, min(int(progress), 100))
        self.db.commit()

    def complete(self, job_id: str, result: Dict[str, Any]) -> None:
        job = self._load(job_id)
        if job is None:
            return
        job.status = JobStatus.SUCCEEDED
        job.progress = 100
        job.result = result
        job.completed_at = datetime.now(timezone.utc)
        self.db.commit()

    def fail(self, job_id: str, message: str) -> None:
        job = self._load(job_id)
        if job is None:
            return
        job.status = JobStatus.FAILED
        job.error_message = message
        job.completed_at = datetime.now(timezone.utc)
        self.db.commit()
        logger.error(f"Import job {job_id} failed: {message}")
