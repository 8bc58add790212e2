"""
ORM models for the client import pipeline.

``clients`` is the entity store the pipeline writes into; ``import_batches``,
``import_records`` and ``import_jobs`` track one upload-to-commit attempt, the
per-row outcomes and the background job that executed it.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Enum as SAEnum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.db.session import Base
from app.domain.imports.models import (
    DuplicateAction,
    ImportRecordStatus,
    ImportStatus,
    JobStatus,
)


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum_column(enum_cls, **kwargs) -> Column:
    return Column(SAEnum(enum_cls, native_enum=False, length=32), **kwargs)


class Client(Base):
    """A client record owned by an organization. Soft-deleted via ``deleted_at``."""
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=_uuid)
    org_id = Column(String(64), nullable=False, index=True)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=False)
    phone = Column(String(64), nullable=False)
    email = Column(String(320), nullable=True)
    internal_id = Column(String(255), nullable=True)
    address = Column(JSON, nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class ImportBatch(Base):
    """One file-upload attempt, from parsing through commit and rollback."""
    __tablename__ = "import_batches"

    id = Column(String(36), primary_key=True, default=_uuid)
    org_id = Column(String(64), nullable=False, index=True)
    uploaded_by = Column(String(64), nullable=True)
    status = _enum_column(ImportStatus, nullable=False, default=ImportStatus.PENDING, index=True)

    # Source file
    file_name = Column(String(500), nullable=False)
    file_size = Column(Integer, nullable=True)
    file_format = Column(String(16), nullable=True)
    file_hash = Column(String(64), nullable=True)
    parse_options = Column(JSON, nullable=True)

    # Parse / mapping stage
    total_rows = Column(Integer, default=0)
    detected_columns = Column(JSON, default=list)
    preview_rows = Column(JSON, default=list)
    suggested_mappings = Column(JSON, nullable=True)
    field_mappings = Column(JSON, nullable=True)
    duplicate_settings = Column(JSON, nullable=True)
    duplicate_resolutions = Column(JSON, nullable=True)

    # Execution outcome
    processed_rows = Column(Integer, default=0)
    created_count = Column(Integer, default=0)
    updated_count = Column(Integer, default=0)
    skipped_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    errors = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    rollback_available_until = Column(DateTime(timezone=True), nullable=True)
    rollback_executed_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    records = relationship(
        "ImportRecord",
        back_populates="batch",
        order_by="ImportRecord.row_number",
        lazy="select",
    )


class ImportRecord(Base):
    """Outcome of one source row within a batch."""
    __tablename__ = "import_records"

    id = Column(String(36), primary_key=True, default=_uuid)
    batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=False, index=True)
    row_number = Column(Integer, nullable=False)
    status = _enum_column(ImportRecordStatus, nullable=False, index=True)
    action = _enum_column(DuplicateAction, nullable=True)
    source_data = Column(JSON, nullable=True)
    mapped_data = Column(JSON, nullable=True)
    duplicate_matches = Column(JSON, nullable=True)
    validation_errors = Column(JSON, nullable=True)
    created_client_id = Column(String(36), nullable=True)
    updated_client_id = Column(String(36), nullable=True)
    processed_at = Column(DateTime(timezone=True), default=_utcnow)

    batch = relationship("ImportBatch", back_populates="records")


class ImportJob(Base):
    """Progress tracking for a queued batch execution."""
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=False, index=True)
    org_id = Column(String(64), nullable=False)
    status = _enum_column(JobStatus, nullable=False, default=JobStatus.QUEUED)
    progress = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
