from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.domain.imports.models import (
    DuplicateAction,
    DuplicateResolution,
    DuplicateSettings,
    FieldMapping,
    FieldMappingSuggestion,
    ImportBatchCreated,
    ImportPreview,
    ImportRecordStatus,
    ImportStatus,
    JobStatus,
    ParseOptions,
    RollbackResult,
)


class ImportBatchSummary(BaseModel):
    id: str
    org_id: str
    uploaded_by: Optional[str] = None
    status: ImportStatus
    file_name: str
    file_size: Optional[int] = None
    file_format: Optional[str] = None
    total_rows: Optional[int] = 0
    detected_columns: Optional[List[str]] = None
    processed_rows: Optional[int] = 0
    created_count: Optional[int] = 0
    updated_count: Optional[int] = 0
    skipped_count: Optional[int] = 0
    failed_count: Optional[int] = 0
    error_message: Optional[str] = None
    rollback_available_until: Optional[datetime] = None
    rollback_executed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ImportBatchDetail(ImportBatchSummary):
    preview_rows: Optional[List[Dict[str, Any]]] = None
    suggested_mappings: Optional[List[Dict[str, Any]]] = None
    field_mappings: Optional[List[Dict[str, Any]]] = None
    duplicate_settings: Optional[Dict[str, Any]] = None
    errors: Optional[List[Dict[str, Any]]] = None


class ImportRecordSchema(BaseModel):
    id: str
    row_number: int
    status: ImportRecordStatus
    action: Optional[DuplicateAction] = None
    source_data: Optional[Dict[str, Any]] = None
    mapped_data: Optional[Dict[str, Any]] = None
    duplicate_matches: Optional[List[Dict[str, Any]]] = None
    validation_errors: Optional[List[str]] = None
    created_client_id: Optional[str] = None
    updated_client_id: Optional[str] = None
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ImportJobSchema(BaseModel):
    id: str
    batch_id: str
    status: JobStatus
    progress: int = 0
    error_message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class CreateImportOptions(BaseModel):
    """Form field ``options_json`` of the upload request."""
    parse_options: ParseOptions = Field(default_factory=ParseOptions)
    source_system: Optional[str] = None


class ImportBatchCreatedResponse(BaseModel):
    success: bool
    batch: ImportBatchCreated


class ImportBatchResponse(BaseModel):
    success: bool
    batch: ImportBatchDetail


class ImportBatchListResponse(BaseModel):
    success: bool
    batches: List[ImportBatchSummary]
    total_count: int
    limit: int
    offset: int


class ImportRecordListResponse(BaseModel):
    success: bool
    records: List[ImportRecordSchema]
    total_count: int


class MappingSuggestionsResponse(BaseModel):
    success: bool
    suggestions: List[FieldMappingSuggestion]


class ImportPreviewRequest(BaseModel):
    mappings: List[FieldMapping]
    duplicate_settings: Optional[DuplicateSettings] = None


class ImportPreviewResponse(BaseModel):
    success: bool
    preview: ImportPreview


class ExecuteImportRequest(BaseModel):
    """Form field ``execution_json`` of the execute request. Omitted values reuse the preview's choices."""
    mappings: Optional[List[FieldMapping]] = None
    duplicate_settings: Optional[DuplicateSettings] = None
    resolutions: Dict[int, DuplicateResolution] = Field(default_factory=dict)


class ExecuteImportResponse(BaseModel):
    success: bool
    message: str
    job_id: str
    batch_id: str


class ImportJobResponse(BaseModel):
    success: bool
    job: ImportJobSchema


class RollbackResponse(BaseModel):
    success: bool
    result: RollbackResult
