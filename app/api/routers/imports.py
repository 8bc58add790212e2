"""
Client import endpoints: upload, mapping review, preview, execution and rollback.
"""
import json
import logging
from typing import Callable, Optional, Type, TypeVar

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from app.api.dependencies import RequestContext, get_import_repository, get_request_context, get_text_model
from app.api.schemas.imports import (
    CreateImportOptions,
    ExecuteImportRequest,
    ExecuteImportResponse,
    ImportBatchCreatedResponse,
    ImportBatchDetail,
    ImportBatchListResponse,
    ImportBatchResponse,
    ImportBatchSummary,
    ImportJobResponse,
    ImportJobSchema,
    ImportPreviewRequest,
    ImportPreviewResponse,
    ImportRecordListResponse,
    ImportRecordSchema,
    MappingSuggestionsResponse,
    RollbackResponse,
)
from app.core.config import settings
from app.db.session import get_session_factory
from app.domain.imports.errors import (
    BatchNotFoundError,
    FileMismatchError,
    FileParseError,
    ImportPipelineError,
    DuplicateMappingError,
    InvalidBatchStateError,
    MissingRequiredMappingError,
)
from app.domain.imports.executor import (
    create_import_batch,
    file_sha256,
    generate_import_preview,
    get_import_batch,
    list_import_batches,
    list_import_records,
    queue_import,
    run_import_job,
    suggest_batch_mappings,
)
from app.domain.imports.field_mapper import TextModel
from app.domain.imports.jobs import get_import_job
from app.domain.imports.models import ImportRecordStatus, ImportStatus
from app.domain.imports.repository import ImportRepository
from app.domain.imports.rollback import rollback_import

router = APIRouter(tags=["imports"])

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = (
    (FileParseError, 400),
    (BatchNotFoundError, 404),
    (InvalidBatchStateError, 409),
    (MissingRequiredMappingError, 422),
    (DuplicateMappingError, 422),
    (FileMismatchError, 409),
)

FormModel = TypeVar("FormModel", bound=BaseModel)


def _http_error(error: ImportPipelineError) -> HTTPException:
    status_code = next((code for cls, code in ERROR_STATUS_CODES if isinstance(error, cls)), 500)
    if isinstance(error, FileParseError):
        detail = {
            "message": error.message,
            "errors": [e.model_dump() for e in error.errors],
            "batch_id": error.batch_id,
        }
        return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(status_code=status_code, detail=error.message)


def _parse_form_json(raw: Optional[str], model: Type[FormModel], field_name: str) -> FormModel:
    if not raw:
        return model()
    try:
        return model.model_validate(json.loads(raw))
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"Invalid JSON in {field_name}: {e}")
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=json.loads(e.json()))


def _check_upload_size(content: bytes) -> None:
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(content) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {settings.upload_max_file_size_mb}MB upload limit",
        )


@router.post("/imports", response_model=ImportBatchCreatedResponse, status_code=201)
async def create_import_endpoint(
    file: UploadFile = File(...),
    options_json: Optional[str] = Form(None),
    context: RequestContext = Depends(get_request_context),
    repo: ImportRepository = Depends(get_import_repository),
    llm: TextModel = Depends(get_text_model),
):
    """
    Upload a client file and create an import batch.

    Parameters:
    - file: CSV, Excel (.xlsx) or JSON file
    - options_json: optional JSON with ``parse_options`` and ``source_system``

    Returns the detected columns, preview rows and suggested field mappings.
    """
    options = _parse_form_json(options_json, CreateImportOptions, "options_json")
    content = await file.read()
    _check_upload_size(content)

    logger.info("Received import upload '%s' (%d bytes) for org %s", file.filename, len(content), context.org_id)

    try:
        created = create_import_batch(
            repo,
            context.org_id,
            context.user_id,
            file.filename or "upload",
            content,
            options.parse_options,
            llm,
            options.source_system,
        )
    except ImportPipelineError as e:
        raise _http_error(e)

    return ImportBatchCreatedResponse(success=True, batch=created)


@router.get("/imports", response_model=ImportBatchListResponse)
async def list_imports_endpoint(
    status: Optional[ImportStatus] = None,
    limit: int = 20,
    offset: int = 0,
    context: RequestContext = Depends(get_request_context),
    repo: ImportRepository = Depends(get_import_repository),
):
    batches, total = list_import_batches(repo, context.org_id, status=status, limit=limit, offset=offset)
    return ImportBatchListResponse(
        success=True,
        batches=[ImportBatchSummary.model_validate(batch) for batch in batches],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get("/imports/jobs/{job_id}", response_model=ImportJobResponse)
async def get_import_job_endpoint(
    job_id: str,
    context: RequestContext = Depends(get_request_context),
    repo: ImportRepository = Depends(get_import_repository),
):
    job = get_import_job(repo.db, job_id, context.org_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return ImportJobResponse(success=True, job=ImportJobSchema(**job))


@router.get("/imports/{batch_id}", response_model=ImportBatchResponse)
async def get_import_endpoint(
    batch_id: str,
    context: RequestContext = Depends(get_request_context),
    repo: ImportRepository = Depends(get_import_repository),
):
    try:
        batch = get_import_batch(repo, batch_id, context.org_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return ImportBatchResponse(success=True, batch=ImportBatchDetail.model_validate(batch))


@router.get("/imports/{batch_id}/records", response_model=ImportRecordListResponse)
async def list_import_records_endpoint(
    batch_id: str,
    status: Optional[ImportRecordStatus] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    context: RequestContext = Depends(get_request_context),
    repo: ImportRepository = Depends(get_import_repository),
):
    try:
        records, total = list_import_records(repo, batch_id, context.org_id, status=status, limit=limit, offset=offset)
    except ImportPipelineError as e:
        raise _http_error(e)
    return ImportRecordListResponse(
        success=True,
        records=[ImportRecordSchema.model_validate(record) for record in records],
        total_count=total,
    )


@router.post("/imports/{batch_id}/suggestions", response_model=MappingSuggestionsResponse)
async def mapping_suggestions_endpoint(
    batch_id: str,
    context: RequestContext = Depends(get_request_context),
    repo: ImportRepository = Depends(get_import_repository),
):
    try:
        suggestions = suggest_batch_mappings(repo, batch_id, context.org_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return MappingSuggestionsResponse(success=True, suggestions=suggestions)


@router.post("/imports/{batch_id}/preview", response_model=ImportPreviewResponse)
async def preview_import_endpoint(
    batch_id: str,
    request: ImportPreviewRequest,
    context: RequestContext = Depends(get_request_context),
    repo: ImportRepository = Depends(get_import_repository),
):
    try:
        preview = generate_import_preview(
            repo,
            batch_id,
            context.org_id,
            request.mappings,
            request.duplicate_settings,
        )
    except ImportPipelineError as e:
        raise _http_error(e)
    return ImportPreviewResponse(success=True, preview=preview)


@router.post("/imports/{batch_id}/execute", response_model=ExecuteImportResponse, status_code=202)
async def execute_import_endpoint(
    batch_id: str,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    execution_json: Optional[str] = Form(None),
    context: RequestContext = Depends(get_request_context),
    repo: ImportRepository = Depends(get_import_repository),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """
    Queue a READY batch for execution.

    The uploaded file must be the same file the batch was created from; rows
    are written by a background job whose progress is available from
    ``GET /imports/jobs/{job_id}``.
    """
    execution = _parse_form_json(execution_json, ExecuteImportRequest, "execution_json")
    content = await file.read()
    _check_upload_size(content)

    try:
        batch = get_import_batch(repo, batch_id, context.org_id)
        if batch.file_hash and file_sha256(content) != batch.file_hash:
            raise FileMismatchError(batch_id)
        queued = queue_import(
            repo,
            batch_id,
            context.org_id,
            context.user_id,
            mappings=execution.mappings,
            duplicate_settings=execution.duplicate_settings,
            resolutions=execution.resolutions,
        )
    except ImportPipelineError as e:
        raise _http_error(e)

    background_tasks.add_task(
        run_import_job,
        session_factory,
        batch_id,
        context.org_id,
        context.user_id,
        content,
        queued["job_id"],
    )

    return ExecuteImportResponse(
        success=True,
        message="Import queued",
        job_id=queued["job_id"],
        batch_id=batch_id,
    )


@router.post("/imports/{batch_id}/rollback", response_model=RollbackResponse)
async def rollback_import_endpoint(
    batch_id: str,
    context: RequestContext = Depends(get_request_context),
    repo: ImportRepository = Depends(get_import_repository),
):
    """
    Soft-delete the clients a completed batch created.

    Refusals (batch not completed, window expired) are returned with
    ``success: false`` and a ``reason``.
    """
    result = rollback_import(repo, batch_id, context.org_id)
    if result.reason == "not_found":
        raise HTTPException(status_code=404, detail=f"Import batch '{batch_id}' not found")
    return RollbackResponse(success=result.success, result=result)
