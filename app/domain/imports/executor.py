"""
Import executor: batch creation, preview and commit.

A batch moves PENDING -> PARSING -> MAPPING -> READY -> PROCESSING -> COMPLETED
(-> ROLLED_BACK), or to FAILED from any active state. Commit processes rows one
at a time; each row's client write and its ImportRecord are committed together,
so a failing row never undoes the rows before it.
"""

import hashlib
import logging
import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings as app_settings
from app.db.models import ImportBatch, ImportRecord
from app.domain.imports.duplicate_detector import ExistingClient, check_single_record, load_candidates
from app.domain.imports.errors import (
    BatchNotFoundError,
    DuplicateMappingError,
    FileMismatchError,
    FileParseError,
    InvalidBatchStateError,
    MissingRequiredMappingError,
)
from app.domain.imports.field_mapper import TextModel, generate_mappings, get_mapping_suggestions
from app.domain.imports.file_parser import parse_file
from app.domain.imports.jobs import ImportJobTracker, ProgressTracker, create_import_job
from app.domain.imports.models import (
    CLIENT_TARGET_FIELDS,
    DEFAULT_DUPLICATE_SETTINGS,
    DuplicateAction,
    DuplicateResolution,
    DuplicateSettings,
    FieldMapping,
    FieldMappingSuggestion,
    ImportBatchCreated,
    ImportExecutionResult,
    ImportPreview,
    ImportRecordStatus,
    ImportStatus,
    ParseOptions,
    PreviewRow,
    PreviewSummary,
    RowError,
    TargetField,
    TargetFieldDefinition,
)
from app.domain.imports.repository import ImportRepository
from app.domain.imports.transformers import map_record_data
from app.utils.date import parse_flexible_date
from app.utils.phone import validate_phone
from app.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ACTIVE_STATUSES = {
    ImportStatus.PENDING,
    ImportStatus.PARSING,
    ImportStatus.MAPPING,
    ImportStatus.READY,
    ImportStatus.PROCESSING,
}

ALLOWED_TRANSITIONS: Dict[ImportStatus, set] = {
    ImportStatus.PENDING: {ImportStatus.PARSING},
    ImportStatus.PARSING: {ImportStatus.MAPPING},
    ImportStatus.MAPPING: {ImportStatus.READY},
    ImportStatus.READY: {ImportStatus.READY, ImportStatus.PROCESSING},
    ImportStatus.PROCESSING: {ImportStatus.COMPLETED},
    ImportStatus.COMPLETED: {ImportStatus.ROLLED_BACK},
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def file_sha256(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def transition_batch(batch: ImportBatch, new_status: ImportStatus) -> None:
    """
    Move a batch to ``new_status``.

    Raises:
        InvalidBatchStateError: if the lifecycle does not allow the move
    """
    current = ImportStatus(batch.status)
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if new_status == ImportStatus.FAILED and current in ACTIVE_STATUSES:
        allowed = {ImportStatus.FAILED}
    if new_status not in allowed:
        raise InvalidBatchStateError(batch.id, current, new_status)

    logger.info(f"Import batch {batch.id}: {current.value} -> {new_status.value}")
    batch.status = new_status
    batch.updated_at = _utcnow()


def _require_status(batch: ImportBatch, *statuses: ImportStatus) -> None:
    current = ImportStatus(batch.status)
    if current not in statuses:
        expected = " or ".join(status.value for status in statuses)
        raise InvalidBatchStateError(
            batch.id,
            current,
            message=f"Import batch '{batch.id}' is {current.value}; expected {expected}",
        )


# ============================================
# (DE)SERIALIZATION OF STORED SETTINGS
# ============================================

def _dump_mappings(mappings: List[FieldMapping]) -> List[Dict[str, Any]]:
    return [mapping.model_dump(mode="json") for mapping in mappings]


def _load_mappings(data: Optional[List[Dict[str, Any]]]) -> List[FieldMapping]:
    return [FieldMapping.model_validate(item) for item in data or []]


def _load_duplicate_settings(data: Optional[Dict[str, Any]]) -> DuplicateSettings:
    if not data:
        return DEFAULT_DUPLICATE_SETTINGS
    return DuplicateSettings.model_validate(data)


def _load_resolutions(data: Optional[Dict[str, Any]]) -> Dict[int, DuplicateResolution]:
    return {int(row): DuplicateResolution.model_validate(value) for row, value in (data or {}).items()}


def _load_parse_options(data: Optional[Dict[str, Any]]) -> ParseOptions:
    return ParseOptions.model_validate(data) if data else ParseOptions()


def _mapped_to_json(mapped: Dict[TargetField, Any]) -> Dict[str, Any]:
    return {target.value: make_json_safe(value) for target, value in mapped.items()}


# ============================================
# VALIDATION
# ============================================

def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def validate_required_mappings(
    mappings: List[FieldMapping],
    target_fields: List[TargetFieldDefinition] = CLIENT_TARGET_FIELDS,
) -> None:
    mapped_targets = {mapping.target_field for mapping in mappings}
    missing = [field.path for field in target_fields if field.required and field.path not in mapped_targets]
    if missing:
        raise MissingRequiredMappingError(missing)


def validate_unique_mappings(mappings: List[FieldMapping]) -> None:
    """Each target field and each source column may appear in at most one mapping."""
    target_counts = Counter(mapping.target_field for mapping in mappings)
    column_counts = Counter(mapping.source_column for mapping in mappings)
    targets = [target for target, count in target_counts.items() if count > 1]
    columns = [column for column, count in column_counts.items() if count > 1]
    if targets or columns:
        raise DuplicateMappingError(targets, columns)


def _type_warning(definition: TargetFieldDefinition, value: Any) -> Optional[str]:
    if definition.type == "email" and not EMAIL_PATTERN.match(str(value)):
        return f"{definition.label}: invalid email format '{value}'"
    if definition.type == "phone" and not validate_phone(value):
        return f"{definition.label}: invalid phone number '{value}'"
    if definition.type == "date" and parse_flexible_date(value, log_failures=False) is None:
        return f"{definition.label}: invalid date '{value}'"
    if definition.type == "number":
        try:
            float(str(value))
        except ValueError:
            return f"{definition.label}: invalid number '{value}'"
    return None


def validate_row(
    mapped: Dict[TargetField, Any],
    mappings: List[FieldMapping],
    target_fields: List[TargetFieldDefinition] = CLIENT_TARGET_FIELDS,
) -> Tuple[List[str], List[str]]:
    """
    Check one mapped row.

    Returns ``(errors, warnings)``. A missing required value is an error and
    makes the row fail; a value of the wrong shape is only a warning.
    """
    required = {mapping.target_field for mapping in mappings if mapping.required}
    required.update(field.path for field in target_fields if field.required)

    errors: List[str] = []
    warnings: List[str] = []

    missing = [field.label for field in target_fields if field.path in required and _is_blank(mapped.get(field.path))]
    if missing:
        errors.append(f"Missing required field(s): {', '.join(missing)}")

    for definition in target_fields:
        value = mapped.get(definition.path)
        if _is_blank(value):
            continue
        warning = _type_warning(definition, value)
        if warning:
            warnings.append(warning)

    return errors, warnings


# ============================================
# BATCH CREATION
# ============================================

def create_import_batch(
    repo: ImportRepository,
    org_id: str,
    user_id: Optional[str],
    file_name: str,
    content: bytes,
    options: Optional[ParseOptions] = None,
    llm: Optional[TextModel] = None,
    source_system: Optional[str] = None,
) -> ImportBatchCreated:
    """
    Parse an uploaded file into a new batch and suggest field mappings.

    Raises:
        FileParseError: if the file cannot be ingested; the batch is kept as FAILED
        Exception: anything unexpected after parsing started; the batch is marked FAILED
    """
    options = options or ParseOptions()
    batch = repo.add_batch(ImportBatch(
        org_id=org_id,
        uploaded_by=user_id,
        file_name=file_name,
        file_size=len(content),
        file_hash=file_sha256(content),
        parse_options=options.model_dump(mode="json"),
        status=ImportStatus.PENDING,
    ))
    transition_batch(batch, ImportStatus.PARSING)
    repo.commit()
    batch_id = batch.id

    try:
        return _parse_and_suggest(repo, batch, file_name, content, options, llm, source_system)
    except FileParseError:
        raise
    except Exception as e:
        logger.exception(f"Import batch {batch_id} failed while parsing {file_name}")
        repo.rollback()
        _fail_batch(repo, batch_id, org_id, str(e))
        raise


def _parse_and_suggest(
    repo: ImportRepository,
    batch: ImportBatch,
    file_name: str,
    content: bytes,
    options: ParseOptions,
    llm: Optional[TextModel],
    source_system: Optional[str],
) -> ImportBatchCreated:
    parsed = parse_file(content, file_name, options)
    if parsed.has_fatal_errors:
        error = FileParseError(parsed.errors, file_name=file_name, batch_id=batch.id)
        batch.errors = [e.model_dump(mode="json") for e in parsed.errors]
        batch.error_message = error.message
        transition_batch(batch, ImportStatus.FAILED)
        repo.commit()
        raise error

    batch.file_format = parsed.file_format
    batch.total_rows = parsed.total_rows
    batch.detected_columns = parsed.columns
    batch.preview_rows = make_json_safe(parsed.preview)
    if parsed.errors:
        batch.errors = [e.model_dump(mode="json") for e in parsed.errors]

    mapping_result = generate_mappings(parsed.columns, parsed.preview, CLIENT_TARGET_FIELDS, source_system, llm)
    batch.suggested_mappings = _dump_mappings(mapping_result.mappings)
    transition_batch(batch, ImportStatus.MAPPING)
    repo.commit()

    logger.info(
        f"Created import batch {batch.id} from {file_name}: {parsed.total_rows} rows, "
        f"{len(mapping_result.mappings)} suggested mappings ({mapping_result.strategy})"
    )

    return ImportBatchCreated(
        batch_id=batch.id,
        status=ImportStatus(batch.status),
        total_rows=parsed.total_rows,
        columns=parsed.columns,
        preview=batch.preview_rows,
        suggested_mappings=mapping_result.mappings,
        mapping_strategy=mapping_result.strategy,
        mapping_confidence=mapping_result.overall_confidence,
        mapping_notes=mapping_result.notes,
        warnings=parsed.errors,
    )


def get_import_batch(repo: ImportRepository, batch_id: str, org_id: str) -> ImportBatch:
    batch = repo.get_batch(batch_id, org_id)
    if batch is None:
        raise BatchNotFoundError(batch_id)
    return batch


def list_import_batches(
    repo: ImportRepository,
    org_id: str,
    status: Optional[ImportStatus] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[ImportBatch], int]:
    return repo.list_batches(org_id, status=status, limit=limit, offset=offset)


def list_import_records(
    repo: ImportRepository,
    batch_id: str,
    org_id: str,
    status: Optional[ImportRecordStatus] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> Tuple[List[ImportRecord], int]:
    get_import_batch(repo, batch_id, org_id)
    return repo.list_records(batch_id, status=status, limit=limit, offset=offset)


def suggest_batch_mappings(repo: ImportRepository, batch_id: str, org_id: str) -> List[FieldMappingSuggestion]:
    """Ranked target suggestions for each column of a batch, from its stored preview rows."""
    batch = get_import_batch(repo, batch_id, org_id)
    return get_mapping_suggestions(batch.detected_columns or [], batch.preview_rows or [], CLIENT_TARGET_FIELDS)


# ============================================
# PREVIEW
# ============================================

def generate_import_preview(
    repo: ImportRepository,
    batch_id: str,
    org_id: str,
    mappings: List[FieldMapping],
    duplicate_settings: Optional[DuplicateSettings] = None,
) -> ImportPreview:
    """
    Map, validate and duplicate-check the stored preview rows without writing any client.

    Rows that fail validation are not matched and have no suggested action.
    """
    duplicate_settings = duplicate_settings or DEFAULT_DUPLICATE_SETTINGS
    batch = get_import_batch(repo, batch_id, org_id)
    _require_status(batch, ImportStatus.MAPPING, ImportStatus.READY)
    validate_unique_mappings(mappings)

    candidates = load_candidates(repo, org_id)
    rows: List[PreviewRow] = []

    for row_number, source_data in enumerate(batch.preview_rows or [], start=1):
        mapped = map_record_data(source_data, mappings)
        errors, warnings = validate_row(mapped, mappings)

        if errors:
            rows.append(PreviewRow(
                row_number=row_number,
                source_data=source_data,
                mapped_data=mapped,
                validation_errors=errors,
                validation_warnings=warnings,
            ))
            continue

        check = check_single_record(source_data, mappings, candidates, duplicate_settings, row_number, mapped=mapped)
        rows.append(PreviewRow(
            row_number=row_number,
            source_data=source_data,
            mapped_data=mapped,
            duplicates=check.matches,
            validation_warnings=warnings,
            suggested_action=check.suggested_action,
            requires_review=check.requires_review,
        ))

    summary = PreviewSummary(
        new_records=sum(1 for row in rows if row.suggested_action == DuplicateAction.CREATE_NEW),
        potential_updates=sum(1 for row in rows if row.suggested_action == DuplicateAction.UPDATE),
        potential_duplicates=sum(1 for row in rows if row.duplicates),
        validation_errors=sum(1 for row in rows if row.validation_errors),
    )

    batch.field_mappings = _dump_mappings(mappings)
    batch.duplicate_settings = duplicate_settings.model_dump(mode="json")
    transition_batch(batch, ImportStatus.READY)
    repo.commit()

    return ImportPreview(
        total_rows=batch.total_rows or 0,
        columns=batch.detected_columns or [],
        rows=rows,
        summary=summary,
    )


# ============================================
# EXECUTION
# ============================================

def queue_import(
    repo: ImportRepository,
    batch_id: str,
    org_id: str,
    user_id: Optional[str],
    mappings: Optional[List[FieldMapping]] = None,
    duplicate_settings: Optional[DuplicateSettings] = None,
    resolutions: Optional[Dict[int, DuplicateResolution]] = None,
) -> Dict[str, str]:
    """
    Store the final mapping choices for a READY batch and create its job.

    The caller is responsible for dispatching ``run_import_job``.
    """
    batch = get_import_batch(repo, batch_id, org_id)
    _require_status(batch, ImportStatus.READY)

    final_mappings = mappings if mappings is not None else _load_mappings(batch.field_mappings)
    validate_unique_mappings(final_mappings)
    validate_required_mappings(final_mappings)
    batch.field_mappings = _dump_mappings(final_mappings)

    if duplicate_settings is not None:
        batch.duplicate_settings = duplicate_settings.model_dump(mode="json")
    batch.duplicate_resolutions = {
        str(row_number): resolution.model_dump(mode="json")
        for row_number, resolution in (resolutions or {}).items()
    }

    job = create_import_job(repo.db, batch.id, org_id)
    repo.commit()
    logger.info(f"Import batch {batch.id} queued by {user_id} as job {job.id}")
    return {"job_id": job.id, "batch_id": batch.id}


def _text(value: Any) -> Optional[str]:
    if _is_blank(value):
        return None
    return str(make_json_safe(value)).strip()


def build_address(mapped: Dict[TargetField, Any]) -> Optional[Dict[str, Optional[str]]]:
    parts = {
        field.key: _text(mapped.get(field))
        for field in (
            TargetField.ADDRESS_STREET,
            TargetField.ADDRESS_CITY,
            TargetField.ADDRESS_STATE,
            TargetField.ADDRESS_ZIP,
        )
    }
    if not any(parts.values()):
        return None
    return parts


def client_values(mapped: Dict[TargetField, Any]) -> Dict[str, Any]:
    """Client column values for a mapped row."""
    return {
        "first_name": _text(mapped.get(TargetField.FIRST_NAME)),
        "last_name": _text(mapped.get(TargetField.LAST_NAME)),
        "phone": _text(mapped.get(TargetField.PHONE)),
        "email": _text(mapped.get(TargetField.EMAIL)),
        "internal_id": _text(mapped.get(TargetField.INTERNAL_ID)),
        "address": build_address(mapped),
    }


def process_import_record(
    repo: ImportRepository,
    batch_id: str,
    org_id: str,
    user_id: Optional[str],
    row_number: int,
    source_data: Dict[str, Any],
    mappings: List[FieldMapping],
    candidates: List[ExistingClient],
    duplicate_settings: DuplicateSettings,
    resolution: Optional[DuplicateResolution] = None,
) -> ImportRecord:
    """
    Apply one source row and commit its ImportRecord together with the client write.

    Validation and write failures produce a FAILED record instead of raising.
    """
    source_json = make_json_safe(source_data)
    mapped = map_record_data(source_data, mappings)
    mapped_json = _mapped_to_json(mapped)

    errors, _ = validate_row(mapped, mappings)
    if errors:
        record = repo.add_record(ImportRecord(
            batch_id=batch_id,
            row_number=row_number,
            status=ImportRecordStatus.FAILED,
            source_data=source_json,
            mapped_data=mapped_json,
            validation_errors=errors,
        ))
        repo.commit()
        return record

    check = check_single_record(source_data, mappings, candidates, duplicate_settings, row_number, mapped=mapped)
    action = check.suggested_action
    selected_match_id = None
    if resolution is not None:
        action = resolution.action
        selected_match_id = resolution.selected_match_id
    matches_json = [match.model_dump(mode="json") for match in check.matches]

    try:
        values = client_values(mapped)
        created_client_id = None
        updated_client_id = None

        if action == DuplicateAction.CREATE_NEW:
            client = repo.create_client(org_id, values, created_by=user_id)
            created_client_id = client.id
            status = ImportRecordStatus.CREATED
        elif action == DuplicateAction.UPDATE:
            match_id = selected_match_id or (check.matches[0].client_id if check.matches else None)
            client = repo.get_client(match_id, org_id) if match_id else None
            if client is None:
                logger.info(f"Row {row_number}: no client to update, skipping")
                status = ImportRecordStatus.SKIPPED
            else:
                repo.update_client(client, values)
                updated_client_id = client.id
                status = ImportRecordStatus.UPDATED
        else:
            status = ImportRecordStatus.SKIPPED

        record = repo.add_record(ImportRecord(
            batch_id=batch_id,
            row_number=row_number,
            status=status,
            action=action,
            source_data=source_json,
            mapped_data=mapped_json,
            duplicate_matches=matches_json,
            created_client_id=created_client_id,
            updated_client_id=updated_client_id,
        ))
        repo.commit()
        return record
    except Exception as e:
        repo.rollback()
        logger.warning(f"Row {row_number} of batch {batch_id} failed: {e}")
        record = repo.add_record(ImportRecord(
            batch_id=batch_id,
            row_number=row_number,
            status=ImportRecordStatus.FAILED,
            action=action,
            source_data=source_json,
            mapped_data=mapped_json,
            duplicate_matches=matches_json,
            validation_errors=[str(e)],
        ))
        repo.commit()
        return record


def _fail_batch(repo: ImportRepository, batch_id: str, org_id: str, message: str) -> None:
    batch = repo.get_batch(batch_id, org_id)
    if batch is None or ImportStatus(batch.status) not in ACTIVE_STATUSES:
        return
    transition_batch(batch, ImportStatus.FAILED)
    batch.error_message = message
    repo.commit()


def execute_import_processing(
    repo: ImportRepository,
    tracker: ProgressTracker,
    batch_id: str,
    org_id: str,
    user_id: Optional[str],
    content: bytes,
    job_id: str,
    options: Optional[ParseOptions] = None,
) -> ImportExecutionResult:
    """
    Commit every row of a READY batch.

    Progress: 5 at start, 20 once rows are loaded, 40 once the duplicate
    snapshot is taken, then up to 90 across rows, 95 before finalizing.

    Raises:
        BatchNotFoundError, InvalidBatchStateError, FileMismatchError: before any
            row is touched; the job is failed and the batch is left as it was
        Exception: anything unexpected after the batch entered PROCESSING; the
            batch is marked FAILED and rows already written keep their status
    """
    try:
        batch = get_import_batch(repo, batch_id, org_id)
        _require_status(batch, ImportStatus.READY)
        if batch.file_hash and file_sha256(content) != batch.file_hash:
            raise FileMismatchError(batch_id)
    except Exception as e:
        tracker.fail(job_id, str(e))
        raise

    transition_batch(batch, ImportStatus.PROCESSING)
    batch.started_at = _utcnow()
    repo.commit()

    try:
        tracker.update(job_id, 5)

        mappings = _load_mappings(batch.field_mappings)
        validate_required_mappings(mappings)
        duplicate_settings = _load_duplicate_settings(batch.duplicate_settings)
        resolutions = _load_resolutions(batch.duplicate_resolutions)

        parsed = parse_file(content, batch.file_name, options or _load_parse_options(batch.parse_options))
        if parsed.has_fatal_errors:
            raise FileParseError(parsed.errors, file_name=batch.file_name, batch_id=batch_id)
        tracker.update(job_id, 20)

        candidates = load_candidates(repo, org_id)
        tracker.update(job_id, 40)

        counts = {status: 0 for status in ImportRecordStatus}
        errors: List[RowError] = []
        total = len(parsed.rows)

        for index, source_data in enumerate(parsed.rows):
            row_number = index + 1
            record = process_import_record(
                repo,
                batch_id,
                org_id,
                user_id,
                row_number,
                source_data,
                mappings,
                candidates,
                duplicate_settings,
                resolutions.get(row_number),
            )
            counts[ImportRecordStatus(record.status)] += 1
            if record.status == ImportRecordStatus.FAILED:
                errors.append(RowError(row_number=row_number, message="; ".join(record.validation_errors or [])))
            tracker.update(job_id, 40 + (index * 50) // total)

        tracker.update(job_id, 95)

        batch = get_import_batch(repo, batch_id, org_id)
        completed_at = _utcnow()
        batch.processed_rows = total
        batch.created_count = counts[ImportRecordStatus.CREATED]
        batch.updated_count = counts[ImportRecordStatus.UPDATED]
        batch.skipped_count = counts[ImportRecordStatus.SKIPPED]
        batch.failed_count = counts[ImportRecordStatus.FAILED]
        batch.errors = [error.model_dump() for error in errors]
        batch.completed_at = completed_at
        batch.rollback_available_until = completed_at + timedelta(hours=app_settings.rollback_window_hours)
        transition_batch(batch, ImportStatus.COMPLETED)
        repo.commit()

        result = ImportExecutionResult(
            batch_id=batch_id,
            status=ImportStatus.COMPLETED,
            total_rows=total,
            created=batch.created_count,
            updated=batch.updated_count,
            skipped=batch.skipped_count,
            failed=batch.failed_count,
            errors=errors,
            rollback_available_until=batch.rollback_available_until,
        )
        tracker.complete(job_id, result.model_dump(mode="json"))
        logger.info(
            f"Import batch {batch_id} completed: created={result.created} updated={result.updated} "
            f"skipped={result.skipped} failed={result.failed}"
        )
        return result
    except Exception as e:
        logger.exception(f"Import batch {batch_id} failed during processing")
        repo.rollback()
        _fail_batch(repo, batch_id, org_id, str(e))
        tracker.fail(job_id, str(e))
        raise


def run_import_job(
    session_factory: Callable[[], Session],
    batch_id: str,
    org_id: str,
    user_id: Optional[str],
    content: bytes,
    job_id: str,
    options: Optional[ParseOptions] = None,
) -> None:
    """Background entry point: runs an execution in its own session and never raises."""
    db = session_factory()
    try:
        execute_import_processing(
            ImportRepository(db),
            ImportJobTracker(db),
            batch_id,
            org_id,
            user_id,
            content,
            job_id,
            options,
        )
    except Exception as e:
        logger.error(f"Import job {job_id} for batch {batch_id} did not complete: {e}")
    finally:
        db.close()
