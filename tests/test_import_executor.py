import json
from unittest.mock import patch

import pytest

from app.core.config import settings as app_settings
from app.db.models import Client, ImportBatch, ImportJob
from app.domain.imports.errors import (
    DuplicateMappingError,
    FileMismatchError,
    FileParseError,
    InvalidBatchStateError,
    MissingRequiredMappingError,
)
from app.domain.imports.executor import (
    client_values,
    create_import_batch,
    execute_import_processing,
    generate_import_preview,
    get_import_batch,
    list_import_batches,
    list_import_records,
    queue_import,
    transition_batch,
    validate_required_mappings,
    validate_row,
)
from app.domain.imports.jobs import get_import_job
from app.domain.imports.models import (
    DEFAULT_DUPLICATE_SETTINGS,
    DuplicateAction,
    DuplicateResolution,
    FieldMapping,
    ImportRecordStatus,
    ImportStatus,
    JobStatus,
    TargetField,
)
from tests.utils.import_helpers import ORG_ID, SAMPLE_CSV, USER_ID, RecordingTracker, failing_llm


def _ready_batch(repo, content=SAMPLE_CSV, default_action=DuplicateAction.UPDATE):
    created = create_import_batch(repo, ORG_ID, USER_ID, "clients.csv", content, llm=failing_llm)
    settings = DEFAULT_DUPLICATE_SETTINGS.model_copy(update={"default_action": default_action})
    preview = generate_import_preview(repo, created.batch_id, ORG_ID, created.suggested_mappings, settings)
    return created, preview


def test_create_import_batch_parses_and_suggests_mappings(repo):
    created = create_import_batch(repo, ORG_ID, USER_ID, "clients.csv", SAMPLE_CSV, llm=failing_llm)

    assert created.status == ImportStatus.MAPPING
    assert created.total_rows == 3
    assert created.columns == ["first", "last", "phone", "email"]
    assert created.mapping_strategy == "rule_based"
    assert {m.target_field for m in created.suggested_mappings} == {
        TargetField.FIRST_NAME,
        TargetField.LAST_NAME,
        TargetField.PHONE,
        TargetField.EMAIL,
    }

    batch = get_import_batch(repo, created.batch_id, ORG_ID)
    assert batch.file_format == "CSV"
    assert batch.file_hash
    assert len(batch.preview_rows) == 3


def test_create_import_batch_with_unreadable_file_fails_batch(repo):
    with pytest.raises(FileParseError) as exc_info:
        create_import_batch(repo, ORG_ID, USER_ID, "empty.csv", b"", llm=failing_llm)

    batch = get_import_batch(repo, exc_info.value.batch_id, ORG_ID)
    assert batch.status == ImportStatus.FAILED
    assert batch.error_message == "File is empty"
    assert batch.errors[0]["severity"] == "error"


def test_batches_are_scoped_to_their_organization(repo):
    created = create_import_batch(repo, ORG_ID, USER_ID, "clients.csv", SAMPLE_CSV, llm=failing_llm)

    batches, total = list_import_batches(repo, ORG_ID)
    assert total == 1
    assert batches[0].id == created.batch_id
    assert list_import_batches(repo, "another-org") == ([], 0)


def test_preview_summarizes_rows(repo, existing_client):
    _, preview = _ready_batch(repo)

    assert preview.summary.new_records == 1
    assert preview.summary.potential_updates == 1
    assert preview.summary.potential_duplicates == 1
    assert preview.summary.validation_errors == 1

    invalid = preview.rows[2]
    assert invalid.validation_errors == ["Missing required field(s): Phone Number"]
    assert invalid.suggested_action is None
    assert invalid.duplicates == []

    update = preview.rows[1]
    assert update.duplicates[0].client_id == existing_client.id
    assert update.suggested_action == DuplicateAction.UPDATE
    assert update.requires_review is False


def test_preview_does_not_write_clients(repo, db, existing_client):
    _ready_batch(repo)

    assert db.query(Client).count() == 1


def test_preview_can_be_repeated_on_ready_batch(repo):
    created, _ = _ready_batch(repo)

    generate_import_preview(repo, created.batch_id, ORG_ID, created.suggested_mappings)

    assert get_import_batch(repo, created.batch_id, ORG_ID).status == ImportStatus.READY


def test_end_to_end_import(repo, db, existing_client):
    created, _ = _ready_batch(repo)
    queued = queue_import(repo, created.batch_id, ORG_ID, USER_ID)
    tracker = RecordingTracker()

    result = execute_import_processing(repo, tracker, created.batch_id, ORG_ID, USER_ID, SAMPLE_CSV, queued["job_id"])

    assert (result.created, result.updated, result.skipped, result.failed) == (1, 1, 0, 1)
    assert result.status == ImportStatus.COMPLETED
    assert result.errors[0].row_number == 3
    assert result.rollback_available_until is not None

    records, total = list_import_records(repo, created.batch_id, ORG_ID)
    assert total == 3
    assert [r.status for r in records] == [
        ImportRecordStatus.CREATED,
        ImportRecordStatus.UPDATED,
        ImportRecordStatus.FAILED,
    ]
    assert records[1].updated_client_id == existing_client.id
    assert records[2].validation_errors == ["Missing required field(s): Phone Number"]

    created_client = db.query(Client).filter(Client.id == records[0].created_client_id).one()
    assert created_client.full_name == "John Smith"
    assert created_client.created_by == USER_ID
    db.refresh(existing_client)
    assert existing_client.email == "maria@example.com"

    batch = get_import_batch(repo, created.batch_id, ORG_ID)
    assert batch.status == ImportStatus.COMPLETED
    assert (batch.created_count, batch.updated_count, batch.skipped_count, batch.failed_count) == (1, 1, 0, 1)


def test_progress_is_reported_in_order(repo, existing_client):
    created, _ = _ready_batch(repo)
    queued = queue_import(repo, created.batch_id, ORG_ID, USER_ID)
    tracker = RecordingTracker()

    execute_import_processing(repo, tracker, created.batch_id, ORG_ID, USER_ID, SAMPLE_CSV, queued["job_id"])

    assert tracker.updates[:3] == [5, 20, 40]
    assert tracker.updates[-1] == 95
    assert tracker.updates == sorted(tracker.updates)
    assert tracker.completed["created"] == 1
    assert tracker.failed is None


def test_job_row_tracks_execution(db, run_import, existing_client):
    batch_id, _ = run_import()

    job = db.query(ImportJob).filter(ImportJob.batch_id == batch_id).one()
    tracked = get_import_job(db, job.id, ORG_ID)
    assert tracked["status"] == JobStatus.SUCCEEDED.value
    assert tracked["progress"] == 100
    assert tracked["result"]["updated"] == 1
    assert get_import_job(db, job.id, "another-org") is None


def test_resolutions_override_suggested_action(repo, run_import, existing_client):
    _, result = run_import(resolutions={2: DuplicateResolution(action=DuplicateAction.SKIP)})

    assert (result.created, result.updated, result.skipped, result.failed) == (1, 0, 1, 1)


def test_create_new_resolution_creates_within_batch_duplicate(repo, db, run_import, existing_client):
    _, result = run_import(resolutions={2: DuplicateResolution(action=DuplicateAction.CREATE_NEW)})

    assert result.created == 2
    assert db.query(Client).filter(Client.first_name == "Maria").count() == 2


def test_update_with_unknown_selected_match_is_skipped(repo, run_import, existing_client):
    resolution = DuplicateResolution(action=DuplicateAction.UPDATE, selected_match_id="no-such-client")

    _, result = run_import(resolutions={2: resolution})

    assert result.updated == 0
    assert result.skipped == 1


def test_execute_rejects_a_different_file(repo, existing_client):
    created, _ = _ready_batch(repo)
    queued = queue_import(repo, created.batch_id, ORG_ID, USER_ID)
    tracker = RecordingTracker()

    with pytest.raises(FileMismatchError):
        execute_import_processing(
            repo, tracker, created.batch_id, ORG_ID, USER_ID, SAMPLE_CSV + b"Eve,Doe,5550000000,\n", queued["job_id"]
        )

    assert tracker.failed
    assert tracker.updates == []
    assert get_import_batch(repo, created.batch_id, ORG_ID).status == ImportStatus.READY


def test_execute_requires_ready_batch(repo):
    created = create_import_batch(repo, ORG_ID, USER_ID, "clients.csv", SAMPLE_CSV, llm=failing_llm)
    tracker = RecordingTracker()

    with pytest.raises(InvalidBatchStateError):
        execute_import_processing(repo, tracker, created.batch_id, ORG_ID, USER_ID, SAMPLE_CSV, "job-x")

    assert get_import_batch(repo, created.batch_id, ORG_ID).status == ImportStatus.MAPPING


def test_queue_requires_ready_batch(repo):
    created = create_import_batch(repo, ORG_ID, USER_ID, "clients.csv", SAMPLE_CSV, llm=failing_llm)

    with pytest.raises(InvalidBatchStateError):
        queue_import(repo, created.batch_id, ORG_ID, USER_ID)


def test_queue_rejects_mappings_without_required_fields(repo):
    created, _ = _ready_batch(repo)
    mappings = [m for m in created.suggested_mappings if m.target_field != TargetField.PHONE]

    with pytest.raises(MissingRequiredMappingError) as exc_info:
        queue_import(repo, created.batch_id, ORG_ID, USER_ID, mappings=mappings)

    assert exc_info.value.missing == [TargetField.PHONE]


def test_create_import_batch_survives_non_string_columns_in_model_reply(repo):
    reply = json.dumps({
        "mappings": [{"sourceColumn": ["first"], "targetField": "client.firstName", "confidence": 0.9}],
    })

    created = create_import_batch(repo, ORG_ID, USER_ID, "clients.csv", SAMPLE_CSV, llm=lambda prompt: reply)

    assert created.status == ImportStatus.MAPPING
    assert created.suggested_mappings == []
    assert get_import_batch(repo, created.batch_id, ORG_ID).status == ImportStatus.MAPPING


def test_create_import_batch_marks_batch_failed_on_unexpected_error(repo):
    with patch("app.domain.imports.executor.generate_mappings", side_effect=RuntimeError("mapper crashed")):
        with pytest.raises(RuntimeError):
            create_import_batch(repo, ORG_ID, USER_ID, "clients.csv", SAMPLE_CSV, llm=failing_llm)

    batches, total = list_import_batches(repo, ORG_ID)
    assert total == 1
    assert batches[0].status == ImportStatus.FAILED
    assert batches[0].error_message == "mapper crashed"


def test_preview_limit_follows_settings(repo, monkeypatch):
    monkeypatch.setattr(app_settings, "preview_row_limit", 2)

    created = create_import_batch(repo, ORG_ID, USER_ID, "clients.csv", SAMPLE_CSV, llm=failing_llm)

    assert created.total_rows == 3
    assert len(created.preview) == 2
    assert len(get_import_batch(repo, created.batch_id, ORG_ID).preview_rows) == 2


def test_preview_rejects_two_columns_on_one_target(repo):
    created = create_import_batch(repo, ORG_ID, USER_ID, "clients.csv", SAMPLE_CSV, llm=failing_llm)
    mappings = created.suggested_mappings + [
        FieldMapping(source_column="email", target_field=TargetField.FIRST_NAME),
    ]

    with pytest.raises(DuplicateMappingError) as exc_info:
        generate_import_preview(repo, created.batch_id, ORG_ID, mappings)

    assert exc_info.value.targets == [TargetField.FIRST_NAME]
    assert exc_info.value.columns == ["email"]
    batch = get_import_batch(repo, created.batch_id, ORG_ID)
    assert batch.status == ImportStatus.MAPPING
    assert batch.field_mappings is None


def test_queue_rejects_one_column_on_two_targets(repo):
    created, _ = _ready_batch(repo)
    mappings = created.suggested_mappings + [
        FieldMapping(source_column="first", target_field=TargetField.INTERNAL_ID),
    ]

    with pytest.raises(DuplicateMappingError) as exc_info:
        queue_import(repo, created.batch_id, ORG_ID, USER_ID, mappings=mappings)

    assert exc_info.value.columns == ["first"]
    assert exc_info.value.targets == []
    batch = get_import_batch(repo, created.batch_id, ORG_ID)
    assert len(batch.field_mappings) == len(created.suggested_mappings)


def test_failing_row_does_not_stop_the_batch(repo, run_import):
    original_create = repo.create_client

    def flaky_create(org_id, values, created_by=None):
        if values["first_name"] == "John":
            raise RuntimeError("write rejected")
        return original_create(org_id, values, created_by)

    with patch.object(repo, "create_client", side_effect=flaky_create):
        batch_id, result = run_import()

    assert (result.created, result.failed) == (1, 2)
    records, _ = list_import_records(repo, batch_id, ORG_ID, status=ImportRecordStatus.FAILED)
    assert records[0].row_number == 1
    assert records[0].validation_errors == ["write rejected"]


def test_unexpected_error_marks_batch_failed(repo):
    created, _ = _ready_batch(repo)
    queued = queue_import(repo, created.batch_id, ORG_ID, USER_ID)
    tracker = RecordingTracker()

    with patch("app.domain.imports.executor.load_candidates", side_effect=RuntimeError("database went away")):
        with pytest.raises(RuntimeError):
            execute_import_processing(repo, tracker, created.batch_id, ORG_ID, USER_ID, SAMPLE_CSV, queued["job_id"])

    batch = get_import_batch(repo, created.batch_id, ORG_ID)
    assert batch.status == ImportStatus.FAILED
    assert batch.error_message == "database went away"
    assert tracker.failed == "database went away"


def test_transition_batch_enforces_lifecycle():
    batch = ImportBatch(id="b1", org_id=ORG_ID, file_name="x.csv", status=ImportStatus.READY)

    transition_batch(batch, ImportStatus.READY)
    with pytest.raises(InvalidBatchStateError):
        transition_batch(batch, ImportStatus.MAPPING)

    batch.status = ImportStatus.COMPLETED
    with pytest.raises(InvalidBatchStateError):
        transition_batch(batch, ImportStatus.FAILED)

    batch.status = ImportStatus.PARSING
    transition_batch(batch, ImportStatus.FAILED)
    assert batch.status == ImportStatus.FAILED


def test_validate_row_errors_and_warnings():
    mappings = [FieldMapping(source_column="email", target_field=TargetField.EMAIL, required=True)]
    mapped = {
        TargetField.FIRST_NAME: "John",
        TargetField.LAST_NAME: "",
        TargetField.PHONE: "12",
        TargetField.EMAIL: "",
    }

    errors, warnings = validate_row(mapped, mappings)

    assert errors == ["Missing required field(s): Last Name, Email Address"]
    assert warnings == ["Phone Number: invalid phone number '12'"]


def test_validate_required_mappings_accepts_complete_set():
    mappings = [
        FieldMapping(source_column="a", target_field=TargetField.FIRST_NAME),
        FieldMapping(source_column="b", target_field=TargetField.LAST_NAME),
        FieldMapping(source_column="c", target_field=TargetField.PHONE),
    ]

    validate_required_mappings(mappings)


def test_client_values_builds_address():
    values = client_values({
        TargetField.FIRST_NAME: "John",
        TargetField.LAST_NAME: "Smith",
        TargetField.PHONE: 5551234567,
        TargetField.ADDRESS_CITY: "Portland",
    })

    assert values["phone"] == "5551234567"
    assert values["address"] == {"street": None, "city": "Portland", "state": None, "zip": None}
    assert client_values({TargetField.FIRST_NAME: "A"})["address"] is None
