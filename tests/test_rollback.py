from datetime import datetime, timedelta, timezone

from app.db.models import Client, ImportBatch
from app.domain.imports.executor import create_import_batch, get_import_batch, list_import_records
from app.domain.imports.models import ImportRecordStatus, ImportStatus
from app.domain.imports.rollback import can_rollback, rollback_import
from tests.utils.import_helpers import ORG_ID, SAMPLE_CSV, USER_ID, failing_llm

TWO_NEW_CLIENTS = (
    b"first,last,phone\n"
    b"John,Smith,5559876543\n"
    b"Ann,Lee,5552223333\n"
)


def _active_clients(db):
    return db.query(Client).filter(Client.deleted_at.is_(None)).all()


def test_rollback_soft_deletes_created_clients_only(repo, db, run_import, existing_client):
    batch_id, result = run_import()
    assert (result.created, result.updated) == (1, 1)

    rollback = rollback_import(repo, batch_id, ORG_ID)

    assert rollback.success is True
    assert rollback.rolled_back_count == 1
    assert rollback.failed_count == 0
    assert [client.id for client in _active_clients(db)] == [existing_client.id]

    records, _ = list_import_records(repo, batch_id, ORG_ID)
    assert [r.status for r in records] == [
        ImportRecordStatus.ROLLED_BACK,
        ImportRecordStatus.UPDATED,
        ImportRecordStatus.FAILED,
    ]

    batch = get_import_batch(repo, batch_id, ORG_ID)
    assert batch.status == ImportStatus.ROLLED_BACK
    assert batch.rollback_executed_at is not None


def test_second_rollback_is_refused(repo, db, run_import):
    batch_id, _ = run_import(TWO_NEW_CLIENTS)
    assert rollback_import(repo, batch_id, ORG_ID).rolled_back_count == 2
    deleted_at = {client.id: client.deleted_at for client in db.query(Client).all()}

    again = rollback_import(repo, batch_id, ORG_ID)

    assert again.success is False
    assert again.reason == "not_completed"
    assert again.errors == ["Can only rollback completed imports"]
    assert {client.id: client.deleted_at for client in db.query(Client).all()} == deleted_at


def test_rollback_after_window_is_refused(repo, db, run_import):
    batch_id, _ = run_import(TWO_NEW_CLIENTS)
    later = datetime.now(timezone.utc) + timedelta(hours=25)

    result = rollback_import(repo, batch_id, ORG_ID, now=later)

    assert result.success is False
    assert result.reason == "window_expired"
    assert result.errors == ["Rollback window has expired"]
    assert len(_active_clients(db)) == 2
    assert get_import_batch(repo, batch_id, ORG_ID).status == ImportStatus.COMPLETED


def test_rollback_inside_window_with_explicit_clock(repo, run_import):
    batch_id, _ = run_import(TWO_NEW_CLIENTS)
    almost = datetime.now(timezone.utc) + timedelta(hours=23)

    assert rollback_import(repo, batch_id, ORG_ID, now=almost).success is True


def test_rollback_unknown_batch(repo):
    result = rollback_import(repo, "missing", ORG_ID)

    assert result.success is False
    assert result.reason == "not_found"


def test_rollback_of_other_org_batch_is_not_found(repo, run_import):
    batch_id, _ = run_import(TWO_NEW_CLIENTS)

    assert rollback_import(repo, batch_id, "another-org").reason == "not_found"


def test_rollback_reports_rows_that_cannot_be_reverted(repo, db, run_import):
    batch_id, _ = run_import(TWO_NEW_CLIENTS)
    records, _ = list_import_records(repo, batch_id, ORG_ID)
    repo.soft_delete_client(records[0].created_client_id, ORG_ID)
    repo.commit()

    result = rollback_import(repo, batch_id, ORG_ID)

    assert result.success is False
    assert result.rolled_back_count == 1
    assert result.failed_count == 1
    assert result.errors[0].startswith("Failed to rollback row 1:")
    assert get_import_batch(repo, batch_id, ORG_ID).status == ImportStatus.ROLLED_BACK

    records, _ = list_import_records(repo, batch_id, ORG_ID)
    assert [r.status for r in records] == [ImportRecordStatus.CREATED, ImportRecordStatus.ROLLED_BACK]


def test_can_rollback_requires_completed_batch(repo):
    created = create_import_batch(repo, ORG_ID, USER_ID, "clients.csv", SAMPLE_CSV, llm=failing_llm)
    batch = get_import_batch(repo, created.batch_id, ORG_ID)

    assert can_rollback(batch) == (False, "not_completed")


def test_can_rollback_accepts_naive_timestamps():
    deadline = datetime(2030, 1, 1, 12, 0)
    batch = ImportBatch(id="b1", status=ImportStatus.COMPLETED, rollback_available_until=deadline)

    assert can_rollback(batch, now=datetime(2030, 1, 1, 11, 0, tzinfo=timezone.utc)) == (True, None)
    assert can_rollback(batch, now=datetime(2030, 1, 1, 13, 0, tzinfo=timezone.utc)) == (False, "window_expired")
