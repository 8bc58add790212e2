"""
Pytest configuration and fixtures for the client import tests.

Every test gets a fresh in-memory SQLite database with the import tables
created through ``init_db``; nothing touches the configured DATABASE_URL.
"""

import os

# The API lifespan must not try to reach the configured database.
os.environ["SKIP_DB_INIT"] = "1"

from typing import Callable, Dict, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.session import init_db
from app.domain.imports.executor import create_import_batch, execute_import_processing, generate_import_preview, queue_import
from app.domain.imports.jobs import ImportJobTracker
from app.domain.imports.models import DEFAULT_DUPLICATE_SETTINGS, DuplicateAction, DuplicateResolution
from app.domain.imports.repository import ImportRepository

from tests.utils.import_helpers import ORG_ID, SAMPLE_CSV, USER_ID, failing_llm


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repo(db):
    return ImportRepository(db)


@pytest.fixture
def org_id():
    return ORG_ID


@pytest.fixture
def existing_client(repo):
    """Active client that the second SAMPLE_CSV row matches exactly."""
    client = repo.create_client(
        ORG_ID,
        {"first_name": "Maria", "last_name": "Gonzalez", "phone": "5551234567"},
        created_by="seed",
    )
    repo.commit()
    return client


@pytest.fixture
def run_import(repo, db) -> Callable:
    """
    Drive a file through upload, preview, queue and execution.

    Returns ``(batch_id, result)``.
    """

    def _run(
        content: bytes = SAMPLE_CSV,
        file_name: str = "clients.csv",
        default_action: DuplicateAction = DuplicateAction.UPDATE,
        resolutions: Optional[Dict[int, DuplicateResolution]] = None,
    ):
        created = create_import_batch(repo, ORG_ID, USER_ID, file_name, content, llm=failing_llm)
        settings = DEFAULT_DUPLICATE_SETTINGS.model_copy(update={"default_action": default_action})
        generate_import_preview(repo, created.batch_id, ORG_ID, created.suggested_mappings, settings)
        queued = queue_import(repo, created.batch_id, ORG_ID, USER_ID, resolutions=resolutions)
        result = execute_import_processing(
            repo,
            ImportJobTracker(db),
            created.batch_id,
            ORG_ID,
            USER_ID,
            content,
            queued["job_id"],
        )
        return created.batch_id, result

    return _run
