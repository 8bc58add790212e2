"""
Shared dependencies for the API routers.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.domain.imports.field_mapper import TextModel
from app.domain.imports.llm_client import invoke_text_model
from app.domain.imports.repository import ImportRepository


@dataclass
class RequestContext:
    """Caller identity taken from request headers."""
    org_id: str
    user_id: Optional[str] = None


def get_request_context(
    x_org_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> RequestContext:
    if not x_org_id:
        raise HTTPException(status_code=400, detail="X-Org-Id header is required")
    return RequestContext(org_id=x_org_id, user_id=x_user_id)


def get_import_repository(db: Session = Depends(get_db)) -> ImportRepository:
    return ImportRepository(db)


def get_text_model() -> TextModel:
    """Text model used for AI field mapping; overridden in tests."""
    return invoke_text_model
