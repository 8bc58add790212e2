"""
Domain types shared by every stage of the client import pipeline.

Rows flow through the pipeline as plain ``Dict[str, Any]`` keyed by source
column until mapping; after mapping they are keyed by ``TargetField``, a closed
set of destination paths, so an unknown target cannot reach the executor.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class TargetField(str, Enum):
    """Destination attribute paths for imported client data."""
    FIRST_NAME = "client.firstName"
    LAST_NAME = "client.lastName"
    PHONE = "client.phone"
    EMAIL = "client.email"
    ADDRESS_STREET = "client.address.street"
    ADDRESS_CITY = "client.address.city"
    ADDRESS_STATE = "client.address.state"
    ADDRESS_ZIP = "client.address.zip"
    INTERNAL_ID = "client.internalId"

    @classmethod
    def from_path(cls, path: str) -> Optional["TargetField"]:
        """Return the field for a dotted path, or None if the path is not a known target."""
        try:
            return cls(path)
        except ValueError:
            return None

    @property
    def key(self) -> str:
        """Last path segment, e.g. ``firstName``."""
        return self.value.rsplit(".", 1)[-1]


class ImportStatus(str, Enum):
    PENDING = "PENDING"
    PARSING = "PARSING"
    MAPPING = "MAPPING"
    READY = "READY"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


class ImportRecordStatus(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


class DuplicateAction(str, Enum):
    SKIP = "SKIP"
    UPDATE = "UPDATE"
    CREATE_NEW = "CREATE_NEW"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MatchType(str, Enum):
    EXACT = "exact"
    NORMALIZED = "normalized"
    FUZZY = "fuzzy"
    PHONETIC = "phonetic"


FileFormat = Literal["CSV", "XLSX", "JSON"]
InferredType = Literal["string", "number", "date", "boolean", "phone", "email", "ssn"]
Severity = Literal["error", "warning"]


# ============================================
# TARGET SCHEMA
# ============================================

class TargetFieldDefinition(BaseModel):
    path: TargetField
    label: str
    type: str = "string"
    required: bool = False


CLIENT_TARGET_FIELDS: List[TargetFieldDefinition] = [
    TargetFieldDefinition(path=TargetField.FIRST_NAME, label="First Name", type="string", required=True),
    TargetFieldDefinition(path=TargetField.LAST_NAME, label="Last Name", type="string", required=True),
    TargetFieldDefinition(path=TargetField.PHONE, label="Phone Number", type="phone", required=True),
    TargetFieldDefinition(path=TargetField.EMAIL, label="Email Address", type="email"),
    TargetFieldDefinition(path=TargetField.ADDRESS_STREET, label="Street Address", type="string"),
    TargetFieldDefinition(path=TargetField.ADDRESS_CITY, label="City", type="string"),
    TargetFieldDefinition(path=TargetField.ADDRESS_STATE, label="State", type="string"),
    TargetFieldDefinition(path=TargetField.ADDRESS_ZIP, label="ZIP Code", type="string"),
    TargetFieldDefinition(path=TargetField.INTERNAL_ID, label="External/Internal ID", type="string"),
]


# ============================================
# FIELD MAPPING
# ============================================

class FieldMapping(BaseModel):
    source_column: str
    target_field: TargetField
    transformer: Optional[str] = None  # e.g. "date:MM/DD/YYYY", "phone"
    required: bool = False
    default_value: Optional[Any] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    ai_suggested: bool = False


class MappingSuggestionOption(BaseModel):
    target_field: TargetField
    confidence: float
    reason: str


class FieldMappingSuggestion(BaseModel):
    source_column: str
    suggestions: List[MappingSuggestionOption] = Field(default_factory=list)
    sample_values: List[str] = Field(default_factory=list)


class MappingResult(BaseModel):
    """Outcome of automatic column mapping; see the two concrete strategies below."""
    strategy: Literal["ai", "rule_based"]
    mappings: List[FieldMapping] = Field(default_factory=list)
    unmapped_columns: List[str] = Field(default_factory=list)
    overall_confidence: float = 0.0
    notes: List[str] = Field(default_factory=list)


class AIMappingResult(MappingResult):
    strategy: Literal["ai"] = "ai"


class RuleBasedMappingResult(MappingResult):
    strategy: Literal["rule_based"] = "rule_based"


# ============================================
# DUPLICATE DETECTION
# ============================================

class MatchFieldRule(BaseModel):
    field: TargetField
    weight: float = Field(gt=0)
    match_type: MatchType = MatchType.EXACT
    case_sensitive: bool = False


class DuplicateSettings(BaseModel):
    enabled: bool = True
    match_fields: List[MatchFieldRule] = Field(default_factory=list)
    threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    default_action: DuplicateAction = DuplicateAction.SKIP


DEFAULT_DUPLICATE_SETTINGS = DuplicateSettings(
    enabled=True,
    match_fields=[
        MatchFieldRule(field=TargetField.FIRST_NAME, weight=0.3, match_type=MatchType.FUZZY),
        MatchFieldRule(field=TargetField.LAST_NAME, weight=0.3, match_type=MatchType.FUZZY),
        MatchFieldRule(field=TargetField.PHONE, weight=0.25, match_type=MatchType.NORMALIZED),
        MatchFieldRule(field=TargetField.EMAIL, weight=0.15, match_type=MatchType.EXACT),
    ],
    threshold=0.8,
    default_action=DuplicateAction.SKIP,
)


class MatchedField(BaseModel):
    field: TargetField
    import_value: str
    existing_value: str
    score: float


class DuplicateMatch(BaseModel):
    client_id: str
    client_name: str
    match_score: float
    matched_fields: List[MatchedField] = Field(default_factory=list)


class DuplicateCheckResult(BaseModel):
    row_number: int
    source_data: Dict[str, Any]
    mapped_data: Dict[TargetField, Any] = Field(default_factory=dict)
    matches: List[DuplicateMatch] = Field(default_factory=list)
    suggested_action: DuplicateAction
    requires_review: bool = False


class DuplicateResolution(BaseModel):
    """Reviewer override for one row: the action to apply and, for updates, which match."""
    action: DuplicateAction
    selected_match_id: Optional[str] = None


# ============================================
# FILE PARSING
# ============================================

class ParseOptions(BaseModel):
    delimiter: str = ","
    sheet_name: Optional[str] = None
    has_headers: bool = True
    encoding: str = "utf-8"
    skip_rows: int = Field(default=0, ge=0)
    max_rows: Optional[int] = Field(default=None, ge=1)

    @field_validator("delimiter")
    @classmethod
    def _single_character(cls, value: str) -> str:
        if len(value) != 1:
            raise ValueError("delimiter must be a single character")
        return value


class ParseError(BaseModel):
    row: Optional[int] = None
    column: Optional[str] = None
    message: str
    severity: Severity = "error"


class ParsedFile(BaseModel):
    file_name: str = ""
    file_format: FileFormat = "CSV"
    total_rows: int = 0
    columns: List[str] = Field(default_factory=list)
    preview: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[ParseError] = Field(default_factory=list)
    # Every accepted row; the executor needs these, API responses do not.
    rows: List[Dict[str, Any]] = Field(default_factory=list, exclude=True)

    @property
    def has_fatal_errors(self) -> bool:
        return any(error.severity == "error" for error in self.errors)


class ColumnAnalysis(BaseModel):
    column: str
    sample_values: List[str] = Field(default_factory=list)
    unique_count: int = 0
    null_count: int = 0
    inferred_type: InferredType = "string"
    patterns: List[str] = Field(default_factory=list)


# ============================================
# PREVIEW / EXECUTION / ROLLBACK
# ============================================

class ImportBatchCreated(BaseModel):
    batch_id: str
    status: ImportStatus
    total_rows: int
    columns: List[str]
    preview: List[Dict[str, Any]]
    suggested_mappings: List[FieldMapping]
    mapping_strategy: Literal["ai", "rule_based"]
    mapping_confidence: float = 0.0
    mapping_notes: List[str] = Field(default_factory=list)
    warnings: List[ParseError] = Field(default_factory=list)


class PreviewRow(BaseModel):
    row_number: int
    source_data: Dict[str, Any]
    mapped_data: Dict[TargetField, Any]
    duplicates: List[DuplicateMatch] = Field(default_factory=list)
    validation_errors: List[str] = Field(default_factory=list)
    validation_warnings: List[str] = Field(default_factory=list)
    suggested_action: Optional[DuplicateAction] = None
    requires_review: bool = False


class PreviewSummary(BaseModel):
    new_records: int = 0
    potential_updates: int = 0
    potential_duplicates: int = 0
    validation_errors: int = 0


class ImportPreview(BaseModel):
    total_rows: int
    columns: List[str]
    rows: List[PreviewRow]
    summary: PreviewSummary


class RowError(BaseModel):
    row_number: int
    message: str


class ImportExecutionResult(BaseModel):
    batch_id: str
    status: ImportStatus
    total_rows: int
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[RowError] = Field(default_factory=list)
    rollback_available_until: Optional[datetime] = None


class RollbackResult(BaseModel):
    success: bool
    batch_id: str
    rolled_back_count: int = 0
    failed_count: int = 0
    errors: List[str] = Field(default_factory=list)
    reason: Optional[Literal["not_found", "not_completed", "window_expired"]] = None
