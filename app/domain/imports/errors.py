"""
Exceptions raised by the import pipeline.

Row-level problems (parse warnings, validation failures, failed writes) are not
exceptions: they are recorded on the batch and its records. These classes cover
the failures a caller has to react to.
"""
from typing import Iterable, List, Optional

from app.domain.imports.models import ImportStatus, ParseError, TargetField


class ImportPipelineError(Exception):
    """Base class for import pipeline failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class FileParseError(ImportPipelineError):
    """The uploaded file could not be ingested at all (empty, corrupt, wrong shape)."""

    def __init__(self, errors: Iterable[ParseError], file_name: Optional[str] = None, batch_id: Optional[str] = None):
        self.errors: List[ParseError] = list(errors)
        self.file_name = file_name
        self.batch_id = batch_id
        fatal = [error.message for error in self.errors if error.severity == "error"]
        super().__init__("; ".join(fatal) or "File could not be parsed")


class BatchNotFoundError(ImportPipelineError):
    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Import batch '{batch_id}' not found")


class InvalidBatchStateError(ImportPipelineError):
    """Requested operation or status change is not allowed from the batch's current status."""

    def __init__(self, batch_id: str, current: ImportStatus, requested: Optional[ImportStatus] = None, message: Optional[str] = None):
        self.batch_id = batch_id
        self.current = current
        self.requested = requested
        if message is None:
            if requested is not None:
                message = f"Import batch '{batch_id}' cannot move from {current.value} to {requested.value}"
            else:
                message = f"Import batch '{batch_id}' is {current.value}"
        super().__init__(message)


class MissingRequiredMappingError(ImportPipelineError):
    def __init__(self, missing: Iterable[TargetField]):
        self.missing: List[TargetField] = list(missing)
        fields = ", ".join(field.value for field in self.missing)
        super().__init__(f"Required target fields are not mapped: {fields}")


class FileMismatchError(ImportPipelineError):
    """The file supplied for execution is not the file the batch was created from."""

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Uploaded file does not match the file originally parsed for batch '{batch_id}'")


class AIMappingError(ImportPipelineError):
    """The text-generation call failed or returned something unusable; callers fall back to rules."""


class DuplicateMappingError(ImportPipelineError):
    """A target field or a source column appears in more than one mapping."""

    def __init__(self, targets: Iterable[TargetField] = (), columns: Iterable[str] = ()):
        self.targets: List[TargetField] = list(targets)
        self.columns: List[str] = list(columns)
        problems = []
        if self.targets:
            problems.append(f"target fields mapped more than once: {', '.join(t.value for t in self.targets)}")
        if self.columns:
            problems.append(f"source columns mapped more than once: {', '.join(self.columns)}")
        super().__init__("Invalid field mappings; " + "; ".join(problems))
