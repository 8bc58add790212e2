"""
Duplicate detection for imported client rows.

Each mapped row is scored against a snapshot of the organization's active
clients using weighted per-field similarity. The snapshot is taken once per
phase (preview or execution); rows created during the same execution are not
part of it.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.core.config import settings as app_settings
from app.db.models import Client
from app.domain.imports.models import (
    DEFAULT_DUPLICATE_SETTINGS,
    DuplicateAction,
    DuplicateCheckResult,
    DuplicateMatch,
    DuplicateSettings,
    FieldMapping,
    MatchedField,
    MatchFieldRule,
    TargetField,
)
from app.domain.imports.repository import ImportRepository
from app.domain.imports.similarity import field_match_score
from app.domain.imports.transformers import map_record_data

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE_SCORE = 0.95
REVIEW_SCORE = 0.80
MATCHED_FIELD_MIN_SCORE = 0.5

SourceRow = Tuple[int, Dict[str, Any]]


@dataclass(frozen=True)
class ExistingClient:
    """Read-only view of an active client used for matching."""
    id: str
    first_name: str
    last_name: str
    phone: str
    email: Optional[str] = None
    internal_id: Optional[str] = None
    address: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, client: Client) -> "ExistingClient":
        return cls(
            id=client.id,
            first_name=client.first_name or "",
            last_name=client.last_name or "",
            phone=client.phone or "",
            email=client.email,
            internal_id=client.internal_id,
            address=dict(client.address or {}),
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def value_for(self, target: TargetField) -> Optional[str]:
        if target == TargetField.FIRST_NAME:
            value = self.first_name
        elif target == TargetField.LAST_NAME:
            value = self.last_name
        elif target == TargetField.PHONE:
            value = self.phone
        elif target == TargetField.EMAIL:
            value = self.email
        elif target == TargetField.INTERNAL_ID:
            value = self.internal_id
        else:
            value = self.address.get(target.key)
        return str(value) if value not in (None, "") else None


def load_candidates(repo: ImportRepository, org_id: str) -> List[ExistingClient]:
    """Snapshot of the organization's active clients."""
    candidates = [ExistingClient.from_model(client) for client in repo.active_clients(org_id)]
    logger.debug(f"Loaded {len(candidates)} duplicate candidates for org {org_id}")
    return candidates


def _import_value(mapped: Dict[TargetField, Any], target: TargetField) -> Optional[str]:
    value = mapped.get(target)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def calculate_match_score(
    mapped: Dict[TargetField, Any],
    candidate: ExistingClient,
    rules: List[MatchFieldRule],
) -> Tuple[float, List[MatchedField]]:
    """
    Weighted average of per-field scores over the rules both sides have a value for.

    Returns 0 when no rule could be evaluated.
    """
    total_weight = 0.0
    weighted = 0.0
    matched_fields: List[MatchedField] = []

    for rule in rules:
        import_value = _import_value(mapped, rule.field)
        existing_value = candidate.value_for(rule.field)
        if not import_value or not existing_value:
            continue

        score = field_match_score(import_value, existing_value, rule.match_type, rule.case_sensitive)
        total_weight += rule.weight
        weighted += score * rule.weight

        if score > MATCHED_FIELD_MIN_SCORE:
            matched_fields.append(MatchedField(
                field=rule.field,
                import_value=import_value,
                existing_value=existing_value,
                score=score,
            ))

    if total_weight == 0:
        return 0.0, matched_fields
    return weighted / total_weight, matched_fields


def find_matches(
    mapped: Dict[TargetField, Any],
    candidates: Iterable[ExistingClient],
    settings: DuplicateSettings,
    limit: Optional[int] = None,
) -> List[DuplicateMatch]:
    """Candidates scoring at or above the threshold, best first (ties keep snapshot order)."""
    limit = limit or app_settings.max_duplicate_matches
    matches: List[DuplicateMatch] = []

    for candidate in candidates:
        score, matched_fields = calculate_match_score(mapped, candidate, settings.match_fields)
        if score >= settings.threshold:
            matches.append(DuplicateMatch(
                client_id=candidate.id,
                client_name=candidate.full_name,
                match_score=score,
                matched_fields=matched_fields,
            ))

    matches.sort(key=lambda match: match.match_score, reverse=True)
    return matches[:limit]


def determine_action(matches: List[DuplicateMatch], settings: DuplicateSettings) -> Tuple[DuplicateAction, bool]:
    """Suggested action for a row and whether a reviewer should confirm it."""
    if not matches:
        return DuplicateAction.CREATE_NEW, False

    top_score = matches[0].match_score
    if top_score >= HIGH_CONFIDENCE_SCORE:
        return settings.default_action, False
    if top_score >= REVIEW_SCORE:
        return settings.default_action, True
    return DuplicateAction.CREATE_NEW, True


def check_single_record(
    source_data: Dict[str, Any],
    mappings: List[FieldMapping],
    candidates: List[ExistingClient],
    settings: DuplicateSettings = DEFAULT_DUPLICATE_SETTINGS,
    row_number: int = 0,
    mapped: Optional[Dict[TargetField, Any]] = None,
) -> DuplicateCheckResult:
    if mapped is None:
        mapped = map_record_data(source_data, mappings)

    if not settings.enabled:
        return DuplicateCheckResult(
            row_number=row_number,
            source_data=source_data,
            mapped_data=mapped,
            suggested_action=DuplicateAction.CREATE_NEW,
            requires_review=False,
        )

    matches = find_matches(mapped, candidates, settings)
    action, requires_review = determine_action(matches, settings)
    return DuplicateCheckResult(
        row_number=row_number,
        source_data=source_data,
        mapped_data=mapped,
        matches=matches,
        suggested_action=action,
        requires_review=requires_review,
    )


def check_for_duplicates(
    records: Iterable[SourceRow],
    mappings: List[FieldMapping],
    candidates: List[ExistingClient],
    settings: DuplicateSettings = DEFAULT_DUPLICATE_SETTINGS,
) -> List[DuplicateCheckResult]:
    """Run detection for every ``(row_number, source_data)`` pair against one snapshot."""
    return [
        check_single_record(source_data, mappings, candidates, settings, row_number=row_number)
        for row_number, source_data in records
    ]


def get_duplicate_summary(results: List[DuplicateCheckResult]) -> Dict[str, Any]:
    by_action = {action.value: 0 for action in DuplicateAction}
    with_matches = 0
    requires_review = 0

    for result in results:
        if result.matches:
            with_matches += 1
        if result.requires_review:
            requires_review += 1
        by_action[result.suggested_action.value] += 1

    return {
        "total_records": len(results),
        "with_matches": with_matches,
        "requires_review": requires_review,
        "by_action": by_action,
    }
