"""
Column-to-target field mapping.

The preferred strategy asks a text model to map file columns onto the client
target schema. When the model is unavailable or replies with something that
cannot be used, a rule-based alias matcher takes over so a batch always gets
suggested mappings.
"""

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from app.domain.imports.column_analyzer import analyze_columns
from app.domain.imports.errors import AIMappingError
from app.domain.imports.llm_client import invoke_text_model
from app.domain.imports.models import (
    CLIENT_TARGET_FIELDS,
    AIMappingResult,
    ColumnAnalysis,
    FieldMapping,
    FieldMappingSuggestion,
    MappingResult,
    MappingSuggestionOption,
    RuleBasedMappingResult,
    TargetField,
    TargetFieldDefinition,
)

logger = logging.getLogger(__name__)

TextModel = Callable[[str], str]

RULE_BASED_CONFIDENCE = 0.7
DEFAULT_AI_CONFIDENCE = 0.5
PROMPT_SAMPLE_LIMIT = 3
MAX_SUGGESTIONS = 3
MIN_SUGGESTION_SCORE = 0.2

# Aliases are stored already normalized (see normalize_column_name).
COLUMN_ALIASES: Dict[TargetField, List[str]] = {
    TargetField.FIRST_NAME: ["firstname", "first", "fname", "givenname"],
    TargetField.LAST_NAME: ["lastname", "last", "lname", "surname", "familyname"],
    TargetField.PHONE: ["phone", "telephone", "mobile", "cell", "phonenumber", "contactphone"],
    TargetField.EMAIL: ["email", "emailaddress"],
    TargetField.ADDRESS_STREET: ["street", "address", "address1", "streetaddress", "addressline1"],
    TargetField.ADDRESS_CITY: ["city", "town"],
    TargetField.ADDRESS_STATE: ["state", "province", "region"],
    TargetField.ADDRESS_ZIP: ["zip", "zipcode", "postal", "postalcode", "postcode"],
    TargetField.INTERNAL_ID: ["id", "clientid", "participantid", "externalid", "internalid"],
}

# Keyed by the last segment of the target path.
ABBREVIATIONS: Dict[str, List[str]] = {
    "phone": ["tel", "ph", "cell", "mobile"],
    "email": ["mail"],
    "firstName": ["fname", "first", "given"],
    "lastName": ["lname", "last", "surname"],
    "street": ["addr", "street", "line1"],
    "city": ["town", "municipality"],
    "state": ["st", "province", "region"],
    "zip": ["postal", "postcode", "zipcode"],
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def normalize_column_name(name: str) -> str:
    """``"First Name"`` / ``"first_name"`` / ``"FIRST-NAME"`` -> ``"firstname"``."""
    return _NON_ALNUM.sub("", str(name).lower())


def _required_targets(target_fields: List[TargetFieldDefinition]) -> Dict[TargetField, bool]:
    return {definition.path: definition.required for definition in target_fields}


# ============================================
# AI MAPPING
# ============================================

def build_mapping_prompt(
    columns: List[str],
    column_analysis: Dict[str, ColumnAnalysis],
    target_fields: List[TargetFieldDefinition],
    source_system: Optional[str] = None,
) -> str:
    target_lines = "\n".join(
        f"- {field.path.value}: {field.label} ({field.type}{', required' if field.required else ''})"
        for field in target_fields
    )

    column_lines = []
    for column in columns:
        analysis = column_analysis.get(column)
        samples = ", ".join(analysis.sample_values[:PROMPT_SAMPLE_LIMIT]) if analysis else ""
        inferred = analysis.inferred_type if analysis else "string"
        column_lines.append(f'- "{column}" [{inferred}]: samples: {samples}')

    column_text = "\n".join(column_lines)
    source_line = f"Source System: {source_system}\n\n" if source_system else ""

    return f"""You are a data mapping expert. Map import file columns to target database fields.

{source_line}**Import File Columns:**
{column_text}

**Target Fields:**
{target_lines}

**Instructions:**
1. Match each import column to the most appropriate target field
2. Consider column names, sample values, and data types
3. If no good match exists, leave the column unmapped
4. Map each target field at most once
5. For each mapping, provide a confidence score (0-1)

**Response Format (JSON):**
{{
  "mappings": [
    {{
      "sourceColumn": "column_name",
      "targetField": "target.path",
      "confidence": 0.95,
      "reason": "brief explanation"
    }}
  ],
  "unmappedColumns": ["col1", "col2"],
  "notes": ["any additional notes"]
}}

Only output valid JSON, no other text."""


def _coerce_confidence(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_AI_CONFIDENCE
    if value != value:  # NaN
        return DEFAULT_AI_CONFIDENCE
    return min(max(value, 0.0), 1.0)


def parse_ai_response(
    response_text: str,
    columns: List[str],
    target_fields: List[TargetFieldDefinition] = CLIENT_TARGET_FIELDS,
) -> AIMappingResult:
    """
    Turn the model's reply into validated mappings.

    Mappings that name an unknown target, a column the file does not have, or a
    target/column that was already mapped are dropped.

    Raises:
        AIMappingError: if the reply is empty or not a JSON object
    """
    text = (response_text or "").strip()
    if not text:
        raise AIMappingError("Text model returned an empty response")
    text = _CODE_FENCE.sub("", text).strip()

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise AIMappingError(f"Could not parse mapping response as JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise AIMappingError("Mapping response is not a JSON object")

    raw_mappings = parsed.get("mappings") or []
    if not isinstance(raw_mappings, list):
        raise AIMappingError("Mapping response 'mappings' is not a list")

    required = _required_targets(target_fields)
    known_columns = set(columns)
    used_targets = set()
    used_columns = set()
    mappings: List[FieldMapping] = []

    for item in raw_mappings:
        if not isinstance(item, dict):
            continue
        source_column = item.get("sourceColumn")
        if not isinstance(source_column, str):
            logger.info(f"Discarding AI mapping with non-string source column: {source_column!r}")
            continue
        target = TargetField.from_path(str(item.get("targetField", "")))

        if target is None or target not in required:
            logger.info(f"Discarding AI mapping to unknown target field: {item.get('targetField')}")
            continue
        if source_column not in known_columns:
            logger.info(f"Discarding AI mapping for unknown column: {source_column}")
            continue
        if target in used_targets or source_column in used_columns:
            continue

        used_targets.add(target)
        used_columns.add(source_column)
        confidence = item.get("confidence")
        mappings.append(FieldMapping(
            source_column=source_column,
            target_field=target,
            required=required[target],
            confidence=DEFAULT_AI_CONFIDENCE if confidence is None else _coerce_confidence(confidence),
            ai_suggested=True,
        ))

    overall = sum(m.confidence for m in mappings) / len(mappings) if mappings else 0.0
    notes = parsed.get("notes") or []
    if not isinstance(notes, list):
        notes = [str(notes)]

    return AIMappingResult(
        mappings=mappings,
        unmapped_columns=[column for column in columns if column not in used_columns],
        overall_confidence=overall,
        notes=[str(note) for note in notes],
    )


def request_ai_mappings(
    columns: List[str],
    column_analysis: Dict[str, ColumnAnalysis],
    target_fields: List[TargetFieldDefinition] = CLIENT_TARGET_FIELDS,
    source_system: Optional[str] = None,
    llm: Optional[TextModel] = None,
) -> AIMappingResult:
    prompt = build_mapping_prompt(columns, column_analysis, target_fields, source_system)
    call = llm or invoke_text_model
    try:
        response_text = call(prompt)
    except AIMappingError:
        raise
    except Exception as e:
        raise AIMappingError(f"Text model call failed: {e}") from e
    try:
        return parse_ai_response(response_text, columns, target_fields)
    except (AttributeError, TypeError, ValueError) as e:
        raise AIMappingError(f"Malformed mapping response: {e}") from e


# ============================================
# RULE-BASED MAPPING
# ============================================

def generate_rule_based_mappings(
    columns: List[str],
    target_fields: List[TargetFieldDefinition] = CLIENT_TARGET_FIELDS,
    reason: Optional[str] = None,
) -> RuleBasedMappingResult:
    required = _required_targets(target_fields)
    used_targets = set()
    mappings: List[FieldMapping] = []
    unmapped: List[str] = []

    for column in columns:
        normalized = normalize_column_name(column)
        target = next(
            (
                candidate for candidate, aliases in COLUMN_ALIASES.items()
                if candidate in required and candidate not in used_targets and normalized in aliases
            ),
            None,
        )
        if target is None:
            unmapped.append(column)
            continue

        used_targets.add(target)
        mappings.append(FieldMapping(
            source_column=column,
            target_field=target,
            required=required[target],
            confidence=RULE_BASED_CONFIDENCE,
            ai_suggested=False,
        ))

    notes = ["Using rule-based mapping (AI unavailable)"]
    if reason:
        notes.append(f"Fallback reason: {reason}")

    return RuleBasedMappingResult(
        mappings=mappings,
        unmapped_columns=unmapped,
        overall_confidence=len(mappings) / len(columns) if columns else 0.0,
        notes=notes,
    )


def generate_mappings(
    columns: List[str],
    sample_rows: List[Dict[str, Any]],
    target_fields: List[TargetFieldDefinition] = CLIENT_TARGET_FIELDS,
    source_system: Optional[str] = None,
    llm: Optional[TextModel] = None,
) -> MappingResult:
    """
    Suggest mappings for ``columns``: AI first, rule-based aliases on any AI failure.
    """
    column_analysis = analyze_columns(sample_rows)
    try:
        result = request_ai_mappings(columns, column_analysis, target_fields, source_system, llm)
        logger.info(f"AI mapped {len(result.mappings)}/{len(columns)} columns (confidence {result.overall_confidence:.2f})")
        return result
    except AIMappingError as e:
        logger.warning(f"AI mapping unavailable, falling back to rule-based mapping: {e.message}")
        return generate_rule_based_mappings(columns, target_fields, reason=e.message)


# ============================================
# MAPPING SUGGESTIONS
# ============================================

def _abbreviation_hit(normalized_column: str, abbreviation: str) -> bool:
    # Two-letter abbreviations ("st", "ph") only count as the whole name.
    if len(abbreviation) < 3:
        return normalized_column == abbreviation
    return abbreviation in normalized_column


def _suggestions_for_column(
    column: str,
    analysis: Optional[ColumnAnalysis],
    target_fields: List[TargetFieldDefinition],
) -> List[MappingSuggestionOption]:
    normalized_column = normalize_column_name(column)
    options: List[MappingSuggestionOption] = []

    for target in target_fields:
        score = 0.0
        reasons: List[str] = []
        label = normalize_column_name(target.label)
        key = target.path.key

        if normalized_column and normalized_column in (label, key.lower()):
            score += 0.5
            reasons.append("Exact name match")
        elif normalized_column and (normalized_column in label or label in normalized_column):
            score += 0.3
            reasons.append("Partial name match")

        if analysis is not None and analysis.inferred_type == target.type:
            score += 0.2
            reasons.append("Type match")

        if any(_abbreviation_hit(normalized_column, abbr) for abbr in ABBREVIATIONS.get(key, [])):
            score += 0.2
            reasons.append("Abbreviation match")

        if score > MIN_SUGGESTION_SCORE:
            options.append(MappingSuggestionOption(
                target_field=target.path,
                confidence=min(round(score, 4), 1.0),
                reason=", ".join(reasons),
            ))

    options.sort(key=lambda option: option.confidence, reverse=True)
    return options[:MAX_SUGGESTIONS]


def get_mapping_suggestions(
    columns: List[str],
    sample_rows: List[Dict[str, Any]],
    target_fields: List[TargetFieldDefinition] = CLIENT_TARGET_FIELDS,
) -> List[FieldMappingSuggestion]:
    """Ranked target candidates (up to 3) for every column, for manual mapping review."""
    column_analysis = analyze_columns(sample_rows)
    return [
        FieldMappingSuggestion(
            source_column=column,
            suggestions=_suggestions_for_column(column, column_analysis.get(column), target_fields),
            sample_values=column_analysis[column].sample_values if column in column_analysis else [],
        )
        for column in columns
    ]
