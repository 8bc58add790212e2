import pytest

from app.domain.imports.duplicate_detector import (
    ExistingClient,
    calculate_match_score,
    check_for_duplicates,
    check_single_record,
    determine_action,
    find_matches,
    get_duplicate_summary,
    load_candidates,
)
from app.domain.imports.models import (
    DEFAULT_DUPLICATE_SETTINGS,
    DuplicateAction,
    DuplicateMatch,
    DuplicateSettings,
    FieldMapping,
    MatchFieldRule,
    MatchType,
    TargetField,
)

MARIA = ExistingClient(id="c-maria", first_name="Maria", last_name="Gonzalez", phone="555-123-4567")

MAPPINGS = [
    FieldMapping(source_column="first", target_field=TargetField.FIRST_NAME),
    FieldMapping(source_column="last", target_field=TargetField.LAST_NAME),
    FieldMapping(source_column="phone", target_field=TargetField.PHONE),
    FieldMapping(source_column="email", target_field=TargetField.EMAIL),
]


def _match(score):
    return DuplicateMatch(client_id="c1", client_name="A B", match_score=score)


def test_calculate_match_score_skips_fields_missing_on_either_side():
    mapped = {
        TargetField.FIRST_NAME: "Maria",
        TargetField.LAST_NAME: "Gonzalez",
        TargetField.PHONE: "(555) 123-4567",
        TargetField.EMAIL: "maria@example.com",
    }

    score, matched_fields = calculate_match_score(mapped, MARIA, DEFAULT_DUPLICATE_SETTINGS.match_fields)

    # email is not evaluated because the existing client has none
    assert score == pytest.approx(1.0)
    assert {field.field for field in matched_fields} == {
        TargetField.FIRST_NAME,
        TargetField.LAST_NAME,
        TargetField.PHONE,
    }


def test_calculate_match_score_is_zero_when_nothing_comparable():
    score, matched_fields = calculate_match_score({TargetField.EMAIL: "x@y.z"}, MARIA, DEFAULT_DUPLICATE_SETTINGS.match_fields)

    assert score == 0.0
    assert matched_fields == []


def test_matched_fields_only_lists_strong_field_scores():
    mapped = {TargetField.FIRST_NAME: "Mario", TargetField.LAST_NAME: "Smith", TargetField.PHONE: "5551234567"}

    _, matched_fields = calculate_match_score(mapped, MARIA, DEFAULT_DUPLICATE_SETTINGS.match_fields)

    assert {field.field for field in matched_fields} == {TargetField.FIRST_NAME, TargetField.PHONE}


@pytest.mark.parametrize(
    "score, expected_action, expected_review",
    [
        (1.0, DuplicateAction.UPDATE, False),
        (0.95, DuplicateAction.UPDATE, False),
        (0.94999, DuplicateAction.UPDATE, True),
        (0.80, DuplicateAction.UPDATE, True),
        (0.79, DuplicateAction.CREATE_NEW, True),
    ],
)
def test_determine_action_thresholds(score, expected_action, expected_review):
    settings = DuplicateSettings(default_action=DuplicateAction.UPDATE, threshold=0.5)

    action, requires_review = determine_action([_match(score)], settings)

    assert action == expected_action
    assert requires_review is expected_review


def test_determine_action_without_matches():
    assert determine_action([], DEFAULT_DUPLICATE_SETTINGS) == (DuplicateAction.CREATE_NEW, False)


def _weighted_settings(threshold=0.8):
    return DuplicateSettings(
        match_fields=[
            MatchFieldRule(field=TargetField.LAST_NAME, weight=19, match_type=MatchType.EXACT),
            MatchFieldRule(field=TargetField.FIRST_NAME, weight=1, match_type=MatchType.EXACT),
        ],
        threshold=threshold,
        default_action=DuplicateAction.SKIP,
    )


def test_score_of_exactly_095_needs_no_review():
    mapped = {TargetField.FIRST_NAME: "Zed", TargetField.LAST_NAME: "Gonzalez"}

    matches = find_matches(mapped, [MARIA], _weighted_settings())
    action, requires_review = determine_action(matches, _weighted_settings())

    assert matches[0].match_score == 0.95
    assert action == DuplicateAction.SKIP
    assert requires_review is False


def test_score_below_threshold_is_not_a_match():
    mapped = {TargetField.FIRST_NAME: "Maria", TargetField.LAST_NAME: "Smith"}

    assert find_matches(mapped, [MARIA], _weighted_settings()) == []


def test_find_matches_sorts_and_truncates():
    candidates = [
        ExistingClient(id=f"c{i}", first_name="Maria", last_name="Gonzalez", phone="5551234567")
        for i in range(7)
    ]
    candidates.append(ExistingClient(id="best", first_name="Maria", last_name="Gonzalez", phone="5551234567", email="m@x.io"))
    mapped = {
        TargetField.FIRST_NAME: "Mariah",
        TargetField.LAST_NAME: "Gonzalez",
        TargetField.PHONE: "5551234567",
        TargetField.EMAIL: "m@x.io",
    }

    matches = find_matches(mapped, candidates, DEFAULT_DUPLICATE_SETTINGS)

    assert len(matches) == 5
    assert matches[0].client_id == "best"
    assert [m.client_id for m in matches[1:]] == ["c0", "c1", "c2", "c3"]
    scores = [m.match_score for m in matches]
    assert scores == sorted(scores, reverse=True)


def test_address_fields_can_be_matched():
    client = ExistingClient(id="c1", first_name="A", last_name="B", phone="1", address={"city": "Portland", "zip": "97201"})
    settings = DuplicateSettings(
        match_fields=[
            MatchFieldRule(field=TargetField.ADDRESS_CITY, weight=1, match_type=MatchType.EXACT),
            MatchFieldRule(field=TargetField.ADDRESS_ZIP, weight=1, match_type=MatchType.EXACT),
        ],
        threshold=0.9,
    )

    matches = find_matches({TargetField.ADDRESS_CITY: "portland", TargetField.ADDRESS_ZIP: "97201"}, [client], settings)

    assert matches[0].match_score == 1.0


def test_check_single_record_disabled_detection_creates_new():
    settings = DEFAULT_DUPLICATE_SETTINGS.model_copy(update={"enabled": False})
    row = {"first": "Maria", "last": "Gonzalez", "phone": "5551234567", "email": ""}

    result = check_single_record(row, MAPPINGS, [MARIA], settings, row_number=4)

    assert result.row_number == 4
    assert result.matches == []
    assert result.suggested_action == DuplicateAction.CREATE_NEW
    assert result.requires_review is False


def test_check_for_duplicates_and_summary():
    rows = [
        (1, {"first": "Maria", "last": "Gonzalez", "phone": "5551234567", "email": ""}),
        (2, {"first": "John", "last": "Smith", "phone": "5559876543", "email": "john@example.com"}),
    ]

    results = check_for_duplicates(rows, MAPPINGS, [MARIA])
    summary = get_duplicate_summary(results)

    assert results[0].suggested_action == DuplicateAction.SKIP
    assert results[0].matches[0].client_id == "c-maria"
    assert results[1].suggested_action == DuplicateAction.CREATE_NEW
    assert summary == {
        "total_records": 2,
        "with_matches": 1,
        "requires_review": 0,
        "by_action": {"SKIP": 1, "UPDATE": 0, "CREATE_NEW": 1},
    }


def test_load_candidates_uses_active_clients_of_the_org(repo, org_id):
    kept = repo.create_client(org_id, {"first_name": "Maria", "last_name": "Gonzalez", "phone": "1"})
    deleted = repo.create_client(org_id, {"first_name": "Ann", "last_name": "Lee", "phone": "2"})
    repo.create_client("other-org", {"first_name": "Bo", "last_name": "Ng", "phone": "3"})
    repo.commit()
    repo.soft_delete_client(deleted.id, org_id)
    repo.commit()

    candidates = load_candidates(repo, org_id)

    assert [candidate.id for candidate in candidates] == [kept.id]
    assert candidates[0].full_name == "Maria Gonzalez"
