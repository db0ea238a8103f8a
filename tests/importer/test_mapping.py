from __future__ import annotations

from datetime import date, datetime

from waypoint.importer.contracts.templates import FieldSpec, ImportTemplate, get_template_registry
from waypoint.importer.mapping import (
    MatchConfidence,
    apply_mapping,
    detect_confidence,
    missing_required,
    propose,
    propose_with_confidence,
)


def _template(*fields: FieldSpec) -> ImportTemplate:
    return ImportTemplate(
        version=1,
        entity_type="demo",
        label="Demo",
        fields=tuple(fields),
        sample_rows=(),
        checksum="test",
    )


def test_propose_matches_students_export_headers():
    template = get_template_registry().get("students")
    headers = ["Local ID", "First Name", "Last Name", "DOB", "Grade", "School", "Sex"]

    proposal = propose_with_confidence(headers, template)

    assert proposal.mapping["student_id_number"] == "Local ID"
    assert proposal.mapping["first_name"] == "First Name"
    assert proposal.mapping["date_of_birth"] == "DOB"
    assert proposal.mapping["grade_level"] == "Grade"
    assert proposal.mapping["campus_name"] == "School"
    assert proposal.mapping["gender"] == "Sex"
    assert proposal.mapping["is_sped"] is None
    assert proposal.confidence["first_name"] is MatchConfidence.ALIAS
    assert proposal.confidence["is_sped"] is MatchConfidence.NONE
    assert "is_sped" in proposal.unmapped


def test_exact_match_beats_alias():
    template = get_template_registry().get("students")

    mapping = propose(["Student ID", "STUDENT_ID_NUMBER"], template)

    assert mapping["student_id_number"] == "STUDENT_ID_NUMBER"


def test_header_is_never_claimed_twice():
    template = _template(
        FieldSpec("primary_code", aliases=frozenset({"code"})),
        FieldSpec("secondary_code", aliases=frozenset({"code"})),
    )

    mapping = propose(["Code"], template)

    assert mapping == {"primary_code": "Code", "secondary_code": None}


def test_each_field_prefers_its_exact_header():
    template = _template(
        FieldSpec("name", aliases=frozenset({"campus"})),
        FieldSpec("campus"),
    )

    mapping = propose(["campus", "Name"], template)

    assert mapping == {"name": "Name", "campus": "campus"}


def test_detect_confidence_scores_edited_mappings():
    headers = ["Given", "first_name", "Surname"]
    mapping = {"first_name": "first_name", "last_name": "Surname", "middle_name": "Not In File", "suffix": None}

    confidence = detect_confidence(headers, ["first_name", "last_name", "middle_name", "suffix"], mapping)

    assert confidence == {
        "first_name": MatchConfidence.EXACT,
        "last_name": MatchConfidence.ALIAS,
        "middle_name": MatchConfidence.NONE,
        "suffix": MatchConfidence.NONE,
    }


def test_proposal_as_dict_uses_plain_values():
    template = get_template_registry().get("campuses")

    payload = propose_with_confidence(["Name", "CDC"], template).as_dict()

    assert payload["mapping"]["name"] == "Name"
    assert payload["mapping"]["tea_campus_id"] == "CDC"
    assert payload["confidence"]["name"] == "exact"
    assert payload["confidence"]["tea_campus_id"] == "alias"
    assert payload["confidence"]["campus_type"] == "none"


def test_missing_required_lists_unmapped_required_fields():
    template = get_template_registry().get("campuses")

    assert missing_required(template, {"name": "Name", "tea_campus_id": None}) == ("tea_campus_id", "campus_type")
    assert missing_required(template, {"name": "a", "tea_campus_id": "b", "campus_type": "c"}) == ()


def test_apply_mapping_stringifies_spreadsheet_values():
    row = {"DOB": datetime(2010, 3, 15, 0, 0), "Enrolled": date(2020, 8, 1), "Grade": 8.0, "Name": None, "Score": 9.5}
    mapping = {
        "date_of_birth": "DOB",
        "enrolled_on": "Enrolled",
        "grade_level": "Grade",
        "first_name": "Name",
        "score": "Score",
        "last_name": None,
    }

    projected = apply_mapping(row, mapping, list(mapping) + ["unlisted"])

    assert projected == {
        "date_of_birth": "2010-03-15",
        "enrolled_on": "2020-08-01",
        "grade_level": "8",
        "first_name": "",
        "score": "9.5",
        "last_name": "",
        "unlisted": "",
    }
