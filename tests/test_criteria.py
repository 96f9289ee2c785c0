import pytest

from fhirsub.core.criteria import CriteriaParser, build_criteria, escape_value
from fhirsub.core.errors import ValidationError


@pytest.fixture()
def parser():
    return CriteriaParser()


def test_parse_single_reference(parser):
    parsed = parser.parse("Observation?subject=Patient/1")

    assert parsed.resource_type == "Observation"
    assert len(parsed.constraints) == 1
    assert parsed.constraints[0].name == "subject"
    assert parsed.constraints[0].modifier is None
    assert parsed.constraints[0].values == ["Patient/1"]


@pytest.mark.parametrize("criteria", ["Patient", "Patient?", "  Patient  "])
def test_parse_without_constraints(parser, criteria):
    parsed = parser.parse(criteria)
    assert parsed.resource_type == "Patient"
    assert parsed.constraints == []


def test_constraints_keep_criteria_order(parser):
    parsed = parser.parse("Observation?status=final&subject=Patient/1&code=1234-5")
    assert [c.name for c in parsed.constraints] == ["status", "subject", "code"]


def test_comma_separates_alternatives(parser):
    parsed = parser.parse("Observation?code=1234-5,5678-9")
    assert parsed.constraints[0].values == ["1234-5", "5678-9"]


def test_escaped_comma_stays_in_value(parser):
    parsed = parser.parse(r"Observation?value-string=a\,b")
    assert parsed.constraints[0].values == ["a,b"]


def test_token_system_separator_is_kept(parser):
    parsed = parser.parse("Observation?code=http://loinc.org|1234-5")
    assert parsed.constraints[0].values == ["http://loinc.org|1234-5"]


def test_percent_encoded_value_is_decoded(parser):
    parsed = parser.parse("Observation?subject=Patient%2F1")
    assert parsed.constraints[0].values == ["Patient/1"]


def test_modifier_is_split_from_name(parser):
    parsed = parser.parse("Observation?code:exact=abc")
    constraint = parsed.constraints[0]
    assert constraint.name == "code"
    assert constraint.modifier == "exact"


def test_result_parameters_are_dropped(parser):
    parsed = parser.parse("Observation?subject=Patient/1&_format=json&_pretty=true")
    assert [c.name for c in parsed.constraints] == ["subject"]


@pytest.mark.parametrize(
    "criteria",
    [
        "",
        "   ",
        "Foo?x=1",
        "observation?subject=Patient/1",
        "Observation?subject",
        "Observation?subject=Patient/1&",
        "Observation?subject=",
        "Observation?subject=,",
        "Observation?1bad=x",
        "Observation?code:missing=maybe",
    ],
)
def test_malformed_criteria_rejected(parser, criteria):
    with pytest.raises(ValidationError):
        parser.parse(criteria)


def test_all_problems_are_reported(parser):
    with pytest.raises(ValidationError) as exc_info:
        parser.parse("Foo?bar")

    assert len(exc_info.value.errors) == 2


def test_extra_resource_types():
    parser = CriteriaParser(["DeviceReading"])
    assert parser.parse("DeviceReading?device=Device/1").resource_type == "DeviceReading"
    assert not CriteriaParser().is_valid("DeviceReading?device=Device/1")


def test_is_valid(parser):
    assert parser.is_valid("Patient?gender=female")
    assert not parser.is_valid("Patient?gender")


def test_escape_value():
    assert escape_value(r"a|b$c\d,e") == r"a\|b\$c\\d\,e"
    assert escape_value("Patient/1") == "Patient/1"


def test_build_criteria_from_mapping():
    assert build_criteria("Observation", {"subject": "Patient/1"}) == "Observation?subject=Patient/1"


def test_build_criteria_joins_lists_and_skips_blanks():
    criteria = build_criteria("Observation", [("code", ["1234-5", "", "5678-9"]), ("status", "  ")])
    assert criteria == "Observation?code=1234-5,5678-9"


def test_build_criteria_without_params():
    assert build_criteria("Patient") == "Patient"
    assert build_criteria("Patient", {}) == "Patient"


def test_built_criteria_parse_back_to_the_same_values(parser):
    criteria = build_criteria("Observation", {"value-string": "a,b c"})
    parsed = parser.parse(criteria)
    assert parsed.constraints[0].values == ["a,b c"]
