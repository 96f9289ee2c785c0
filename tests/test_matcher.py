import logging

import pytest

from fhirsub.core.criteria import CriteriaParser
from fhirsub.core.matcher import CriteriaMatcher
from fhirsub.core.resource import FhirResource


@pytest.fixture()
def matcher():
    return CriteriaMatcher()


class PlainResource:
    """Minimal resource exposing only the searchable capability."""

    def __init__(self, resource_type, values):
        self.type = resource_type
        self.id = "1"
        self._values = values

    def search_parameter_values(self, name):
        return self._values.get(name, [])


def test_subject_reference_match(matcher, make_observation):
    criteria = "Observation?subject=Patient/1"

    assert matcher.evaluate(make_observation("Patient/1"), criteria)
    assert not matcher.evaluate(make_observation("Patient/2"), criteria)


def test_resource_type_must_match(matcher):
    patient = FhirResource({"resourceType": "Patient", "id": "1"})
    assert not matcher.evaluate(patient, "Observation")


def test_no_constraints_matches_every_resource_of_type(matcher, make_observation):
    assert matcher.evaluate(make_observation("Patient/9"), "Observation")


def test_constraints_are_anded(matcher, make_observation):
    criteria = "Observation?subject=Patient/1&code=1234-5"

    assert matcher.evaluate(make_observation("Patient/1", code="1234-5"), criteria)
    assert not matcher.evaluate(make_observation("Patient/1", code="9999-9"), criteria)
    assert not matcher.evaluate(make_observation("Patient/2", code="1234-5"), criteria)


def test_alternatives_are_ored(matcher, make_observation):
    criteria = "Observation?code=1111-1,1234-5"
    assert matcher.evaluate(make_observation(code="1234-5"), criteria)
    assert not matcher.evaluate(make_observation(code="2222-2"), criteria)


def test_token_with_system(matcher, make_observation):
    assert matcher.evaluate(make_observation(code="1234-5"), "Observation?code=http://loinc.org|1234-5")
    assert not matcher.evaluate(make_observation(code="1234-5"), "Observation?code=http://snomed.info/sct|1234-5")


def test_unknown_parameter_fails_closed(matcher, make_observation):
    assert not matcher.evaluate(make_observation(), "Observation?shoe-size=42")


def test_unsupported_modifier_fails_closed(matcher, make_observation):
    assert not matcher.evaluate(make_observation(code="1234-5"), "Observation?code:text=1234-5")


def test_exact_modifier(matcher, make_observation):
    assert matcher.evaluate(make_observation(code="1234-5"), "Observation?code:exact=1234-5")


def test_missing_modifier(matcher, make_observation):
    with_code = make_observation(code="1234-5")
    without_code = make_observation()

    assert matcher.evaluate(without_code, "Observation?code:missing=true")
    assert not matcher.evaluate(with_code, "Observation?code:missing=true")
    assert matcher.evaluate(with_code, "Observation?code:missing=false")


def test_unparseable_criteria_never_match(matcher, make_observation, caplog):
    with caplog.at_level(logging.WARNING, logger="fhirsub.core.matcher"):
        assert not matcher.evaluate(make_observation(), "Observation?subject")

    assert "Unparseable criteria" in caplog.text


def test_accepts_parsed_criteria(matcher, make_observation):
    parsed = CriteriaParser().parse("Observation?subject=Patient/1")
    assert matcher.evaluate(make_observation("Patient/1"), parsed)


def test_plain_searchable_resource(matcher):
    resource = PlainResource("Observation", {"subject": ["Patient/1"]})

    assert matcher.evaluate(resource, "Observation?subject=Patient/1")
    assert not matcher.evaluate(resource, "Observation?subject=Patient/2")
    assert not matcher.evaluate(resource, "Observation?code=1234-5")
