"""
Resource capability used by the matcher.

The matcher never reflects over clinical fields. It asks a resource for the
string values of a named search parameter. FhirResource implements that over
a FHIR JSON dict using a table of dotted element paths per resource type.

Path syntax:
    "subject"               element (references yield their reference string)
    "name.family"           nested element, lists are flattened
    "subject[Patient]"      only references whose target type is Patient
"""

from __future__ import annotations

import re
from typing import Any, Iterator, Optional, Protocol, Sequence, runtime_checkable


@runtime_checkable
class SearchableResource(Protocol):
    """What the dispatch path needs from a written resource."""

    @property
    def type(self) -> str: ...

    @property
    def id(self) -> Optional[str]: ...

    def search_parameter_values(self, name: str) -> Sequence[str]: ...


# Parameters every resource type supports
COMMON_SEARCH_PARAMETERS: dict[str, list[str]] = {
    "_id": ["id"],
    "_tag": ["meta.tag"],
    "_profile": ["meta.profile"],
    "_security": ["meta.security"],
}

# resource type -> parameter name -> element paths
SEARCH_PARAMETERS: dict[str, dict[str, list[str]]] = {
    "Observation": {
        "subject": ["subject"],
        "patient": ["subject[Patient]"],
        "code": ["code"],
        "status": ["status"],
        "category": ["category"],
        "encounter": ["encounter", "context[Encounter]"],
        "context": ["context"],
        "performer": ["performer"],
        "identifier": ["identifier"],
        "device": ["device"],
        "specimen": ["specimen"],
        "based-on": ["basedOn"],
        "value-concept": ["valueCodeableConcept"],
        "value-string": ["valueString"],
        "component-code": ["component.code"],
    },
    "Patient": {
        "identifier": ["identifier"],
        "gender": ["gender"],
        "birthdate": ["birthDate"],
        "family": ["name.family"],
        "given": ["name.given"],
        "active": ["active"],
        "organization": ["managingOrganization"],
        "general-practitioner": ["generalPractitioner"],
        "link": ["link.other"],
    },
    "Condition": {
        "subject": ["subject"],
        "patient": ["subject[Patient]"],
        "code": ["code"],
        "category": ["category"],
        "clinical-status": ["clinicalStatus"],
        "verification-status": ["verificationStatus"],
        "encounter": ["encounter", "context[Encounter]"],
        "identifier": ["identifier"],
    },
    "Encounter": {
        "subject": ["subject"],
        "patient": ["subject[Patient]"],
        "status": ["status"],
        "class": ["class"],
        "type": ["type"],
        "identifier": ["identifier"],
        "practitioner": ["participant.individual[Practitioner]"],
    },
    "DiagnosticReport": {
        "subject": ["subject"],
        "patient": ["subject[Patient]"],
        "code": ["code"],
        "status": ["status"],
        "category": ["category"],
        "result": ["result"],
        "encounter": ["encounter", "context[Encounter]"],
        "identifier": ["identifier"],
    },
    "MedicationRequest": {
        "subject": ["subject"],
        "patient": ["subject[Patient]"],
        "status": ["status"],
        "intent": ["intent"],
        "code": ["medicationCodeableConcept"],
        "medication": ["medicationReference"],
        "requester": ["requester", "requester.agent"],
        "identifier": ["identifier"],
    },
    "Procedure": {
        "subject": ["subject"],
        "patient": ["subject[Patient]"],
        "code": ["code"],
        "status": ["status"],
        "identifier": ["identifier"],
    },
    "AllergyIntolerance": {
        "patient": ["patient"],
        "code": ["code"],
        "clinical-status": ["clinicalStatus"],
        "identifier": ["identifier"],
    },
    "Immunization": {
        "patient": ["patient"],
        "status": ["status"],
        "vaccine-code": ["vaccineCode"],
        "identifier": ["identifier"],
    },
    "Practitioner": {
        "identifier": ["identifier"],
        "family": ["name.family"],
        "given": ["name.given"],
        "active": ["active"],
    },
    "Organization": {
        "identifier": ["identifier"],
        "name": ["name"],
        "active": ["active"],
        "type": ["type"],
    },
}

_PATH_RE = re.compile(r"^(?P<path>[A-Za-z0-9_.]+)(?:\[(?P<target>[A-Z][A-Za-z]*)\])?$")


def _walk(node: Any, parts: list[str]) -> Iterator[Any]:
    """Yield every element reached by following parts, flattening lists."""
    if isinstance(node, list):
        for item in node:
            yield from _walk(item, parts)
        return
    if not parts:
        yield node
        return
    if isinstance(node, dict) and parts[0] in node:
        yield from _walk(node[parts[0]], parts[1:])


def _element_values(element: Any, target: Optional[str]) -> Iterator[str]:
    """Convert one FHIR element into the string values it is searchable by."""
    if isinstance(element, bool):
        yield "true" if element else "false"
    elif isinstance(element, (str, int, float)):
        if target is None:
            yield str(element)
    elif isinstance(element, dict):
        if "reference" in element:
            reference = element["reference"]
            if target is None or reference.split("/")[-2:-1] == [target]:
                yield reference
        elif target is not None:
            return
        elif "coding" in element:
            for coding in element.get("coding") or []:
                yield from _coded_values(coding.get("system"), coding.get("code"))
        elif "code" in element:
            yield from _coded_values(element.get("system"), element.get("code"))
        elif "value" in element:
            yield from _coded_values(element.get("system"), element.get("value"))


def _coded_values(system: Optional[str], code: Optional[str]) -> Iterator[str]:
    if not code:
        return
    yield code
    if system:
        yield f"{system}|{code}"
    else:
        yield f"|{code}"


class FhirResource:
    """
    FHIR resource backed by its JSON representation.

    Usage:
        resource = FhirResource({
            "resourceType": "Observation",
            "subject": {"reference": "Patient/1"},
        })
        resource.search_parameter_values("subject")  # ["Patient/1"]
    """

    def __init__(
        self,
        data: dict[str, Any],
        search_parameters: Optional[dict[str, dict[str, list[str]]]] = None,
    ):
        """
        Initialize resource.

        Args:
            data: FHIR JSON resource (must carry "resourceType")
            search_parameters: Parameter table overriding SEARCH_PARAMETERS
        """
        if not isinstance(data, dict) or not data.get("resourceType"):
            raise ValueError("Resource JSON must contain 'resourceType'")
        self._data = data
        self._search_parameters = search_parameters if search_parameters is not None else SEARCH_PARAMETERS

    @property
    def type(self) -> str:
        return self._data["resourceType"]

    @property
    def id(self) -> Optional[str]:
        value = self._data.get("id")
        return str(value) if value is not None else None

    def with_id(self, resource_id: str) -> FhirResource:
        """Return a copy carrying the given id."""
        data = dict(self._data)
        data["id"] = resource_id
        return FhirResource(data, self._search_parameters)

    def as_dict(self) -> dict[str, Any]:
        return self._data

    def _paths(self, name: str) -> Optional[list[str]]:
        if name in COMMON_SEARCH_PARAMETERS:
            return COMMON_SEARCH_PARAMETERS[name]
        return self._search_parameters.get(self.type, {}).get(name)

    def has_search_parameter(self, name: str) -> bool:
        return self._paths(name) is not None

    def search_parameter_values(self, name: str) -> list[str]:
        """
        Values of a search parameter, in document order, without duplicates.

        Unknown parameters yield an empty list.
        """
        paths = self._paths(name)
        if not paths:
            return []

        values: list[str] = []
        for path in paths:
            match = _PATH_RE.match(path)
            if not match:
                continue
            target = match.group("target")
            for element in _walk(self._data, match.group("path").split(".")):
                for value in _element_values(element, target):
                    if value not in values:
                        values.append(value)
        return values

    def __repr__(self) -> str:
        return f"FhirResource({self.type}/{self.id})"
