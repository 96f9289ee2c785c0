"""
Criteria parser and builder for subscription filter expressions.

Criteria use the FHIR search URL form:

    Observation?subject=Patient/1&code=http://loinc.org|1234-5

Parsing yields a resource type plus an ordered list of parameter constraints.
A value may list comma-separated alternatives (any of them matches); literal
commas, dollars, pipes and backslashes inside a value are escaped with a
backslash.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Mapping, Optional, Sequence, Union
from urllib.parse import quote, unquote

from .errors import ValidationError
from .types import ParameterConstraint, ParsedCriteria

logger = logging.getLogger(__name__)


# FHIR resource types accepted in criteria
FHIR_RESOURCE_TYPES = frozenset({
    "Account", "ActivityDefinition", "AdverseEvent", "AllergyIntolerance",
    "Appointment", "AppointmentResponse", "AuditEvent", "Basic", "Binary",
    "BodySite", "BodyStructure", "Bundle", "CapabilityStatement", "CarePlan",
    "CareTeam", "ChargeItem", "Claim", "ClaimResponse", "ClinicalImpression",
    "CodeSystem", "Communication", "CommunicationRequest", "CompartmentDefinition",
    "Composition", "ConceptMap", "Condition", "Consent", "Contract", "Coverage",
    "DataElement", "DetectedIssue", "Device", "DeviceComponent", "DeviceMetric",
    "DeviceRequest", "DeviceUseStatement", "DiagnosticReport", "DocumentManifest",
    "DocumentReference", "EligibilityRequest", "EligibilityResponse", "Encounter",
    "Endpoint", "EnrollmentRequest", "EnrollmentResponse", "EpisodeOfCare",
    "ExpansionProfile", "ExplanationOfBenefit", "FamilyMemberHistory", "Flag",
    "Goal", "GraphDefinition", "Group", "GuidanceResponse", "HealthcareService",
    "ImagingManifest", "ImagingStudy", "Immunization", "ImmunizationRecommendation",
    "ImplementationGuide", "Library", "Linkage", "List", "Location", "Measure",
    "MeasureReport", "Media", "Medication", "MedicationAdministration",
    "MedicationDispense", "MedicationRequest", "MedicationStatement",
    "MessageDefinition", "MessageHeader", "NamingSystem", "NutritionOrder",
    "Observation", "OperationDefinition", "OperationOutcome", "Organization",
    "Patient", "PaymentNotice", "PaymentReconciliation", "Person", "PlanDefinition",
    "Practitioner", "PractitionerRole", "Procedure", "ProcedureRequest",
    "ProcessRequest", "ProcessResponse", "Provenance", "Questionnaire",
    "QuestionnaireResponse", "ReferralRequest", "RelatedPerson", "RequestGroup",
    "ResearchStudy", "ResearchSubject", "RiskAssessment", "Schedule",
    "SearchParameter", "Sequence", "ServiceDefinition", "ServiceRequest", "Slot",
    "Specimen", "StructureDefinition", "StructureMap", "Subscription", "Substance",
    "SupplyDelivery", "SupplyRequest", "Task", "TestReport", "TestScript",
    "ValueSet", "VisionPrescription",
})

# Result-control parameters; accepted but never constrain matching
RESULT_PARAMETERS = frozenset({
    "_format", "_pretty", "_summary", "_elements", "_count", "_sort",
    "_include", "_revinclude", "_total", "_contained",
})

_RESOURCE_TYPE_RE = re.compile(r"^[A-Z][A-Za-z]*$")
_PARAM_NAME_RE = re.compile(r"^(?P<name>[A-Za-z_][A-Za-z0-9_\-.]*)(?::(?P<modifier>[A-Za-z][A-Za-z\-]*))?$")

# Characters escaped inside a single value
_ESCAPED_CHARS = ("\\", ",", "$", "|")
_QUERY_SAFE = "/:|,$\\.-_~@!*'()+;"


def escape_value(value: str) -> str:
    """Escape a single parameter value so separators inside it stay literal."""
    for char in _ESCAPED_CHARS:
        value = value.replace(char, "\\" + char)
    return value


def _split_alternatives(raw: str) -> list[str]:
    """
    Split a raw value on unescaped commas and unescape each part.

    Escaped "|" and "$" keep their backslash removed as well; a trailing
    lone backslash is kept literally.
    """
    parts: list[str] = []
    current: list[str] = []
    i = 0
    while i < len(raw):
        char = raw[i]
        if char == "\\" and i + 1 < len(raw):
            current.append(raw[i + 1])
            i += 2
            continue
        if char == ",":
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1
    parts.append("".join(current))
    return [part for part in parts if part.strip()]


class CriteriaParser:
    """
    Parser for subscription criteria strings.

    Usage:
        parser = CriteriaParser()
        parsed = parser.parse("Observation?subject=Patient/1")
        parsed.resource_type   # "Observation"
        parsed.constraints     # [ParameterConstraint(name="subject", values=["Patient/1"])]
    """

    def __init__(self, resource_types: Optional[Iterable[str]] = None):
        """
        Initialize parser.

        Args:
            resource_types: Extra resource type names accepted in addition to
                the built-in FHIR resource types
        """
        self.resource_types = FHIR_RESOURCE_TYPES | frozenset(resource_types or ())

    def parse(self, criteria: str) -> ParsedCriteria:
        """
        Parse and validate a criteria string.

        Args:
            criteria: Criteria in "<ResourceType>?<param>=<value>&..." form

        Returns:
            ParsedCriteria

        Raises:
            ValidationError: If the resource type is unknown or a parameter is malformed
        """
        if criteria is None or not criteria.strip():
            raise ValidationError(["Criteria must not be empty"])

        text = criteria.strip()
        resource_type, _, query = text.partition("?")

        errors: list[str] = []
        if not _RESOURCE_TYPE_RE.match(resource_type):
            errors.append(f"Invalid resource type '{resource_type}' in criteria '{criteria}'")
        elif resource_type not in self.resource_types:
            errors.append(f"Unknown resource type '{resource_type}' in criteria '{criteria}'")

        constraints: list[ParameterConstraint] = []
        if query:
            for segment in query.split("&"):
                constraint = self._parse_segment(segment, errors)
                if constraint is not None:
                    constraints.append(constraint)

        if errors:
            raise ValidationError(errors)

        return ParsedCriteria(resource_type=resource_type, constraints=constraints)

    def is_valid(self, criteria: str) -> bool:
        """Check criteria without raising."""
        try:
            self.parse(criteria)
            return True
        except ValidationError:
            return False

    def _parse_segment(self, segment: str, errors: list[str]) -> Optional[ParameterConstraint]:
        """Parse one "name=value" segment, appending to errors on failure."""
        if not segment:
            errors.append("Empty parameter in criteria (stray '&')")
            return None

        if "=" not in segment:
            errors.append(f"Parameter '{segment}' has no value")
            return None

        raw_name, raw_value = segment.split("=", 1)
        name_text = unquote(raw_name)
        match = _PARAM_NAME_RE.match(name_text)
        if not match:
            errors.append(f"Malformed parameter name '{name_text}'")
            return None

        name = match.group("name")
        modifier = match.group("modifier")

        if name in RESULT_PARAMETERS:
            return None

        values = _split_alternatives(unquote(raw_value))
        if not values:
            errors.append(f"Parameter '{name_text}' has an empty value")
            return None

        if modifier == "missing" and any(v not in ("true", "false") for v in values):
            errors.append(f"Parameter '{name_text}' expects true or false")
            return None

        return ParameterConstraint(name=name, modifier=modifier, values=values)


ParamValue = Union[str, Sequence[str]]


def build_criteria(
    resource_type: str,
    params: Union[Mapping[str, ParamValue], Sequence[tuple[str, ParamValue]], None] = None,
) -> str:
    """
    Build a criteria string from a resource type and parameters.

    Values are escaped; a list value becomes comma-separated alternatives and
    blank entries are skipped. Parameters left with no value are dropped.

    Args:
        resource_type: Resource type (e.g., "Observation")
        params: Mapping or ordered pairs of parameter name -> value(s)

    Returns:
        Criteria string (e.g., "Observation?subject=Patient/1")
    """
    items = params.items() if isinstance(params, Mapping) else (params or [])

    segments = []
    for name, value in items:
        values = [value] if isinstance(value, str) else list(value)
        encoded = ",".join(
            quote(escape_value(v), safe=_QUERY_SAFE) for v in values if v and v.strip()
        )
        if not encoded:
            continue
        segments.append(f"{name}={encoded}")

    if not segments:
        return resource_type
    return f"{resource_type}?{'&'.join(segments)}"
