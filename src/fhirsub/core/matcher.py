"""
Criteria matcher.

Decides whether a written resource satisfies a subscription's criteria.
Matching never raises into the write path: malformed criteria, unknown
parameters and unsupported modifiers all evaluate to False.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from .criteria import CriteriaParser
from .errors import ValidationError
from .resource import SearchableResource
from .types import ParameterConstraint, ParsedCriteria

logger = logging.getLogger(__name__)


# Modifiers the matcher can evaluate; anything else fails closed
SUPPORTED_MODIFIERS = {None, "exact", "missing"}


class CriteriaMatcher:
    """
    Evaluates criteria against resources.

    Usage:
        matcher = CriteriaMatcher()
        matcher.evaluate(resource, "Observation?subject=Patient/1")
    """

    def __init__(self, parser: Optional[CriteriaParser] = None):
        self.parser = parser or CriteriaParser()

    def evaluate(
        self,
        resource: SearchableResource,
        criteria: Union[str, ParsedCriteria],
    ) -> bool:
        """
        Check whether resource satisfies criteria.

        Args:
            resource: Written resource exposing type and search parameter values
            criteria: Criteria string or already parsed criteria

        Returns:
            True if the resource type matches and every constraint matches
        """
        if isinstance(criteria, str):
            try:
                criteria = self.parser.parse(criteria)
            except ValidationError as e:
                logger.warning(f"Unparseable criteria never matches: {e.errors}")
                return False

        if resource.type != criteria.resource_type:
            return False

        return all(self._match_constraint(resource, c) for c in criteria.constraints)

    def _match_constraint(self, resource: SearchableResource, constraint: ParameterConstraint) -> bool:
        """Check one constraint (any resource value equals any expected value)."""
        if constraint.modifier not in SUPPORTED_MODIFIERS:
            logger.debug(f"Modifier ':{constraint.modifier}' not supported, constraint fails")
            return False

        has_parameter = getattr(resource, "has_search_parameter", None)
        if has_parameter is not None and not has_parameter(constraint.name):
            logger.debug(f"Unknown parameter '{constraint.name}' on {resource.type}, constraint fails")
            return False

        values = resource.search_parameter_values(constraint.name)

        if constraint.modifier == "missing":
            # "true" and "false" together accept both
            return any((v == "true") == (not values) for v in constraint.values)

        if not values:
            return False

        expected = set(constraint.values)
        return any(value in expected for value in values)
