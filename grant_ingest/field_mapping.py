"""
Field mapping between upstream API records and storage rows.

Upstream clients hand us camelCase payloads; storage rows are snake_case.
One table drives both directions so the two never drift apart.
"""

from __future__ import annotations
import re
from typing import Any, Dict, List

FIELD_MAPPINGS: Dict[str, str] = {
    # Core fields
    'id': 'opportunity_id',
    'title': 'title',
    'description': 'description',
    'url': 'url',
    'status': 'status',

    # Amounts
    'minimumAward': 'minimum_award',
    'maximumAward': 'maximum_award',
    'totalFundingAvailable': 'total_funding_available',

    # Dates
    'openDate': 'open_date',
    'closeDate': 'close_date',
    'apiUpdatedAt': 'api_updated_at',

    # Lists
    'eligibleApplicants': 'eligible_applicants',
    'eligibleProjectTypes': 'eligible_project_types',
    'eligibleLocations': 'eligible_locations',
    'categories': 'categories',
    'tags': 'tags',

    # Cost share / scope
    'matchingRequired': 'cost_share_required',
    'isNational': 'is_national',
    'matchingPercentage': 'cost_share_percentage',

    # Agency
    'agencyName': 'agency_name',
    'agencyEmail': 'agency_email',
    'agencyPhone': 'agency_phone',
    'agencyWebsite': 'agency_website',
    'fundingAgency': 'funding_agency',

    # Other
    'fundingType': 'funding_type',
    'applicationDeadline': 'application_deadline',
    'announcementDate': 'announcement_date',
    'lastUpdated': 'last_updated',
    'actionableSummary': 'actionable_summary',
    'relevanceScore': 'relevance_score',
    'enhancedDescription': 'enhanced_description',
    'relevanceReasoning': 'relevance_reasoning',
}

REVERSE_FIELD_MAPPINGS: Dict[str, str] = {snake: camel for camel, snake in FIELD_MAPPINGS.items()}

_CAMEL_RE = re.compile(r'^[a-z][a-zA-Z0-9]*$')
_SNAKE_RE = re.compile(r'^[a-z][a-z0-9_]*$')


def get_field_mappings() -> Dict[str, str]:
    return dict(FIELD_MAPPINGS)


def get_reverse_field_mappings() -> Dict[str, str]:
    return dict(REVERSE_FIELD_MAPPINGS)


def camel_to_snake(field: str) -> str:
    """Map an API field name to its storage name; unknown names pass through."""
    return FIELD_MAPPINGS.get(field, field)


def snake_to_camel(field: str) -> str:
    """Map a storage field name to its API name; unknown names pass through."""
    return REVERSE_FIELD_MAPPINGS.get(field, field)


def to_snake_case(obj: Any) -> Any:
    """Rename the keys of an API record for storage. Non-dicts are returned as-is."""
    if not isinstance(obj, dict):
        return obj
    return {camel_to_snake(key): value for key, value in obj.items()}


def to_camel_case(obj: Any) -> Any:
    """Rename the keys of a storage row back to API names. Non-dicts are returned as-is."""
    if not isinstance(obj, dict):
        return obj
    return {snake_to_camel(key): value for key, value in obj.items()}


def is_camel_case(field: str) -> bool:
    return bool(_CAMEL_RE.match(field))


def is_snake_case(field: str) -> bool:
    return bool(_SNAKE_RE.match(field))


def get_database_fields() -> List[str]:
    return list(FIELD_MAPPINGS.values())


def get_api_fields() -> List[str]:
    return list(FIELD_MAPPINGS.keys())


def validate_field_format(obj: Any, expected_format: str) -> Dict[str, Any]:
    """
    Check every key of obj against expected_format ('camelCase' or 'snake_case').

    Returns {'is_valid': bool, 'error': str | None, 'invalid_fields': [...]}.
    Single lowercase words are valid in both formats.
    """
    if not isinstance(obj, dict):
        return {'is_valid': False, 'error': 'Object is required', 'invalid_fields': []}

    if expected_format == 'camelCase':
        check = is_camel_case
    elif expected_format == 'snake_case':
        check = is_snake_case
    else:
        return {
            'is_valid': False,
            'error': f"Unknown format: {expected_format}",
            'invalid_fields': [],
        }

    invalid = [key for key in obj if not check(key)]
    if invalid:
        return {
            'is_valid': False,
            'error': f"Invalid {expected_format} fields: {', '.join(invalid)}",
            'invalid_fields': invalid,
        }
    return {'is_valid': True, 'error': None, 'invalid_fields': []}
