"""
Location text to US state code normalization.

Eligibility text comes in every shape: "Nationwide", "New England states",
"CA, OR, WA", "Rural counties in West Virginia". We reduce it to a sorted
list of two-letter codes. An empty list means national (or nothing usable).
"""

from __future__ import annotations
import re
from typing import Dict, Iterable, List, Optional

STATE_NAMES: Dict[str, str] = {
    'alabama': 'AL', 'alaska': 'AK', 'arizona': 'AZ', 'arkansas': 'AR',
    'california': 'CA', 'colorado': 'CO', 'connecticut': 'CT', 'delaware': 'DE',
    'florida': 'FL', 'georgia': 'GA', 'hawaii': 'HI', 'idaho': 'ID',
    'illinois': 'IL', 'indiana': 'IN', 'iowa': 'IA', 'kansas': 'KS',
    'kentucky': 'KY', 'louisiana': 'LA', 'maine': 'ME', 'maryland': 'MD',
    'massachusetts': 'MA', 'michigan': 'MI', 'minnesota': 'MN', 'mississippi': 'MS',
    'missouri': 'MO', 'montana': 'MT', 'nebraska': 'NE', 'nevada': 'NV',
    'new hampshire': 'NH', 'new jersey': 'NJ', 'new mexico': 'NM', 'new york': 'NY',
    'north carolina': 'NC', 'north dakota': 'ND', 'ohio': 'OH', 'oklahoma': 'OK',
    'oregon': 'OR', 'pennsylvania': 'PA', 'rhode island': 'RI', 'south carolina': 'SC',
    'south dakota': 'SD', 'tennessee': 'TN', 'texas': 'TX', 'utah': 'UT',
    'vermont': 'VT', 'virginia': 'VA', 'washington': 'WA', 'west virginia': 'WV',
    'wisconsin': 'WI', 'wyoming': 'WY', 'district of columbia': 'DC',
}

# Aliases that resolve to a code but are never used as display names
STATE_ALIASES: Dict[str, str] = {
    'washington dc': 'DC',
    'washington d.c.': 'DC',
}

STATE_CODES = frozenset(STATE_NAMES.values())

REGIONAL_MAPPINGS: Dict[str, List[str]] = {
    'new england': ['CT', 'ME', 'MA', 'NH', 'RI', 'VT'],
    'northeast': ['CT', 'ME', 'MA', 'NH', 'NJ', 'NY', 'PA', 'RI', 'VT'],
    'mid-atlantic': ['NJ', 'NY', 'PA'],
    'southeast': ['AL', 'AR', 'FL', 'GA', 'KY', 'LA', 'MS', 'NC', 'SC', 'TN', 'VA', 'WV'],
    'south': ['AL', 'AR', 'DE', 'FL', 'GA', 'KY', 'LA', 'MD', 'MS', 'NC', 'OK', 'SC', 'TN', 'TX', 'VA', 'WV'],
    'midwest': ['IL', 'IN', 'IA', 'KS', 'MI', 'MN', 'MO', 'NE', 'ND', 'OH', 'SD', 'WI'],
    'great lakes': ['IL', 'IN', 'MI', 'MN', 'NY', 'OH', 'PA', 'WI'],
    'plains': ['IA', 'KS', 'MN', 'MO', 'NE', 'ND', 'SD'],
    'southwest': ['AZ', 'NM', 'TX', 'OK'],
    'west': ['AK', 'AZ', 'CA', 'CO', 'HI', 'ID', 'MT', 'NV', 'NM', 'OR', 'UT', 'WA', 'WY'],
    'pacific': ['AK', 'CA', 'HI', 'OR', 'WA'],
    'pacific northwest': ['OR', 'WA'],
    'mountain': ['AZ', 'CO', 'ID', 'MT', 'NV', 'NM', 'UT', 'WY'],
    'rocky mountains': ['CO', 'ID', 'MT', 'WY'],
    'sunbelt': ['AL', 'AZ', 'CA', 'FL', 'GA', 'LA', 'MS', 'NV', 'NM', 'NC', 'SC', 'TN', 'TX'],
    'rust belt': ['IL', 'IN', 'MI', 'NY', 'OH', 'PA', 'WI'],
    'bible belt': ['AL', 'AR', 'GA', 'KY', 'LA', 'MS', 'NC', 'OK', 'SC', 'TN', 'TX', 'VA'],
}

NATIONAL_INDICATORS = [
    'national',
    'nationwide',
    'all states',
    'united states',
    'usa',
    'u.s.',
    'us',
    'all 50 states',
    'entire country',
    'country-wide',
    'countrywide',
]

_DELIMITERS = re.compile(r'[,;|&\n\r]')
_UPPER_CODE = re.compile(r'\b[A-Z]{2}\b')


def _phrase_pattern(phrase: str) -> re.Pattern:
    # \b does not work next to punctuation such as the dot in "u.s."
    return re.compile(r'(?<![\w.])' + re.escape(phrase) + r'(?![\w-])')


def _longest_first(phrases: Iterable[str]) -> List[str]:
    return sorted(phrases, key=len, reverse=True)


_NATIONAL_PATTERNS = [_phrase_pattern(p) for p in _longest_first(NATIONAL_INDICATORS)]
_ALL_NAMES = {**STATE_NAMES, **STATE_ALIASES}
_NAME_PATTERNS = [(_phrase_pattern(n), _ALL_NAMES[n]) for n in _longest_first(_ALL_NAMES)]
_REGION_PATTERNS = [(_phrase_pattern(r), REGIONAL_MAPPINGS[r]) for r in _longest_first(REGIONAL_MAPPINGS)]


def is_national_location(text: Optional[str]) -> bool:
    """True when the text names the whole country rather than specific states."""
    if not text or not isinstance(text, str):
        return False
    location = text.lower().strip()
    return any(p.search(location) for p in _NATIONAL_PATTERNS)


def _consume(pattern: re.Pattern, text: str):
    """Return (matched, text with every match blanked out)."""
    matched = bool(pattern.search(text))
    if matched:
        text = pattern.sub(' ', text)
    return matched, text


def parse_individual_states(text: str) -> List[str]:
    """Find full state names and standalone abbreviations in free text."""
    codes = set()

    for part in _DELIMITERS.split(text):
        original = part.strip()
        if not original:
            continue
        lowered = original.lower()

        # A bare abbreviation as a whole list item ("ca", "OR") is unambiguous
        if len(lowered) == 2 and lowered.upper() in STATE_CODES:
            codes.add(lowered.upper())
            continue

        remaining = lowered
        for pattern, code in _NAME_PATTERNS:
            matched, remaining = _consume(pattern, remaining)
            if matched:
                codes.add(code)

        # Inside prose only upper-case tokens count ("in", "or", "me" are words)
        for token in _UPPER_CODE.findall(original):
            if token in STATE_CODES:
                codes.add(token)

    return sorted(codes)


def parse_location_to_state_codes(text: Optional[str]) -> List[str]:
    """Parse eligibility text to a sorted list of state codes. National text gives []."""
    if not text or not isinstance(text, str):
        return []
    if is_national_location(text):
        return []

    codes = set()
    remaining = text.lower().strip()

    # State names first so "west virginia" is not read as the West region
    names_found = parse_individual_states(text)
    codes.update(names_found)
    for pattern, _ in _NAME_PATTERNS:
        remaining = pattern.sub(' ', remaining)

    for pattern, region_codes in _REGION_PATTERNS:
        matched, remaining = _consume(pattern, remaining)
        if matched:
            codes.update(region_codes)

    return sorted(codes)


def is_valid_state_code(code: Optional[str]) -> bool:
    if not code or not isinstance(code, str):
        return False
    return code.upper() in STATE_CODES


def get_state_name(code: Optional[str]) -> Optional[str]:
    """'wv' -> 'West Virginia'. Unknown codes give None."""
    if not is_valid_state_code(code):
        return None
    code = code.upper()
    for name, value in STATE_NAMES.items():
        if value == code:
            return ' '.join(word.capitalize() for word in name.split(' '))
    return None


def get_states_in_region(region: str) -> List[str]:
    return list(REGIONAL_MAPPINGS.get(region.lower().strip(), []))


def get_available_regions() -> List[str]:
    return list(REGIONAL_MAPPINGS.keys())


def expand_locations_to_state_codes(locations) -> List[str]:
    """Union of the codes for a list of location strings (state codes or regions)."""
    if not isinstance(locations, (list, tuple)):
        return []
    codes = set()
    for location in locations:
        if not location or not isinstance(location, str):
            continue
        codes.update(parse_location_to_state_codes(location))
    return sorted(codes)


def is_multi_state_location(text: Optional[str]) -> bool:
    return len(parse_location_to_state_codes(text)) > 1


def get_location_description(codes: Optional[List[str]]) -> str:
    if not codes:
        return 'No specific states'
    if len(codes) == 1:
        return get_state_name(codes[0]) or codes[0]
    if len(codes) <= 5:
        return ', '.join(get_state_name(code) or code for code in codes)
    return f"{len(codes)} states"
