"""
Search configuration for LibraryFinder.

Owns every fixed constant that shapes a library search: the nearby
radius, the place category, the text-search phrasing, the detail field
set, the postal-code pattern, and the user-facing messages.

These values are behavioral, not tunable.  Clients of the JSON API
depend on the exact message strings, so change them only together with
the frontend.
"""

import re
from dataclasses import dataclass
from typing import Pattern, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class SearchMessages:
    """Verbatim error strings returned in the ``error`` field."""
    empty_query: str = "Empty query"
    invalid_zip: str = "Invalid pincode enter correct pincode"
    no_libraries_near_zip: str = "No libraries found near this ZIP"
    invalid_city: str = "Invalid city name"
    no_libraries_in_city: str = "No libraries found in this city"


@dataclass(frozen=True)
class SearchConfig:
    """Top-level container for search constants."""
    nearby_radius_m: int = 12000
    earth_radius_m: float = 6371000.0
    place_category: str = "library"
    text_query_prefix: str = "libraries in "
    detail_fields: Tuple[str, ...] = (
        "name",
        "formatted_address",
        "geometry",
        "address_component",
    )
    # 5-9 digits, no leading zero
    postal_pattern: str = r"^[1-9][0-9]{4,8}$"
    messages: SearchMessages = SearchMessages()

    @property
    def postal_regex(self) -> Pattern[str]:
        return re.compile(self.postal_pattern)

    @property
    def detail_fields_param(self) -> str:
        return ",".join(self.detail_fields)

    def text_query_for(self, city: str) -> str:
        """Build the text-search query for a city name."""
        return self.text_query_prefix + city


# =============================================================================
# Default instance
# =============================================================================

SEARCH = SearchConfig()
