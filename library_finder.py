#!/usr/bin/env python3
"""
Library Finder

Resolves a free-text location (postal code or city name) into library
venues using the Google Maps Geocoding and Places APIs.

Two search paths:
- Postal code: geocode the code, search libraries within a fixed radius,
  keep those whose postal code matches exactly, otherwise fall back to
  the single nearest library.
- City name: geocode the name as a validity check, then text-search
  "libraries in <city>" and return every library that resolves.

Requirements:
- Google Maps API key (for Geocoding, Places Nearby/Text Search, Place Details)

Usage:
    python library_finder.py "90210"
    python library_finder.py "Springfield" --json
"""

import os
import sys
import json
import math
import time
import logging
import argparse
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Tuple, Dict, Any, Iterable

import requests
from dotenv import load_dotenv

from lf_trace import get_trace, set_trace
from search_config import SEARCH

logger = logging.getLogger(__name__)

# Upper bound on concurrent Place Details calls per search when
# LF_DETAIL_WORKERS is unset or unusable.
DEFAULT_DETAIL_WORKERS = 8


def _detail_workers_from_env() -> int:
    raw = os.environ.get("LF_DETAIL_WORKERS", "").strip()
    if not raw:
        return DEFAULT_DETAIL_WORKERS
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Ignoring LF_DETAIL_WORKERS=%r (not an integer); using %d",
            raw, DEFAULT_DETAIL_WORKERS,
        )
        return DEFAULT_DETAIL_WORKERS


# =============================================================================
# DATA MODEL
# =============================================================================

class QueryKind(Enum):
    POSTAL = "postal"
    CITY = "city"


@dataclass(frozen=True)
class GeoPoint:
    """A (lat, lng) pair in degrees."""
    lat: float
    lng: float


@dataclass(frozen=True)
class AddressParts:
    """Fields pulled out of a Google ``address_components`` list."""
    postal_code: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None  # short form, e.g. "CA"


@dataclass(frozen=True)
class LibraryResult:
    """One library venue, built from a successful Place Details lookup."""
    name: str
    formatted_address: str
    city: Optional[str]
    state: Optional[str]
    postal_code: Optional[str]
    lat: float
    lng: float

    def __post_init__(self):
        if not (math.isfinite(self.lat) and math.isfinite(self.lng)):
            raise ValueError(
                f"Non-finite coordinates for {self.name!r}: {self.lat}, {self.lng}"
            )

    @property
    def location(self) -> GeoPoint:
        return GeoPoint(self.lat, self.lng)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "formattedAddress": self.formatted_address,
            "city": self.city,
            "state": self.state,
            "postalCode": self.postal_code,
            "lat": self.lat,
            "lng": self.lng,
        }


@dataclass(frozen=True)
class SearchResponse:
    """Either a list of libraries (ok=True) or an error message (ok=False)."""
    ok: bool
    error: Optional[str] = None
    results: Optional[Tuple[LibraryResult, ...]] = None

    @classmethod
    def success(cls, results: Iterable[LibraryResult]) -> "SearchResponse":
        return cls(ok=True, results=tuple(results))

    @classmethod
    def failure(cls, message: str) -> "SearchResponse":
        return cls(ok=False, error=message)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {
                "ok": True,
                "results": [r.to_dict() for r in self.results or ()],
            }
        return {"ok": False, "error": self.error}


# =============================================================================
# API CLIENTS
# =============================================================================

class GeocodingError(ValueError):
    """Geocoder returned a non-OK status or no results."""


class PlacesAPIError(ValueError):
    """A Places search endpoint rejected the request (denied, quota, invalid)."""


class PlaceDetailsError(ValueError):
    """Place Details returned a non-OK status for one place id."""


class GoogleMapsClient:
    """Client for the Google Maps endpoints a library search needs."""

    # Per-call timeout in seconds.  Keeps any single request from hanging
    # the whole search.  10 s is generous for Google Maps; p99 is < 2 s.
    DEFAULT_TIMEOUT = 10

    def __init__(self, api_key: str):
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.session = requests.Session()
        self.session.trust_env = False

    def for_thread(self) -> "GoogleMapsClient":
        """A client with the same key and its own requests.Session."""
        return type(self)(self.api_key)

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET request with automatic trace recording."""
        t0 = time.time()
        response = self.session.get(url, params=params, timeout=self.DEFAULT_TIMEOUT)
        elapsed_ms = int((time.time() - t0) * 1000)
        data = response.json()
        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        trace = get_trace()
        if trace:
            trace.record_api_call(
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )
        return data

    def geocode(self, address: str) -> GeoPoint:
        """Convert free text to a point.

        Takes the first result when the geocoder returns several matches.
        """
        url = f"{self.base_url}/geocode/json"
        params = {"address": address, "key": self.api_key}
        data = self._traced_get("geocode", url, params)

        status = data.get("status")
        if status != "OK" or not data.get("results"):
            raise GeocodingError(f"Geocoding failed: {status}")

        location = data["results"][0]["geometry"]["location"]
        return GeoPoint(float(location["lat"]), float(location["lng"]))

    def places_nearby(
        self,
        lat: float,
        lng: float,
        place_type: str,
        radius_meters: int,
    ) -> List[Dict]:
        """Search for places of one type within a radius"""
        url = f"{self.base_url}/place/nearbysearch/json"
        params = {
            "location": f"{lat},{lng}",
            "radius": radius_meters,
            "type": place_type,
            "key": self.api_key
        }
        data = self._traced_get("places_nearby", url, params)

        if data.get("status") not in ["OK", "ZERO_RESULTS"]:
            logger.warning("Places Nearby returned %s", data.get("status"))
            raise PlacesAPIError(f"Places API failed: {data.get('status')}")

        return data.get("results", [])

    def text_search(self, query: str, place_type: str) -> List[Dict]:
        """Search for places of one type using a text query"""
        url = f"{self.base_url}/place/textsearch/json"
        params = {
            "query": query,
            "type": place_type,
            "key": self.api_key
        }
        data = self._traced_get("text_search", url, params)

        if data.get("status") not in ["OK", "ZERO_RESULTS"]:
            logger.warning("Text Search returned %s", data.get("status"))
            raise PlacesAPIError(f"Text Search API failed: {data.get('status')}")

        return data.get("results", [])

    def place_details(self, place_id: str, fields: Optional[List[str]] = None) -> Dict:
        """Get detailed information about a place"""
        url = f"{self.base_url}/place/details/json"
        params = {
            "place_id": place_id,
            "fields": ",".join(fields or SEARCH.detail_fields),
            "key": self.api_key
        }
        data = self._traced_get("place_details", url, params)

        if data.get("status") != "OK":
            raise PlaceDetailsError(f"Place Details API failed: {data.get('status')}")

        return data.get("result", {})


# =============================================================================
# NORMALIZATION & DISTANCE
# =============================================================================

def classify_query(query: Optional[str]) -> Optional[QueryKind]:
    """Classify a raw query.  Returns None for blank input."""
    if query is None or not query.strip():
        return None
    if SEARCH.postal_regex.match(query.strip()):
        return QueryKind.POSTAL
    return QueryKind.CITY


def normalize_address_components(components: Iterable[Dict]) -> AddressParts:
    """Extract postal code, city and state from Google address components.

    A component may carry several type tags; every tag is checked.  When
    more than one component carries the same tag, the last one wins.
    """
    postal_code = None
    city = None
    state = None
    for comp in components or []:
        for tag in comp.get("types", []):
            if tag == "postal_code":
                postal_code = comp.get("long_name", "")
            elif tag in ("locality", "postal_town"):
                city = comp.get("long_name", "")
            elif tag == "administrative_area_level_1":
                state = comp.get("short_name", "")
    return AddressParts(postal_code=postal_code, city=city, state=state)


def haversine_meters(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in meters between two points."""
    lat1, lon1 = math.radians(a.lat), math.radians(a.lng)
    lat2, lon2 = math.radians(b.lat), math.radians(b.lng)

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return SEARCH.earth_radius_m * c


def library_from_details(details: Dict) -> LibraryResult:
    """Build a LibraryResult from a Place Details ``result`` payload."""
    location = details.get("geometry", {}).get("location", {})
    parts = normalize_address_components(details.get("address_components", []))
    return LibraryResult(
        name=details.get("name", ""),
        formatted_address=details.get("formatted_address", ""),
        city=parts.city,
        state=parts.state,
        postal_code=parts.postal_code,
        lat=float(location.get("lat", 0.0)),
        lng=float(location.get("lng", 0.0)),
    )


# =============================================================================
# STAGE TIMING
# =============================================================================

def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.info("  [stage] %s FAILED (%.1fs): %s", stage_name, t1 - t0, exc)
        raise


# =============================================================================
# DETAIL FAN-OUT
# =============================================================================

def _fetch_library(maps: GoogleMapsClient, place_id: str) -> Optional[LibraryResult]:
    """Fetch one place.  Returns None when Place Details is not OK."""
    try:
        details = maps.place_details(place_id, list(SEARCH.detail_fields))
    except PlaceDetailsError as exc:
        logger.info("Skipping place %s: %s", place_id, exc)
        return None
    return library_from_details(details)


def _fetch_library_in_thread(parent_trace, maps, place_id):
    set_trace(parent_trace)
    # Each thread gets its own GoogleMapsClient (requests.Session is not thread-safe)
    thread_maps = maps.for_thread()
    return _fetch_library(thread_maps, place_id)


def fetch_libraries(
    maps: GoogleMapsClient,
    place_ids: List[str],
    max_workers: Optional[int] = None,
) -> List[LibraryResult]:
    """Resolve place ids to libraries, preserving the order of *place_ids*.

    Ids whose details lookup is not OK are dropped.  Any other exception
    from a lookup propagates.
    """
    if not place_ids:
        return []
    workers = max(1, min(max_workers or _detail_workers_from_env(), len(place_ids)))

    fetched: List[Optional[LibraryResult]] = [None] * len(place_ids)
    if workers == 1:
        for idx, pid in enumerate(place_ids):
            fetched[idx] = _fetch_library(maps, pid)
    else:
        parent_trace = get_trace()
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(_fetch_library_in_thread, parent_trace, maps, pid): idx
                for idx, pid in enumerate(place_ids)
            }
            # Slot by index; completion order is irrelevant.
            for future in as_completed(futures):
                fetched[futures[future]] = future.result()

    return [lib for lib in fetched if lib is not None]


def _place_ids(places: List[Dict]) -> List[str]:
    return [place.get("place_id", "") for place in places]


# =============================================================================
# SEARCH PATHS
# =============================================================================

def select_zip_matches(
    zip_code: str,
    center: GeoPoint,
    libraries: List[LibraryResult],
) -> List[LibraryResult]:
    """Pick the libraries to return for a postal-code search.

    Exact postal-code matches (plain string equality) win, in their
    original order.  Without any, the single nearest library to *center*
    is returned; on an exact distance tie the earlier library wins.
    Returns [] only when *libraries* is empty.
    """
    exact = [lib for lib in libraries if lib.postal_code == zip_code]
    if exact:
        return exact
    if not libraries:
        return []
    # min() keeps the first of equal keys
    nearest = min(libraries, key=lambda lib: haversine_meters(center, lib.location))
    return [nearest]


def search_by_zip(maps: GoogleMapsClient, zip_code: str) -> SearchResponse:
    messages = SEARCH.messages
    try:
        center = _timed_stage("geocode", maps.geocode, zip_code)
    except GeocodingError:
        return SearchResponse.failure(messages.invalid_zip)

    places = _timed_stage(
        "nearby_search", maps.places_nearby,
        center.lat, center.lng, SEARCH.place_category, SEARCH.nearby_radius_m,
    )
    if not places:
        return SearchResponse.failure(messages.no_libraries_near_zip)

    libraries = _timed_stage("place_details", fetch_libraries, maps, _place_ids(places))
    selected = _timed_stage("select", select_zip_matches, zip_code, center, libraries)
    logger.info(
        "ZIP search %s: %d candidates, %d detailed, %d returned",
        zip_code, len(places), len(libraries), len(selected),
    )
    if not selected:
        return SearchResponse.failure(messages.no_libraries_near_zip)
    return SearchResponse.success(selected)


def search_by_city(maps: GoogleMapsClient, city: str) -> SearchResponse:
    messages = SEARCH.messages
    try:
        # Validity check only; the point itself is not used.
        _timed_stage("geocode", maps.geocode, city)
    except GeocodingError:
        return SearchResponse.failure(messages.invalid_city)

    places = _timed_stage(
        "text_search", maps.text_search,
        SEARCH.text_query_for(city), SEARCH.place_category,
    )
    if not places:
        return SearchResponse.failure(messages.no_libraries_in_city)

    libraries = _timed_stage("place_details", fetch_libraries, maps, _place_ids(places))
    logger.info(
        "City search %r: %d candidates, %d returned",
        city, len(places), len(libraries),
    )
    return SearchResponse.success(libraries)


def search(query: Optional[str], maps: GoogleMapsClient) -> SearchResponse:
    """Resolve *query* into libraries.

    Expected outcomes (blank query, unknown place, nothing found) come back
    as ``SearchResponse(ok=False)``.  Transport failures and rejected API
    requests raise.
    """
    kind = classify_query(query)
    if kind is None:
        return SearchResponse.failure(SEARCH.messages.empty_query)

    trimmed = query.strip()
    if kind is QueryKind.POSTAL:
        return search_by_zip(maps, trimmed)
    return search_by_city(maps, trimmed)


# =============================================================================
# CLI
# =============================================================================

def format_results(response: SearchResponse) -> str:
    if not response.ok:
        return f"Error: {response.error}"
    lines = []
    for i, lib in enumerate(response.results or (), start=1):
        lines.append(f"{i}. {lib.name}")
        lines.append(f"   {lib.formatted_address}")
        locality = ", ".join(p for p in (lib.city, lib.state, lib.postal_code) if p)
        if locality:
            lines.append(f"   {locality}")
        lines.append(f"   ({lib.lat:.5f}, {lib.lng:.5f})")
    return "\n".join(lines)


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(
        description="Find libraries by postal code or city name"
    )
    parser.add_argument(
        "query",
        nargs="?",
        help="Postal code (5-9 digits) or city name"
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("GOOGLE_MAPS_API_KEY"),
        help="Google Maps API key (or set GOOGLE_MAPS_API_KEY env var)"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON instead of formatted text"
    )

    args = parser.parse_args()

    if args.query is None:
        parser.print_help()
        sys.exit(1)

    if not args.api_key:
        print("Error: Google Maps API key required. Set GOOGLE_MAPS_API_KEY or use --api-key")
        sys.exit(1)

    logging.basicConfig(level=logging.WARNING)
    response = search(args.query, GoogleMapsClient(args.api_key))

    if args.json:
        print(json.dumps(response.to_dict(), indent=2))
    else:
        print(format_results(response))

    if not response.ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
