"""Shared fixtures for the LibraryFinder test suite.

Provides a Flask test client and a fake Google Maps client so no test
ever reaches the network.
"""

import os
import threading

import pytest

# Ensure Google Maps key is present (search route checks this)
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")

from app import app  # noqa: E402
from library_finder import GeocodingError, PlaceDetailsError  # noqa: E402


def make_details(
    name,
    postal_code=None,
    lat=0.0,
    lng=0.0,
    city=None,
    state=None,
):
    """Build a Place Details ``result`` payload."""
    components = []
    if city:
        components.append({"long_name": city, "short_name": city, "types": ["locality", "political"]})
    if state:
        components.append({
            "long_name": f"{state} (long)",
            "short_name": state,
            "types": ["administrative_area_level_1", "political"],
        })
    if postal_code:
        components.append({"long_name": postal_code, "short_name": postal_code, "types": ["postal_code"]})
    return {
        "name": name,
        "formatted_address": f"{name}, Somewhere",
        "geometry": {"location": {"lat": lat, "lng": lng}},
        "address_components": components,
    }


class FakeMaps:
    """Stand-in for GoogleMapsClient driven by canned data.

    geocode_point=None makes geocode() fail.  A place id mapped to None in
    *details* makes place_details() fail for that id.
    """

    def __init__(self, geocode_point=None, nearby=None, text=None, details=None):
        self.geocode_point = geocode_point
        self.nearby_ids = list(nearby or [])
        self.text_ids = list(text or [])
        self.details = dict(details or {})
        self.calls = []
        self._lock = threading.Lock()

    def for_thread(self):
        # Shared across workers so tests can inspect one call log.
        return self

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def geocode(self, address):
        self._record("geocode", address)
        if self.geocode_point is None:
            raise GeocodingError("Geocoding failed: ZERO_RESULTS")
        return self.geocode_point

    def places_nearby(self, lat, lng, place_type, radius_meters):
        self._record("places_nearby", lat, lng, place_type, radius_meters)
        return [{"place_id": pid} for pid in self.nearby_ids]

    def text_search(self, query, place_type):
        self._record("text_search", query, place_type)
        return [{"place_id": pid} for pid in self.text_ids]

    def place_details(self, place_id, fields=None):
        self._record("place_details", place_id)
        result = self.details.get(place_id)
        if result is None:
            raise PlaceDetailsError("Place Details API failed: NOT_FOUND")
        return result

    def endpoints(self):
        return [c[0] for c in self.calls]


@pytest.fixture()
def client():
    """Flask test client."""
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c
