import os
import logging

import requests

log = logging.getLogger(__name__)

# ------------------------------
# Upstream endpoints
# ------------------------------
OPENWEATHER_URL = os.environ.get(
    "OPENWEATHER_URL", "https://api.openweathermap.org/data/2.5/weather"
)
NOMINATIM_URL = os.environ.get("NOMINATIM_URL", "https://nominatim.openstreetmap.org").rstrip("/")
USER_AGENT = "TravelPlanner/1.0"
TIMEOUT = 8

class UpstreamError(Exception):
    """A third-party service could not be reached or answered with an error."""

def _get_json(url, params, headers=None):
    try:
        resp = requests.get(url, params=params, headers=headers, timeout=TIMEOUT)
        resp.raise_for_status()
        return resp.json()
    except (requests.RequestException, ValueError) as e:
        log.warning("Upstream call to %s failed: %s", url, e)
        raise UpstreamError(str(e)) from e

def fetch_weather(lat, lon, api_key):
    """Current conditions from OpenWeatherMap, metric units, passed through unchanged."""
    return _get_json(
        OPENWEATHER_URL,
        {"lat": lat, "lon": lon, "appid": api_key, "units": "metric"},
    )

def _place(doc):
    try:
        return {
            "display_name": doc.get("display_name", ""),
            "lat": float(doc["lat"]),
            "lng": float(doc["lon"]),
        }
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        log.warning("Geocoder returned an unusable place %r", doc)
        raise UpstreamError("Unexpected geocoder response") from e

def search_address(query):
    """First Nominatim match for a free-text address, or None."""
    data = _get_json(
        f"{NOMINATIM_URL}/search",
        {"q": query, "format": "json", "limit": 1},
        headers={"User-Agent": USER_AGENT},
    )
    # search answers with a list; anything else is an error document
    if not isinstance(data, list):
        log.warning("Geocoder search for %r answered %r", query, data)
        raise UpstreamError("Unexpected geocoder response")
    if not data:
        return None
    return _place(data[0])

def reverse_geocode(lat, lon):
    data = _get_json(
        f"{NOMINATIM_URL}/reverse",
        {"format": "json", "lat": lat, "lon": lon},
        headers={"User-Agent": USER_AGENT},
    )
    # Nominatim answers 200 with {"error": ...} for points in the ocean etc.
    if not data or "error" in data:
        return {"display_name": "", "lat": float(lat), "lng": float(lon)}
    return {
        "display_name": data.get("display_name", ""),
        "lat": float(lat),
        "lng": float(lon),
    }
