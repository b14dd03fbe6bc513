"""
Road distances, travel-mode classification and stop sequencing.

Driving distance/time between two coordinates comes from the Google Maps
Distance Matrix API.  When GOOGLE_MAPS_API_KEY is not set (or the API has no
answer) a deterministic great-circle estimate is used instead, so planning
keeps working offline.

Usage (from trip_coordinator):
    from triproute.RouteAgent import classify, get_distance, sequence

    order = await sequence(origin, stops, get_distance)
    mode = classify(result.distance_km, result.duration_minutes)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import os
import threading
from itertools import combinations
from typing import Callable, Optional, Sequence

import requests

from .errors import MissingCoordinates
from .settings import settings
from .TripPlan import ORIGIN, DistanceResult, Stop, TravelMode

log = logging.getLogger(__name__)

Coordinates = tuple[float, float]
DistanceOracle = Callable[[Coordinates, Coordinates], Optional[DistanceResult]]

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"

_EARTH_RADIUS_KM = 6371.0
# Roads are longer than the great circle; average speed incl. motorway + towns.
_ROAD_FACTOR = 1.25
_AVG_ROAD_SPEED_KMH = 80.0

# Upper bound on concurrent distance lookups
_MAX_CONCURRENT_LOOKUPS = 6

# Simple in-memory cache (origin|dest → result)
_route_cache: dict[str, DistanceResult] = {}
_route_cache_lock = threading.Lock()


def _get_gmaps_key() -> str:
    """Read the API key lazily so that dotenv has loaded by the time we need it."""
    return os.getenv("GOOGLE_MAPS_API_KEY", "")


def _cache_key(origin: Coordinates, destination: Coordinates) -> str:
    return f"{origin[0]:.5f},{origin[1]:.5f}|{destination[0]:.5f},{destination[1]:.5f}"


# ---------------------------------------------------------------------------
# Google Maps Distance Matrix API
# ---------------------------------------------------------------------------

def _gmaps_distance_matrix(origin: Coordinates, destination: Coordinates) -> Optional[DistanceResult]:
    """Call the Distance Matrix API (driving) for a single origin→destination pair.

    Args:
        origin: (lat, lng) of the start point
        destination: (lat, lng) of the end point

    Returns:
        DistanceResult or None when there is no key or no route.
    """
    api_key = _get_gmaps_key()
    if not api_key:
        return None

    params = {
        "origins": f"{origin[0]},{origin[1]}",
        "destinations": f"{destination[0]},{destination[1]}",
        "mode": "driving",
        "key": api_key,
    }
    try:
        resp = requests.get(_DISTANCE_MATRIX_URL, params=params, timeout=10)
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        log.warning("Distance Matrix request failed: %s", exc)
        return None

    if data.get("status") != "OK":
        log.debug("Distance Matrix status %s", data.get("status"))
        return None

    element = data["rows"][0]["elements"][0]
    if element.get("status") != "OK":
        return None

    return DistanceResult(
        distance_km=round(element["distance"]["value"] / 1000.0, 1),  # meters
        duration_minutes=round(element["duration"]["value"] / 60.0, 1),  # seconds
        provider="google",
    )


# ---------------------------------------------------------------------------
# Offline estimate
# ---------------------------------------------------------------------------

def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * _EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def _estimate_route(origin: Coordinates, destination: Coordinates) -> DistanceResult:
    road_km = haversine_km(*origin, *destination) * _ROAD_FACTOR
    return DistanceResult(
        distance_km=round(road_km, 1),
        duration_minutes=round(road_km / _AVG_ROAD_SPEED_KMH * 60, 1),
        provider="estimate",
    )


# ---------------------------------------------------------------------------
# Public: distance oracle + classifier
# ---------------------------------------------------------------------------

def get_distance(origin: Coordinates, destination: Coordinates) -> Optional[DistanceResult]:
    """Default distance oracle: Google when configured, great-circle estimate otherwise."""
    if origin is None or destination is None:
        return None

    key = _cache_key(origin, destination)
    with _route_cache_lock:
        cached = _route_cache.get(key)
    if cached:
        log.debug("Distance cache hit %s", key)
        return cached

    result = _gmaps_distance_matrix(origin, destination)
    if result is None:
        result = _estimate_route(origin, destination)

    with _route_cache_lock:
        _route_cache[key] = result
    return result


def classify(
    distance_km: float,
    duration_minutes: float,
    *,
    max_drive_hours: Optional[float] = None,
    max_drive_km: Optional[float] = None,
) -> TravelMode:
    """Fly when the drive is longer than the hour limit OR the distance limit."""
    hours_limit = settings.drive_max_hours if max_drive_hours is None else max_drive_hours
    km_limit = settings.drive_max_distance_km if max_drive_km is None else max_drive_km

    if duration_minutes / 60.0 > hours_limit or distance_km > km_limit:
        return TravelMode.FLY
    return TravelMode.DRIVE


# ---------------------------------------------------------------------------
# Concurrent lookups
# ---------------------------------------------------------------------------

async def _lookup(
    oracle: DistanceOracle,
    origin: Coordinates,
    destination: Coordinates,
    gate: asyncio.Semaphore,
) -> Optional[DistanceResult]:
    async with gate:
        try:
            if inspect.iscoroutinefunction(oracle):
                return await oracle(origin, destination)
            return await asyncio.to_thread(oracle, origin, destination)
        except Exception as exc:
            # A single failed pair only makes that edge unusable.
            log.warning("Distance lookup %s → %s failed: %s", origin, destination, exc)
            return None


async def compute_leg_distances(
    pairs: Sequence[tuple[Coordinates, Coordinates]],
    oracle: DistanceOracle = get_distance,
) -> list[Optional[DistanceResult]]:
    """Measure many (origin, destination) pairs concurrently, preserving order."""
    gate = asyncio.Semaphore(_MAX_CONCURRENT_LOOKUPS)
    return list(await asyncio.gather(*(_lookup(oracle, a, b, gate) for a, b in pairs)))


# ---------------------------------------------------------------------------
# Sequencing
# ---------------------------------------------------------------------------

async def sequence(
    origin: Stop,
    stops: Sequence[Stop],
    oracle: DistanceOracle = get_distance,
) -> list[str]:
    """Order *stops* with a nearest-neighbour tour starting at *origin*.

    Origin→stop and every unordered stop pair are measured concurrently
    (distances are treated as symmetric).  A pair the oracle cannot answer
    counts as infinitely far; ties go to the stop listed first.

    Returns:
        Stop ids in visiting order (a permutation of the input ids).

    Raises:
        MissingCoordinates: the origin or any stop has no coordinates.
    """
    missing = [s.id for s in stops if not s.has_coordinates()]
    if not origin.has_coordinates():
        missing.insert(0, origin.id or ORIGIN)
    if missing:
        raise MissingCoordinates(missing)

    if len(stops) <= 1:
        return [s.id for s in stops]

    n = len(stops)
    pairs: list[tuple[int, int]] = [(-1, i) for i in range(n)] + list(combinations(range(n), 2))
    coords = [s.coordinates for s in stops]
    results = await compute_leg_distances(
        [(origin.coordinates if a < 0 else coords[a], coords[b]) for a, b in pairs],
        oracle,
    )

    dist: dict[tuple[int, int], float] = {}
    for (a, b), res in zip(pairs, results):
        km = res.distance_km if res is not None else math.inf
        dist[(a, b)] = dist[(b, a)] = km

    unvisited = list(range(n))
    order: list[int] = []
    current = -1
    while unvisited:
        # min() keeps the first of equal keys, so ties resolve in input order.
        nxt = min(unvisited, key=lambda i: dist[(current, i)])
        order.append(nxt)
        unvisited.remove(nxt)
        current = nxt

    log.info("Sequenced %d stops: %s", n, [stops[i].id for i in order])
    return [stops[i].id for i in order]
