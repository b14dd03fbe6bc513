import sys
import os
import math
import pytest

# Project root, so triproute imports without installing the package.
_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _root not in sys.path:
    sys.path.insert(0, _root)

from triproute.settings import ProviderSetting, Settings
from triproute.TripPlan import AirportCandidate, DistanceResult, FlightLeg, FlightOption, Stop


def euclidean_oracle(a, b):
    """Treat coordinates as a plane: 1 unit = 100 km, 1 km = 1 minute."""
    km = math.dist(a, b) * 100
    return DistanceResult(distance_km=km, duration_minutes=km, provider="test")


def make_option(price=120.0, origin="STR", destination="BGY", number="EW1234",
                dep="2030-05-02T06:50", arr="2030-05-02T08:00", with_return=False,
                provider="test", duration=70):
    ret = None
    if with_return:
        ret = FlightLeg(origin=destination, destination=origin, carrier=number[:2],
                        flight_numbers=[f"{number}R"], departure_time="2030-05-04T18:30",
                        arrival_time="2030-05-04T19:40", duration_minutes=duration)
    return FlightOption(
        price=price,
        outbound=FlightLeg(origin=origin, destination=destination, carrier=number[:2],
                           flight_numbers=[number], departure_time=dep, arrival_time=arr,
                           duration_minutes=duration),
        return_leg=ret,
        provider=provider,
        is_round_trip=with_return,
    )


@pytest.fixture
def config():
    """Deterministic settings, independent of the environment."""
    return Settings(
        drive_max_hours=4.0,
        drive_max_distance_km=300.0,
        provider_timeout_seconds=1.0,
        max_flight_results=5,
        airport_candidates=2,
        flight_providers=[ProviderSetting("mock")],
        round_trip_first_leg=True,
        work_hours_per_day=10.0,
        min_travel_days=1,
        long_flight_warning_minutes=600,
    )


@pytest.fixture
def origin():
    return Stop(id="base", name="Stuttgart office", lat=0.0, lng=0.0, city="Stuttgart", country="DE")


@pytest.fixture
def scenario_a_stops():
    return [
        Stop(id="near", name="Near", lat=0.0, lng=1.0, work_hours=4),
        Stop(id="far", name="Far", lat=5.0, lng=5.0, work_hours=4),
        Stop(id="next", name="Next", lat=0.0, lng=2.0, work_hours=4),
    ]


@pytest.fixture
def airports():
    """Two candidates for every point, codes derived from its coordinates."""
    def finder(lat, lng, count=2, country_hint=None):
        tag = f"{lat:g}_{lng:g}"
        return [
            AirportCandidate(code=f"A{tag}", distance_km=10.0),
            AirportCandidate(code=f"B{tag}", distance_km=40.0),
        ][:count]
    return finder


@pytest.fixture
def oracle():
    return euclidean_oracle


@pytest.fixture
def option_factory():
    return make_option
