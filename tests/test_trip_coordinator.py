"""
Unit tests for triproute/trip_coordinator.py

Tests cover:
- Segment derivation, classification and auto-selected flights
- reorder() and stop activation
- apply_suggestion(): index mapping, AI flights that searches never replace,
  recommended options, invalid suggestions leave the plan untouched
- Per-leg failure, past dates, round-trip dates for the first leg
- Failed searches retried, in-flight search sharing, superseding by newer
  requests and returning to a date whose search is still running
"""
import asyncio
import pytest
from unittest.mock import patch

from triproute.errors import InvalidSuggestion, MissingCoordinates
from triproute.flight_search import FlightSearchOrchestrator
from triproute.TripPlan import (
    ORIGIN,
    SOURCE_AI,
    SOURCE_SEARCH,
    SOURCE_USER,
    AirportCandidate,
    Stop,
    StructuredSuggestion,
    SuggestedLeg,
    TravelMode,
)
from triproute.trip_coordinator import TripPlanCoordinator


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def calls():
    return []


@pytest.fixture
def provider(option_factory, calls):
    """Two offers for any route; round-trip offers when a return date is given."""
    def search(origin, dest, dep, ret):
        calls.append((origin, dest, dep, ret))
        with_return = ret is not None
        return [
            option_factory(origin=origin, destination=dest, price=100.0, with_return=with_return),
            option_factory(origin=origin, destination=dest, price=150.0, number="LH42", with_return=with_return),
        ]
    return search


@pytest.fixture
def make_coordinator(origin, scenario_a_stops, config, airports, oracle, provider):
    def build(stops=None, departure="2030-05-02", search=None, finder=None, start=None):
        return TripPlanCoordinator(
            start or origin,
            scenario_a_stops if stops is None else stops,
            departure,
            oracle=oracle,
            orchestrator=FlightSearchOrchestrator([("test", search or provider)], timeout=2),
            airport_finder=finder or airports,
            config=config,
        )
    return build


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------

class TestSegments:
    def test_refresh_builds_classified_segments(self, make_coordinator):
        plan = asyncio.run(make_coordinator().refresh())

        assert plan.route_order == ["near", "far", "next"]
        assert [(s.from_id, s.to_id) for s in plan.segments] == [
            (ORIGIN, "near"), ("near", "far"), ("far", "next"),
        ]
        assert [s.mode for s in plan.segments] == [TravelMode.DRIVE, TravelMode.FLY, TravelMode.FLY]
        assert plan.segments[0].distance.distance_km == pytest.approx(100.0)

    def test_fly_legs_get_first_result_selected(self, make_coordinator, calls):
        plan = asyncio.run(make_coordinator().refresh())

        assert plan.segments[0].flight is None
        for seg in plan.fly_segments():
            assert seg.flight.price == 100.0
            assert seg.flight.source == SOURCE_SEARCH
        # drive leg is never searched
        assert {(o, d) for o, d, _, _ in calls} == {("A0_1", "A5_5"), ("A5_5", "A0_2")}

    def test_trip_dates(self, make_coordinator):
        plan = asyncio.run(make_coordinator().refresh())
        # 12 work hours at 10 h/day → 2 days
        assert plan.return_date == "2030-05-03"
        assert all(s.departure_date == "2030-05-02" for s in plan.segments)

    def test_later_legs_depart_after_work_days(self, make_coordinator):
        stops = [Stop(id="a", lat=0.0, lng=4.0, work_hours=12), Stop(id="b", lat=0.0, lng=8.0, work_hours=2)]
        plan = asyncio.run(make_coordinator(stops=stops).refresh())
        assert [s.departure_date for s in plan.segments] == ["2030-05-02", "2030-05-03"]

    def test_first_leg_round_trip_uses_return_date(self, make_coordinator, calls):
        stops = [Stop(id="far", lat=5.0, lng=5.0, work_hours=25)]
        plan = asyncio.run(make_coordinator(stops=stops).refresh())

        assert plan.return_date == "2030-05-04"
        assert calls == [("A0_0", "A5_5", "2030-05-02", "2030-05-04")]
        assert plan.segments[0].flight.is_round_trip

    def test_stop_without_coordinates_is_inactive(self, make_coordinator):
        async def scenario():
            coord = make_coordinator()
            await coord.add_stop(Stop(id="pending", name="Not geocoded yet"))
            before = coord.get_plan()
            after = await coord.update_stop("pending", lat=0.0, lng=3.0)
            return before, after

        before, after = asyncio.run(scenario())
        assert "pending" not in before.route_order
        assert after.route_order[-1] == "pending"
        assert after.segments[-1].to_id == "pending"

    def test_remove_stop(self, make_coordinator):
        plan = asyncio.run(make_coordinator().remove_stop("far"))
        assert plan.route_order == ["near", "next"]
        assert [s.mode for s in plan.segments] == [TravelMode.DRIVE, TravelMode.DRIVE]

    def test_snapshot_is_detached(self, make_coordinator):
        coord = make_coordinator()
        plan = asyncio.run(coord.refresh())
        plan.route_order.clear()
        plan.segments[1].flight.price = 0
        assert coord.get_plan().route_order == ["near", "far", "next"]
        assert coord.get_plan().segments[1].flight.price == 100.0

    def test_origin_without_coordinates(self, make_coordinator):
        plan = asyncio.run(make_coordinator(start=Stop(id="base")).refresh())
        assert plan.segments == []
        assert any("origin" in w for w in plan.warnings)

    def test_long_flight_is_flagged(self, make_coordinator, option_factory):
        def finder(lat, lng, count=2, country_hint=None):
            return [AirportCandidate(code="FRA" if lat == 0 else "MAD")]

        def slow_flights(origin, dest, dep, ret):
            return [option_factory(origin=origin, destination=dest, duration=700, with_return=ret is not None)]

        stops = [Stop(id="far", lat=5.0, lng=5.0)]
        plan = asyncio.run(make_coordinator(stops=stops, search=slow_flights, finder=finder).refresh())
        assert any("FRA → MAD" in w for w in plan.segments[0].warnings)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    def test_one_failed_leg_does_not_block_the_others(self, make_coordinator, provider):
        def flaky(origin, dest, dep, ret):
            if dest.endswith("5_5"):
                raise RuntimeError("provider down")
            return provider(origin, dest, dep, ret)

        plan = asyncio.run(make_coordinator(search=flaky).refresh())
        failed, ok = plan.segments[1], plan.segments[2]
        assert failed.flight is None
        assert failed.search_error.startswith("all flight providers failed")
        assert ok.flight is not None
        assert ok.search_error is None

    def test_failed_search_is_retried_on_refresh(self, make_coordinator, provider):
        attempts = []

        async def recovering(origin, dest, dep, ret):
            attempts.append((origin, dest))
            # three airport pairs per fly leg, two fly legs
            if len(attempts) <= 6:
                raise RuntimeError("503 service unavailable")
            return provider(origin, dest, dep, ret)

        async def scenario():
            coord = make_coordinator(search=recovering)
            first = await coord.refresh()
            second = await coord.refresh()
            return first, second

        first, second = asyncio.run(scenario())
        assert all(s.flight is None and "503" in s.search_error for s in first.fly_segments())
        assert len(attempts) == 8
        assert all(s.flight is not None and s.search_error is None for s in second.fly_segments())

    def test_past_date_is_not_searched(self, make_coordinator, calls):
        plan = asyncio.run(make_coordinator(departure="2020-01-01").refresh())
        assert calls == []
        assert all("in the past" in s.search_error for s in plan.fly_segments())

    def test_no_date_no_search(self, make_coordinator, calls):
        plan = asyncio.run(make_coordinator(departure=None).refresh())
        assert calls == []
        assert plan.return_date is None
        assert all(s.search_error == "no departure date set" for s in plan.fly_segments())

    def test_reorder_needs_origin_coordinates(self, make_coordinator):
        with pytest.raises(MissingCoordinates):
            asyncio.run(make_coordinator(start=Stop(id="base")).reorder())


# ---------------------------------------------------------------------------
# Reorder / suggestions / selections
# ---------------------------------------------------------------------------

class TestReorder:
    def test_nearest_neighbour(self, make_coordinator):
        plan = asyncio.run(make_coordinator().reorder())
        assert plan.route_order == ["near", "next", "far"]
        assert [s.mode for s in plan.segments] == [TravelMode.DRIVE, TravelMode.DRIVE, TravelMode.FLY]
        assert plan.segments[2].pair == ("next", "far")


class TestApplySuggestion:
    def test_indices_follow_current_route(self, make_coordinator):
        suggestion = StructuredSuggestion(route_order=[3, 1, 2])
        plan = asyncio.run(make_coordinator().apply_suggestion(suggestion))
        assert plan.route_order == ["next", "near", "far"]

    def test_invalid_order_leaves_plan_untouched(self, make_coordinator):
        async def scenario():
            coord = make_coordinator()
            before = await coord.refresh()
            with pytest.raises(InvalidSuggestion):
                await coord.apply_suggestion(StructuredSuggestion(route_order=[1, 1, 2]))
            return before, coord.get_plan()

        before, after = asyncio.run(scenario())
        assert after == before

    def test_ai_flight_is_never_replaced_by_search(self, make_coordinator, option_factory):
        ai_flight = option_factory(origin="STR", destination="MXP", price=42.0, number="EW7")
        ai_flight.source = SOURCE_AI
        suggestion = StructuredSuggestion(
            route_order=[1, 2, 3],
            legs=[SuggestedLeg(1, 2, TravelMode.FLY, flight=ai_flight)],
        )

        async def scenario():
            coord = make_coordinator()
            await coord.refresh()
            await coord.apply_suggestion(suggestion)
            await coord.search_segment(1, force=True)
            await coord.refresh()
            return coord.get_plan()

        plan = asyncio.run(scenario())
        assert plan.segments[1].flight.price == 42.0
        assert plan.segments[1].flight.source == SOURCE_AI

    def test_mode_override(self, make_coordinator, calls):
        suggestion = StructuredSuggestion(
            route_order=[1, 2, 3],
            legs=[SuggestedLeg(1, 2, TravelMode.DRIVE), SuggestedLeg(0, 1, TravelMode.FLY)],
        )
        plan = asyncio.run(make_coordinator().apply_suggestion(suggestion))
        assert [s.mode for s in plan.segments] == [TravelMode.FLY, TravelMode.DRIVE, TravelMode.FLY]
        assert plan.segments[0].flight is not None

    def test_recommended_option_picks_from_last_search(self, make_coordinator):
        suggestion = StructuredSuggestion(
            route_order=[1, 2, 3],
            legs=[SuggestedLeg(1, 2, TravelMode.FLY, recommended_flight_option=2)],
        )

        async def scenario():
            coord = make_coordinator()
            await coord.refresh()
            return await coord.apply_suggestion(suggestion)

        plan = asyncio.run(scenario())
        assert plan.segments[1].flight.price == 150.0
        assert plan.segments[1].flight.source == SOURCE_AI

    def test_unavailable_recommendation_is_reported(self, make_coordinator):
        suggestion = StructuredSuggestion(
            route_order=[1, 2, 3],
            legs=[SuggestedLeg(1, 2, TravelMode.FLY, recommended_flight_option=9)],
        )
        plan = asyncio.run(make_coordinator().apply_suggestion(suggestion))
        assert any("not available" in w for w in plan.warnings)
        assert plan.segments[1].flight.source == SOURCE_SEARCH

    def test_preferred_airport_goes_first(self, make_coordinator, calls):
        suggestion = StructuredSuggestion(
            route_order=[1, 2, 3],
            legs=[SuggestedLeg(1, 2, TravelMode.FLY, origin_airport="BGY", destination_airport="MXP")],
        )
        asyncio.run(make_coordinator().apply_suggestion(suggestion))
        assert ("BGY", "MXP", "2030-05-02", None) in calls


class TestSelectFlight:
    def test_user_selection_survives_search(self, make_coordinator, option_factory):
        async def scenario():
            coord = make_coordinator()
            await coord.refresh()
            await coord.select_flight(2, option_factory(price=77.0, number="LX1"))
            await coord.search_segment(2, force=True)
            return coord.get_plan()

        seg = asyncio.run(scenario()).segments[2]
        assert seg.flight.price == 77.0
        assert seg.flight.source == SOURCE_USER

    def test_drive_segment_cannot_take_a_flight(self, make_coordinator, option_factory):
        async def scenario():
            coord = make_coordinator()
            await coord.refresh()
            await coord.select_flight(0, option_factory())

        with pytest.raises(ValueError):
            asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestConcurrentSearches:
    def test_identical_searches_share_one_request(self, make_coordinator, option_factory):
        calls = []

        async def scenario():
            gate = asyncio.Event()

            async def gated(origin, dest, dep, ret):
                calls.append((origin, dest))
                await gate.wait()
                return [option_factory(origin=origin, destination=dest)]

            coord = make_coordinator(search=gated)
            first = asyncio.create_task(coord.refresh())
            second = asyncio.create_task(coord.refresh())
            await asyncio.sleep(0.2)
            gate.set()
            await asyncio.gather(first, second)
            return coord.get_plan()

        plan = asyncio.run(scenario())
        assert sorted(calls) == [("A0_1", "A5_5"), ("A5_5", "A0_2")]
        assert all(s.flight is not None for s in plan.fly_segments())

    def test_newer_request_supersedes_older(self, make_coordinator, option_factory):
        async def scenario():
            gate = asyncio.Event()

            async def by_date(origin, dest, dep, ret):
                if dep == "2030-05-02":
                    await gate.wait()
                    return [option_factory(origin=origin, destination=dest, price=1.0)]
                return [option_factory(origin=origin, destination=dest, price=2.0)]

            coord = make_coordinator(search=by_date)
            old = asyncio.create_task(coord.refresh())
            await asyncio.sleep(0.2)
            await coord.set_departure_date("2030-06-10")
            gate.set()
            await old
            return coord.get_plan()

        plan = asyncio.run(scenario())
        assert plan.departure_date == "2030-06-10"
        assert [s.flight.price for s in plan.fly_segments()] == [2.0, 2.0]

    def test_returning_to_an_in_flight_date_uses_its_result(self, make_coordinator, option_factory):
        async def scenario():
            gate = asyncio.Event()

            async def by_date(origin, dest, dep, ret):
                if dep == "2030-05-02":
                    await gate.wait()
                    return [option_factory(origin=origin, destination=dest, price=1.0)]
                return [option_factory(origin=origin, destination=dest, price=2.0)]

            coord = make_coordinator(search=by_date)
            first = asyncio.create_task(coord.refresh())
            await asyncio.sleep(0.2)
            await coord.set_departure_date("2030-06-10")
            back = asyncio.create_task(coord.set_departure_date("2030-05-02"))
            await asyncio.sleep(0.2)
            gate.set()
            await asyncio.gather(first, back)
            return coord.get_plan()

        plan = asyncio.run(scenario())
        assert plan.departure_date == "2030-05-02"
        assert [(s.flight.price, s.search_error) for s in plan.fly_segments()] == [(1.0, None), (1.0, None)]

    def test_cached_results_are_reused(self, make_coordinator, calls):
        async def scenario():
            coord = make_coordinator()
            await coord.refresh()
            await coord.refresh()

        asyncio.run(scenario())
        assert len(calls) == 2


# ---------------------------------------------------------------------------
# AI suggestion round trip
# ---------------------------------------------------------------------------

class TestRequestSuggestion:
    def test_prompt_lists_stops_in_route_order(self, make_coordinator):
        coord = make_coordinator()
        asyncio.run(coord.refresh())
        prompt = coord.build_suggestion_prompt()
        assert "1. Near" in prompt
        assert "2. Far" in prompt
        assert "3. Next" in prompt
        assert "route_order" in prompt

    def test_reply_is_parsed_for_active_stops(self, make_coordinator):
        reply = '```json\n{"option1": {"route_order": [2, 3, 1], "segments": []}}\n```'
        coord = make_coordinator()
        with patch("triproute.trip_coordinator.request_suggestion", return_value=reply) as mock_llm:
            suggestion = asyncio.run(coord.request_suggestion())
        assert suggestion.route_order == [2, 3, 1]
        assert "Customers (current order)" in mock_llm.call_args.args[0]
