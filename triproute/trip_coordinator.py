"""
TripPlanCoordinator: the single owner of one trip plan.

Every change (stops, coordinates, dates, a new order, an applied suggestion)
goes through the coordinator, which then:

  1. rebuilds the segment list from the active stops in route order
     (segment 0 = origin → first stop, segment i = stop i-1 → stop i)
  2. measures every leg concurrently and classifies it drive / fly
  3. searches flights for fly legs that have no flight yet and auto-selects
     the first result, unless the user or an applied suggestion picked one

Mutations are serialised with an asyncio.Lock; provider I/O runs outside it.
Identical in-flight searches are shared, and a newer search for the same leg
supersedes older ones (an older result that arrives late is discarded).
"""

from __future__ import annotations

import asyncio
import copy
import logging
import math
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Sequence

from .errors import InvalidSuggestion
from .FlightAgent import find_airport_candidates
from .flight_search import FlightSearchOrchestrator, long_flight_warnings
from .RouteAgent import DistanceOracle, classify, compute_leg_distances, get_distance, sequence
from .settings import Settings, settings
from .suggestion_parser import parse, validate_route_order
from .suggestion_prompt import build_prompt, request_suggestion
from .TripPlan import (
    ORIGIN,
    SOURCE_AI,
    SOURCE_USER,
    AirportCandidate,
    FlightOption,
    FlightSearchResult,
    ParsedSuggestion,
    Segment,
    Stop,
    TravelMode,
    TripPlan,
)

logger = logging.getLogger(__name__)

AirportFinder = Callable[..., list[AirportCandidate]]

_EDITABLE_STOP_FIELDS = {"name", "lat", "lng", "work_hours", "city", "country"}


def _parse_date(value: str) -> date:
    return datetime.strptime(value, "%Y-%m-%d").date()


class TripPlanCoordinator:
    """Owns a TripPlan and keeps its segments and flights consistent.

    Args:
        origin: the technician's base (needs coordinates for any planning)
        stops: customer stops in their initial order
        departure_date: YYYY-MM-DD, or None until known
        oracle: distance oracle (defaults to Google / great-circle estimate)
        orchestrator: flight search orchestrator
        airport_finder: ``(lat, lng, count=, country_hint=) -> [AirportCandidate]``
        config: Settings override
    """

    def __init__(
        self,
        origin: Stop,
        stops: Sequence[Stop] = (),
        departure_date: Optional[str] = None,
        *,
        oracle: DistanceOracle = get_distance,
        orchestrator: Optional[FlightSearchOrchestrator] = None,
        airport_finder: AirportFinder = find_airport_candidates,
        config: Optional[Settings] = None,
    ):
        ids = [s.id for s in stops]
        if len(set(ids)) != len(ids) or ORIGIN in ids:
            raise ValueError(f"stop ids must be unique and not {ORIGIN!r}: {ids}")
        if departure_date is not None:
            _parse_date(departure_date)

        self.origin = origin
        self._stops: list[Stop] = [copy.copy(s) for s in stops]
        self._config = config or settings
        self._oracle = oracle
        self._orchestrator = orchestrator or FlightSearchOrchestrator()
        self._airport_finder = airport_finder

        self._plan = TripPlan(departure_date=departure_date)
        self._sync_route_order()

        self._lock = asyncio.Lock()
        # Flights picked by the user or an applied suggestion, never replaced by search
        self._selections: dict[tuple[str, str], FlightOption] = {}
        self._mode_overrides: dict[tuple[str, str], TravelMode] = {}
        self._preferred_airports: dict[tuple[str, str], tuple[Optional[str], Optional[str]]] = {}
        self._suggestion_warnings: list[str] = []

        self._airports: dict[tuple, list[AirportCandidate]] = {}
        self._results: dict[tuple, FlightSearchResult] = {}
        self._last_results: dict[tuple[str, str], FlightSearchResult] = {}
        self._in_flight: dict[tuple, asyncio.Future] = {}
        self._generation: dict[tuple[str, str], int] = {}

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_plan(self) -> TripPlan:
        """Snapshot of the current plan; changing it does not affect the coordinator."""
        return copy.deepcopy(self._plan)

    @property
    def stops(self) -> list[Stop]:
        return [copy.copy(s) for s in self._stops]

    def active_stops(self) -> list[Stop]:
        """Stops with coordinates, in current route order."""
        by_id = {s.id: s for s in self._stops}
        return [by_id[sid] for sid in self._plan.route_order]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _apply(self, mutate: Callable[[], None]) -> TripPlan:
        async with self._lock:
            mutate()
            await self._rebuild_segments()
        await self._search_flights()
        return self.get_plan()

    async def refresh(self) -> TripPlan:
        """Recompute segments and run any outstanding flight searches."""
        return await self._apply(lambda: None)

    async def add_stop(self, stop: Stop) -> TripPlan:
        def mutate():
            if stop.id == ORIGIN or any(s.id == stop.id for s in self._stops):
                raise ValueError(f"stop id {stop.id!r} already in use")
            self._stops.append(copy.copy(stop))
            self._sync_route_order()
        return await self._apply(mutate)

    async def remove_stop(self, stop_id: str) -> TripPlan:
        def mutate():
            self._find_stop(stop_id)
            self._stops = [s for s in self._stops if s.id != stop_id]
            self._forget_stop(stop_id)
            self._sync_route_order()
        return await self._apply(mutate)

    async def update_stop(self, stop_id: str, **changes) -> TripPlan:
        """Change stop fields (name, lat, lng, work_hours, city, country)."""
        unknown = set(changes) - _EDITABLE_STOP_FIELDS
        if unknown:
            raise ValueError(f"cannot update stop fields: {sorted(unknown)}")

        def mutate():
            stop = self._find_stop(stop_id)
            moved = any(k in changes and changes[k] != getattr(stop, k) for k in ("lat", "lng", "country"))
            for field_name, value in changes.items():
                setattr(stop, field_name, value)
            if moved:
                self._forget_stop(stop_id)
            self._sync_route_order()
        return await self._apply(mutate)

    async def set_departure_date(self, departure_date: str) -> TripPlan:
        _parse_date(departure_date)

        def mutate():
            if departure_date != self._plan.departure_date:
                # Picked flights belong to the old dates
                self._selections.clear()
            self._plan.departure_date = departure_date
        return await self._apply(mutate)

    async def reorder(self) -> TripPlan:
        """Replace the route order with a nearest-neighbour tour from the origin."""
        async with self._lock:
            self._plan.route_order = await sequence(self.origin, self.active_stops(), self._oracle)
            await self._rebuild_segments()
        await self._search_flights()
        return self.get_plan()

    async def select_flight(self, segment_index: int, option: FlightOption, source: str = SOURCE_USER) -> TripPlan:
        """Pin *option* on a fly segment; searches will not replace it."""
        async with self._lock:
            seg = self._segment(segment_index)
            if seg.mode != TravelMode.FLY:
                raise ValueError(f"segment {segment_index} is a {seg.mode.value} leg")
            chosen = replace(option, source=source)
            self._selections[seg.pair] = chosen
            self._set_flight(seg, chosen)
            seg.search_error = None
        return self.get_plan()

    async def apply_suggestion(self, suggestion: ParsedSuggestion) -> TripPlan:
        """Apply a parsed suggestion to the plan.

        Indices refer to the active stops in the current route order.  The
        plan is left untouched when the suggestion does not fit.

        Raises:
            InvalidSuggestion: order is not a permutation of the active stops.
        """
        async with self._lock:
            active = self.active_stops()
            order = validate_route_order(list(suggestion.route_order), len(active))
            by_index = {i: s.id for i, s in enumerate(active, start=1)}
            by_index[0] = ORIGIN
            new_order = [by_index[i] for i in order]
            legs_in_route = set(zip([ORIGIN] + new_order, new_order))

            warnings = list(suggestion.warnings) + [issue.reason for issue in suggestion.pricing_issues]
            overrides: dict[tuple[str, str], TravelMode] = {}
            selections: dict[tuple[str, str], FlightOption] = {}
            preferred: dict[tuple[str, str], tuple[Optional[str], Optional[str]]] = {}

            for leg in suggestion.legs:
                if leg.from_index not in by_index or leg.to_index not in by_index:
                    warnings.append(f"leg {leg.from_index}→{leg.to_index} refers to an unknown stop")
                    continue
                if leg.is_return:
                    continue
                pair = (by_index[leg.from_index], by_index[leg.to_index])
                if pair not in legs_in_route:
                    warnings.append(f"leg {leg.from_index}→{leg.to_index} is not part of the suggested route")
                    continue

                overrides[pair] = leg.mode
                if leg.mode != TravelMode.FLY:
                    continue
                if leg.origin_airport or leg.destination_airport:
                    preferred[pair] = (leg.origin_airport, leg.destination_airport)
                if leg.flight is not None:
                    selections[pair] = leg.flight
                elif leg.recommended_flight_option:
                    pick = self._recommended_option(pair, leg.recommended_flight_option)
                    if pick is None:
                        warnings.append(
                            f"recommended flight option {leg.recommended_flight_option} "
                            f"for leg {leg.from_index}→{leg.to_index} is not available"
                        )
                    else:
                        selections[pair] = replace(pick, source=SOURCE_AI)

            self._plan.route_order = new_order
            self._mode_overrides.update(overrides)
            self._preferred_airports.update(preferred)
            self._selections.update(selections)
            self._suggestion_warnings = warnings
            logger.info("Applied %s suggestion (%s confidence): order %s",
                        suggestion.kind, suggestion.confidence.value, new_order)
            await self._rebuild_segments()
        await self._search_flights()
        return self.get_plan()

    async def search_segment(self, segment_index: int, force: bool = False) -> FlightSearchResult:
        """Search flights for one fly segment; ``force`` bypasses cache and in-flight sharing."""
        seg = self._segment(segment_index)
        if seg.mode != TravelMode.FLY:
            raise ValueError(f"segment {segment_index} is a {seg.mode.value} leg")
        return await self._search_segment(seg, force=force)

    # ------------------------------------------------------------------
    # AI suggestions
    # ------------------------------------------------------------------

    def build_suggestion_prompt(self) -> str:
        airports = {}
        for stop in [self.origin] + self.active_stops():
            cached = self._airports.get((stop.id, stop.coordinates))
            if cached:
                airports[stop.id] = cached
        return build_prompt(self._plan, self.origin, self.active_stops(), airports)

    async def request_suggestion(self, option: str = "option1") -> ParsedSuggestion:
        """Ask the LLM for a re-optimisation and parse it (not applied)."""
        prompt = self.build_suggestion_prompt()
        raw = await asyncio.to_thread(request_suggestion, prompt)
        return parse(raw, len(self._plan.route_order), option)

    # ------------------------------------------------------------------
    # Internals: stops / order
    # ------------------------------------------------------------------

    def _find_stop(self, stop_id: str) -> Stop:
        for stop in self._stops:
            if stop.id == stop_id:
                return stop
        raise ValueError(f"unknown stop {stop_id!r}")

    def _endpoint(self, endpoint_id: str) -> Stop:
        return self.origin if endpoint_id == ORIGIN else self._find_stop(endpoint_id)

    def _segment(self, index: int) -> Segment:
        if not 0 <= index < len(self._plan.segments):
            raise ValueError(f"no segment {index} (plan has {len(self._plan.segments)})")
        return self._plan.segments[index]

    def _sync_route_order(self) -> None:
        """Keep the order of still-active stops, append newly active ones."""
        active = [s.id for s in self._stops if s.has_coordinates()]
        kept = [sid for sid in self._plan.route_order if sid in active]
        self._plan.route_order = kept + [sid for sid in active if sid not in kept]

    def _forget_stop(self, stop_id: str) -> None:
        for store in (self._selections, self._mode_overrides, self._preferred_airports, self._last_results):
            for pair in [p for p in store if stop_id in p]:
                del store[pair]

    # ------------------------------------------------------------------
    # Internals: segments
    # ------------------------------------------------------------------

    def _trip_days(self, stops: Sequence[Stop]) -> int:
        hours = sum(s.work_hours for s in stops)
        return max(self._config.min_travel_days, math.ceil(hours / self._config.work_hours_per_day))

    def _leg_dates(self, stops: Sequence[Stop]) -> list[Optional[str]]:
        """Departure date per leg: after the work days at the previous stops."""
        if not self._plan.departure_date:
            return [None] * len(stops)
        start = _parse_date(self._plan.departure_date)
        dates, hours = [], 0.0
        for stop in stops:
            dates.append((start + timedelta(days=int(hours // self._config.work_hours_per_day))).isoformat())
            hours += stop.work_hours
        return dates

    def _segment_return_date(self, seg: Segment) -> Optional[str]:
        if seg.index == 0 and self._config.round_trip_first_leg:
            return self._plan.return_date
        return None

    def _search_key(self, seg: Segment) -> tuple:
        return (
            seg.from_id,
            seg.to_id,
            self._endpoint(seg.from_id).coordinates,
            self._endpoint(seg.to_id).coordinates,
            seg.departure_date,
            self._segment_return_date(seg),
            self._preferred_airports.get(seg.pair),
        )

    def _set_flight(self, seg: Segment, option: Optional[FlightOption]) -> None:
        if seg.flight is not None:
            stale = set(long_flight_warnings(seg.flight, self._config.long_flight_warning_minutes))
            seg.warnings = [w for w in seg.warnings if w not in stale]
        seg.flight = option
        if option is not None:
            seg.warnings.extend(long_flight_warnings(option, self._config.long_flight_warning_minutes))

    def _apply_result(self, seg: Segment, result: FlightSearchResult) -> None:
        self._last_results[seg.pair] = result
        if not result.success:
            seg.search_error = result.error
            return
        seg.search_error = None
        if seg.pair in self._selections:
            return
        self._set_flight(seg, result.options[0])

    async def _rebuild_segments(self) -> None:
        """Derive segments from the active stops (caller holds the lock)."""
        active = self.active_stops()
        warnings = list(self._suggestion_warnings)
        self._plan.return_date = None
        if self._plan.departure_date and active:
            start = _parse_date(self._plan.departure_date)
            self._plan.return_date = (start + timedelta(days=self._trip_days(active) - 1)).isoformat()

        if not active:
            self._plan.segments = []
            self._plan.warnings = warnings
            return
        if not self.origin.has_coordinates():
            self._plan.segments = []
            self._plan.warnings = warnings + ["origin has no coordinates; no legs can be planned"]
            return

        points = [self.origin] + active
        distances = await compute_leg_distances(
            [(a.coordinates, b.coordinates) for a, b in zip(points, points[1:])], self._oracle
        )
        dates = self._leg_dates(active)

        segments: list[Segment] = []
        for i, (stop, distance, leg_date) in enumerate(zip(active, distances, dates)):
            from_id = ORIGIN if i == 0 else active[i - 1].id
            seg = Segment(index=i, from_id=from_id, to_id=stop.id, distance=distance, departure_date=leg_date)

            if seg.pair in self._mode_overrides:
                seg.mode = self._mode_overrides[seg.pair]
            elif distance is not None:
                seg.mode = classify(
                    distance.distance_km, distance.duration_minutes,
                    max_drive_hours=self._config.drive_max_hours,
                    max_drive_km=self._config.drive_max_distance_km,
                )
            else:
                seg.warnings.append("distance unavailable, assuming drive")

            if seg.mode == TravelMode.FLY:
                if seg.pair in self._selections:
                    self._set_flight(seg, self._selections[seg.pair])
                elif seg.departure_date is None:
                    seg.search_error = "no departure date set"
                else:
                    cached = self._results.get(self._search_key(seg))
                    if cached is not None:
                        self._apply_result(seg, cached)
            segments.append(seg)

        self._plan.segments = segments
        self._plan.warnings = warnings
        logger.debug("Rebuilt %d segments (%d fly)", len(segments), len(self._plan.fly_segments()))

    # ------------------------------------------------------------------
    # Internals: flight search
    # ------------------------------------------------------------------

    def _recommended_option(self, pair: tuple[str, str], number: int) -> Optional[FlightOption]:
        result = self._last_results.get(pair)
        if result is None or not result.success or not 1 <= number <= len(result.options):
            return None
        return result.options[number - 1]

    async def _candidates(self, stop: Stop, preferred_code: Optional[str]) -> list[AirportCandidate]:
        key = (stop.id, stop.coordinates)
        candidates = self._airports.get(key)
        if candidates is None:
            try:
                candidates = await asyncio.to_thread(
                    self._airport_finder, stop.lat, stop.lng,
                    count=self._config.airport_candidates, country_hint=stop.country,
                )
            except Exception as exc:
                logger.warning("Airport lookup for %s failed: %s", stop.id, exc)
                candidates = []
            self._airports[key] = candidates

        if not preferred_code:
            return list(candidates)
        preferred = [c for c in candidates if c.code == preferred_code] or [AirportCandidate(code=preferred_code)]
        return preferred + [c for c in candidates if c.code != preferred_code]

    def _past_date_error(self, seg: Segment) -> Optional[str]:
        if seg.departure_date and _parse_date(seg.departure_date) < date.today():
            return f"departure date {seg.departure_date} is in the past"
        return None

    def _needs_search(self, seg: Segment) -> bool:
        return (
            seg.mode == TravelMode.FLY
            and seg.flight is None
            and seg.departure_date is not None
            and self._search_key(seg) not in self._results
        )

    async def _search_flights(self) -> None:
        pending = [seg for seg in self._plan.segments if self._needs_search(seg)]
        if pending:
            await asyncio.gather(*(self._search_segment(seg) for seg in pending))

    async def _run_search(self, seg: Segment, key: tuple) -> FlightSearchResult:
        origin_code, dest_code = self._preferred_airports.get(seg.pair, (None, None))
        origin_candidates, dest_candidates = await asyncio.gather(
            self._candidates(self._endpoint(seg.from_id), origin_code),
            self._candidates(self._endpoint(seg.to_id), dest_code),
        )
        return await self._orchestrator.search(
            origin_candidates, dest_candidates, seg.departure_date, self._segment_return_date(seg)
        )

    async def _search_segment(self, seg: Segment, force: bool = False) -> FlightSearchResult:
        pair = seg.pair
        past = self._past_date_error(seg)
        if past:
            async with self._lock:
                current = self._plan.segment_for(*pair)
                if current is not None:
                    current.search_error = past
            return FlightSearchResult(success=False, error=past)

        key = self._search_key(seg)
        task = None
        if not force:
            if key in self._results:
                return self._results[key]
            running = self._in_flight.get(key)
            if running is not None and not running.done():
                logger.debug("Joining in-flight flight search for %s→%s", *pair)
                task = running

        # Joining an in-flight search is still the newest request for this leg
        generation = self._generation.get(pair, 0) + 1
        self._generation[pair] = generation
        if task is None:
            task = asyncio.ensure_future(self._run_search(seg, key))
            self._in_flight[key] = task
        try:
            result = await asyncio.shield(task)
        finally:
            if task.done() and self._in_flight.get(key) is task:
                del self._in_flight[key]

        async with self._lock:
            if self._generation.get(pair) != generation:
                logger.info("Discarding superseded flight search for %s→%s", *pair)
                return result
            # Failures are retried on the next refresh
            if result.success:
                self._results[key] = result
            current = self._plan.segment_for(*pair)
            if current is not None and current.mode == TravelMode.FLY and self._search_key(current) == key:
                self._apply_result(current, result)
        return result
