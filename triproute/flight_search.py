"""
Flight search across several providers with an airport fallback ladder.

For one leg the orchestrator tries at most three airport pairs, strictly in
this order, and stops at the first pair that yields a usable offer:

  1. origin[0] → dest[0]   (primary)
  2. origin[0] → dest[1]   (second destination airport)
  3. origin[1] → dest[0]   (second origin airport)

Within a pair the enabled providers are asked one at a time in priority order,
each under its own timeout, and the first with usable offers answers.  A
failing provider only hands over to the next one.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Optional, Sequence

from .errors import ProviderFailure
from .FlightAgent import ProviderFn, build_provider_chain
from .mock_data import is_european_airport
from .settings import settings
from .TripPlan import AirportCandidate, FlightOption, FlightSearchResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def fallback_ladder(
    origin_candidates: Sequence[AirportCandidate],
    dest_candidates: Sequence[AirportCandidate],
) -> list[tuple[AirportCandidate, AirportCandidate]]:
    """Airport pairs to try, in order. Never substitutes both sides at once."""
    if not origin_candidates or not dest_candidates:
        return []
    primary_o, primary_d = origin_candidates[0], dest_candidates[0]
    ladder = [(primary_o, primary_d)]
    if len(dest_candidates) > 1:
        ladder.append((primary_o, dest_candidates[1]))
    if len(origin_candidates) > 1:
        ladder.append((origin_candidates[1], primary_d))
    return ladder


def filter_round_trip(options: Sequence[FlightOption], return_date: Optional[str]) -> list[FlightOption]:
    """With a return date, offers without a return leg are not usable."""
    if not return_date:
        return list(options)
    return [o for o in options if o.return_leg is not None]


def dedupe_options(options: Sequence[FlightOption]) -> list[FlightOption]:
    """Drop repeated offers (same legs + price), keeping the first one seen."""
    seen: set[tuple] = set()
    unique: list[FlightOption] = []
    for option in options:
        key = option.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(option)
    return unique


def long_flight_warnings(option: FlightOption, threshold_minutes: Optional[int] = None) -> list[str]:
    """Warnings for intra-European legs taking longer than the threshold."""
    limit = settings.long_flight_warning_minutes if threshold_minutes is None else threshold_minutes
    if not limit:
        return []
    warnings = []
    for leg in filter(None, (option.outbound, option.return_leg)):
        if (leg.duration_minutes > limit
                and is_european_airport(leg.origin) and is_european_airport(leg.destination)):
            hours, minutes = divmod(leg.duration_minutes, 60)
            warnings.append(
                f"{leg.routing} takes {hours}h {minutes:02d}m, unusually long for a flight within Europe"
            )
    return warnings


def _date_label(departure_date: str, return_date: Optional[str]) -> str:
    return f"{departure_date} – {return_date}" if return_date else departure_date


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class FlightSearchOrchestrator:
    """Runs one flight search over the configured providers.

    Args:
        providers: ordered (name, callable) list; defaults to the configured chain
        timeout: per-provider timeout in seconds
        max_results: cap on returned offers after dedup
    """

    def __init__(
        self,
        providers: Optional[Sequence[tuple[str, ProviderFn]]] = None,
        timeout: Optional[float] = None,
        max_results: Optional[int] = None,
    ):
        self.providers = list(providers) if providers is not None else build_provider_chain()
        self.timeout = settings.provider_timeout_seconds if timeout is None else timeout
        # A successful search always carries at least one option
        cap = settings.max_flight_results if max_results is None else max_results
        self.max_results = max(1, cap)

    async def _query_provider(
        self, name: str, fn: ProviderFn, origin: str, destination: str,
        departure_date: str, return_date: Optional[str],
    ) -> list[FlightOption]:
        try:
            if inspect.iscoroutinefunction(fn):
                call = fn(origin, destination, departure_date, return_date)
            else:
                call = asyncio.to_thread(fn, origin, destination, departure_date, return_date)
            return list(await asyncio.wait_for(call, timeout=self.timeout) or [])
        except ProviderFailure:
            raise
        except asyncio.TimeoutError as e:
            raise ProviderFailure(name, f"timed out after {self.timeout:g}s") from e
        except Exception as e:
            raise ProviderFailure(name, str(e) or type(e).__name__) from e

    async def _attempt(
        self, providers: Sequence[tuple[str, ProviderFn]], origin: AirportCandidate,
        destination: AirportCandidate, departure_date: str, return_date: Optional[str],
        result: FlightSearchResult,
    ) -> list[FlightOption]:
        """Ask providers in priority order; the first with usable offers answers the pair."""
        for name, fn in providers:
            try:
                offers = await self._query_provider(
                    name, fn, origin.code, destination.code, departure_date, return_date
                )
            except ProviderFailure as failure:
                logger.warning("Flight provider failed: %s", failure.reason)
                result.provider_errors.append(failure.reason)
                continue

            usable = filter_round_trip(offers, return_date)
            if len(usable) < len(offers):
                logger.debug("%s: dropped %d offers without a return leg", name, len(offers) - len(usable))
            if usable:
                result.providers = [name]
                return dedupe_options(usable)
            logger.debug("%s has nothing for %s→%s, trying next provider", name, origin.code, destination.code)
        return []

    async def search(
        self,
        origin_candidates: Sequence[AirportCandidate],
        dest_candidates: Sequence[AirportCandidate],
        departure_date: str,
        return_date: Optional[str] = None,
        providers: Optional[Sequence[tuple[str, ProviderFn]]] = None,
    ) -> FlightSearchResult:
        """Search flights for one leg, walking the fallback ladder.

        Returns:
            FlightSearchResult: success with deduplicated options and the
            airports actually used, or success=False with an actionable error.
        """
        chain = list(providers) if providers is not None else self.providers
        result = FlightSearchResult(success=False)

        ladder = fallback_ladder(origin_candidates, dest_candidates)
        if not ladder:
            side = "origin" if not origin_candidates else "destination"
            result.error = f"no airport candidates for {side}"
            return result
        if not chain:
            result.error = "no flight providers enabled"
            return result

        for origin, destination in ladder:
            result.attempts.append(f"{origin.code}→{destination.code}")
            logger.info("Searching flights %s→%s on %s",
                        origin.code, destination.code, _date_label(departure_date, return_date))
            options = await self._attempt(chain, origin, destination, departure_date, return_date, result)
            if options:
                result.success = True
                result.options = options[: self.max_results]
                result.origin_airport = origin
                result.destination_airport = destination
                return result
            logger.info("No usable offers for %s→%s, trying next airport pair", origin.code, destination.code)

        tried = ", ".join(result.attempts)
        if len(result.provider_errors) == len(chain) * len(result.attempts):
            reasons = "; ".join(dict.fromkeys(result.provider_errors))
            result.error = f"all flight providers failed ({tried}): {reasons}"
        else:
            result.error = f"no itineraries for requested dates {_date_label(departure_date, return_date)} ({tried})"
        return result
