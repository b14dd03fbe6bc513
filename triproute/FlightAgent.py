"""
Flight-data providers and airport lookup.

Every provider has the same shape::

    provider(origin_code, dest_code, departure_date, return_date) -> list[FlightOption]

and raises ProviderFailure when it cannot answer.  The orchestrator in
flight_search decides which providers run and in what order.

  amadeus  → Amadeus Flight Offers Search (AMADEUS_CLIENT_ID / _SECRET)
  serper   → Google Flights through serper.dev (SERPER_API_KEY)
  llm      → estimated offers from the configured LLM (litellm)
  mock     → deterministic offline offers from mock_data
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Callable, Optional

import requests
from amadeus import Client, ResponseError

from .errors import ProviderFailure
from .mock_data import find_nearest_airports, generate_mock_flight_options
from .settings import ProviderSetting, settings
from .suggestion_parser import _as_price, _flight_leg, extract_json_object, strip_code_fences
from .suggestion_prompt import _llm_call
from .TripPlan import AirportCandidate, FlightLeg, FlightOption, FlightSegment

logger = logging.getLogger(__name__)

ProviderFn = Callable[[str, str, str, Optional[str]], list[FlightOption]]

_amadeus = Client(
    client_id=os.getenv("AMADEUS_CLIENT_ID", ""),
    client_secret=os.getenv("AMADEUS_CLIENT_SECRET", ""),
)

_has_credentials = bool(os.getenv("AMADEUS_CLIENT_ID"))

_SERPER_URL = "https://google.serper.dev/search"


def _get_serper_key() -> str:
    return os.getenv("SERPER_API_KEY", "")


# ---------------------------------------------------------------------------
# Amadeus
# ---------------------------------------------------------------------------

def _parse_iso_duration(iso: str) -> int:
    """Convert ISO-8601 duration (e.g. 'PT14H15M') to total minutes."""
    m = re.match(r"P(?:(\d+)D)?T?(?:(\d+)H)?(?:(\d+)M)?", iso or "")
    if not m:
        return 0
    return int(m.group(1) or 0) * 1440 + int(m.group(2) or 0) * 60 + int(m.group(3) or 0)


def _normalize_amadeus_itinerary(itin: dict) -> Optional[FlightLeg]:
    segments = itin.get("segments", [])
    if not segments:
        return None

    hops = [
        FlightSegment(
            origin=seg.get("departure", {}).get("iataCode", ""),
            destination=seg.get("arrival", {}).get("iataCode", ""),
            carrier=seg.get("carrierCode", ""),
            flight_number=f"{seg.get('carrierCode', '')}{seg.get('number', '')}",
            departure_time=seg.get("departure", {}).get("at", ""),
            arrival_time=seg.get("arrival", {}).get("at", ""),
            duration_minutes=_parse_iso_duration(seg.get("duration", "")),
        )
        for seg in segments
    ]
    first, last = hops[0], hops[-1]
    return FlightLeg(
        origin=first.origin,
        destination=last.destination,
        carrier=first.carrier,
        flight_numbers=[h.flight_number for h in hops],
        departure_time=first.departure_time,
        arrival_time=last.arrival_time,
        duration_minutes=_parse_iso_duration(itin.get("duration", ""))
        or sum(h.duration_minutes for h in hops),
        segments=hops,
    )


def _normalize_amadeus_offers(raw_offers: list[dict]) -> list[FlightOption]:
    """Convert Amadeus FlightOffer objects into FlightOptions (2nd itinerary = return)."""
    options: list[FlightOption] = []
    for offer in raw_offers:
        itineraries = offer.get("itineraries", [])
        outbound = _normalize_amadeus_itinerary(itineraries[0]) if itineraries else None
        if outbound is None:
            continue
        return_leg = _normalize_amadeus_itinerary(itineraries[1]) if len(itineraries) > 1 else None
        price = offer.get("price", {})
        options.append(FlightOption(
            price=float(price.get("grandTotal", price.get("total", 0))),
            outbound=outbound,
            return_leg=return_leg,
            provider="amadeus",
            currency=price.get("currency", "EUR"),
            is_round_trip=return_leg is not None,
        ))
    return options


def search_amadeus(
    origin: str, destination: str, departure_date: str, return_date: Optional[str] = None, adults: int = 1
) -> list[FlightOption]:
    """Search the Amadeus Flight Offers API.

    origin and destination must be IATA airport codes (e.g. FRA, BGY).
    Dates must be YYYY-MM-DD; omit return_date for one-way trips.
    """
    if not _has_credentials:
        raise ProviderFailure("amadeus", "AMADEUS_CLIENT_ID not configured")
    params = {
        "originLocationCode": origin,
        "destinationLocationCode": destination,
        "departureDate": departure_date,
        "adults": adults,
        "currencyCode": "EUR",
        "max": settings.max_flight_results,
    }
    if return_date:
        params["returnDate"] = return_date
    try:
        raw = _amadeus.shopping.flight_offers_search.get(**params).data
    except ResponseError as e:
        raise ProviderFailure("amadeus", str(e)) from e
    return _normalize_amadeus_offers(raw or [])


# ---------------------------------------------------------------------------
# Serper (Google Flights)
# ---------------------------------------------------------------------------

def _serper_one_way(origin: str, destination: str, day: str) -> list[FlightOption]:
    api_key = _get_serper_key()
    if not api_key:
        raise ProviderFailure("serper", "SERPER_API_KEY not configured")

    payload = {
        "q": f"flights from {origin} to {destination}",
        "engine": "google_flights",
        "departure_id": origin,
        "arrival_id": destination,
        "outbound_date": day,
        "type": 2,  # one-way
        "gl": "us",
        "hl": "en",
    }
    try:
        resp = requests.post(
            _SERPER_URL,
            json=payload,
            headers={"X-API-KEY": api_key, "Content-Type": "application/json"},
            timeout=15,
        )
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise ProviderFailure("serper", str(e)) from e

    options = []
    for flight in data.get("best_flights") or []:
        if flight.get("price") is None:
            continue
        carrier = flight.get("airline", "")
        number = str(flight.get("flight_number") or carrier)
        options.append(FlightOption(
            price=float(flight["price"]),
            outbound=FlightLeg(
                origin=origin,
                destination=destination,
                carrier=carrier,
                flight_numbers=[number],
                departure_time=f"{day}T{flight.get('departure_time', '')}".rstrip("T"),
                arrival_time=f"{day}T{flight.get('arrival_time', '')}".rstrip("T"),
                duration_minutes=int(flight.get("total_duration") or 0),
            ),
            provider="serper",
            currency="USD",
        ))
    return options


def search_serper(
    origin: str, destination: str, departure_date: str, return_date: Optional[str] = None
) -> list[FlightOption]:
    """Google Flights via Serper.

    Google Flights prices one direction per query, so a round trip is two
    one-way searches; each outbound is paired with the cheapest return.
    """
    outbound = _serper_one_way(origin, destination, departure_date)
    if not return_date or not outbound:
        return outbound

    returns = _serper_one_way(destination, origin, return_date)
    if not returns:
        return []
    cheapest = min(returns, key=lambda o: o.price)
    return [
        FlightOption(
            price=round(o.price + cheapest.price, 2),
            outbound=o.outbound,
            return_leg=cheapest.outbound,
            provider="serper",
            currency=o.currency,
            is_round_trip=False,  # two separate tickets
        )
        for o in outbound
    ]


# ---------------------------------------------------------------------------
# LLM estimate
# ---------------------------------------------------------------------------

_LLM_FLIGHTS_SYSTEM = (
    "You are a flight search assistant. Give realistic flight options based on typical "
    "schedules and fares for the route. Return only valid JSON."
)


def _on_day(day: str, clock: Optional[str]) -> str:
    if not clock:
        return ""
    return clock if "T" in clock else f"{day}T{clock}"


def _llm_flight_list(raw: Optional[str]) -> Optional[list]:
    """The flight list from a reply: a bare JSON array or {"flights": [...]}."""
    text = strip_code_fences(raw).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        blob = extract_json_object(text)
        try:
            data = json.loads(blob) if blob else None
        except json.JSONDecodeError:
            data = None
    if isinstance(data, dict):
        data = data.get("flights")
    return data if isinstance(data, list) else None


def _llm_option(
    flight: dict, origin: str, destination: str, departure_date: str, return_date: Optional[str]
) -> Optional[FlightOption]:
    outbound_part = dict(flight.get("outbound") if isinstance(flight.get("outbound"), dict) else flight)
    for clock in ("departure_time", "arrival_time"):
        outbound_part[clock] = _on_day(departure_date, outbound_part.get(clock))
    outbound = _flight_leg(outbound_part, origin, destination)
    price = _as_price(flight.get("price_eur")) or _as_price(outbound_part.get("price_eur"))
    if outbound is None or price is None:
        return None

    return_leg = None
    if return_date and isinstance(flight.get("return"), dict):
        return_part = dict(flight["return"])
        for clock in ("departure_time", "arrival_time"):
            return_part[clock] = _on_day(return_date, return_part.get(clock))
        return_leg = _flight_leg(return_part, destination, origin)

    return FlightOption(
        price=round(price, 2),
        outbound=outbound,
        return_leg=return_leg,
        provider="llm",
        currency="EUR",
        is_round_trip=return_leg is not None,
        price_is_estimate=True,
    )


def search_llm(
    origin: str, destination: str, departure_date: str, return_date: Optional[str] = None
) -> list[FlightOption]:
    """Estimated offers from the configured LLM (LLM_PROVIDER / LLM_MODEL).

    Prices are the model's guess, so every option is flagged price_is_estimate.
    """
    trip = f"on {departure_date}" + (f", returning {return_date}" if return_date else ", one way")
    prompt = (
        f"Find 3-5 flight options from {origin} to {destination} {trip}. "
        'Answer with a JSON array of objects with keys "airline" (IATA code), "flight_number", '
        '"departure_time" and "arrival_time" (HH:MM), "duration_minutes" and "price_eur" '
        "(total price in EUR)"
        + (', plus a "return" object with the same flight keys.' if return_date else ".")
    )
    try:
        raw = _llm_call(_LLM_FLIGHTS_SYSTEM, prompt, temperature=0.2)
    except Exception as e:
        raise ProviderFailure("llm", str(e) or type(e).__name__) from e

    flights = _llm_flight_list(raw)
    if flights is None:
        raise ProviderFailure("llm", "reply is not a JSON flight list")

    options = [
        option for option in (
            _llm_option(f, origin, destination, departure_date, return_date)
            for f in flights if isinstance(f, dict)
        )
        if option is not None
    ]
    logger.info("LLM estimated %d flights %s→%s", len(options), origin, destination)
    return sorted(options, key=lambda o: o.price)


# ---------------------------------------------------------------------------
# Mock
# ---------------------------------------------------------------------------

def search_mock(
    origin: str, destination: str, departure_date: str, return_date: Optional[str] = None
) -> list[FlightOption]:
    return generate_mock_flight_options(origin, destination, departure_date, return_date)


PROVIDERS: dict[str, ProviderFn] = {
    "amadeus": search_amadeus,
    "serper": search_serper,
    "llm": search_llm,
    "mock": search_mock,
}


def build_provider_chain(
    provider_settings: Optional[list[ProviderSetting]] = None,
) -> list[tuple[str, ProviderFn]]:
    """Enabled providers as (name, callable), in configured priority order."""
    chain: list[tuple[str, ProviderFn]] = []
    for entry in provider_settings if provider_settings is not None else settings.flight_providers:
        if not entry.enabled:
            continue
        fn = PROVIDERS.get(entry.name)
        if fn is None:
            logger.warning("Unknown flight provider %r in configuration, skipping", entry.name)
            continue
        chain.append((entry.name, fn))
    return chain


# ---------------------------------------------------------------------------
# Airports
# ---------------------------------------------------------------------------

def _amadeus_nearest_airports(lat: float, lng: float) -> list[AirportCandidate]:
    resp = _amadeus.reference_data.locations.airports.get(latitude=lat, longitude=lng)
    candidates = []
    for loc in resp.data or []:
        code = loc.get("iataCode")
        if not code:
            continue
        geo = loc.get("geoCode", {})
        candidates.append(AirportCandidate(
            code=code,
            name=(loc.get("name") or "").title(),
            lat=geo.get("latitude"),
            lng=geo.get("longitude"),
            distance_km=float(loc.get("distance", {}).get("value", 0)),
            country=loc.get("address", {}).get("countryCode"),
        ))
    return candidates


def find_airport_candidates(
    lat: float, lng: float, count: int = 2, country_hint: Optional[str] = None
) -> list[AirportCandidate]:
    """Up to *count* airports serving a point, best first.

    Uses the Amadeus nearest-airport endpoint when credentials are set,
    otherwise the bundled airport table.  Same-country airports rank first
    when *country_hint* is given.
    """
    if _has_credentials:
        try:
            candidates = _amadeus_nearest_airports(lat, lng)
        except ResponseError as e:
            logger.warning("Amadeus airport lookup failed (%s), using local table", e)
            candidates = []
        if candidates:
            hint = (country_hint or "").upper()
            candidates.sort(key=lambda c: (bool(hint) and c.country != hint, c.distance_km))
            return candidates[:count]

    return find_nearest_airports(lat, lng, count=count, country_hint=country_hint)
