"""
Parse route-optimisation suggestions produced by an LLM.

The model is asked for a JSON object (see suggestion_prompt), but real
responses arrive wrapped in markdown fences, with prose around them, or as
free text.  ``parse`` copes with all three:

  1. strip ``` fences, take the first balanced {...} object, json.loads it
  2. otherwise pull "Route Order: [..]" and FLY/DRIVE markers out of the text
  3. validate the order is a permutation of 1..n (n = active stops)
  4. turn fly legs with full flight details into FlightOptions

The result is a StructuredSuggestion (JSON) or TextFallbackSuggestion (regex,
always low confidence).  Unusable input raises InvalidSuggestion.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from .errors import AmbiguousPricing, InvalidSuggestion
from .TripPlan import (
    SOURCE_AI,
    FlightLeg,
    FlightOption,
    FlightSegment,
    ParsedSuggestion,
    StructuredSuggestion,
    SuggestedLeg,
    TextFallbackSuggestion,
    TravelMode,
)

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[a-zA-Z]*")

_ORIGIN_ALIASES = {"base", "origin", "home", "start"}
_MODE_ALIASES = {
    "fly": TravelMode.FLY, "flight": TravelMode.FLY, "plane": TravelMode.FLY,
    "drive": TravelMode.DRIVE, "car": TravelMode.DRIVE, "driving": TravelMode.DRIVE,
}

# Free-text markers
_ARROW = r"\s*(?:→|->|–|-|to)\s*"
_ROUTE_ORDER_RE = re.compile(r"Route\s*Order\s*:?\s*\[([^\]]*)\]", re.IGNORECASE)
_OUTBOUND_MODE_RE = re.compile(
    rf"(?:Base|Origin){_ARROW}(?:Customer|Stop).{{0,200}}?\b(FLY|FLIGHT|DRIVE)\b",
    re.IGNORECASE | re.DOTALL,
)
_RETURN_MODE_RE = re.compile(
    rf"(?:Customer|Stop)(?:\s*\d+)?{_ARROW}(?:Base|Origin).{{0,200}}?\b(FLY|FLIGHT|DRIVE|RETURN)\b",
    re.IGNORECASE | re.DOTALL,
)
_OPTION_HEADER_RE = re.compile(r"OPTION\s*(\d)", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    """Remove markdown code-fence markers (```json / ```), keeping their content."""
    return _FENCE_RE.sub("", text or "")


def extract_json_object(text: str) -> Optional[str]:
    """Return the first balanced {...} substring, or None.

    Braces inside JSON strings are ignored.
    """
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_price(value: Any) -> Optional[float]:
    """A usable (strictly positive) price, or None."""
    price = _as_float(value)
    return price if price and price > 0 else None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_route_order(order: Any, stop_count: int) -> list[int]:
    """Check *order* is a permutation of 1..stop_count.

    Raises:
        InvalidSuggestion: naming every problem found.
    """
    if not isinstance(order, list):
        raise InvalidSuggestion(f"route order must be a list, got {type(order).__name__}")

    indices = [_as_int(v) for v in order]
    bad = [v for v, i in zip(order, indices) if i is None]
    if bad:
        raise InvalidSuggestion(f"route order contains non-integer entries: {bad}")

    problems = []
    out_of_range = sorted({i for i in indices if not 1 <= i <= stop_count})
    if out_of_range:
        problems.append(f"out-of-range index {', '.join(map(str, out_of_range))} (valid: 1..{stop_count})")

    seen: set[int] = set()
    duplicates = []
    for i in indices:
        if i in seen and i not in duplicates:
            duplicates.append(i)
        seen.add(i)
    if duplicates:
        problems.append(f"duplicate index {', '.join(map(str, duplicates))}")

    missing = [i for i in range(1, stop_count + 1) if i not in seen]
    if len(indices) < stop_count:
        problems.append(f"too few entries ({len(indices)} for {stop_count} stops)")
    elif len(indices) > stop_count:
        problems.append(f"too many entries ({len(indices)} for {stop_count} stops)")
    if missing and not problems:
        problems.append(f"missing index {', '.join(map(str, missing))}")

    if problems:
        raise InvalidSuggestion(
            f"route order {indices} is not a permutation of 1..{stop_count}: " + "; ".join(problems)
        )
    return indices


# ---------------------------------------------------------------------------
# Flight synthesis
# ---------------------------------------------------------------------------

def _flight_leg(part: dict, origin: str, destination: str) -> Optional[FlightLeg]:
    """Build a leg from one {airline, flight_number, departure_time, ...} block."""
    carrier = (part.get("airline") or part.get("carrier") or "").strip()
    number = str(part.get("flight_number") or "").strip()
    if not carrier or not number:
        return None

    first_minutes = _as_int(part.get("duration_minutes")) or 0
    connection = part.get("connection")
    if isinstance(connection, dict) and isinstance(connection.get("second_flight"), dict):
        hub = connection.get("connection_airport", "")
        second = connection["second_flight"]
        second_number = str(second.get("flight_number") or "").strip()
        second_minutes = _as_int(second.get("duration_minutes")) or 0
        layover = _as_int(connection.get("layover_minutes")) or 0
        segments = [
            FlightSegment(origin, hub, carrier, number,
                          part.get("departure_time", ""), part.get("arrival_time", ""), first_minutes),
            FlightSegment(hub, destination, second.get("airline") or carrier, second_number,
                          second.get("departure_time", ""), second.get("arrival_time", ""), second_minutes),
        ]
        return FlightLeg(
            origin=origin,
            destination=destination,
            carrier=carrier,
            flight_numbers=[number, second_number],
            departure_time=part.get("departure_time", ""),
            arrival_time=second.get("arrival_time", ""),
            duration_minutes=first_minutes + layover + second_minutes,
            segments=segments,
        )

    return FlightLeg(
        origin=origin,
        destination=destination,
        carrier=carrier,
        flight_numbers=[number],
        departure_time=part.get("departure_time", ""),
        arrival_time=part.get("arrival_time", ""),
        duration_minutes=first_minutes,
    )


def synthesize_flight(segment: dict, details: dict, suggestion: ParsedSuggestion) -> Optional[FlightOption]:
    """Turn a fly segment's ``flight_details`` into a FlightOption.

    Price priority: segment ``flight_price_eur`` → details ``total_price_eur``
    → outbound + return ``price_eur``.  Without any of these the price is 0,
    marked as an estimate and recorded as AmbiguousPricing.
    """
    origin = (details.get("origin_airport_code") or "").upper()
    destination = (details.get("recommended_airport") or details.get("destination_airport_code") or "").upper()
    outbound_part = details.get("outbound") if isinstance(details.get("outbound"), dict) else details
    return_part = details.get("return") if isinstance(details.get("return"), dict) else None

    outbound = _flight_leg(outbound_part, origin, destination) if origin and destination else None
    if outbound is None:
        suggestion.warnings.append(
            f"flight details for {segment.get('from')}→{segment.get('to')} are incomplete, ignoring flight"
        )
        return None
    return_leg = _flight_leg(return_part, destination, origin) if return_part else None

    price = _as_price(segment.get("flight_price_eur"))
    if price is None:
        price = _as_price(details.get("total_price_eur"))
    if price is None:
        parts = [_as_price(outbound_part.get("price_eur"))]
        if return_part:
            parts.append(_as_price(return_part.get("price_eur")))
        if any(p is not None for p in parts):
            price = sum(p for p in parts if p is not None)

    estimate = price is None
    if estimate:
        issue = AmbiguousPricing(f"no price given for flight {outbound.flight_number} ({outbound.routing})")
        logger.warning("Ambiguous pricing in suggestion: %s", issue.reason)
        suggestion.pricing_issues.append(issue)

    ticket_type = (details.get("ticket_type") or "").lower()
    return FlightOption(
        price=round(price or 0.0, 2),
        outbound=outbound,
        return_leg=return_leg,
        provider="ai",
        currency="EUR",
        is_round_trip=return_leg is not None and ticket_type != "one_way",
        source=SOURCE_AI,
        price_is_estimate=estimate,
    )


def suppress_round_trip_returns(legs: list[SuggestedLeg]) -> list[SuggestedLeg]:
    """Drop stop→origin legs already covered by a round-trip ticket origin→stop."""
    covered = {
        leg.to_index for leg in legs
        if leg.from_index == 0 and leg.mode == TravelMode.FLY and leg.round_trip
    }
    kept = []
    for leg in legs:
        if leg.is_return and leg.from_index in covered:
            logger.debug("Suppressing return leg %d→origin, covered by round-trip ticket", leg.from_index)
            continue
        kept.append(leg)
    return kept


# ---------------------------------------------------------------------------
# Structured (JSON) path
# ---------------------------------------------------------------------------

def _endpoint(value: Any, stop_count: int) -> Optional[int]:
    if isinstance(value, str) and value.strip().lower() in _ORIGIN_ALIASES:
        return 0
    index = _as_int(value)
    if index is None or not 0 <= index <= stop_count:
        return None
    return index


def _mode(value: Any) -> Optional[TravelMode]:
    if not isinstance(value, str):
        return None
    return _MODE_ALIASES.get(value.strip().lower())


def _select_option(data: dict, option: str) -> tuple[Optional[dict], str]:
    for name in dict.fromkeys((option, "option1", "option2")):
        candidate = data.get(name)
        if isinstance(candidate, dict) and "route_order" in candidate:
            return candidate, name
    if "route_order" in data:
        return data, ""
    return None, ""


def _parse_leg(segment: dict, stop_count: int, suggestion: ParsedSuggestion) -> Optional[SuggestedLeg]:
    from_index = _endpoint(segment.get("from"), stop_count)
    to_index = _endpoint(segment.get("to"), stop_count)
    mode = _mode(segment.get("mode"))
    if from_index is None or to_index is None or mode is None or from_index == to_index:
        suggestion.warnings.append(
            f"ignoring segment {segment.get('from')!r}→{segment.get('to')!r} ({segment.get('mode')!r})"
        )
        return None

    details = segment.get("flight_details") if isinstance(segment.get("flight_details"), dict) else {}
    ticket_type = (details.get("ticket_type") or "").lower()
    leg = SuggestedLeg(
        from_index=from_index,
        to_index=to_index,
        mode=mode,
        recommended_flight_option=_as_int(segment.get("recommended_flight_option")),
        round_trip=ticket_type == "round_trip" or (not ticket_type and isinstance(details.get("return"), dict)),
        estimated_distance_km=_as_float(segment.get("estimated_distance_km")),
        estimated_minutes=_as_float(segment.get("estimated_time_minutes")),
    )
    if mode == TravelMode.FLY and details:
        leg.origin_airport = (details.get("origin_airport_code") or "").upper() or None
        leg.destination_airport = (
            details.get("recommended_airport") or details.get("destination_airport_code") or ""
        ).upper() or None
        leg.flight = synthesize_flight(segment, details, suggestion)
    return leg


def _parse_structured(data: dict, option_name: str, stop_count: int) -> StructuredSuggestion:
    suggestion = StructuredSuggestion(
        route_order=validate_route_order(data.get("route_order"), stop_count),
        option_name=option_name,
    )
    for segment in data.get("segments") or []:
        if not isinstance(segment, dict):
            continue
        leg = _parse_leg(segment, stop_count, suggestion)
        if leg is not None:
            suggestion.legs.append(leg)
    suggestion.legs = suppress_round_trip_returns(suggestion.legs)
    return suggestion


# ---------------------------------------------------------------------------
# Free-text fallback
# ---------------------------------------------------------------------------

def _option_section(text: str, option: str) -> str:
    """Text of the requested OPTION n section, or the whole text."""
    wanted = re.sub(r"\D", "", option) or "1"
    headers = list(_OPTION_HEADER_RE.finditer(text))
    for i, header in enumerate(headers):
        if header.group(1) == wanted:
            end = headers[i + 1].start() if i + 1 < len(headers) else len(text)
            return text[header.start():end]
    return text


def _parse_text(text: str, stop_count: int, option: str) -> TextFallbackSuggestion:
    section = _option_section(text, option)
    match = _ROUTE_ORDER_RE.search(section) or _ROUTE_ORDER_RE.search(text)
    if not match:
        raise InvalidSuggestion("no JSON object and no 'Route Order: [...]' found in suggestion")

    raw_order = [part.strip() for part in match.group(1).split(",") if part.strip()]
    suggestion = TextFallbackSuggestion(
        route_order=validate_route_order(raw_order, stop_count),
        option_name=f"option{re.sub(r'[^0-9]', '', option) or '1'}",
    )
    order = suggestion.route_order

    outbound = _OUTBOUND_MODE_RE.search(section)
    if outbound:
        first_mode = _mode(outbound.group(1)) or TravelMode.FLY
    else:
        first_mode = TravelMode.FLY if re.search(r"\b(FLY|FLIGHT)\b", section, re.IGNORECASE) else TravelMode.DRIVE
        suggestion.warnings.append(f"no Base→Customer mode found, assuming {first_mode.value}")

    returning = _RETURN_MODE_RE.search(section)
    return_keyword = returning.group(1).upper() if returning else ""
    round_trip = first_mode == TravelMode.FLY and return_keyword == "RETURN"

    suggestion.legs = [SuggestedLeg(from_index=0, to_index=order[0], mode=first_mode, round_trip=round_trip)]
    # "RETURN" means the way back is on the outbound round-trip ticket
    if returning and not round_trip:
        suggestion.legs.append(SuggestedLeg(
            from_index=order[-1],
            to_index=0,
            mode=_mode(return_keyword) or first_mode,
        ))
    return suggestion


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def parse(raw_text: str, active_stop_count: int, option: str = "option1") -> ParsedSuggestion:
    """Parse an LLM suggestion for a trip with *active_stop_count* stops.

    Args:
        raw_text: the model's raw reply
        active_stop_count: number of stops the route order must cover
        option: which alternative to read ("option1" / "option2")

    Raises:
        InvalidSuggestion: nothing parseable, or the order does not fit the trip.
    """
    if not raw_text or not raw_text.strip():
        raise InvalidSuggestion("suggestion is empty")

    text = strip_code_fences(raw_text)
    blob = extract_json_object(text)
    if blob is not None:
        try:
            data = json.loads(blob)
        except json.JSONDecodeError as e:
            logger.info("Suggestion JSON did not parse (%s), falling back to text extraction", e)
        else:
            if isinstance(data, dict):
                chosen, name = _select_option(data, option)
                if chosen is not None:
                    return _parse_structured(chosen, name, active_stop_count)
            logger.info("Suggestion JSON has no route_order, falling back to text extraction")

    return _parse_text(text, active_stop_count, option)
