"""
Prompt generation for route-optimisation suggestions (litellm).

build_prompt() describes the current plan (stops numbered in route order,
leg modes, airports, selected flights) and asks for the JSON structure that
suggestion_parser.parse() reads back.
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Sequence

import litellm

from .mock_data import AIRLINES
from .TripPlan import AirportCandidate, Stop, TravelMode, TripPlan

logger = logging.getLogger(__name__)

# Silence litellm's own verbose logging
litellm.suppress_debug_info = True
# Drop params unsupported by the active model
litellm.drop_params = True

_LLM_DEFAULTS = {
    "openai":    "gpt-4o-mini",
    "gemini":    "gemini-2.0-flash",
    "anthropic": "claude-sonnet-4-20250514",
}

SYSTEM_PROMPT = (
    "You are a travel planner for field-service technicians. You optimise the order of "
    "customer visits and choose between driving and flying for every leg, balancing "
    "travel time and cost. Answer with a single JSON object and nothing else."
)

_RESPONSE_FORMAT = """\
{
  "option1": {
    "name": "short label",
    "route_order": [<stop numbers, each exactly once>],
    "segments": [
      {
        "from": "base" | <stop number>,
        "to": "base" | <stop number>,
        "mode": "fly" | "drive",
        "reasoning": "...",
        "estimated_distance_km": <number>,
        "estimated_time_minutes": <number>,
        "recommended_flight_option": <1-based option number, if options were listed>,
        "flight_price_eur": <number>,
        "flight_details": {
          "origin_airport_code": "STR",
          "destination_airport_code": "BGY",
          "alternative_airports": ["MXP"],
          "recommended_airport": "BGY",
          "ticket_type": "round_trip" | "one_way",
          "outbound": {"airline": "...", "flight_number": "...", "departure_time": "HH:MM",
                       "arrival_time": "HH:MM", "duration_minutes": <n>, "price_eur": <n>,
                       "connection": {"connection_airport": "FRA", "layover_minutes": <n>,
                                      "second_flight": {"airline": "...", "flight_number": "...",
                                                        "departure_time": "HH:MM", "arrival_time": "HH:MM",
                                                        "duration_minutes": <n>}}},
          "return": {<same structure as outbound, required for round_trip>},
          "total_price_eur": <number>
        }
      }
    ]
  },
  "option2": {<an alternative with the same structure>}
}"""


def _llm_name() -> str:
    """Return the litellm model string (provider/model format)."""
    provider = os.getenv("LLM_PROVIDER", "openai").lower().strip()
    if provider not in _LLM_DEFAULTS:
        provider = "openai"
    model = os.getenv("LLM_MODEL", _LLM_DEFAULTS[provider])
    if provider == "openai":
        return model  # litellm uses bare model name for OpenAI
    return f"{provider}/{model}"


def _llm_call(system_prompt: str, user_prompt: str, temperature: float = 0.3) -> str:
    """Make a single litellm.completion() call and return the text content."""
    response = litellm.completion(
        model=_llm_name(),
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        temperature=temperature,
    )
    return response.choices[0].message.content


def _airport_line(candidates: Sequence[AirportCandidate]) -> str:
    if not candidates:
        return "unknown"
    return ", ".join(f"{c.code} ({c.distance_km:.0f} km)" for c in candidates)


def build_prompt(
    plan: TripPlan,
    origin: Stop,
    stops: Sequence[Stop],
    airports: Optional[dict[str, list[AirportCandidate]]] = None,
) -> str:
    """Describe *plan* for the model.

    Stops are numbered 1..n in the plan's current route order, which is the
    numbering ``parse`` expects back.
    """
    airports = airports or {}
    by_id = {s.id: s for s in stops}
    ordered = [by_id[sid] for sid in plan.route_order if sid in by_id]
    number = {s.id: i for i, s in enumerate(ordered, start=1)}

    lines = [
        f"Trip departs {plan.departure_date or 'TBD'} and returns {plan.return_date or 'TBD'}.",
        "",
        f"Base: {origin.name or origin.id} ({origin.city or '?'}, {origin.country or '?'})",
        f"  Nearest airports: {_airport_line(airports.get(origin.id, []))}",
        "",
        "Customers (current order):",
    ]
    for s in ordered:
        lines.append(f"{number[s.id]}. {s.name or s.id} ({s.city or '?'}, {s.country or '?'}), "
                     f"{s.work_hours:g} h on site")
        lines.append(f"   Nearest airports: {_airport_line(airports.get(s.id, []))}")

    lines += ["", "Current legs:"]
    for seg in plan.segments:
        start = "Base" if seg.index == 0 else f"Customer {number.get(seg.from_id, '?')}"
        end = f"Customer {number.get(seg.to_id, '?')}"
        detail = f"{seg.mode.value.upper()}"
        if seg.distance:
            detail += f", {seg.distance.distance_km:.0f} km / {seg.distance.duration_minutes:.0f} min by road"
        if seg.mode == TravelMode.FLY and seg.flight:
            out = seg.flight.outbound
            detail += (f", selected {AIRLINES.get(out.carrier, out.carrier)} {out.flight_number} "
                       f"{out.routing} €{seg.flight.price:.2f}")
        elif seg.search_error:
            detail += f", flight search: {seg.search_error}"
        lines.append(f"- {start} → {end}: {detail}")

    lines += [
        "",
        "Propose two alternatives. Every customer number must appear exactly once in route_order.",
        "Respond ONLY with JSON in this structure:",
        _RESPONSE_FORMAT,
    ]
    return "\n".join(lines)


def request_suggestion(prompt: str) -> str:
    """Ask the configured LLM for a suggestion; returns the raw reply text."""
    logger.info("Requesting route suggestion from %s", _llm_name())
    return _llm_call(SYSTEM_PROMPT, prompt)
