"""
Trip optimisation & flight aggregation engine.

  RouteAgent          → distances, drive/fly classification, stop ordering
  FlightAgent         → flight providers (Amadeus, Serper, mock) + airports
  flight_search       → provider fan-out with airport fallback and dedup
  suggestion_prompt   → describes the plan for the LLM and asks for a suggestion
  suggestion_parser   → turns LLM optimisation output into a typed suggestion
  trip_coordinator    → owns the plan and keeps segments/flights up to date
"""

__version__ = "0.1.0"
