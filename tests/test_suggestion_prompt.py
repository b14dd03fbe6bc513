"""
Unit tests for triproute/suggestion_prompt.py
"""
from unittest.mock import MagicMock, patch

from triproute import suggestion_prompt as sp
from triproute.TripPlan import (
    ORIGIN,
    AirportCandidate,
    DistanceResult,
    Segment,
    TravelMode,
    TripPlan,
)


def _plan(option_factory):
    return TripPlan(
        route_order=["far", "near"],
        departure_date="2030-05-02",
        return_date="2030-05-03",
        segments=[
            Segment(index=0, from_id=ORIGIN, to_id="far", mode=TravelMode.FLY,
                    distance=DistanceResult(distance_km=640, duration_minutes=420, provider="test"),
                    flight=option_factory(number="LH1234")),
            Segment(index=1, from_id="far", to_id="near", mode=TravelMode.DRIVE,
                    distance=DistanceResult(distance_km=90, duration_minutes=70, provider="test")),
        ],
    )


class TestBuildPrompt:
    def test_numbers_stops_in_route_order(self, origin, scenario_a_stops, option_factory):
        prompt = sp.build_prompt(_plan(option_factory), origin, scenario_a_stops)
        assert "1. Far" in prompt
        assert "2. Near" in prompt
        # inactive in this plan
        assert "Next" not in prompt

    def test_describes_legs_and_selected_flight(self, origin, scenario_a_stops, option_factory):
        prompt = sp.build_prompt(_plan(option_factory), origin, scenario_a_stops)
        assert "- Base → Customer 1: FLY, 640 km / 420 min by road" in prompt
        assert "Lufthansa LH1234 STR → BGY €120.00" in prompt
        assert "- Customer 1 → Customer 2: DRIVE" in prompt

    def test_lists_airports(self, origin, scenario_a_stops, option_factory):
        airports = {"base": [AirportCandidate(code="STR", distance_km=12.4)]}
        prompt = sp.build_prompt(_plan(option_factory), origin, scenario_a_stops, airports)
        assert "Nearest airports: STR (12 km)" in prompt
        assert "Nearest airports: unknown" in prompt

    def test_search_error_is_shown(self, origin, scenario_a_stops, option_factory):
        plan = _plan(option_factory)
        plan.segments[0].flight = None
        plan.segments[0].search_error = "no itineraries for requested dates"
        prompt = sp.build_prompt(plan, origin, scenario_a_stops)
        assert "flight search: no itineraries" in prompt


class TestLLMName:
    def test_openai_uses_bare_model(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "openai")
        monkeypatch.delenv("LLM_MODEL", raising=False)
        assert sp._llm_name() == "gpt-4o-mini"

    def test_other_providers_are_prefixed(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "Gemini")
        monkeypatch.setenv("LLM_MODEL", "gemini-pro")
        assert sp._llm_name() == "gemini/gemini-pro"

    def test_unknown_provider_falls_back_to_openai(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "nope")
        monkeypatch.delenv("LLM_MODEL", raising=False)
        assert sp._llm_name() == "gpt-4o-mini"


class TestRequestSuggestion:
    def test_calls_litellm_with_system_prompt(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "openai")
        monkeypatch.delenv("LLM_MODEL", raising=False)
        response = MagicMock()
        response.choices[0].message.content = '{"route_order": [1]}'

        with patch("triproute.suggestion_prompt.litellm.completion", return_value=response) as mock_completion:
            reply = sp.request_suggestion("plan text")

        assert reply == '{"route_order": [1]}'
        messages = mock_completion.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": sp.SYSTEM_PROMPT}
        assert messages[1]["content"] == "plan text"
