"""Error types raised (or recorded) by the trip engine."""


class TripPlanningError(Exception):
    """Base class. ``reason`` is a short, user-facing explanation."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class MissingCoordinates(TripPlanningError, ValueError):
    """Raised when the origin or a stop cannot be placed on the map."""

    def __init__(self, stop_ids: list[str]):
        self.stop_ids = list(stop_ids)
        super().__init__(f"missing coordinates for: {', '.join(self.stop_ids)}")


class ProviderFailure(TripPlanningError):
    """A single flight provider errored or timed out."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        super().__init__(f"{provider}: {reason}")


class NoItinerariesFound(TripPlanningError):
    pass


class InvalidSuggestion(TripPlanningError, ValueError):
    """An optimization suggestion could not be parsed or does not fit the trip."""


class AmbiguousPricing(TripPlanningError):
    """Recorded (not raised) when a suggested flight carries no usable price."""
