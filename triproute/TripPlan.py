import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Optional

from dataclasses_json import dataclass_json

from .errors import AmbiguousPricing, NoItinerariesFound

# Segment endpoint id used for the trip's starting point.
ORIGIN = "origin"

SOURCE_SEARCH = "search"
SOURCE_AI = "ai_recommendation"
SOURCE_USER = "user"


class TravelMode(str, Enum):
    DRIVE = "drive"
    FLY = "fly"


@dataclass_json
@dataclass
class Stop:
    id: str
    name: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None
    work_hours: float = 0.0
    city: Optional[str] = None
    country: Optional[str] = None

    @property
    def coordinates(self) -> Optional[tuple[float, float]]:
        """(lat, lng) or None while the stop has not been geocoded."""
        if self.lat is None or self.lng is None:
            return None
        return (self.lat, self.lng)

    def has_coordinates(self) -> bool:
        return self.coordinates is not None


@dataclass_json
@dataclass
class AirportCandidate:
    code: str
    name: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None
    distance_km: float = 0.0
    country: Optional[str] = None


@dataclass_json
@dataclass
class DistanceResult:
    distance_km: float
    duration_minutes: float
    provider: str = ""


@dataclass_json
@dataclass
class FlightSegment:
    origin: str
    destination: str
    carrier: str
    flight_number: str
    departure_time: str = ""
    arrival_time: str = ""
    duration_minutes: int = 0


@dataclass_json
@dataclass
class FlightLeg:
    origin: str
    destination: str
    carrier: str
    flight_numbers: list[str] = field(default_factory=list)
    departure_time: str = ""
    arrival_time: str = ""
    duration_minutes: int = 0
    segments: list[FlightSegment] = field(default_factory=list)

    def __post_init__(self):
        if not self.segments:
            self.segments = [FlightSegment(
                origin=self.origin,
                destination=self.destination,
                carrier=self.carrier,
                flight_number=self.flight_numbers[0] if self.flight_numbers else "",
                departure_time=self.departure_time,
                arrival_time=self.arrival_time,
                duration_minutes=self.duration_minutes,
            )]

    @property
    def flight_number(self) -> str:
        return "/".join(self.flight_numbers)

    @property
    def stops(self) -> int:
        return len(self.segments) - 1

    @property
    def is_connecting(self) -> bool:
        return self.stops > 0

    @property
    def routing(self) -> str:
        """Airport chain, e.g. 'FRA → SAW → BGY'."""
        codes = [self.segments[0].origin] + [s.destination for s in self.segments]
        return " → ".join(codes)

    def key(self) -> tuple:
        return (self.origin, self.destination, f"{self.carrier}{self.flight_number}",
                self.departure_time, self.arrival_time)


@dataclass_json
@dataclass
class FlightOption:
    price: float
    outbound: FlightLeg
    return_leg: Optional[FlightLeg] = None
    provider: str = ""
    currency: str = "EUR"
    is_round_trip: bool = False
    source: str = SOURCE_SEARCH
    price_is_estimate: bool = False

    def dedup_key(self) -> tuple:
        """Two offers with the same key are the same bookable thing."""
        return (
            self.outbound.key(),
            self.return_leg.key() if self.return_leg else None,
            round(float(self.price), 2),
        )

    @property
    def key(self) -> str:
        return hashlib.md5(repr(self.dedup_key()).encode()).hexdigest()[:12]

    @property
    def total_duration_minutes(self) -> int:
        total = self.outbound.duration_minutes
        if self.return_leg:
            total += self.return_leg.duration_minutes
        return total


@dataclass_json
@dataclass
class Segment:
    index: int
    from_id: str
    to_id: str
    mode: TravelMode = TravelMode.DRIVE
    distance: Optional[DistanceResult] = None
    flight: Optional[FlightOption] = None
    departure_date: Optional[str] = None
    search_error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def pair(self) -> tuple[str, str]:
        return (self.from_id, self.to_id)


@dataclass_json
@dataclass
class FlightSearchResult:
    success: bool
    options: list[FlightOption] = field(default_factory=list)
    origin_airport: Optional[AirportCandidate] = None
    destination_airport: Optional[AirportCandidate] = None
    providers: list[str] = field(default_factory=list)
    attempts: list[str] = field(default_factory=list)
    provider_errors: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def raise_for_status(self) -> None:
        if not self.success:
            raise NoItinerariesFound(self.error or "no itineraries found")


@dataclass_json
@dataclass
class TripPlan:
    route_order: list[str] = field(default_factory=list)
    segments: list[Segment] = field(default_factory=list)
    departure_date: Optional[str] = None
    return_date: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def fly_segments(self) -> list[Segment]:
        return [s for s in self.segments if s.mode == TravelMode.FLY]

    def segment_for(self, from_id: str, to_id: str) -> Optional[Segment]:
        for seg in self.segments:
            if seg.from_id == from_id and seg.to_id == to_id:
                return seg
        return None


# ---------------------------------------------------------------------------
# Parsed optimization suggestions
# ---------------------------------------------------------------------------

class Confidence(str, Enum):
    HIGH = "high"
    LOW = "low"


@dataclass
class SuggestedLeg:
    """One leg of a suggestion. Index 0 is the origin, k the k-th stop of the current route."""
    from_index: int
    to_index: int
    mode: TravelMode
    flight: Optional[FlightOption] = None
    recommended_flight_option: Optional[int] = None
    round_trip: bool = False
    origin_airport: Optional[str] = None
    destination_airport: Optional[str] = None
    estimated_distance_km: Optional[float] = None
    estimated_minutes: Optional[float] = None

    @property
    def is_return(self) -> bool:
        return self.to_index == 0


@dataclass
class ParsedSuggestion:
    route_order: list[int]
    legs: list[SuggestedLeg] = field(default_factory=list)
    option_name: str = ""
    warnings: list[str] = field(default_factory=list)
    pricing_issues: list[AmbiguousPricing] = field(default_factory=list)

    kind: ClassVar[str] = ""

    @property
    def confidence(self) -> Confidence:
        return Confidence.LOW if self.pricing_issues else Confidence.HIGH

    @property
    def is_low_confidence(self) -> bool:
        return self.confidence == Confidence.LOW


@dataclass
class StructuredSuggestion(ParsedSuggestion):
    kind: ClassVar[str] = "structured"


@dataclass
class TextFallbackSuggestion(ParsedSuggestion):
    kind: ClassVar[str] = "text_fallback"

    @property
    def confidence(self) -> Confidence:
        return Confidence.LOW
