"""
Offline airport table and mock flight offers - stand-ins for the external APIs
"""
import hashlib
import random
from datetime import datetime, timedelta
from typing import Optional

from .RouteAgent import haversine_km
from .TripPlan import AirportCandidate, FlightLeg, FlightOption, FlightSegment

# Mock airline data
AIRLINES = {
    "LH": "Lufthansa",
    "EW": "Eurowings",
    "BA": "British Airways",
    "AF": "Air France",
    "KL": "KLM",
    "LX": "Swiss",
    "OS": "Austrian Airlines",
    "AZ": "ITA Airways",
    "IB": "Iberia",
    "VY": "Vueling",
    "SK": "SAS",
    "AY": "Finnair",
    "LO": "LOT Polish Airlines",
    "TP": "TAP Air Portugal",
    "TK": "Turkish Airlines",
    "PC": "Pegasus Airlines",
    "FR": "Ryanair",
    "U2": "easyJet",
    "W6": "Wizz Air",
}

# IATA code → (name, city, country, lat, lng)
AIRPORTS: dict[str, tuple[str, str, str, float, float]] = {
    # Germany
    "FRA": ("Frankfurt am Main", "Frankfurt", "DE", 50.0379, 8.5622),
    "MUC": ("Munich", "Munich", "DE", 48.3537, 11.7750),
    "STR": ("Stuttgart", "Stuttgart", "DE", 48.6899, 9.2220),
    "HAM": ("Hamburg", "Hamburg", "DE", 53.6304, 9.9882),
    "BER": ("Berlin Brandenburg", "Berlin", "DE", 52.3667, 13.5033),
    "DUS": ("Düsseldorf", "Düsseldorf", "DE", 51.2895, 6.7668),
    "CGN": ("Cologne Bonn", "Cologne", "DE", 50.8659, 7.1427),
    "NUE": ("Nuremberg", "Nuremberg", "DE", 49.4987, 11.0669),
    "LEJ": ("Leipzig/Halle", "Leipzig", "DE", 51.4239, 12.2364),
    "FKB": ("Karlsruhe/Baden-Baden", "Karlsruhe", "DE", 48.7794, 8.0805),
    # France
    "CDG": ("Paris Charles de Gaulle", "Paris", "FR", 49.0097, 2.5479),
    "ORY": ("Paris Orly", "Paris", "FR", 48.7262, 2.3652),
    "LYS": ("Lyon-Saint Exupéry", "Lyon", "FR", 45.7256, 5.0811),
    "MRS": ("Marseille Provence", "Marseille", "FR", 43.4393, 5.2214),
    "NCE": ("Nice Côte d'Azur", "Nice", "FR", 43.6584, 7.2159),
    "TLS": ("Toulouse-Blagnac", "Toulouse", "FR", 43.6291, 1.3638),
    # UK / Ireland
    "LHR": ("London Heathrow", "London", "GB", 51.4700, -0.4543),
    "LGW": ("London Gatwick", "London", "GB", 51.1537, -0.1821),
    "STN": ("London Stansted", "London", "GB", 51.8860, 0.2389),
    "MAN": ("Manchester", "Manchester", "GB", 53.3650, -2.2728),
    "BHX": ("Birmingham", "Birmingham", "GB", 52.4539, -1.7480),
    "EDI": ("Edinburgh", "Edinburgh", "GB", 55.9508, -3.3615),
    "DUB": ("Dublin", "Dublin", "IE", 53.4264, -6.2499),
    # Italy
    "MXP": ("Milan Malpensa", "Milan", "IT", 45.6306, 8.7281),
    "LIN": ("Milan Linate", "Milan", "IT", 45.4451, 9.2767),
    "BGY": ("Milan Bergamo", "Bergamo", "IT", 45.6739, 9.7042),
    "VCE": ("Venice Marco Polo", "Venice", "IT", 45.5053, 12.3519),
    "BLQ": ("Bologna", "Bologna", "IT", 44.5354, 11.2887),
    "FCO": ("Rome Fiumicino", "Rome", "IT", 41.8003, 12.2389),
    "NAP": ("Naples", "Naples", "IT", 40.8860, 14.2908),
    # Iberia
    "MAD": ("Madrid-Barajas", "Madrid", "ES", 40.4983, -3.5676),
    "BCN": ("Barcelona-El Prat", "Barcelona", "ES", 41.2974, 2.0833),
    "VLC": ("Valencia", "Valencia", "ES", 39.4893, -0.4816),
    "AGP": ("Málaga", "Málaga", "ES", 36.6749, -4.4991),
    "LIS": ("Lisbon", "Lisbon", "PT", 38.7742, -9.1342),
    "OPO": ("Porto", "Porto", "PT", 41.2481, -8.6814),
    # Benelux / Alps
    "AMS": ("Amsterdam Schiphol", "Amsterdam", "NL", 52.3105, 4.7683),
    "EIN": ("Eindhoven", "Eindhoven", "NL", 51.4501, 5.3745),
    "BRU": ("Brussels", "Brussels", "BE", 50.9014, 4.4844),
    "LUX": ("Luxembourg", "Luxembourg", "LU", 49.6233, 6.2044),
    "ZRH": ("Zurich", "Zurich", "CH", 47.4582, 8.5555),
    "GVA": ("Geneva", "Geneva", "CH", 46.2381, 6.1090),
    "BSL": ("EuroAirport Basel", "Basel", "CH", 47.5896, 7.5299),
    "VIE": ("Vienna", "Vienna", "AT", 48.1103, 16.5697),
    "SZG": ("Salzburg", "Salzburg", "AT", 47.7933, 13.0043),
    # Nordics
    "CPH": ("Copenhagen", "Copenhagen", "DK", 55.6180, 12.6508),
    "ARN": ("Stockholm Arlanda", "Stockholm", "SE", 59.6498, 17.9238),
    "OSL": ("Oslo Gardermoen", "Oslo", "NO", 60.1976, 11.1004),
    "HEL": ("Helsinki-Vantaa", "Helsinki", "FI", 60.3172, 24.9633),
    # Central / Eastern Europe
    "WAW": ("Warsaw Chopin", "Warsaw", "PL", 52.1657, 20.9671),
    "KRK": ("Kraków", "Kraków", "PL", 50.0777, 19.7848),
    "PRG": ("Prague", "Prague", "CZ", 50.1008, 14.2600),
    "BUD": ("Budapest", "Budapest", "HU", 47.4369, 19.2556),
    "OTP": ("Bucharest Otopeni", "Bucharest", "RO", 44.5711, 26.0850),
    "SOF": ("Sofia", "Sofia", "BG", 42.6967, 23.4114),
    "ZAG": ("Zagreb", "Zagreb", "HR", 45.7429, 16.0688),
    "LJU": ("Ljubljana", "Ljubljana", "SI", 46.2237, 14.4576),
    "ATH": ("Athens", "Athens", "GR", 37.9364, 23.9445),
    # Beyond Europe
    "IST": ("Istanbul", "Istanbul", "TR", 41.2753, 28.7519),
    "SAW": ("Istanbul Sabiha Gökçen", "Istanbul", "TR", 40.8986, 29.3092),
    "DXB": ("Dubai", "Dubai", "AE", 25.2532, 55.3657),
    "JFK": ("New York JFK", "New York", "US", 40.6413, -73.7781),
}

EUROPEAN_AIRPORTS = frozenset({
    # Germany
    "STR", "FRA", "MUC", "HAM", "BER", "DUS", "CGN", "NUE", "LEJ", "DTM", "FKB",
    # France
    "CDG", "ORY", "LYS", "MRS", "NCE", "BOD", "TLS", "LIL",
    # UK / Ireland
    "LHR", "LGW", "STN", "MAN", "EDI", "BHX", "BRS", "NCL", "DUB", "SNN", "ORK",
    # Italy
    "FCO", "MXP", "BGY", "LIN", "VCE", "BLQ", "PSA", "NAP", "CTA", "PMO",
    # Spain / Portugal
    "MAD", "BCN", "AGP", "VLC", "SEV", "BIO", "ALC", "PMI", "LIS", "OPO", "FAO",
    # Benelux / Alps
    "AMS", "EIN", "RTM", "GRQ", "BRU", "LUX", "ZRH", "GVA", "BSL",
    "VIE", "SZG", "GRZ", "LNZ",
    # Nordics
    "ARN", "GOT", "MMX", "UME", "OSL", "BGO", "TOS", "TRD",
    "CPH", "AAL", "BLL", "HEL", "TMP", "OUL", "RVN", "KEF",
    # Central / Eastern Europe
    "WAW", "KRK", "GDN", "WRO", "POZ", "PRG", "BRQ", "BUD", "DEB",
    "OTP", "CLJ", "IAS", "SOF", "VAR", "ZAG", "SPU", "DBV",
    "BTS", "KSC", "LJU", "MBX", "TLL", "TAY", "RIX", "VNT", "VNO", "PLQ",
    # Others
    "ATH", "SKG", "HER", "RHO", "MLA",
})

# Search radius for the local nearest-airport lookup
NEARBY_RADIUS_KM = 500.0


def is_european_airport(code: Optional[str]) -> bool:
    return bool(code) and code.upper() in EUROPEAN_AIRPORTS


def find_nearest_airports(
    lat: float,
    lng: float,
    count: int = 2,
    country_hint: Optional[str] = None,
    max_distance_km: float = NEARBY_RADIUS_KM,
) -> list[AirportCandidate]:
    """Rank bundled airports by distance; same-country airports first when a hint is given."""
    candidates = []
    for code, (name, _city, country, a_lat, a_lng) in AIRPORTS.items():
        km = haversine_km(lat, lng, a_lat, a_lng)
        if km <= max_distance_km:
            candidates.append(AirportCandidate(
                code=code, name=name, lat=a_lat, lng=a_lng,
                distance_km=round(km, 1), country=country,
            ))

    hint = (country_hint or "").upper()
    candidates.sort(key=lambda c: (bool(hint) and c.country != hint, c.distance_km))
    return candidates[:count]


def _airport_coords(code: str) -> Optional[tuple[float, float]]:
    entry = AIRPORTS.get(code.upper())
    return (entry[3], entry[4]) if entry else None


def _mock_leg(rng: random.Random, origin: str, destination: str, day: str,
              carrier: str, base_minutes: int) -> FlightLeg:
    """One leg, direct or (sometimes) via a hub."""
    dep = datetime.strptime(day, "%Y-%m-%d") + timedelta(hours=rng.randint(6, 19),
                                                         minutes=rng.choice([0, 15, 30, 45]))
    number = f"{carrier}{rng.randint(100, 9999)}"

    hubs = [h for h in ("FRA", "MUC", "ZRH", "VIE", "AMS") if h not in (origin, destination)]
    if base_minutes > 150 and rng.random() < 0.35:
        hub = rng.choice(hubs)
        first = rng.randint(60, base_minutes // 2 + 30)
        layover = rng.randint(45, 120)
        second = max(base_minutes - first, 45)
        mid_arr = dep + timedelta(minutes=first)
        mid_dep = mid_arr + timedelta(minutes=layover)
        arr = mid_dep + timedelta(minutes=second)
        number2 = f"{carrier}{rng.randint(100, 9999)}"
        segments = [
            FlightSegment(origin, hub, carrier, number, dep.strftime("%Y-%m-%dT%H:%M"),
                          mid_arr.strftime("%Y-%m-%dT%H:%M"), first),
            FlightSegment(hub, destination, carrier, number2, mid_dep.strftime("%Y-%m-%dT%H:%M"),
                          arr.strftime("%Y-%m-%dT%H:%M"), second),
        ]
        return FlightLeg(
            origin=origin, destination=destination, carrier=carrier,
            flight_numbers=[number, number2],
            departure_time=dep.strftime("%Y-%m-%dT%H:%M"),
            arrival_time=arr.strftime("%Y-%m-%dT%H:%M"),
            duration_minutes=first + layover + second,
            segments=segments,
        )

    arr = dep + timedelta(minutes=base_minutes)
    return FlightLeg(
        origin=origin, destination=destination, carrier=carrier,
        flight_numbers=[number],
        departure_time=dep.strftime("%Y-%m-%dT%H:%M"),
        arrival_time=arr.strftime("%Y-%m-%dT%H:%M"),
        duration_minutes=base_minutes,
    )


def generate_mock_flight_options(
    origin: str,
    destination: str,
    departure_date: str,
    return_date: Optional[str] = None,
    count: int = 3,
) -> list[FlightOption]:
    """Deterministic mock offers: the same query always yields the same flights."""
    seed = int(hashlib.md5(f"{origin}|{destination}|{departure_date}|{return_date}".encode()).hexdigest()[:8], 16)
    rng = random.Random(seed)

    a, b = _airport_coords(origin), _airport_coords(destination)
    km = haversine_km(*a, *b) if a and b else rng.randint(400, 1500)
    base_minutes = int(km / 750 * 60) + 35

    options: list[FlightOption] = []
    for carrier in rng.sample(sorted(AIRLINES), count):
        outbound = _mock_leg(rng, origin, destination, departure_date, carrier, base_minutes)
        return_leg = None
        if return_date:
            return_leg = _mock_leg(rng, destination, origin, return_date, carrier, base_minutes)
        one_way = 45 + km * 0.11 + rng.randint(0, 120)
        price = one_way * 1.8 if return_leg else one_way
        options.append(FlightOption(
            price=round(price, 2),
            outbound=outbound,
            return_leg=return_leg,
            provider="mock",
            currency="EUR",
            is_round_trip=return_leg is not None,
        ))

    options.sort(key=lambda o: o.price)
    return options
