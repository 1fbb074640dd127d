"""
context_provider.py — Weather, nearby events and demographics for a location.

These are external collaborators of the prediction service. Each lookup
runs under an explicit timeout (asyncio.wait_for) and falls back to a
documented default on expiry or on any error, so a slow upstream never
stalls a prediction cycle:

  weather       20 °C, 50 % humidity, 0 mm precipitation, 0 m/s wind, 10 km visibility
  events        none
  demographics  density 100 / km²

Two modes, controlled by settings.context_mock_mode:

  Mock mode  (default, always on in tests)
    Deterministic context derived from a SHA-256 hash of the rounded
    location and the day, so repeated cycles see stable inputs.

  Live mode
    Weather from an Open-Meteo compatible endpoint; events and
    demographics from configurable JSON endpoints. An empty URL disables
    that lookup (default value used, no warning).
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, TypeVar

import httpx
from pydantic import ValidationError

from civicpulse.core.config import settings
from civicpulse.models.common import Coordinate
from civicpulse.models.observation import Demographics, EventInfo, Weather

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WEATHER = Weather()
DEFAULT_DEMOGRAPHICS = Demographics()
EVENT_SEARCH_RADIUS_M = 5_000
_EVENT_TYPES = ("festival", "meeting", "construction", "emergency", "sports")
_DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class LocationContext:
    weather:      Weather = DEFAULT_WEATHER
    events:       tuple[EventInfo, ...] = ()
    demographics: Demographics = DEFAULT_DEMOGRAPHICS
    defaulted:    tuple[str, ...] = field(default_factory=tuple)   # sources that fell back


class ContextProvider:
    def __init__(
        self,
        *,
        mock_mode: bool | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.mock_mode = settings.context_mock_mode if mock_mode is None else mock_mode
        self.timeout = settings.context_timeout_seconds if timeout is None else timeout
        self.weather_url = settings.weather_api_url
        self.events_url = settings.events_api_url
        self.events_key = settings.events_api_key
        self.demographics_url = settings.demographics_api_url
        self._transport = transport

    async def gather(self, location: Coordinate, timestamp_ms: int) -> LocationContext:
        """Fetch all three context kinds concurrently, each with its own timeout."""
        (weather, w_ok), (events, e_ok), (demographics, d_ok) = await asyncio.gather(
            self._guarded("weather", location, self.fetch_weather(location, timestamp_ms), DEFAULT_WEATHER),
            self._guarded("events", location, self.fetch_events(location, timestamp_ms), ()),
            self._guarded("demographics", location, self.fetch_demographics(location), DEFAULT_DEMOGRAPHICS),
        )
        defaulted = tuple(name for name, ok in (("weather", w_ok), ("events", e_ok), ("demographics", d_ok)) if not ok)
        return LocationContext(weather=weather, events=tuple(events), demographics=demographics, defaulted=defaulted)

    async def _guarded(self, name: str, location: Coordinate, call: Awaitable[T], default: T) -> tuple[T, bool]:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout), True
        except asyncio.TimeoutError:
            logger.warning("%s lookup timed out after %.1fs at %s, using defaults", name, self.timeout, location)
        except Exception as exc:
            logger.warning("%s lookup failed at %s (%s), using defaults", name, location, exc)
        return default, False

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    # ── Weather ───────────────────────────────────────────────────────────────

    async def fetch_weather(self, location: Coordinate, timestamp_ms: int) -> Weather:
        if self.mock_mode:
            return _mock_weather(location, timestamp_ms)
        if not self.weather_url:
            return DEFAULT_WEATHER

        lon, lat = location
        async with self._client() as client:
            response = await client.get(
                self.weather_url,
                params={
                    "latitude": lat,
                    "longitude": lon,
                    "current": "temperature_2m,relative_humidity_2m,precipitation,wind_speed_10m,visibility",
                    "wind_speed_unit": "ms",
                },
            )
            response.raise_for_status()
            current = response.json()["current"]
        return Weather(
            temperature=current.get("temperature_2m", DEFAULT_WEATHER.temperature),
            humidity=current.get("relative_humidity_2m", DEFAULT_WEATHER.humidity),
            precipitation=current.get("precipitation", DEFAULT_WEATHER.precipitation),
            wind_speed=current.get("wind_speed_10m", DEFAULT_WEATHER.wind_speed),
            visibility=current.get("visibility", DEFAULT_WEATHER.visibility * 1000) / 1000,
        )

    # ── Events ────────────────────────────────────────────────────────────────

    async def fetch_events(self, location: Coordinate, timestamp_ms: int) -> tuple[EventInfo, ...]:
        if self.mock_mode:
            return _mock_events(location, timestamp_ms)
        if not self.events_url:
            return ()

        lon, lat = location
        headers = {"X-API-KEY": self.events_key} if self.events_key else {}
        async with self._client() as client:
            response = await client.get(
                self.events_url,
                params={"lat": lat, "lon": lon, "radius": EVENT_SEARCH_RADIUS_M, "at": timestamp_ms},
                headers=headers,
            )
            response.raise_for_status()
            payload: Any = response.json()

        items = payload.get("events", []) if isinstance(payload, dict) else payload
        events = []
        for item in items:
            try:
                events.append(EventInfo.model_validate(item))
            except ValidationError as exc:
                logger.debug("Skipping malformed event %r: %s", item, exc)
        return tuple(events)

    # ── Demographics ──────────────────────────────────────────────────────────

    async def fetch_demographics(self, location: Coordinate) -> Demographics:
        if self.mock_mode:
            return _mock_demographics(location)
        if not self.demographics_url:
            return DEFAULT_DEMOGRAPHICS

        lon, lat = location
        async with self._client() as client:
            response = await client.get(self.demographics_url, params={"lat": lat, "lon": lon})
            response.raise_for_status()
            return Demographics.model_validate(response.json())


# ── Mock context ──────────────────────────────────────────────────────────────

def _unit_values(*parts: Any, count: int) -> list[float]:
    """`count` deterministic floats in [0, 1) derived from the SHA-256 of parts."""
    seed = int(hashlib.sha256("|".join(str(p) for p in parts).encode("utf-8")).hexdigest(), 16)
    values = []
    for _ in range(count):
        seed = (seed * 1_664_525 + 1_013_904_223) & 0xFFFF_FFFF
        values.append(seed / 0x1_0000_0000)
    return values


def _location_key(location: Coordinate) -> str:
    return f"{location[0]:.3f},{location[1]:.3f}"


def _mock_weather(location: Coordinate, timestamp_ms: int) -> Weather:
    t, h, p, w, v = _unit_values("weather", _location_key(location), timestamp_ms // _DAY_MS, count=5)
    return Weather(
        temperature=round(6 + t * 24, 1),
        humidity=round(35 + h * 55, 1),
        precipitation=round(p * p * 8, 1),     # skewed towards dry
        wind_speed=round(w * 9, 1),
        visibility=round(4 + v * 16, 1),
    )


def _mock_events(location: Coordinate, timestamp_ms: int) -> tuple[EventInfo, ...]:
    n, *rest = _unit_values("events", _location_key(location), timestamp_ms // _DAY_MS, count=9)
    events = []
    for i in range(int(n * 3)):   # 0–2 events
        kind, dist, cap, dur = rest[i * 4:(i + 1) * 4]
        events.append(EventInfo(
            type=_EVENT_TYPES[int(kind * len(_EVENT_TYPES))],
            distance=round(200 + dist * 4_600),
            capacity=round(100 + cap * 2_900),
            duration=round(30 + dur * 270),
        ))
    return tuple(events)


def _mock_demographics(location: Coordinate) -> Demographics:
    d, pop, inc, edu = _unit_values("demographics", _location_key(location), count=4)
    density = round(10 ** (1.5 + d * 2.5))    # ~30 to ~10,000 per km²
    return Demographics(
        population=round(density * (1 + pop * 20)),
        density=density,
        income=round(20_000 + inc * 60_000),
        education=round(edu, 2),
    )
