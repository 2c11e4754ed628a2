# signal_adapter.py — Weather warnings, seismic events and forecast text for a location
#
# OpenWeather One Call supplies warnings and forecast text (when an API key is
# set); the USGS GeoJSON feed supplies earthquakes near the location.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import requests

from config import CONFIG
from geo_utils import haversine_distance
from keywords_loader import get_location_coordinates, normalize_location
from models import parse_dt, utc_now

logger = logging.getLogger("signal_adapter")


class SignalUnavailableError(Exception):
    """The signal provider could not be reached or returned garbage."""


@dataclass(frozen=True)
class WeatherWarning:
    event: str
    valid_from: datetime
    valid_to: datetime
    sender: Optional[str] = None
    description: str = ""


@dataclass(frozen=True)
class Quake:
    magnitude: float
    time: datetime
    place: str = ""
    distance_km: Optional[float] = None


@dataclass
class Signals:
    active_warnings: List[WeatherWarning] = field(default_factory=list)
    recent_quakes: List[Quake] = field(default_factory=list)
    storm_forecast: str = ""


class SignalAdapter:
    """Interface for weather/seismic providers."""

    def get_signals(self, location: Optional[str], now: Optional[datetime] = None) -> Signals:
        raise NotImplementedError


class StaticSignalAdapter(SignalAdapter):
    """Fixed signals, optionally per location (local runs and tests)."""

    def __init__(self, default: Optional[Signals] = None, by_location: Optional[Dict[str, Signals]] = None):
        self.default = default or Signals()
        self.by_location = {normalize_location(k): v for k, v in (by_location or {}).items()}

    def get_signals(self, location: Optional[str], now: Optional[datetime] = None) -> Signals:
        return self.by_location.get(normalize_location(location), self.default)


class OpenWeatherUsgsSignalAdapter(SignalAdapter):
    """Signals from OpenWeather One Call and the USGS earthquake feed."""

    def __init__(self, session: Optional[requests.Session] = None):
        cfg = CONFIG.signals
        self.session = session or requests.Session()
        self.api_key = cfg.openweather_api_key
        self.openweather_url = cfg.openweather_url
        self.usgs_feed_url = cfg.usgs_feed_url
        self.timeout = cfg.timeout
        self.radius_km = cfg.quake_radius_km
        self.lookback = timedelta(hours=cfg.quake_lookback_hours)

    def get_signals(self, location: Optional[str], now: Optional[datetime] = None) -> Signals:
        coords = get_location_coordinates(location)
        if coords is None:
            logger.debug("No coordinates for location %r; no signals", location)
            return Signals()

        now = now or utc_now()
        lat, lon = coords
        signals = Signals()
        if self.api_key:
            signals.active_warnings, signals.storm_forecast = self._weather(lat, lon)
        signals.recent_quakes = self._quakes(lat, lon, now)
        return signals

    def _get_json(self, url: str, params: Optional[dict] = None) -> dict:
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Signal provider request failed (%s): %s", url, e)
            raise SignalUnavailableError(str(e)) from e

    def _weather(self, lat: float, lon: float):
        data = self._get_json(self.openweather_url, params={
            "lat": lat,
            "lon": lon,
            "appid": self.api_key,
            "exclude": "minutely,hourly,current",
            "units": "metric",
        })

        warnings = []
        for item in data.get("alerts") or []:
            start, end = parse_dt(item.get("start")), parse_dt(item.get("end"))
            if start is None or end is None:
                continue
            warnings.append(WeatherWarning(
                event=item.get("event") or "weather warning",
                valid_from=start,
                valid_to=end,
                sender=item.get("sender_name"),
                description=item.get("description") or "",
            ))

        # Today and tomorrow are enough for the storm keyword check
        parts = []
        for day in (data.get("daily") or [])[:2]:
            if day.get("summary"):
                parts.append(day["summary"])
            parts.extend(w.get("description", "") for w in day.get("weather") or [])
        return warnings, " ".join(p for p in parts if p)

    def _quakes(self, lat: float, lon: float, now: datetime) -> List[Quake]:
        data = self._get_json(self.usgs_feed_url)
        quakes = []
        for feature in data.get("features") or []:
            props = feature.get("properties") or {}
            coords = (feature.get("geometry") or {}).get("coordinates") or []
            if len(coords) < 2 or props.get("mag") is None or props.get("time") is None:
                continue
            when = parse_dt(props["time"] / 1000.0)  # USGS times are epoch milliseconds
            if when is None or not timedelta(0) <= now - when <= self.lookback:
                continue
            distance = haversine_distance(lat, lon, float(coords[1]), float(coords[0]))
            if distance > self.radius_km:
                continue
            quakes.append(Quake(magnitude=float(props["mag"]), time=when,
                                place=props.get("place") or "", distance_km=round(distance, 1)))
        return quakes


def build_signal_adapter() -> SignalAdapter:
    return OpenWeatherUsgsSignalAdapter()
