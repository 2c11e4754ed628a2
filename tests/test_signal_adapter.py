"""
Signal adapter tests against canned OpenWeather and USGS payloads.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests

from signal_adapter import (
    OpenWeatherUsgsSignalAdapter, Signals, SignalUnavailableError, StaticSignalAdapter,
)


def _response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


def _quake(mag, when, lon, lat, place="near Ranau"):
    return {"properties": {"mag": mag, "time": int(when.timestamp() * 1000), "place": place},
            "geometry": {"coordinates": [lon, lat, 10.0]}}


class TestOpenWeatherUsgs:

    def _adapter(self, weather=None, quakes=None, api_key="key"):
        session = MagicMock()

        def get(url, params=None, timeout=None):
            if "usgs" in url:
                return _response(quakes or {"features": []})
            return _response(weather or {})

        session.get.side_effect = get
        adapter = OpenWeatherUsgsSignalAdapter(session=session)
        adapter.api_key = api_key
        adapter.openweather_url = "https://weather.example/onecall"
        adapter.usgs_feed_url = "https://usgs.example/all_day.geojson"
        return adapter, session

    def test_weather_warnings_and_forecast(self, now):
        weather = {
            "alerts": [{"event": "Flood warning", "sender_name": "MET Malaysia",
                        "start": int((now - timedelta(hours=1)).timestamp()),
                        "end": int((now + timedelta(hours=5)).timestamp())}],
            "daily": [{"summary": "Expect a day of heavy rain",
                       "weather": [{"description": "thunderstorm with heavy rain"}]},
                      {"weather": [{"description": "light rain"}]},
                      {"summary": "Clear day"}],
        }
        adapter, session = self._adapter(weather=weather)
        signals = adapter.get_signals("Penang", now)

        assert len(signals.active_warnings) == 1
        warning = signals.active_warnings[0]
        assert warning.event == "Flood warning"
        assert warning.valid_from <= now <= warning.valid_to
        assert "thunderstorm" in signals.storm_forecast
        assert "Clear day" not in signals.storm_forecast
        params = session.get.call_args_list[0].kwargs["params"]
        assert params["lat"] == pytest.approx(5.4141)

    def test_quakes_filtered_by_radius_and_time(self, now):
        quakes = {"features": [
            _quake(5.2, now - timedelta(hours=2), 116.5, 5.9),                      # near Kota Kinabalu
            _quake(6.0, now - timedelta(hours=2), 139.7, 35.7, place="Tokyo"),      # too far
            _quake(4.8, now - timedelta(hours=30), 116.5, 5.9, place="yesterday"),  # outside lookback
            {"properties": {"mag": None, "time": 0}, "geometry": {"coordinates": [0, 0]}},
        ]}
        adapter, _ = self._adapter(quakes=quakes, api_key="")
        signals = adapter.get_signals("sabah", now)
        assert [q.magnitude for q in signals.recent_quakes] == [5.2]
        assert signals.recent_quakes[0].distance_km < 300
        assert signals.active_warnings == []

    def test_no_weather_call_without_api_key(self, now):
        adapter, session = self._adapter(api_key="")
        adapter.get_signals("penang", now)
        assert session.get.call_count == 1
        assert "usgs" in session.get.call_args.args[0]

    def test_unknown_location_no_calls(self, now):
        adapter, session = self._adapter()
        assert adapter.get_signals("atlantis", now) == Signals()
        session.get.assert_not_called()

    def test_provider_failure_raises(self, now):
        adapter, session = self._adapter()
        session.get.side_effect = requests.Timeout("read timed out")
        with pytest.raises(SignalUnavailableError):
            adapter.get_signals("penang", now)


def test_static_adapter_by_location():
    flooded = Signals(storm_forecast="heavy rain")
    adapter = StaticSignalAdapter(by_location={"Pulau Pinang": flooded})
    assert adapter.get_signals("penang") is flooded
    assert adapter.get_signals("ipoh") == Signals()
