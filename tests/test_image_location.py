"""
Image location inference with a stubbed vision client and geocoder.
"""

import json
from unittest.mock import MagicMock

import requests

from geo_utils import haversine_distance, nearest_known_location, validate_coordinates
from image_location import MAX_IMAGES, ImageLocationAnalyzer


def _client(*payloads):
    client = MagicMock()
    responses = []
    for payload in payloads:
        response = MagicMock()
        response.choices = [MagicMock()]
        response.choices[0].message.content = json.dumps(payload)
        responses.append(response)
    client.chat.completions.create.side_effect = responses
    return client


def _session(payload=None, error=None):
    session = MagicMock()
    if error:
        session.get.side_effect = error
    else:
        resp = MagicMock()
        resp.json.return_value = payload
        resp.raise_for_status.return_value = None
        session.get.return_value = resp
    return session


def test_visible_text_match():
    client = _client({"visible_text": "Jalan Sultan Idris Shah, Ipoh", "landmarks": [], "latitude": None})
    analyzer = ImageLocationAnalyzer(client=client, session=_session(), enabled=True)
    assert analyzer.locate(["https://img.example/a.jpg"], "water everywhere") == "ipoh"


def test_coordinates_reverse_geocoded():
    client = _client({"visible_text": "", "landmarks": [], "latitude": 5.41, "longitude": 100.33})
    session = _session({"display_name": "George Town, Pulau Pinang, Malaysia", "address": {"state": "Pulau Pinang"}})
    analyzer = ImageLocationAnalyzer(client=client, session=session, enabled=True)
    assert analyzer.locate(["https://img.example/a.jpg"]) == "penang"


def test_geocoder_failure_uses_nearest_known():
    client = _client({"visible_text": "", "landmarks": [], "latitude": 5.41, "longitude": 100.33})
    session = _session(error=requests.ConnectionError("down"))
    analyzer = ImageLocationAnalyzer(client=client, session=session, enabled=True)
    assert analyzer.locate(["https://img.example/a.jpg"]) == "penang"


def test_first_image_failure_tries_next():
    client = MagicMock()
    good = MagicMock()
    good.choices = [MagicMock()]
    good.choices[0].message.content = json.dumps({"visible_text": "Kuching Waterfront", "landmarks": []})
    client.chat.completions.create.side_effect = [RuntimeError("bad image"), good]
    analyzer = ImageLocationAnalyzer(client=client, session=_session(), enabled=True)
    assert analyzer.locate(["https://img.example/1.jpg", "https://img.example/2.jpg"]) == "kuching"


def test_at_most_three_images():
    client = _client(*[{"visible_text": "", "landmarks": []}] * 5)
    analyzer = ImageLocationAnalyzer(client=client, session=_session(), enabled=True)
    urls = [f"https://img.example/{i}.jpg" for i in range(5)]
    assert analyzer.locate(urls) is None
    assert client.chat.completions.create.call_count == MAX_IMAGES


def test_disabled_or_unconfigured():
    assert ImageLocationAnalyzer(client=MagicMock(), session=_session(), enabled=False).locate(["u"]) is None
    analyzer = ImageLocationAnalyzer(client=None, session=_session(), enabled=True)
    analyzer.client = None
    assert analyzer.locate(["https://img.example/a.jpg"]) is None


class TestGeoUtils:

    def test_haversine(self):
        # Kuala Lumpur to Penang is roughly 290 km
        assert 270 < haversine_distance(3.139, 101.6869, 5.4141, 100.3288) < 320

    def test_validate_coordinates(self):
        assert validate_coordinates(5.4, 100.3)
        assert not validate_coordinates(None, 100.3)
        assert not validate_coordinates(91, 0)

    def test_nearest_known_location(self):
        name, distance = nearest_known_location(4.6, 101.09)
        assert name == "ipoh"
        assert distance < 5
        assert nearest_known_location(35.7, 139.7) is None
