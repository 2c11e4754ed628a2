# image_location.py — Best-effort location inference from images attached to a report
import json
import logging
from typing import Iterable, Optional

import requests
from openai import OpenAI

from config import CONFIG
from geo_utils import nearest_known_location, validate_coordinates
from keywords_loader import extract_location

logger = logging.getLogger("image_location")

MAX_IMAGES = 3

VISION_PROMPT = (
    "Look at this photo from a social media report. Return a JSON object with keys "
    "\"visible_text\" (signs, captions or street names you can read), \"landmarks\" "
    "(list of recognizable places), \"latitude\" and \"longitude\" (numbers only if "
    "coordinates are printed in the image, otherwise null)."
)


class ImageLocationAnalyzer:
    """
    Vision prompt for text/landmarks/coordinates, reverse geocoding for
    coordinates, then a rule-table match. Never raises: returns None when
    nothing usable is found.
    """

    def __init__(self, client: Optional[OpenAI] = None, session: Optional[requests.Session] = None,
                 enabled: Optional[bool] = None):
        cfg = CONFIG.analyzer
        if client is None and cfg.openai_api_key:
            client = OpenAI(api_key=cfg.openai_api_key, timeout=cfg.openai_timeout)
        self.client = client
        self.session = session or requests.Session()
        self.enabled = cfg.image_location_enabled if enabled is None else enabled

    def locate(self, image_urls: Iterable[str], post_text: str = "") -> Optional[str]:
        urls = [u for u in (image_urls or []) if u][:MAX_IMAGES]
        if not self.enabled or not urls or self.client is None:
            return None

        for url in urls:
            try:
                location = self._locate_one(url, post_text)
            except Exception as e:
                logger.warning("Image location failed for %s: %s", url, e)
                continue
            if location:
                logger.info("Image location resolved %s -> %s", url, location)
                return location
        return None

    def _locate_one(self, url: str, post_text: str) -> Optional[str]:
        details = self._describe(url, post_text)

        lat, lon = details.get("latitude"), details.get("longitude")
        if validate_coordinates(lat, lon):
            place = self._reverse_geocode(float(lat), float(lon))
            if place:
                location = extract_location(place)
                if location:
                    return location
            nearest = nearest_known_location(float(lat), float(lon))
            if nearest:
                return nearest[0]

        clues = [details.get("visible_text") or ""] + [str(x) for x in details.get("landmarks") or []]
        return extract_location(" ".join(clues))

    def _describe(self, url: str, post_text: str) -> dict:
        response = self.client.chat.completions.create(
            model=CONFIG.analyzer.vision_model,
            messages=[
                {"role": "system", "content": VISION_PROMPT},
                {"role": "user", "content": [
                    {"type": "text", "text": f"Report text: {post_text[:500]}"},
                    {"type": "image_url", "image_url": {"url": url}},
                ]},
            ],
            response_format={"type": "json_object"},
            temperature=0.0,
            timeout=CONFIG.analyzer.openai_timeout,
        )
        data = json.loads(response.choices[0].message.content or "{}")
        return data if isinstance(data, dict) else {}

    def _reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        headers = {
            "User-Agent": CONFIG.analyzer.nominatim_user_agent,
            "Accept": "application/json",
        }
        params = {"lat": lat, "lon": lon, "format": "jsonv2", "addressdetails": 1}
        try:
            resp = self.session.get(CONFIG.analyzer.nominatim_url, params=params, headers=headers,
                                    timeout=CONFIG.analyzer.geocode_timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Nominatim reverse lookup failed: %s", e)
            return None

        addr = data.get("address") or {}
        parts = [data.get("display_name"), addr.get("city"), addr.get("town"), addr.get("state")]
        return " ".join(p for p in parts if p) or None
