"""
Weather lookups from the Open-Meteo API (no API key required).

Used to enrich sightings with current conditions. Results are cached for
``cache_duration`` seconds; any failure returns None.
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import requests

from config import LocationConfig, WeatherConfig
from models import WeatherData

logger = logging.getLogger(__name__)

# WMO weather interpretation codes
# https://open-meteo.com/en/docs#weathervariables
WEATHER_CODES = {
    0: "Clear",
    1: "Mostly Clear",
    2: "Partly Cloudy",
    3: "Overcast",
    45: "Foggy",
    48: "Depositing Rime Fog",
    51: "Light Drizzle",
    53: "Moderate Drizzle",
    55: "Dense Drizzle",
    61: "Slight Rain",
    63: "Moderate Rain",
    65: "Heavy Rain",
    66: "Light Freezing Rain",
    67: "Heavy Freezing Rain",
    71: "Slight Snow",
    73: "Moderate Snow",
    75: "Heavy Snow",
    77: "Snow Grains",
    80: "Slight Rain Showers",
    81: "Moderate Rain Showers",
    82: "Violent Rain Showers",
    85: "Slight Snow Showers",
    86: "Heavy Snow Showers",
    95: "Thunderstorm",
    96: "Thunderstorm with Slight Hail",
    99: "Thunderstorm with Heavy Hail",
}

CURRENT_FIELDS = (
    "temperature_2m,relative_humidity_2m,apparent_temperature,precipitation,"
    "cloud_cover,wind_speed_10m,wind_direction_10m,weather_code,is_day"
)


def describe_weather_code(code: Optional[int]) -> str:
    return WEATHER_CODES.get(code, "Unknown")


class WeatherService:
    """Cached current-conditions lookup for the configured location."""

    def __init__(self, config: WeatherConfig, location: LocationConfig):
        self.config = config
        self.location = location
        self._cached: Optional[WeatherData] = None
        self._fetched_at = 0.0
        self._lock = threading.Lock()

    def get_current_weather(self) -> Optional[WeatherData]:
        """Current conditions, or None when disabled, unconfigured or unreachable."""
        if not self.config.enabled:
            return None
        if not self.location.is_set:
            logger.debug("No location configured, skipping weather lookup")
            return None

        with self._lock:
            if self._cached and time.monotonic() - self._fetched_at < self.config.cache_duration:
                return self._cached

        weather = self._fetch()
        if weather is not None:
            with self._lock:
                self._cached = weather
                self._fetched_at = time.monotonic()
        return weather

    def _fetch(self) -> Optional[WeatherData]:
        params = {
            "latitude": self.location.latitude,
            "longitude": self.location.longitude,
            "current": CURRENT_FIELDS,
            "daily": "sunrise,sunset",
            "timezone": "auto",
            "forecast_days": 1,
        }
        try:
            response = requests.get(self.config.api_url, params=params, timeout=self.config.request_timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            logger.warning(f"Weather fetch failed: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Weather response was not JSON: {e}")
            return None

        try:
            weather = self._parse(data)
        except (KeyError, TypeError, ValueError, IndexError) as e:
            logger.warning(f"Could not parse weather response: {e}")
            return None
        logger.info(f"Weather: {weather.conditions}, {weather.temperature}°C")
        return weather

    @staticmethod
    def _parse(data: dict) -> WeatherData:
        current = data["current"]
        daily = data.get("daily") or {}
        sunrise = daily.get("sunrise") or []
        sunset = daily.get("sunset") or []
        code = current.get("weather_code")
        return WeatherData(
            temperature=float(current["temperature_2m"]),
            feels_like=float(current.get("apparent_temperature", current["temperature_2m"])),
            humidity=float(current.get("relative_humidity_2m", 0)),
            precipitation=float(current.get("precipitation", 0) or 0),
            cloud_cover=float(current.get("cloud_cover", 0) or 0),
            wind_speed=float(current.get("wind_speed_10m", 0) or 0),
            wind_direction=float(current.get("wind_direction_10m", 0) or 0),
            weather_code=int(code) if code is not None else -1,
            conditions=describe_weather_code(code),
            is_day=current.get("is_day") == 1,
            sunrise=datetime.fromisoformat(sunrise[0]) if sunrise else None,
            sunset=datetime.fromisoformat(sunset[0]) if sunset else None,
            timestamp=datetime.fromisoformat(current["time"]) if current.get("time") else datetime.now(),
        )

    # ------------------------------------------------------------------
    # Derived ratings
    # ------------------------------------------------------------------

    @staticmethod
    def get_bird_activity_rating(weather: WeatherData) -> Tuple[int, List[str]]:
        """Score 0-100 of how favourable conditions are for bird activity, with the factors."""
        factors = []
        score = 50

        if 10 <= weather.temperature <= 25:
            score += 15
            factors.append("Ideal temperature")
        elif weather.temperature < 0 or weather.temperature > 35:
            score -= 20
            factors.append("Extreme temperature")

        if weather.precipitation > 5:
            score -= 30
            factors.append("Heavy precipitation")
        elif weather.precipitation > 1:
            score -= 15
            factors.append("Light precipitation")
        else:
            score += 10
            factors.append("No precipitation")

        if weather.wind_speed > 30:
            score -= 20
            factors.append("High wind")
        elif weather.wind_speed < 15:
            score += 10
            factors.append("Calm conditions")

        if 20 <= weather.cloud_cover <= 60:
            score += 10
            factors.append("Good visibility")

        if weather.is_day:
            score += 10
            factors.append("Daylight hours")
        else:
            score -= 20
            factors.append("Night time")

        return max(0, min(100, score)), factors

    @staticmethod
    def is_dawn_chorus(weather: WeatherData, now: Optional[datetime] = None) -> bool:
        """From 30 minutes before sunrise until 2 hours after."""
        if weather.sunrise is None:
            return False
        sunrise = weather.sunrise
        now = now or (datetime.now(sunrise.tzinfo) if sunrise.tzinfo else datetime.now())
        return sunrise - timedelta(minutes=30) <= now <= sunrise + timedelta(hours=2)

    @staticmethod
    def get_weather_summary(weather: WeatherData) -> str:
        temp = round(weather.temperature)
        feels = round(weather.feels_like)
        summary = f"{weather.conditions}, {temp}°C"
        if abs(temp - feels) > 3:
            summary += f" (feels like {feels}°C)"
        if weather.precipitation > 0:
            summary += f", {weather.precipitation:g}mm precip"
        if weather.wind_speed > 20:
            summary += f", wind {round(weather.wind_speed)}km/h"
        return summary
