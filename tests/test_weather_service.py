"""
Unit tests for the Open-Meteo weather service.
"""

import pytest
import requests
from datetime import datetime
from unittest.mock import patch, MagicMock

import sys
sys.path.append('src')

from config import LocationConfig, WeatherConfig
from models import WeatherData
from weather_service import WeatherService, describe_weather_code

SAMPLE_RESPONSE = {
    "current": {
        "time": "2026-05-01T07:15",
        "temperature_2m": 14.2,
        "relative_humidity_2m": 71,
        "apparent_temperature": 13.1,
        "precipitation": 0.0,
        "cloud_cover": 40,
        "wind_speed_10m": 8.5,
        "wind_direction_10m": 220,
        "weather_code": 2,
        "is_day": 1,
    },
    "daily": {
        "sunrise": ["2026-05-01T05:38"],
        "sunset": ["2026-05-01T20:41"],
    },
}


def make_weather(**overrides):
    values = dict(
        temperature=15.0, feels_like=15.0, humidity=60, precipitation=0.0, cloud_cover=40,
        wind_speed=5.0, wind_direction=180, weather_code=2, conditions="Partly Cloudy", is_day=True,
    )
    values.update(overrides)
    return WeatherData(**values)


class TestWeatherService:
    """Test fetching, parsing and caching."""

    def setup_method(self):
        self.location = LocationConfig(latitude=52.52, longitude=13.41)
        self.service = WeatherService(WeatherConfig(cache_duration=900), self.location)

    @patch('weather_service.requests.get')
    def test_fetch_and_parse(self, mock_get):
        mock_get.return_value.json.return_value = SAMPLE_RESPONSE

        weather = self.service.get_current_weather()

        assert weather.temperature == 14.2
        assert weather.conditions == "Partly Cloudy"
        assert weather.is_day is True
        assert weather.sunrise == datetime(2026, 5, 1, 5, 38)
        params = mock_get.call_args.kwargs['params']
        assert params['latitude'] == 52.52
        assert mock_get.call_args.kwargs['timeout'] == 10.0

    @patch('weather_service.requests.get')
    def test_cached_between_calls(self, mock_get):
        mock_get.return_value.json.return_value = SAMPLE_RESPONSE

        first = self.service.get_current_weather()
        second = self.service.get_current_weather()

        assert first is second
        assert mock_get.call_count == 1

    @patch('weather_service.requests.get')
    def test_network_error_returns_none(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("unreachable")
        assert self.service.get_current_weather() is None

    @patch('weather_service.requests.get')
    def test_http_error_returns_none(self, mock_get):
        mock_get.return_value.raise_for_status.side_effect = requests.HTTPError("503")
        assert self.service.get_current_weather() is None

    @patch('weather_service.requests.get')
    def test_malformed_payload_returns_none(self, mock_get):
        mock_get.return_value.json.return_value = {"unexpected": True}
        assert self.service.get_current_weather() is None

    @patch('weather_service.requests.get')
    def test_disabled_or_no_location(self, mock_get):
        disabled = WeatherService(WeatherConfig(enabled=False), self.location)
        nowhere = WeatherService(WeatherConfig(), LocationConfig())

        assert disabled.get_current_weather() is None
        assert nowhere.get_current_weather() is None
        mock_get.assert_not_called()

    def test_to_weather_info(self):
        info = make_weather(temperature=9.5, wind_speed=12.0).to_weather_info()
        assert info.to_dict() == {"temperature": 9.5, "conditions": "Partly Cloudy", "windSpeed": 12.0}

    def test_describe_weather_code(self):
        assert describe_weather_code(0) == "Clear"
        assert describe_weather_code(1234) == "Unknown"


class TestWeatherRatings:
    """Test the derived bird activity helpers."""

    def test_pleasant_day_scores_high(self):
        score, factors = WeatherService.get_bird_activity_rating(make_weather())
        assert score == 100
        assert "Ideal temperature" in factors

    def test_stormy_night_scores_low(self):
        weather = make_weather(temperature=-5, precipitation=10, wind_speed=40, is_day=False)
        score, factors = WeatherService.get_bird_activity_rating(weather)
        assert score == 0
        assert "Night time" in factors

    def test_dawn_chorus_window(self):
        weather = make_weather(sunrise=datetime(2026, 5, 1, 5, 30))

        assert WeatherService.is_dawn_chorus(weather, now=datetime(2026, 5, 1, 5, 10))
        assert WeatherService.is_dawn_chorus(weather, now=datetime(2026, 5, 1, 7, 30))
        assert not WeatherService.is_dawn_chorus(weather, now=datetime(2026, 5, 1, 7, 31))
        assert not WeatherService.is_dawn_chorus(make_weather())

    def test_weather_summary(self):
        weather = make_weather(temperature=4.0, feels_like=-1.0, precipitation=1.5, wind_speed=25)
        assert WeatherService.get_weather_summary(weather) == \
            "Partly Cloudy, 4°C (feels like -1°C), 1.5mm precip, wind 25km/h"
