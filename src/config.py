"""
Configuration for the BirdCam bridge.

Settings are grouped into validated dataclass sections and loaded from the
environment (optionally via a .env file). Malformed values fall back to the
section default with a warning; inconsistent combinations raise
ConfigurationError.
"""

import logging
import os
import sys
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv

from exceptions import ConfigurationError
from models import Region

logger = logging.getLogger(__name__)


@dataclass
class CameraConfig:
    """Source stream settings."""
    rtsp_url: str = ""
    name: str = "Pi Camera"
    ffmpeg_path: str = "ffmpeg"

    def __post_init__(self):
        if not self.ffmpeg_path:
            raise ValueError("ffmpeg path must not be empty")
        if self.rtsp_url and "://" not in self.rtsp_url:
            raise ValueError(f"Invalid stream URL: {self.rtsp_url}")


@dataclass
class MotionConfig:
    """Motion engine settings. Sensitivity and threshold are on a 0-100 scale."""
    enabled: bool = True
    sensitivity: float = 50.0
    threshold: float = 5.0          # percent of scored pixels that must change
    cooldown_ms: int = 5000
    min_duration_ms: int = 500
    regions: List[Region] = field(default_factory=list)
    debug: bool = False
    frame_width: int = 320
    frame_height: int = 180
    frame_rate: float = 5.0
    save_snapshots: bool = True
    restart_delay: float = 5.0

    def __post_init__(self):
        if not 0 <= self.sensitivity <= 100:
            raise ValueError("Sensitivity must be between 0 and 100")
        if not 0 <= self.threshold <= 100:
            raise ValueError("Motion threshold must be between 0 and 100")
        if self.cooldown_ms < 0 or self.min_duration_ms < 0:
            raise ValueError("Cooldown and minimum duration must not be negative")
        if self.frame_width <= 0 or self.frame_height <= 0:
            raise ValueError(f"Invalid scoring resolution: {self.frame_width}x{self.frame_height}")
        if self.frame_rate <= 0:
            raise ValueError("Frame rate must be positive")
        if self.restart_delay < 0:
            raise ValueError("Restart delay must not be negative")


@dataclass
class LocationConfig:
    """Geographic hints shared by the classifier, weather and daylight checks."""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: str = "UTC"

    def __post_init__(self):
        if self.latitude is not None and not -90 <= self.latitude <= 90:
            raise ValueError(f"Invalid latitude: {self.latitude}")
        if self.longitude is not None and not -180 <= self.longitude <= 180:
            raise ValueError(f"Invalid longitude: {self.longitude}")

    @property
    def is_set(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class DetectorConfig:
    """Acoustic species detection settings."""
    enabled: bool = True
    min_confidence: float = 0.7
    analysis_interval: float = 3.0
    sample_duration: float = 3.0
    sample_rate: int = 48000
    locale: str = "en"
    classifier_timeout: Optional[float] = None
    python_path: str = sys.executable or "python3"
    daylight_only: bool = False
    trigger_on_motion: bool = False

    def __post_init__(self):
        if not 0 <= self.min_confidence <= 1:
            raise ValueError("Minimum confidence must be between 0 and 1")
        if self.analysis_interval <= 0:
            raise ValueError("Analysis interval must be positive")
        if self.sample_duration <= 0:
            raise ValueError("Sample duration must be positive")
        if self.sample_rate <= 0:
            raise ValueError("Sample rate must be positive")
        if self.classifier_timeout is not None and self.classifier_timeout <= 0:
            raise ValueError("Classifier timeout must be positive")

    @property
    def effective_classifier_timeout(self) -> float:
        """Classifier time budget; defaults to twice the analysis interval."""
        if self.classifier_timeout is not None:
            return self.classifier_timeout
        return 2 * self.analysis_interval


@dataclass
class StorageConfig:
    """Filesystem locations."""
    data_dir: Path = field(default_factory=lambda: Path.home() / ".birdcam")
    max_snapshots: int = 200

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if self.max_snapshots <= 0:
            raise ValueError("Max snapshots must be positive")

    @property
    def tracker_dir(self) -> Path:
        return self.data_dir / "birds"

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / "temp"

    @property
    def audio_dir(self) -> Path:
        return self.temp_dir / "audio"

    @property
    def results_dir(self) -> Path:
        return self.temp_dir / "results"

    @property
    def snapshot_dir(self) -> Path:
        return self.data_dir / "snapshots"


@dataclass
class NotificationConfig:
    """Alert policy and Telegram delivery settings."""
    enabled: bool = True
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    on_bird_detected: bool = True
    on_new_species: bool = True
    on_rare_bird: bool = True
    on_motion: bool = False
    on_storage_low: bool = True
    quiet_hours_enabled: bool = True
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "07:00"
    min_interval_seconds: int = 60
    max_per_hour: int = 20
    rare_species: List[str] = field(default_factory=list)
    ignored_species: List[str] = field(default_factory=list)

    def __post_init__(self):
        for value in (self.quiet_hours_start, self.quiet_hours_end):
            if parse_clock(value) is None:
                raise ValueError(f"Invalid quiet hours time: {value!r} (expected HH:MM)")
        if self.min_interval_seconds < 0:
            raise ValueError("Minimum notification interval must not be negative")
        if self.max_per_hour <= 0:
            raise ValueError("Max notifications per hour must be positive")

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_token and self.telegram_chat_id)


@dataclass
class WeatherConfig:
    """Open-Meteo weather enrichment settings."""
    enabled: bool = True
    api_url: str = "https://api.open-meteo.com/v1/forecast"
    cache_duration: int = 900
    request_timeout: float = 10.0

    def __post_init__(self):
        if self.cache_duration < 0:
            raise ValueError("Weather cache duration must not be negative")
        if self.request_timeout <= 0:
            raise ValueError("Weather request timeout must be positive")


@dataclass
class PerformanceConfig:
    """Housekeeping thresholds."""
    memory_threshold: float = 0.85
    status_interval: float = 300.0
    storage_low_percent: float = 90.0
    temp_file_max_age: float = 600.0

    def __post_init__(self):
        if not 0 < self.memory_threshold < 1:
            raise ValueError("Memory threshold must be between 0 and 1")
        if self.status_interval <= 0:
            raise ValueError("Status interval must be positive")
        if not 0 < self.storage_low_percent <= 100:
            raise ValueError("Storage low percent must be between 0 and 100")


def parse_clock(value: str) -> Optional[int]:
    """Parse 'HH:MM' into minutes after midnight."""
    try:
        hours, minutes = value.split(":")
        hours, minutes = int(hours), int(minutes)
    except (AttributeError, ValueError):
        return None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return None
    return hours * 60 + minutes


class Config:
    """
    Top-level configuration assembled from environment variables.

    Pass ``environ`` to read from a mapping instead of ``os.environ``
    (used by tests); ``load_env`` controls whether a .env file is read first.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None, load_env: bool = True):
        if load_env and environ is None:
            load_dotenv()
        self._env = dict(os.environ if environ is None else environ)

        self.debug = self._get_bool("DEBUG", False)
        self.log_level = self._env.get("LOG_LEVEL", "DEBUG" if self.debug else "INFO").upper()

        try:
            self.camera = CameraConfig(
                rtsp_url=self._env.get("CAMERA_RTSP_URL", ""),
                name=self._env.get("CAMERA_NAME", "Pi Camera"),
                ffmpeg_path=self._env.get("FFMPEG_PATH", "ffmpeg"),
            )
            self.motion = MotionConfig(
                enabled=self._get_bool("MOTION_ENABLED", True),
                sensitivity=self._get_float("MOTION_SENSITIVITY", 50.0),
                threshold=self._get_float("MOTION_THRESHOLD", 5.0),
                cooldown_ms=self._get_int("MOTION_COOLDOWN_MS", 5000),
                min_duration_ms=self._get_int("MOTION_MIN_DURATION_MS", 500),
                regions=self._get_regions("MOTION_REGIONS"),
                debug=self._get_bool("MOTION_DEBUG", self.debug),
                frame_rate=self._get_float("MOTION_FRAME_RATE", 5.0),
                save_snapshots=self._get_bool("MOTION_SAVE_SNAPSHOTS", True),
            )
            self.location = LocationConfig(
                latitude=self._get_optional_float("LOCATION_LATITUDE"),
                longitude=self._get_optional_float("LOCATION_LONGITUDE"),
                timezone=self._env.get("LOCATION_TIMEZONE", "UTC"),
            )
            self.detector = DetectorConfig(
                enabled=self._get_bool("BIRD_DETECTION_ENABLED", True),
                min_confidence=self._get_float("DETECTION_MIN_CONFIDENCE", 0.7),
                analysis_interval=self._get_float("DETECTION_INTERVAL", 3.0),
                sample_duration=self._get_float("DETECTION_SAMPLE_DURATION", 3.0),
                locale=self._env.get("BIRDNET_LOCALE", "en"),
                classifier_timeout=self._get_optional_float("DETECTION_CLASSIFIER_TIMEOUT"),
                python_path=self._env.get("BIRDNET_PYTHON", sys.executable or "python3"),
                daylight_only=self._get_bool("DETECTION_DAYLIGHT_ONLY", False),
                trigger_on_motion=self._get_bool("DETECTION_TRIGGER_ON_MOTION", False),
            )
            self.storage = StorageConfig(
                data_dir=Path(self._env.get("TRACKER_DATA_DIR", str(Path.home() / ".birdcam"))),
                max_snapshots=self._get_int("STORAGE_MAX_SNAPSHOTS", 200),
            )
            self.notifications = NotificationConfig(
                enabled=self._get_bool("NOTIFY_ENABLED", True),
                telegram_token=self._env.get("TELEGRAM_BOT_TOKEN") or None,
                telegram_chat_id=self._env.get("TELEGRAM_CHAT_ID") or None,
                on_bird_detected=self._get_bool("NOTIFY_BIRD_DETECTED", True),
                on_new_species=self._get_bool("NOTIFY_NEW_SPECIES", True),
                on_rare_bird=self._get_bool("NOTIFY_RARE_BIRD", True),
                on_motion=self._get_bool("NOTIFY_MOTION", False),
                on_storage_low=self._get_bool("NOTIFY_STORAGE_LOW", True),
                quiet_hours_enabled=self._get_bool("NOTIFY_QUIET_HOURS", True),
                quiet_hours_start=self._env.get("NOTIFY_QUIET_START", "22:00"),
                quiet_hours_end=self._env.get("NOTIFY_QUIET_END", "07:00"),
                min_interval_seconds=self._get_int("NOTIFY_MIN_INTERVAL", 60),
                max_per_hour=self._get_int("NOTIFY_MAX_PER_HOUR", 20),
                rare_species=self._get_list("NOTIFY_RARE_SPECIES"),
                ignored_species=self._get_list("NOTIFY_IGNORED_SPECIES"),
            )
            self.weather = WeatherConfig(
                enabled=self._get_bool("WEATHER_ENABLED", True),
                cache_duration=self._get_int("WEATHER_CACHE_SECONDS", 900),
                request_timeout=self._get_float("WEATHER_TIMEOUT", 10.0),
            )
            self.performance = PerformanceConfig(
                memory_threshold=self._get_float("PERFORMANCE_MEMORY_THRESHOLD", 0.85),
                status_interval=self._get_float("PERFORMANCE_STATUS_INTERVAL", 300.0),
                storage_low_percent=self._get_float("PERFORMANCE_STORAGE_LOW_PERCENT", 90.0),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        self._validate()

    # ------------------------------------------------------------------
    # Environment parsing helpers
    # ------------------------------------------------------------------

    def _get_bool(self, key: str, default: bool) -> bool:
        value = self._env.get(key)
        if value is None or value == "":
            return default
        return value.strip().lower() in ("1", "true", "yes", "on")

    def _get_float(self, key: str, default: float) -> float:
        value = self._env.get(key)
        if value is None or value == "":
            return default
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Invalid value for {key}: {value!r}, using default {default}")
            return default

    def _get_int(self, key: str, default: int) -> int:
        value = self._env.get(key)
        if value is None or value == "":
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid value for {key}: {value!r}, using default {default}")
            return default

    def _get_optional_float(self, key: str) -> Optional[float]:
        value = self._env.get(key)
        if value is None or value == "":
            return None
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Invalid value for {key}: {value!r}, ignoring")
            return None

    def _get_list(self, key: str) -> List[str]:
        value = self._env.get(key, "")
        return [item.strip() for item in value.split(",") if item.strip()]

    def _get_regions(self, key: str) -> List[Region]:
        """Parse 'x,y,w,h;x,y,w,h' (fractions of the frame) into regions."""
        value = self._env.get(key, "")
        regions = []
        for chunk in value.split(";"):
            if not chunk.strip():
                continue
            try:
                x, y, width, height = (float(part) for part in chunk.split(","))
                regions.append(Region(x=x, y=y, width=width, height=height))
            except ValueError as e:
                logger.warning(f"Ignoring invalid motion region {chunk!r}: {e}")
        return regions

    # ------------------------------------------------------------------

    def _validate(self) -> None:
        """Cross-section consistency checks."""
        if (self.location.latitude is None) != (self.location.longitude is None):
            raise ConfigurationError(
                "LOCATION_LATITUDE and LOCATION_LONGITUDE must be set together"
            )
        if self.notifications.telegram_token and not self.notifications.telegram_chat_id:
            raise ConfigurationError("TELEGRAM_CHAT_ID is required when TELEGRAM_BOT_TOKEN is set")
        if self.detector.daylight_only and not self.location.is_set:
            raise ConfigurationError("DETECTION_DAYLIGHT_ONLY requires a configured location")

    def validate_runtime(self) -> List[str]:
        """Return problems that prevent the bridge from running (empty if none)."""
        errors = []
        if (self.motion.enabled or self.detector.enabled) and not self.camera.rtsp_url:
            errors.append("CAMERA_RTSP_URL is required when motion or bird detection is enabled")
        return errors

    def get_summary(self) -> Dict[str, dict]:
        """Configuration overview for startup logging. Secrets are omitted."""
        notifications = asdict(self.notifications)
        notifications["telegram_token"] = "***" if self.notifications.telegram_token else None
        return {
            "camera": {"name": self.camera.name, "ffmpeg_path": self.camera.ffmpeg_path},
            "motion": {
                "enabled": self.motion.enabled,
                "sensitivity": self.motion.sensitivity,
                "threshold": self.motion.threshold,
                "cooldown_ms": self.motion.cooldown_ms,
                "min_duration_ms": self.motion.min_duration_ms,
                "regions": len(self.motion.regions),
            },
            "detector": {
                "enabled": self.detector.enabled,
                "min_confidence": self.detector.min_confidence,
                "analysis_interval": self.detector.analysis_interval,
                "sample_duration": self.detector.sample_duration,
                "classifier_timeout": self.detector.effective_classifier_timeout,
                "locale": self.detector.locale,
            },
            "location": asdict(self.location),
            "storage": {"data_dir": str(self.storage.data_dir)},
            "notifications": notifications,
        }

    @classmethod
    def create_test_config(cls, **overrides) -> "Config":
        """Create an isolated configuration for tests (no .env, no os.environ)."""
        environ = {
            "CAMERA_RTSP_URL": "rtsp://test-camera/stream",
            "TRACKER_DATA_DIR": str(Path(os.environ.get("TMPDIR", "/tmp")) / "birdcam-test"),
            "WEATHER_ENABLED": "false",
            "NOTIFY_QUIET_HOURS": "false",
        }
        environ.update({key: str(value) for key, value in overrides.items()})
        return cls(environ=environ, load_env=False)
