"""
Consolidated data models for the BirdCam bridge.

This module contains all dataclasses used across the system for:
- Motion detection events
- Species detection results
- Sighting records and derived statistics
- Weather snapshots
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple


def parse_timestamp(value: str) -> datetime:
    """
    Parse a stored ISO-8601 timestamp into local time.

    Offset-aware values are converted to the local zone; naive values are
    taken to already be local. The result is always offset-aware. A trailing
    'Z' is accepted.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value).astimezone()


def to_local(value: datetime) -> datetime:
    """Offset-aware local version of ``value``; naive values are taken as local."""
    return value.astimezone()


def now_timestamp() -> str:
    """Current local time as ISO-8601 with offset."""
    return datetime.now().astimezone().isoformat(timespec="milliseconds")


# =============================================================================
# Motion Detection Models
# =============================================================================

@dataclass(frozen=True)
class Region:
    """Rectangular area of interest in normalized frame coordinates (0-1)."""
    x: float
    y: float
    width: float
    height: float

    def __post_init__(self):
        if not (0 <= self.x < 1 and 0 <= self.y < 1):
            raise ValueError(f"Region origin out of frame: ({self.x}, {self.y})")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Region width and height must be positive")
        if self.x + self.width > 1 + 1e-9 or self.y + self.height > 1 + 1e-9:
            raise ValueError("Region extends beyond the frame")

    def to_pixels(self, frame_width: int, frame_height: int) -> Tuple[int, int, int, int]:
        """Pixel bounds (x0, y0, x1, y1), always at least one pixel wide."""
        x0 = int(self.x * frame_width)
        y0 = int(self.y * frame_height)
        x1 = max(x0 + 1, int(round((self.x + self.width) * frame_width)))
        y1 = max(y0 + 1, int(round((self.y + self.height) * frame_height)))
        return x0, y0, min(x1, frame_width), min(y1, frame_height)


@dataclass(frozen=True)
class FrameScore:
    """Scene-change score for one frame."""
    score: float                      # 0-1, fraction of changed pixels
    region: Optional[Region] = None   # winning region, None for full frame


@dataclass(frozen=True)
class MotionEvent:
    """Emitted once per confirmed motion episode."""
    timestamp: datetime
    confidence: float                 # 0-100
    region: Optional[Region] = None
    snapshot_path: Optional[str] = None


@dataclass(frozen=True)
class MotionEnd:
    """Emitted when a confirmed motion episode drops below threshold."""
    timestamp: datetime
    duration_ms: int


# =============================================================================
# Species Detection Models
# =============================================================================

@dataclass(frozen=True)
class BirdDetection:
    """One classifier row that passed the confidence filter."""
    species: str
    scientific_name: str
    confidence: float                 # 0-1
    start_time: float                 # seconds into the sample
    end_time: float
    timestamp: datetime


@dataclass(frozen=True)
class ClassificationRow:
    """One parsed row of classifier output, before confidence filtering."""
    start_time: float
    end_time: float
    scientific_name: str
    common_name: str
    confidence: float


@dataclass
class ClassificationResult:
    """Rows produced by one classifier run and the invocation that produced them."""
    rows: List[ClassificationRow]
    invocation: str                   # "birdnetlib" or "birdnet_analyzer"
    processing_time: float = 0.0


# =============================================================================
# Sighting Models
# =============================================================================

@dataclass(frozen=True)
class WeatherInfo:
    """Weather conditions attached to a sighting."""
    temperature: Optional[float] = None
    conditions: Optional[str] = None
    wind_speed: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        if self.temperature is not None:
            data["temperature"] = self.temperature
        if self.conditions is not None:
            data["conditions"] = self.conditions
        if self.wind_speed is not None:
            data["windSpeed"] = self.wind_speed
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WeatherInfo":
        return cls(
            temperature=data.get("temperature"),
            conditions=data.get("conditions"),
            wind_speed=data.get("windSpeed"),
        )


@dataclass(frozen=True)
class BirdSighting:
    """A durable sighting record. Never mutated after creation."""
    id: str
    species: str
    scientific_name: str
    confidence: float
    timestamp: str                    # ISO-8601
    clip_id: Optional[str] = None
    snapshot_id: Optional[str] = None
    preset_id: Optional[str] = None
    weather: Optional[WeatherInfo] = None
    notes: Optional[str] = None

    @property
    def local_time(self) -> datetime:
        return parse_timestamp(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "species": self.species,
            "scientificName": self.scientific_name,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }
        optional = {
            "clipId": self.clip_id,
            "snapshotId": self.snapshot_id,
            "presetId": self.preset_id,
            "notes": self.notes,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        if self.weather is not None:
            data["weather"] = self.weather.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BirdSighting":
        """Build a sighting from its JSON form. Raises KeyError/ValueError if malformed."""
        weather = data.get("weather")
        timestamp = str(data["timestamp"])
        parse_timestamp(timestamp)
        return cls(
            id=str(data["id"]),
            species=str(data["species"]),
            scientific_name=str(data.get("scientificName", "")),
            confidence=float(data["confidence"]),
            timestamp=timestamp,
            clip_id=data.get("clipId"),
            snapshot_id=data.get("snapshotId"),
            preset_id=data.get("presetId"),
            weather=WeatherInfo.from_dict(weather) if isinstance(weather, dict) else None,
            notes=data.get("notes"),
        )


@dataclass
class TrackerState:
    """Persisted tracker state: active sightings plus the life list."""
    sightings: List[BirdSighting] = field(default_factory=list)
    life_list: List[str] = field(default_factory=list)
    last_updated: str = field(default_factory=now_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sightings": [s.to_dict() for s in self.sightings],
            "lifeList": list(self.life_list),
            "lastUpdated": self.last_updated,
        }


@dataclass
class SpeciesStats:
    """Aggregate statistics for one species over the active sightings."""
    species: str
    scientific_name: str
    total_sightings: int
    first_seen: str
    last_seen: str
    average_confidence: float
    peak_hour: int                    # 0-23
    monthly_counts: List[int]         # 12 buckets, January first


@dataclass
class SpeciesCount:
    species: str
    count: int


@dataclass
class DailyStats:
    """Sighting totals for one calendar day."""
    date: str                         # YYYY-MM-DD
    total_sightings: int
    unique_species: int
    species: List[SpeciesCount]       # ranked by count, descending


# =============================================================================
# Weather Models
# =============================================================================

@dataclass
class WeatherData:
    """Current conditions from the weather provider."""
    temperature: float
    feels_like: float
    humidity: float
    precipitation: float
    cloud_cover: float
    wind_speed: float
    wind_direction: float
    weather_code: int
    conditions: str
    is_day: bool
    sunrise: Optional[datetime] = None
    sunset: Optional[datetime] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_weather_info(self) -> WeatherInfo:
        return WeatherInfo(
            temperature=self.temperature,
            conditions=self.conditions,
            wind_speed=self.wind_speed,
        )
