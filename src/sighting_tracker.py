"""
Sighting tracker: the system of record for bird sightings.

Holds the active sightings and life list in memory, persists them to
``tracker-state.json`` after every change and moves the oldest records into
month-keyed archive files once the active list grows past MAX_SIGHTINGS.
"""

import json
import logging
import os
import re
import secrets
import threading
import time
from collections import Counter
from datetime import date, datetime, time as dt_time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from events import EventChannel, Subscription
from exceptions import PersistenceError
from models import (
    BirdDetection,
    BirdSighting,
    DailyStats,
    SpeciesCount,
    SpeciesStats,
    TrackerState,
    WeatherInfo,
    now_timestamp,
    to_local,
)

logger = logging.getLogger(__name__)

MAX_SIGHTINGS = 10000
SIGHTINGS_PER_FILE = 1000
STATE_FILENAME = "tracker-state.json"

_ARCHIVE_PATTERN = re.compile(r"^archive-(\d{4})-(\d{2})\.json$")


def generate_sighting_id() -> str:
    return f"sight_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def _write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file and rename it over ``path``."""
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as e:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise PersistenceError(f"Failed to write {path}: {e}") from e


def _parse_sightings(raw: Iterable[Any], source: str) -> List[BirdSighting]:
    sightings = []
    skipped = 0
    for item in raw:
        try:
            sightings.append(BirdSighting.from_dict(item))
        except (KeyError, TypeError, ValueError, AttributeError):
            skipped += 1
    if skipped:
        logger.warning(f"Skipped {skipped} malformed sightings in {source}")
    return sightings


class SightingTracker:
    """
    Records sightings, maintains the life list and answers statistics queries.

    ``weather_service`` and ``notifier`` are optional collaborators; failures
    in either are logged and never affect recording.
    """

    def __init__(self, data_dir: Path, weather_service=None, notifier=None,
                 max_sightings: int = MAX_SIGHTINGS, sightings_per_file: int = SIGHTINGS_PER_FILE):
        self.data_dir = Path(data_dir)
        self.state_path = self.data_dir / STATE_FILENAME
        self.weather_service = weather_service
        self.notifier = notifier
        self.max_sightings = max_sightings
        self.sightings_per_file = sightings_per_file

        self._lock = threading.Lock()
        self._archived_counts: Optional[Counter] = None
        self._sighting_channel: EventChannel[BirdSighting] = EventChannel("sighting")
        self._new_species_channel: EventChannel[BirdSighting] = EventChannel("new_species")

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.state = self._load_state()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_state(self) -> TrackerState:
        if not self.state_path.exists():
            logger.info(f"No tracker state at {self.state_path}, starting fresh")
            return TrackerState()

        try:
            with open(self.state_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError("state file is not a JSON object")
        except (OSError, ValueError) as e:
            logger.error(f"Could not load tracker state ({e}), starting with empty state")
            return TrackerState()

        sightings = _parse_sightings(raw.get("sightings") or [], self.state_path.name)
        life_list = [str(s) for s in raw.get("lifeList") or [] if isinstance(s, str)]

        seen = set(life_list)
        for sighting in sightings:
            if sighting.species not in seen:
                life_list.append(sighting.species)
                seen.add(sighting.species)

        state = TrackerState(
            sightings=sightings,
            life_list=life_list,
            last_updated=raw.get("lastUpdated") or now_timestamp(),
        )
        logger.info(f"Loaded {len(sightings)} sightings, {len(life_list)} species on life list")
        return state

    def _save_state(self) -> bool:
        """Persist the current state. Failures are logged, never raised."""
        self.state.last_updated = now_timestamp()
        try:
            _write_json_atomic(self.state_path, self.state.to_dict())
            return True
        except PersistenceError as e:
            logger.error(f"Error saving tracker state: {e}")
            return False

    def archive_path(self, year: int, month: int) -> Path:
        return self.data_dir / f"archive-{year:04d}-{month:02d}.json"

    def _read_archive(self, path: Path) -> List[BirdSighting]:
        """Read an archive file. Accepts {"sightings": [...]} and a bare list."""
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        if isinstance(raw, dict):
            raw = raw.get("sightings") or []
        if not isinstance(raw, list):
            raise ValueError(f"unexpected archive format in {path.name}")
        return _parse_sightings(raw, path.name)

    def _archive_if_needed(self) -> None:
        """Move the oldest batch to its month archive while over the limit. Caller holds the lock."""
        while len(self.state.sightings) > self.max_sightings:
            batch = self.state.sightings[:self.sightings_per_file]
            first = batch[0].local_time
            path = self.archive_path(first.year, first.month)
            try:
                try:
                    existing = self._read_archive(path)
                except ValueError as e:
                    # Unreadable content: keep the file for inspection and start a new archive
                    corrupt_path = path.with_name(f"{path.name}.corrupt-{int(time.time() * 1000)}")
                    path.rename(corrupt_path)
                    logger.error(f"Archive {path.name} is unreadable ({e}), moved to {corrupt_path.name}")
                    existing = []
                merged = existing + batch
                _write_json_atomic(path, {"sightings": [s.to_dict() for s in merged]})
            except (OSError, ValueError, PersistenceError) as e:
                logger.error(f"Archival to {path.name} failed, keeping sightings active: {e}")
                return

            self.state.sightings = self.state.sightings[len(batch):]
            if self._archived_counts is not None:
                self._archived_counts.update(s.species for s in batch)
            logger.info(f"Archived {len(batch)} sightings to {path.name}")

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def subscribe_sighting(self, callback: Callable[[BirdSighting], None]) -> Subscription:
        return self._sighting_channel.subscribe(callback)

    def subscribe_new_species(self, callback: Callable[[BirdSighting], None]) -> Subscription:
        return self._new_species_channel.subscribe(callback)

    def _current_weather(self) -> Optional[WeatherInfo]:
        if self.weather_service is None:
            return None
        try:
            weather = self.weather_service.get_current_weather()
        except Exception as e:
            logger.warning(f"Weather lookup failed: {e}")
            return None
        return weather.to_weather_info() if weather else None

    def record_sighting(self, species: str, scientific_name: str, confidence: float,
                        clip_id: Optional[str] = None, snapshot_id: Optional[str] = None,
                        preset_id: Optional[str] = None, notes: Optional[str] = None,
                        timestamp: Optional[datetime] = None) -> BirdSighting:
        """Record a sighting, persist it and notify. Returns the stored record."""
        if not species or not species.strip():
            raise ValueError("Species name must not be empty")
        if not 0 <= confidence <= 1:
            raise ValueError(f"Confidence must be between 0 and 1, got {confidence}")

        weather = self._current_weather()
        when = to_local(timestamp) if timestamp else datetime.now().astimezone()
        sighting = BirdSighting(
            id=generate_sighting_id(),
            species=species.strip(),
            scientific_name=scientific_name or "",
            confidence=confidence,
            timestamp=when.isoformat(timespec="milliseconds"),
            clip_id=clip_id,
            snapshot_id=snapshot_id,
            preset_id=preset_id,
            weather=weather,
            notes=notes,
        )

        with self._lock:
            self.state.sightings.append(sighting)
            is_new = sighting.species not in self.state.life_list
            if is_new:
                self.state.life_list.append(sighting.species)
            self._archive_if_needed()
            self._save_state()

        if is_new:
            logger.info(f"New species for the life list: {sighting.species}")
        logger.info(f"Recorded sighting {sighting.id}: {sighting.species} ({confidence * 100:.0f}%)")

        self._notify(sighting, is_new)
        self._sighting_channel.publish(sighting)
        if is_new:
            self._new_species_channel.publish(sighting)
        return sighting

    def record_detection(self, detection: BirdDetection, **refs) -> BirdSighting:
        """Record a sighting from a detector result. ``refs`` are passed to record_sighting."""
        refs.setdefault("timestamp", detection.timestamp)
        return self.record_sighting(
            species=detection.species,
            scientific_name=detection.scientific_name,
            confidence=detection.confidence,
            **refs,
        )

    def _notify(self, sighting: BirdSighting, is_new: bool) -> None:
        if self.notifier is None:
            return
        try:
            is_rare = self.notifier.is_rare_species(sighting.species)
            self.notifier.notify_bird_detected(sighting.species, sighting.confidence, is_new, is_rare)
        except Exception as e:
            logger.warning(f"Notification for {sighting.species} failed: {e}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _snapshot(self) -> List[BirdSighting]:
        with self._lock:
            return list(self.state.sightings)

    def get_life_list(self) -> List[str]:
        with self._lock:
            return sorted(self.state.life_list)

    def get_species_count(self) -> int:
        with self._lock:
            return len(self.state.life_list)

    def get_recent_sightings(self, limit: int = 50) -> List[BirdSighting]:
        """Most recent first."""
        if limit <= 0:
            return []
        return list(reversed(self._snapshot()[-limit:]))

    def get_sightings_for_date(self, day: Union[date, datetime]) -> List[BirdSighting]:
        if isinstance(day, datetime):
            day = to_local(day).date()
        return [s for s in self._snapshot() if s.local_time.date() == day]

    def get_sightings_for_species(self, species: str) -> List[BirdSighting]:
        wanted = species.strip().lower()
        return [s for s in self._snapshot() if s.species.lower() == wanted]

    def get_species_stats(self, species: str) -> Optional[SpeciesStats]:
        sightings = self.get_sightings_for_species(species)
        if not sightings:
            return None

        hour_counts = [0] * 24
        month_counts = [0] * 12
        for s in sightings:
            local = s.local_time
            hour_counts[local.hour] += 1
            month_counts[local.month - 1] += 1

        return SpeciesStats(
            species=sightings[0].species,
            scientific_name=sightings[0].scientific_name,
            total_sightings=len(sightings),
            first_seen=sightings[0].timestamp,
            last_seen=sightings[-1].timestamp,
            average_confidence=sum(s.confidence for s in sightings) / len(sightings),
            peak_hour=hour_counts.index(max(hour_counts)),
            monthly_counts=month_counts,
        )

    def get_daily_stats(self, day: Optional[Union[date, datetime]] = None) -> DailyStats:
        if day is None:
            day = datetime.now().astimezone().date()
        elif isinstance(day, datetime):
            day = to_local(day).date()
        sightings = self.get_sightings_for_date(day)
        counts = Counter(s.species for s in sightings)
        return DailyStats(
            date=day.isoformat(),
            total_sightings=len(sightings),
            unique_species=len(counts),
            species=[SpeciesCount(species=name, count=count) for name, count in counts.most_common()],
        )

    def _get_archived_counts(self) -> Counter:
        """Species counts across all archive files, read once and cached."""
        if self._archived_counts is None:
            counts = Counter()
            for path in sorted(self.data_dir.glob("archive-*.json")):
                try:
                    counts.update(s.species for s in self._read_archive(path))
                except (OSError, ValueError) as e:
                    logger.warning(f"Could not read archive {path.name}: {e}")
            self._archived_counts = counts
        return self._archived_counts

    def get_top_species(self, limit: int = 10) -> List[SpeciesCount]:
        """Species ranked by all-time count (active plus archived)."""
        with self._lock:
            counts = Counter(s.species for s in self.state.sightings)
            counts.update(self._get_archived_counts())
        return [SpeciesCount(species=name, count=count) for name, count in counts.most_common(limit)]

    def get_activity_heatmap(self) -> List[List[int]]:
        """7x24 counts by day of week (row 0 = Sunday) and hour."""
        heatmap = [[0] * 24 for _ in range(7)]
        for s in self._snapshot():
            local = s.local_time
            heatmap[(local.weekday() + 1) % 7][local.hour] += 1
        return heatmap

    def search(self, query: str, start_date: Optional[Union[date, datetime]] = None,
               end_date: Optional[Union[date, datetime]] = None,
               min_confidence: Optional[float] = None) -> List[BirdSighting]:
        """Case-insensitive substring search over common and scientific names."""
        q = query.strip().lower()
        start = self._range_bound(start_date, dt_time.min)
        end = self._range_bound(end_date, dt_time.max)

        results = []
        for s in self._snapshot():
            if q not in s.species.lower() and q not in s.scientific_name.lower():
                continue
            if start is not None or end is not None:
                local = s.local_time
                if start is not None and local < start:
                    continue
                if end is not None and local > end:
                    continue
            if min_confidence is not None and s.confidence < min_confidence:
                continue
            results.append(s)
        return results

    @staticmethod
    def _range_bound(value: Optional[Union[date, datetime]], day_time: dt_time) -> Optional[datetime]:
        if value is None:
            return None
        if not isinstance(value, datetime):
            value = datetime.combine(value, day_time)
        return to_local(value)

    def get_summary(self) -> Dict[str, Any]:
        """Dashboard summary: today's activity and recent sightings."""
        today = self.get_daily_stats()
        return {
            'today_sightings': today.total_sightings,
            'today_species': today.unique_species,
            'total_species': self.get_species_count(),
            'recent_sightings': self.get_recent_sightings(5),
            'top_today': today.species[0].species if today.species else None,
        }

    def export_data(self) -> Dict[str, Any]:
        """Active sightings, life list and headline stats in the persisted JSON shape."""
        with self._lock:
            sightings = [s.to_dict() for s in self.state.sightings]
            life_list = list(self.state.life_list)
        return {
            'sightings': sightings,
            'lifeList': life_list,
            'stats': {
                'totalSightings': len(sightings),
                'speciesCount': len(life_list),
                'topSpecies': [{'species': c.species, 'count': c.count} for c in self.get_top_species(10)],
            },
        }

    def list_archives(self) -> List[str]:
        """Archived months as 'YYYY-MM', oldest first."""
        months = []
        for path in self.data_dir.glob("archive-*.json"):
            match = _ARCHIVE_PATTERN.match(path.name)
            if match:
                months.append(f"{match.group(1)}-{match.group(2)}")
        return sorted(months)

    def get_archived_sightings(self, year: int, month: int) -> List[BirdSighting]:
        path = self.archive_path(year, month)
        try:
            return self._read_archive(path)
        except (OSError, ValueError) as e:
            logger.error(f"Could not read archive {path.name}: {e}")
            return []
