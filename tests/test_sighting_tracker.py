"""
Unit tests for the sighting tracker.
"""

import json
import threading
import pytest
from datetime import date, datetime, timedelta
from unittest.mock import MagicMock, patch

import sys
sys.path.append('src')

from models import BirdDetection, WeatherInfo
from sighting_tracker import STATE_FILENAME, SightingTracker


def sighting_dict(index, species="American Robin", when=None):
    when = when or datetime(2026, 1, 5, 8, 0) + timedelta(minutes=index)
    return {
        "id": f"sight_{index}",
        "species": species,
        "scientificName": "Turdus migratorius",
        "confidence": 0.9,
        "timestamp": when.astimezone().isoformat(timespec="milliseconds"),
    }


class TestRecording:
    """Test recording sightings and the life list."""

    def setup_method(self):
        self.notifier = MagicMock()
        self.notifier.is_rare_species.return_value = False

    def test_first_sighting_is_new_species(self, tmp_path):
        tracker = SightingTracker(tmp_path, notifier=self.notifier)
        new_species = []
        tracker.subscribe_new_species(new_species.append)

        sighting = tracker.record_sighting("Blue Jay", "Cyanocitta cristata", 0.8)

        assert sighting.id.startswith("sight_")
        assert tracker.get_life_list() == ["Blue Jay"]
        assert new_species == [sighting]
        self.notifier.notify_bird_detected.assert_called_once_with("Blue Jay", 0.8, True, False)

    def test_repeat_sighting_keeps_life_list(self, tmp_path):
        tracker = SightingTracker(tmp_path, notifier=self.notifier)
        new_species = []
        sightings = []
        tracker.subscribe_new_species(new_species.append)
        tracker.subscribe_sighting(sightings.append)

        tracker.record_sighting("Blue Jay", "Cyanocitta cristata", 0.8)
        tracker.record_sighting("Blue Jay", "Cyanocitta cristata", 0.6)

        assert tracker.get_species_count() == 1
        assert len(new_species) == 1
        assert len(sightings) == 2
        assert self.notifier.notify_bird_detected.call_args[0][2] is False

    def test_life_list_sorted(self, tmp_path):
        tracker = SightingTracker(tmp_path)
        for species in ["Northern Cardinal", "American Robin", "Blue Jay"]:
            tracker.record_sighting(species, "", 0.9)

        assert tracker.get_life_list() == ["American Robin", "Blue Jay", "Northern Cardinal"]

    def test_invalid_input_rejected(self, tmp_path):
        tracker = SightingTracker(tmp_path)
        with pytest.raises(ValueError, match="Species name must not be empty"):
            tracker.record_sighting("  ", "", 0.9)
        with pytest.raises(ValueError, match="Confidence must be between 0 and 1"):
            tracker.record_sighting("Blue Jay", "", 1.5)
        assert tracker.get_recent_sightings() == []

    def test_weather_attached(self, tmp_path):
        weather_service = MagicMock()
        weather_service.get_current_weather.return_value.to_weather_info.return_value = \
            WeatherInfo(temperature=12.5, conditions="Clear sky", wind_speed=3.2)
        tracker = SightingTracker(tmp_path, weather_service=weather_service)

        sighting = tracker.record_sighting("Blue Jay", "", 0.8)

        assert sighting.weather.conditions == "Clear sky"
        assert sighting.to_dict()["weather"] == {"temperature": 12.5, "conditions": "Clear sky", "windSpeed": 3.2}

    def test_weather_failure_does_not_block_recording(self, tmp_path):
        weather_service = MagicMock()
        weather_service.get_current_weather.side_effect = RuntimeError("offline")
        tracker = SightingTracker(tmp_path, weather_service=weather_service)

        sighting = tracker.record_sighting("Blue Jay", "", 0.8)

        assert sighting.weather is None
        assert tracker.get_species_count() == 1

    def test_notifier_failure_does_not_block_recording(self, tmp_path):
        self.notifier.notify_bird_detected.side_effect = RuntimeError("telegram down")
        tracker = SightingTracker(tmp_path, notifier=self.notifier)

        tracker.record_sighting("Blue Jay", "", 0.8)

        assert len(tracker.get_recent_sightings()) == 1

    def test_record_detection(self, tmp_path):
        tracker = SightingTracker(tmp_path)
        detection = BirdDetection(
            species="American Robin", scientific_name="Turdus migratorius", confidence=0.92,
            start_time=0.0, end_time=3.0, timestamp=datetime.now(),
        )

        sighting = tracker.record_detection(detection, snapshot_id="motion_1.jpg")

        assert sighting.scientific_name == "Turdus migratorius"
        assert sighting.snapshot_id == "motion_1.jpg"


class TestPersistence:
    """Test state file loading, saving and archival."""

    def test_state_survives_restart(self, tmp_path):
        tracker = SightingTracker(tmp_path)
        tracker.record_sighting("Blue Jay", "Cyanocitta cristata", 0.8, clip_id="clip-1")

        raw = json.loads((tmp_path / STATE_FILENAME).read_text())
        assert raw["lifeList"] == ["Blue Jay"]
        assert raw["sightings"][0]["scientificName"] == "Cyanocitta cristata"
        assert raw["sightings"][0]["clipId"] == "clip-1"
        assert "lastUpdated" in raw

        reloaded = SightingTracker(tmp_path)
        assert reloaded.get_life_list() == ["Blue Jay"]
        assert reloaded.get_recent_sightings()[0].clip_id == "clip-1"

    def test_corrupt_state_starts_empty(self, tmp_path):
        (tmp_path / STATE_FILENAME).write_text("{not json")

        tracker = SightingTracker(tmp_path)
        assert tracker.get_recent_sightings() == []

        tracker.record_sighting("Blue Jay", "", 0.8)
        assert json.loads((tmp_path / STATE_FILENAME).read_text())["lifeList"] == ["Blue Jay"]

    def test_malformed_entries_skipped_and_life_list_repaired(self, tmp_path):
        state = {
            "sightings": [sighting_dict(1, "Blue Jay"), {"id": "broken"}, sighting_dict(2, "Wren", when=None)],
            "lifeList": ["Blue Jay"],
            "lastUpdated": "2026-01-05T09:00:00",
        }
        state["sightings"][2]["timestamp"] = "not a date"
        (tmp_path / STATE_FILENAME).write_text(json.dumps(state))

        tracker = SightingTracker(tmp_path)

        assert len(tracker.get_recent_sightings()) == 1
        assert tracker.get_life_list() == ["Blue Jay"]

    def test_archival_moves_oldest_batch(self, tmp_path):
        tracker = SightingTracker(tmp_path, max_sightings=5, sightings_per_file=2)
        start = datetime(2026, 1, 10, 9, 0)
        for i in range(6):
            tracker.record_sighting("Blue Jay" if i < 2 else "Wren", "", 0.9,
                                    timestamp=start + timedelta(minutes=i))

        assert len(tracker.get_recent_sightings(100)) == 4
        assert tracker.list_archives() == ["2026-01"]
        archived = tracker.get_archived_sightings(2026, 1)
        assert [s.species for s in archived] == ["Blue Jay", "Blue Jay"]
        raw = json.loads(tracker.archive_path(2026, 1).read_text())
        assert len(raw["sightings"]) == 2

        top = tracker.get_top_species()
        assert (top[0].species, top[0].count) == ("Wren", 4)
        assert (top[1].species, top[1].count) == ("Blue Jay", 2)
        assert tracker.get_life_list() == ["Blue Jay", "Wren"]

    def test_archival_at_default_limits(self, tmp_path):
        state = {
            "sightings": [sighting_dict(i) for i in range(10000)],
            "lifeList": ["American Robin"],
        }
        (tmp_path / STATE_FILENAME).write_text(json.dumps(state))
        tracker = SightingTracker(tmp_path)

        tracker.record_sighting("American Robin", "Turdus migratorius", 0.9)

        assert len(tracker.get_recent_sightings(20000)) == 9001
        assert len(tracker.get_archived_sightings(2026, 1)) == 1000
        assert tracker.get_recent_sightings(20000)[-1].id == "sight_1000"

    def test_failed_archival_keeps_records_active(self, tmp_path):
        tracker = SightingTracker(tmp_path, max_sightings=2, sightings_per_file=1)
        tracker.archive_path(2026, 1).mkdir()

        for i in range(3):
            tracker.record_sighting("Wren", "", 0.9, timestamp=datetime(2026, 1, 10, 9, i))

        assert len(tracker.get_recent_sightings()) == 3

    def test_corrupt_archive_moved_aside(self, tmp_path):
        corrupt = tmp_path / "archive-2026-05.json"
        corrupt.write_text("{not json")
        tracker = SightingTracker(tmp_path, max_sightings=3, sightings_per_file=2)

        for i in range(8):
            tracker.record_sighting("Wren", "", 0.9, timestamp=datetime(2026, 5, 2, 9, i))

        assert len(tracker.get_recent_sightings()) <= 3
        assert len(tracker.get_archived_sightings(2026, 5)) == 6
        moved = list(tmp_path.glob("archive-2026-05.json.corrupt-*"))
        assert len(moved) == 1
        assert moved[0].read_text() == "{not json"
        assert tracker.list_archives() == ["2026-05"]

    def test_failed_save_keeps_previous_file(self, tmp_path):
        tracker = SightingTracker(tmp_path)
        tracker.record_sighting("Blue Jay", "", 0.8)
        before = (tmp_path / STATE_FILENAME).read_text()

        with patch('sighting_tracker.os.replace', side_effect=OSError("disk full")):
            sighting = tracker.record_sighting("Wren", "", 0.9)

        assert sighting.species == "Wren"
        assert (tmp_path / STATE_FILENAME).read_text() == before
        assert [s.species for s in tracker.state.sightings] == ["Blue Jay", "Wren"]
        assert tracker.get_life_list() == ["Blue Jay", "Wren"]
        assert list(tmp_path.glob("*.tmp")) == []

    def test_concurrent_records_not_lost(self, tmp_path):
        tracker = SightingTracker(tmp_path)
        threads_count, per_thread = 8, 25

        def worker(n):
            for i in range(per_thread):
                tracker.record_sighting(f"Species {n}", "", 0.9)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(tracker.state.sightings) == threads_count * per_thread
        assert tracker.get_species_count() == threads_count

        reloaded = SightingTracker(tmp_path)
        assert len(reloaded.state.sightings) == threads_count * per_thread
        assert reloaded.get_species_count() == threads_count

    def test_legacy_list_archive(self, tmp_path):
        path = tmp_path / "archive-2025-12.json"
        path.write_text(json.dumps([sighting_dict(1, "Snowy Owl", when=datetime(2025, 12, 24, 7, 0))]))

        tracker = SightingTracker(tmp_path)

        assert tracker.list_archives() == ["2025-12"]
        assert [s.species for s in tracker.get_archived_sightings(2025, 12)] == ["Snowy Owl"]
        assert tracker.get_archived_sightings(2024, 1) == []
        assert tracker.get_top_species()[0].species == "Snowy Owl"


class TestQueries:
    """Test statistics and search."""

    def setup_method(self):
        self.day = datetime(2026, 3, 15, 8, 30)  # a Sunday

    def make_tracker(self, tmp_path):
        tracker = SightingTracker(tmp_path)
        tracker.record_sighting("Blue Jay", "Cyanocitta cristata", 0.8, timestamp=self.day)
        tracker.record_sighting("Blue Jay", "Cyanocitta cristata", 0.6, timestamp=self.day + timedelta(hours=2))
        tracker.record_sighting("Blue Jay", "Cyanocitta cristata", 0.9,
                                timestamp=self.day + timedelta(days=1, hours=-1))
        tracker.record_sighting("American Robin", "Turdus migratorius", 0.95, timestamp=self.day)
        return tracker

    def test_species_stats(self, tmp_path):
        tracker = self.make_tracker(tmp_path)

        stats = tracker.get_species_stats("blue jay")

        assert stats.total_sightings == 3
        assert stats.average_confidence == pytest.approx(0.7667, abs=1e-4)
        assert stats.peak_hour == 7
        assert stats.monthly_counts[2] == 3
        assert sum(stats.monthly_counts) == 3
        assert tracker.get_species_stats("Dodo") is None

    def test_daily_stats(self, tmp_path):
        tracker = self.make_tracker(tmp_path)

        stats = tracker.get_daily_stats(date(2026, 3, 15))

        assert stats.date == "2026-03-15"
        assert stats.total_sightings == 3
        assert stats.unique_species == 2
        assert (stats.species[0].species, stats.species[0].count) == ("Blue Jay", 2)

    def test_empty_day(self, tmp_path):
        tracker = self.make_tracker(tmp_path)

        stats = tracker.get_daily_stats(date(2026, 3, 20))

        assert stats.total_sightings == 0
        assert stats.unique_species == 0
        assert stats.species == []

    def test_recent_sightings_newest_first(self, tmp_path):
        tracker = self.make_tracker(tmp_path)

        recent = tracker.get_recent_sightings(2)

        assert [s.species for s in recent] == ["American Robin", "Blue Jay"]
        assert tracker.get_recent_sightings(0) == []

    def test_activity_heatmap(self, tmp_path):
        tracker = self.make_tracker(tmp_path)

        heatmap = tracker.get_activity_heatmap()

        assert len(heatmap) == 7
        assert all(len(row) == 24 for row in heatmap)
        assert heatmap[0][8] == 2   # Sunday 08:00
        assert heatmap[0][10] == 1
        assert heatmap[1][7] == 1   # Monday 07:00
        assert sum(map(sum, heatmap)) == 4

    def test_search(self, tmp_path):
        tracker = self.make_tracker(tmp_path)

        assert len(tracker.search("jay")) == 3
        assert len(tracker.search("TURDUS")) == 1
        assert len(tracker.search("jay", start_date=date(2026, 3, 15), end_date=date(2026, 3, 15))) == 2
        assert len(tracker.search("jay", min_confidence=0.75)) == 2
        assert tracker.search("owl") == []

    def test_export_data(self, tmp_path):
        tracker = self.make_tracker(tmp_path)

        export = tracker.export_data()

        assert len(export["sightings"]) == 4
        assert export["lifeList"] == ["Blue Jay", "American Robin"]
        assert export["stats"]["totalSightings"] == 4
        assert export["stats"]["speciesCount"] == 2
        assert export["stats"]["topSpecies"][0] == {"species": "Blue Jay", "count": 3}

    def test_summary(self, tmp_path):
        tracker = SightingTracker(tmp_path)
        tracker.record_sighting("Wren", "Troglodytes troglodytes", 0.9)
        tracker.record_sighting("Wren", "Troglodytes troglodytes", 0.8)
        tracker.record_sighting("Blue Jay", "Cyanocitta cristata", 0.85)

        summary = tracker.get_summary()

        assert summary["today_sightings"] == 3
        assert summary["today_species"] == 2
        assert summary["total_species"] == 2
        assert summary["top_today"] == "Wren"
        assert summary["recent_sightings"][0].species == "Blue Jay"
