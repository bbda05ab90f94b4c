#!/usr/bin/env python3
"""
BirdCam bridge.
Combines the motion engine, acoustic species detection, the sighting tracker,
weather enrichment and Telegram notifications.
"""

import asyncio
import logging
import signal
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from config import Config
from exceptions import ConfigurationError, ExternalToolError
from models import BirdDetection, MotionEnd, MotionEvent
from motion_detector import MotionDetector
from notification_service import NotificationService
from resource_manager import SystemMonitor
from sighting_tracker import SightingTracker
from species_detector import SpeciesDetector
from utils import SunChecker, redact_url
from weather_service import WeatherService

logger = logging.getLogger(__name__)

# A detection within this many seconds of a motion snapshot is linked to it
SNAPSHOT_LINK_WINDOW = 60.0


class BirdBridge:
    """
    Owns one instance of every component and wires them together.

    Detections become sightings; motion events are logged, optionally
    notified and, in motion-triggered mode, start a one-off analysis.
    """

    def __init__(self, config: Config):
        self.config = config

        self.system_monitor = SystemMonitor(config)
        self.storage_manager = self.system_monitor.storage_manager
        self.storage_manager.ensure_directories()

        self.notifier = NotificationService(config.notifications)
        self.weather = WeatherService(config.weather, config.location)
        self.sun_checker = SunChecker(config.location) if config.location.is_set else None

        self.tracker = SightingTracker(
            config.storage.tracker_dir,
            weather_service=self.weather,
            notifier=self.notifier,
        )
        self.motion_detector = MotionDetector(
            config.motion,
            ffmpeg_path=config.camera.ffmpeg_path,
            snapshot_dir=config.storage.snapshot_dir,
        )
        self.species_detector = SpeciesDetector(
            config.detector,
            work_dir=config.storage.temp_dir,
            location=config.location,
            ffmpeg_path=config.camera.ffmpeg_path,
            sun_checker=self.sun_checker,
            should_skip=self.system_monitor.should_skip_processing,
        )

        # Single worker keeps triggered analyses and motion alerts off the frame reader thread
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="birdcam")

        self._subscriptions = []
        self._triggered_mode = False
        self._analysis_pending = threading.Event()
        self._last_snapshot: Optional[str] = None
        self._last_snapshot_time = 0.0
        self._camera_offline_notified = False
        self._storage_alerted = False
        self._started = False

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_detection(self, detection: BirdDetection) -> None:
        snapshot_id = None
        if self._last_snapshot and time.monotonic() - self._last_snapshot_time <= SNAPSHOT_LINK_WINDOW:
            snapshot_id = Path(self._last_snapshot).name
        self.tracker.record_detection(detection, snapshot_id=snapshot_id)

    def _on_motion(self, event: MotionEvent) -> None:
        self._camera_offline_notified = False
        if event.snapshot_path:
            self._last_snapshot = event.snapshot_path
            self._last_snapshot_time = time.monotonic()

        if self.config.notifications.on_motion:
            self.executor.submit(self.notifier.notify_motion, event.timestamp)

        if self._triggered_mode and not self._analysis_pending.is_set():
            self._analysis_pending.set()
            self.executor.submit(self._run_triggered_analysis)

    def _on_motion_end(self, end: MotionEnd) -> None:
        logger.debug(f"Motion episode lasted {end.duration_ms}ms")

    def _on_capture_exit(self, returncode: int) -> None:
        if not self._camera_offline_notified:
            self._camera_offline_notified = True
            self.executor.submit(self.notifier.notify_camera_offline)

    def _run_triggered_analysis(self) -> None:
        try:
            detections = self.species_detector.analyze_now()
            logger.info(f"Motion-triggered analysis found {len(detections)} birds")
        except (ExternalToolError, ConfigurationError) as e:
            logger.warning(f"Motion-triggered analysis failed: {e}")
        finally:
            self._analysis_pending.clear()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start all enabled engines. Raises ConfigurationError if the bridge cannot run."""
        errors = self.config.validate_runtime()
        if errors:
            raise ConfigurationError("; ".join(errors))
        if self._started:
            return
        self._started = True

        source = self.config.camera.rtsp_url
        self._subscriptions.append(self.species_detector.on_detection(self._on_detection))

        if self.config.motion.enabled:
            self._subscriptions.append(self.motion_detector.subscribe_motion(self._on_motion))
            self._subscriptions.append(self.motion_detector.subscribe_motion_end(self._on_motion_end))
            self._subscriptions.append(self.motion_detector.subscribe_capture_exit(self._on_capture_exit))
            self.motion_detector.start(source)

        if self.config.detector.enabled:
            self.species_detector.set_source(source)
            if self.config.detector.trigger_on_motion and self.config.motion.enabled:
                if self.species_detector.is_available():
                    self._triggered_mode = True
                    logger.info("Bird detection runs on motion events only")
                else:
                    logger.warning("BirdNET not found, motion-triggered detection disabled")
            else:
                self.species_detector.start()

        logger.info(f"BirdCam bridge started on {redact_url(source)}")

    def stop(self) -> None:
        """Stop engines and release resources. Safe to call more than once."""
        if not self._started:
            return
        self._started = False
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        self._triggered_mode = False

        self.motion_detector.stop()
        self.species_detector.stop()
        self.executor.shutdown(wait=False, cancel_futures=True)
        logger.info("BirdCam bridge stopped")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def run_maintenance(self) -> None:
        """Status logging, temp cleanup and storage alerts. Runs once per status interval."""
        loop = asyncio.get_running_loop()
        status = await loop.run_in_executor(None, self.system_monitor.log_system_status)
        await loop.run_in_executor(None, self.storage_manager.cleanup_temp_files)
        await loop.run_in_executor(None, self.storage_manager.cleanup_old_snapshots)

        storage = status.get('storage')
        if storage and storage['percent'] >= self.config.performance.storage_low_percent:
            if not self._storage_alerted:
                self._storage_alerted = await self.notifier.notify_storage_low(storage['percent'])
        else:
            self._storage_alerted = False

        summary = self.tracker.get_summary()
        logger.info(f"Today: {summary['today_sightings']} sightings, {summary['today_species']} species "
                    f"(life list: {summary['total_species']})")
        stats = self.species_detector.get_statistics()
        logger.info(f"Detector: {stats['cycles_run']} cycles, {stats['cycles_failed']} failed, "
                    f"{stats['detections_emitted']} detections")

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM."""
        logger.info("BirdCam bridge configuration:")
        for section, values in self.config.get_summary().items():
            logger.info(f"- {section}: {values}")
        if self.sun_checker:
            sun_info = self.sun_checker.get_sun_info()
            logger.info(f"Sunrise: {sun_info['sunrise']}, Sunset: {sun_info['sunset']}")

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                pass

        self.start()
        try:
            while not stop_event.is_set():
                try:
                    await self.run_maintenance()
                except Exception as e:
                    logger.error(f"Error in maintenance loop: {e}", exc_info=True)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.config.performance.status_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("Cleaning up resources...")
            self.stop()


def main() -> int:
    try:
        config = Config()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"Configuration error: {e}")
        return 1

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger('httpx').setLevel(logging.WARNING)

    errors = config.validate_runtime()
    if errors:
        for error in errors:
            logger.error(error)
        return 1

    bridge = BirdBridge(config)
    asyncio.run(bridge.run())
    return 0


if __name__ == "__main__":
    sys.exit(main())
