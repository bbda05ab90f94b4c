"""
Species detection from the camera's audio track using BirdNET.

Every ``analysis_interval`` seconds a short audio sample is captured,
classified, filtered by confidence and handed to the detection subscribers.
Cycles never overlap, so the classifier is never run concurrently with
itself.
"""

import logging
import shutil
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from config import DetectorConfig, LocationConfig
from events import EventChannel, Subscription
from exceptions import ConfigurationError, ExternalToolError
from external_tools import AcousticClassifier, AudioCapture, BirdNETClassifier, FFmpegAudioCapture
from models import BirdDetection, ClassificationResult
from utils import PeriodicTask, SunChecker, redact_url

logger = logging.getLogger(__name__)


class SpeciesDetector:
    """
    Periodic acoustic species detector.

    The capture and classifier backends default to ffmpeg and BirdNET and can
    be replaced with anything implementing the AudioCapture and
    AcousticClassifier protocols.
    """

    def __init__(self, options: DetectorConfig, work_dir: Path,
                 location: Optional[LocationConfig] = None,
                 capture: Optional[AudioCapture] = None,
                 classifier: Optional[AcousticClassifier] = None,
                 ffmpeg_path: str = "ffmpeg",
                 sun_checker: Optional[SunChecker] = None,
                 should_skip: Optional[Callable[[], bool]] = None):
        self.work_dir = Path(work_dir)
        self.location = location or LocationConfig()
        self.sun_checker = sun_checker
        self.should_skip = should_skip
        self._capture = capture or FFmpegAudioCapture(ffmpeg_path, sample_rate=options.sample_rate)
        self._classifier = classifier or BirdNETClassifier(python_path=options.python_path)

        self._source: Optional[str] = None
        self._task: Optional[PeriodicTask] = None
        self._cycle_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._detection_channel: EventChannel[BirdDetection] = EventChannel("detection")

        self.last_invocation: Optional[str] = None
        self._stats = {
            'cycles_run': 0,
            'cycles_failed': 0,
            'cycles_skipped': 0,
            'detections_emitted': 0,
        }

        self.init(options)

    @property
    def audio_dir(self) -> Path:
        return self.work_dir / "audio"

    @property
    def results_dir(self) -> Path:
        return self.work_dir / "results"

    def init(self, options: DetectorConfig) -> None:
        """Apply detector options and make sure the working directories exist."""
        self.options = options
        if isinstance(self._classifier, BirdNETClassifier):
            self._classifier.python_path = options.python_path
            self._classifier.min_confidence = options.min_confidence
            self._classifier.locale = options.locale
            self._classifier.timeout = options.effective_classifier_timeout
            self._classifier.latitude = self.location.latitude
            self._classifier.longitude = self.location.longitude
        if isinstance(self._capture, FFmpegAudioCapture):
            self._capture.sample_rate = options.sample_rate

        self.audio_dir.mkdir(parents=True, exist_ok=True)
        self.results_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Species detector initialized: min_confidence={options.min_confidence}, "
                    f"interval={options.analysis_interval}s, sample={options.sample_duration}s")

    def set_source(self, source: str) -> None:
        self._source = source

    def on_detection(self, callback: Callable[[BirdDetection], None]) -> Subscription:
        return self._detection_channel.subscribe(callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_detecting(self) -> bool:
        return self._task is not None and self._task.is_running()

    def is_available(self) -> bool:
        """Whether the classifier backend is installed."""
        return self._classifier.is_available()

    def start(self) -> bool:
        """
        Start periodic detection. Returns False when no classifier is installed.

        Raises:
            ConfigurationError: if no source has been set
        """
        if not self._source:
            raise ConfigurationError("No audio source set, call set_source() first")

        with self._lifecycle_lock:
            if self.is_detecting():
                logger.debug("Species detector already running")
                return True

            if not self._classifier.is_available():
                logger.warning("BirdNET not found, bird detection disabled "
                               "(install with: pip install birdnetlib)")
                return False

            self._task = PeriodicTask(self._loop_cycle, self.options.analysis_interval,
                                      name="SpeciesDetector")
            self._task.start()
            logger.info(f"Bird detection started on {redact_url(self._source)}")
            return True

    def stop(self) -> None:
        """Cancel the loop and terminate any in-flight capture or classification."""
        with self._lifecycle_lock:
            task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        self._capture.terminate()
        self._classifier.terminate()
        task.join(timeout=5.0)
        logger.info("Bird detection stopped")

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def analyze_now(self) -> List[BirdDetection]:
        """
        Run one cycle synchronously and return the accepted detections.

        Raises:
            ConfigurationError: if no source has been set
            ExternalToolError: if capture or classification fails
        """
        if not self._source:
            raise ConfigurationError("No audio source set, call set_source() first")
        return self._run_cycle()

    def _loop_cycle(self) -> None:
        task = self._task
        if task is None or task.cancelled:
            return
        if self.options.daylight_only and self.sun_checker and not self.sun_checker.is_daytime():
            self._stats['cycles_skipped'] += 1
            logger.debug("Skipping detection cycle outside daylight hours")
            return
        if self.should_skip is not None and self.should_skip():
            self._stats['cycles_skipped'] += 1
            return
        try:
            self._run_cycle(task)
        except ExternalToolError as e:
            if task.cancelled:
                return
            logger.warning(f"Detection cycle failed: {e}")

    def _run_cycle(self, task: Optional[PeriodicTask] = None) -> List[BirdDetection]:
        with self._cycle_lock:
            self._stats['cycles_run'] += 1
            stamp = int(time.time() * 1000)
            audio_file = self.audio_dir / f"sample_{stamp}.wav"
            cycle_dir = self.results_dir / f"cycle_{stamp}"
            try:
                self._capture.capture(self._source, self.options.sample_duration, audio_file)
                if task is not None and task.cancelled:
                    logger.debug("Detection stopped after capture, skipping classification")
                    return []
                result = self._classifier.classify(audio_file, cycle_dir)
            except Exception:
                self._stats['cycles_failed'] += 1
                raise
            finally:
                audio_file.unlink(missing_ok=True)
                shutil.rmtree(cycle_dir, ignore_errors=True)

            if result.invocation != self.last_invocation:
                logger.info(f"Classifier invocation in use: {result.invocation}")
            self.last_invocation = result.invocation
            detections = self._filter(result)

        for detection in detections:
            logger.info(f"Detected {detection.species} ({detection.confidence * 100:.1f}%)")
            self._detection_channel.publish(detection)
        self._stats['detections_emitted'] += len(detections)
        return detections

    def _filter(self, result: ClassificationResult) -> List[BirdDetection]:
        now = datetime.now()
        return [
            BirdDetection(
                species=row.common_name,
                scientific_name=row.scientific_name,
                confidence=row.confidence,
                start_time=row.start_time,
                end_time=row.end_time,
                timestamp=now,
            )
            for row in result.rows
            if row.confidence >= self.options.min_confidence
        ]

    def get_statistics(self) -> dict:
        """Counters for status logging."""
        return {
            **self._stats,
            'running': self.is_detecting(),
            'last_invocation': self.last_invocation,
            'min_confidence': self.options.min_confidence,
            'analysis_interval': self.options.analysis_interval,
        }
