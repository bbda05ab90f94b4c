"""
Motion engine: scores a live grayscale frame stream and turns the noisy
per-frame score into discrete motion episodes.

An episode starts when the score crosses the threshold, is confirmed once it
has stayed above threshold for ``min_duration_ms`` (and ``cooldown_ms`` has
passed since the previous confirmation), and ends when the score drops below
threshold again. Each confirmed episode produces exactly one MotionEvent and
one MotionEnd.
"""

import logging
import subprocess
import threading
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import cv2
import numpy as np

from config import MotionConfig
from events import EventChannel, Subscription
from exceptions import MotionDetectionError
from models import FrameScore, MotionEnd, MotionEvent, Region
from utils import redact_url

logger = logging.getLogger(__name__)


class MotionPhase(Enum):
    IDLE = "idle"
    RISING = "rising"
    ACTIVE = "active"


class FrameScorer:
    """Frame differencing scorer. Keeps the previous frame as its only state."""

    def __init__(self, config: MotionConfig):
        self.config = config
        self._previous: Optional[np.ndarray] = None

    def reset(self) -> None:
        self._previous = None

    @property
    def noise_floor(self) -> float:
        """Per-pixel intensity change ignored as noise. Higher sensitivity, lower floor."""
        return 255.0 * (0.5 - 0.45 * self.config.sensitivity / 100.0)

    def _changed_fraction(self, mask: np.ndarray, region: Optional[Region]) -> float:
        if region is None:
            area = mask
        else:
            height, width = mask.shape
            x0, y0, x1, y1 = region.to_pixels(width, height)
            area = mask[y0:y1, x0:x1]
        if area.size == 0:
            return 0.0
        return float(np.count_nonzero(area)) / area.size

    def score(self, frame: np.ndarray) -> FrameScore:
        """Score ``frame`` against the previous one. The first frame scores 0."""
        if frame is None:
            raise MotionDetectionError("Cannot score an empty frame")
        try:
            if len(frame.shape) == 3:
                gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
            else:
                gray = frame.astype(np.uint8)

            previous = self._previous
            self._previous = gray
            if previous is None or previous.shape != gray.shape:
                return FrameScore(score=0.0)

            diff = cv2.absdiff(gray, previous)
            mask = diff > self.noise_floor

            regions: List[Region] = self.config.regions
            if not regions:
                return FrameScore(score=self._changed_fraction(mask, None))

            best = FrameScore(score=-1.0)
            for region in regions:
                region_score = self._changed_fraction(mask, region)
                if region_score > best.score:
                    best = FrameScore(score=region_score, region=region)
            return best
        except cv2.error as e:
            raise MotionDetectionError(f"Error scoring frame: {e}") from e


class MotionDetector:
    """
    Motion engine with hysteresis and cooldown.

    Frames arrive from an ffmpeg subprocess started by ``start()``; tests and
    other callers may also push frames with ``process_frame()`` or raw scores
    with ``handle_score()``.
    """

    def __init__(self, config: MotionConfig, ffmpeg_path: str = "ffmpeg",
                 snapshot_dir: Optional[Path] = None):
        self._config = config
        self.ffmpeg_path = ffmpeg_path
        self.snapshot_dir = Path(snapshot_dir) if snapshot_dir else None

        self._scorer = FrameScorer(config)
        self._config_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._phase = MotionPhase.IDLE
        self._episode_start: Optional[float] = None
        self._last_emit: Optional[float] = None

        self._motion_channel: EventChannel[MotionEvent] = EventChannel("motion")
        self._motion_end_channel: EventChannel[MotionEnd] = EventChannel("motion_end")
        self._capture_exit_channel: EventChannel[int] = EventChannel("capture_exit")

        self._lifecycle_lock = threading.Lock()
        self._source: Optional[str] = None
        self._process: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._restart_timer: Optional[threading.Timer] = None
        self._enabled = False
        self._frames_scored = 0

    # ------------------------------------------------------------------
    # Configuration and subscriptions
    # ------------------------------------------------------------------

    def configure(self, config: MotionConfig) -> None:
        """Swap the configuration; takes effect from the next scored sample."""
        with self._config_lock:
            self._config = config
            self._scorer.config = config
        logger.info(f"Motion config updated: sensitivity={config.sensitivity}, "
                    f"threshold={config.threshold}%, cooldown={config.cooldown_ms}ms, "
                    f"min_duration={config.min_duration_ms}ms, regions={len(config.regions)}")

    def get_config(self) -> MotionConfig:
        with self._config_lock:
            return self._config

    @property
    def phase(self) -> MotionPhase:
        return self._phase

    def subscribe_motion(self, callback: Callable[[MotionEvent], None]) -> Subscription:
        return self._motion_channel.subscribe(callback)

    def subscribe_motion_end(self, callback: Callable[[MotionEnd], None]) -> Subscription:
        return self._motion_end_channel.subscribe(callback)

    def subscribe_capture_exit(self, callback: Callable[[int], None]) -> Subscription:
        """Called with the exit code when the capture process dies while enabled."""
        return self._capture_exit_channel.subscribe(callback)

    # ------------------------------------------------------------------
    # Scoring and state machine
    # ------------------------------------------------------------------

    def score_frame(self, frame: np.ndarray) -> FrameScore:
        with self._config_lock:
            return self._scorer.score(frame)

    def process_frame(self, frame: np.ndarray, now: Optional[float] = None) -> Optional[MotionEvent]:
        """Score one frame and feed the result through the state machine."""
        result = self.score_frame(frame)
        self._frames_scored += 1
        if self.get_config().debug:
            logger.debug(f"Frame {self._frames_scored}: score={result.score:.4f} phase={self._phase.value}")
        return self.handle_score(result.score, now=now, region=result.region, frame=frame)

    def handle_score(self, score: float, now: Optional[float] = None,
                     region: Optional[Region] = None,
                     frame: Optional[np.ndarray] = None) -> Optional[MotionEvent]:
        """
        Advance the state machine with one score (0-1).

        ``now`` is a monotonic time in seconds and defaults to
        ``time.monotonic()``. Returns the MotionEvent if this sample
        confirmed an episode.
        """
        if now is None:
            now = time.monotonic()
        config = self.get_config()
        triggered = score >= config.threshold / 100.0

        event = None
        end = None
        with self._state_lock:
            if triggered:
                if self._phase == MotionPhase.IDLE:
                    self._phase = MotionPhase.RISING
                    self._episode_start = now

                if self._phase == MotionPhase.RISING:
                    elapsed_ms = (now - self._episode_start) * 1000
                    cooled_down = (self._last_emit is None
                                   or (now - self._last_emit) * 1000 >= config.cooldown_ms)
                    if elapsed_ms >= config.min_duration_ms and cooled_down:
                        self._phase = MotionPhase.ACTIVE
                        self._last_emit = now
                        event = MotionEvent(
                            timestamp=datetime.now(),
                            confidence=min(score * 100, 100.0),
                            region=region,
                            snapshot_path=self._save_snapshot(frame, config),
                        )
            else:
                if self._phase == MotionPhase.ACTIVE:
                    end = MotionEnd(
                        timestamp=datetime.now(),
                        duration_ms=int(round((now - self._episode_start) * 1000)),
                    )
                elif self._phase == MotionPhase.RISING:
                    logger.debug("Motion episode dropped before confirmation")
                self._phase = MotionPhase.IDLE
                self._episode_start = None

        if event is not None:
            logger.info(f"Motion detected (confidence {event.confidence:.1f}%)")
            self._motion_channel.publish(event)
        if end is not None:
            logger.info(f"Motion ended after {end.duration_ms}ms")
            self._motion_end_channel.publish(end)
        return event

    def _save_snapshot(self, frame: Optional[np.ndarray], config: MotionConfig) -> Optional[str]:
        if frame is None or not config.save_snapshots or self.snapshot_dir is None:
            return None
        try:
            self.snapshot_dir.mkdir(parents=True, exist_ok=True)
            filename = f"motion_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}.jpg"
            path = self.snapshot_dir / filename
            if not cv2.imwrite(str(path), frame):
                logger.error(f"Could not write motion snapshot {path}")
                return None
            return str(path)
        except Exception as e:
            logger.error(f"Error saving motion snapshot: {e}")
            return None

    def _reset_state(self) -> None:
        with self._state_lock:
            self._phase = MotionPhase.IDLE
            self._episode_start = None
        with self._config_lock:
            self._scorer.reset()

    # ------------------------------------------------------------------
    # Capture lifecycle
    # ------------------------------------------------------------------

    def build_command(self, source: str) -> List[str]:
        config = self.get_config()
        cmd = [self.ffmpeg_path, "-hide_banner", "-loglevel", "error"]
        if source.startswith("rtsp://") or source.startswith("rtsps://"):
            cmd += ["-rtsp_transport", "tcp"]
        cmd += [
            "-i", source,
            "-an",
            "-vf", f"fps={config.frame_rate:g},scale={config.frame_width}:{config.frame_height},format=gray",
            "-f", "rawvideo",
            "-pix_fmt", "gray",
            "-",
        ]
        return cmd

    def is_running(self) -> bool:
        process = self._process
        return self._enabled and process is not None and process.poll() is None

    def start(self, source: str) -> bool:
        """Start scoring ``source``. Returns False if the capture could not be launched."""
        with self._lifecycle_lock:
            if self.is_running():
                logger.debug("Motion engine already running")
                return True
            self._source = source
            self._enabled = True
            return self._launch()

    def _launch(self) -> bool:
        cmd = self.build_command(self._source)
        self._reset_state()
        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error(f"Failed to start motion capture: {e}")
            self._process = None
            self._schedule_restart()
            return False

        logger.info(f"Motion engine started on {redact_url(self._source)}")
        self._reader = threading.Thread(
            target=self._read_frames, args=(self._process,), name="MotionReader", daemon=True
        )
        self._reader.start()
        return True

    def _read_frames(self, process: subprocess.Popen) -> None:
        config = self.get_config()
        width, height = config.frame_width, config.frame_height
        frame_size = width * height
        stream = process.stdout
        try:
            while True:
                data = stream.read(frame_size)
                if not data or len(data) < frame_size:
                    break
                frame = np.frombuffer(data, dtype=np.uint8).reshape((height, width))
                try:
                    self.process_frame(frame)
                except MotionDetectionError as e:
                    logger.warning(f"Skipping frame: {e}")
        except (OSError, ValueError) as e:
            logger.error(f"Motion capture read failed: {e}")

        returncode = process.wait()
        with self._lifecycle_lock:
            if process is not self._process or not self._enabled:
                return
            self._process = None
            logger.warning(f"Motion capture exited unexpectedly (code {returncode})")
            self._schedule_restart()
        self._capture_exit_channel.publish(returncode)

    def _schedule_restart(self) -> None:
        if not self._enabled:
            return
        delay = self.get_config().restart_delay
        logger.info(f"Restarting motion capture in {delay:.0f}s")
        self._restart_timer = threading.Timer(delay, self._restart)
        self._restart_timer.daemon = True
        self._restart_timer.start()

    def _restart(self) -> None:
        with self._lifecycle_lock:
            self._restart_timer = None
            if not self._enabled or self.is_running():
                return
            self._launch()

    def stop(self) -> None:
        """Stop scoring and release the capture process. Disables auto-restart."""
        with self._lifecycle_lock:
            was_enabled = self._enabled
            self._enabled = False
            if self._restart_timer is not None:
                self._restart_timer.cancel()
                self._restart_timer = None
            process, self._process = self._process, None
            reader, self._reader = self._reader, None

        if process is not None and process.poll() is None:
            process.terminate()
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=2.0)
        self._reset_state()
        if was_enabled:
            logger.info("Motion engine stopped")
