"""
Utility classes for the BirdCam bridge.

This module contains:
- PerformanceTimer: Timing utility for performance measurement
- PeriodicTask: Background thread running a function on a fixed cadence
- SunChecker: Daylight checking based on sunrise/sunset times
- redact_url: Strip credentials from stream URLs before logging
"""

import logging
import threading
import time
import zoneinfo
from datetime import datetime, date, timezone, time as dt_time
from typing import Callable, Optional

from astral import LocationInfo
from astral.sun import sun

from config import LocationConfig

logger = logging.getLogger(__name__)


def redact_url(url: str) -> str:
    """Replace user:password in a URL with asterisks."""
    if "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    if "@" not in rest:
        return url
    _creds, host = rest.split("@", 1)
    return f"{scheme}://***:***@{host}"


class PerformanceTimer:
    """Performance timing utility."""

    def __init__(self, operation_name="Operation"):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def start(self):
        """Start timing."""
        self.start_time = time.time()
        return self

    def stop(self):
        """Stop timing and return duration."""
        if self.start_time is None:
            return 0.0

        self.end_time = time.time()
        duration = self.end_time - self.start_time
        return duration

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = self.stop()
        if duration > 5.0:  # Log slow operations
            logger.info(f"{self.operation_name} took {duration:.2f}s")


class PeriodicTask:
    """
    Run ``func`` on a background thread, waiting ``interval`` seconds after
    each run completes. Runs never overlap.

    Cancellation is cooperative: ``stop()`` sets an event that interrupts the
    wait between runs. A run already in progress finishes on its own unless
    the callable itself checks ``cancelled``.
    """

    def __init__(self, func: Callable[[], None], interval: float, name: str = "PeriodicTask"):
        self._func = func
        self.interval = interval
        self.name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, run_immediately: bool = True) -> bool:
        """Start the worker thread. Returns False if it is already running."""
        with self._lock:
            if self.is_running():
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._loop, args=(run_immediately,), name=self.name, daemon=True
            )
            self._thread.start()
            logger.debug(f"{self.name} started (interval {self.interval}s)")
            return True

    def cancel(self) -> None:
        """Signal cancellation without waiting."""
        self._stop_event.set()

    def join(self, timeout: Optional[float] = 2.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"{self.name} did not stop within {timeout}s")

    def stop(self, timeout: Optional[float] = 2.0) -> None:
        """Signal cancellation and wait briefly for the thread to exit."""
        self.cancel()
        self.join(timeout)

    def _loop(self, run_immediately: bool) -> None:
        if not run_immediately and self._stop_event.wait(self.interval):
            return
        while not self._stop_event.is_set():
            try:
                self._func()
            except Exception as e:
                logger.error(f"{self.name} run failed: {e}", exc_info=True)
            if self._stop_event.wait(self.interval):
                break


class SunChecker:
    """Check if it's currently daytime based on sunrise/sunset times."""

    def __init__(self, location: LocationConfig):
        if not location.is_set:
            raise ValueError("SunChecker requires latitude and longitude")
        self.location_config = location
        self._local_tz = zoneinfo.ZoneInfo(location.timezone)
        self.location = LocationInfo(
            name="Location",
            region=location.timezone,
            timezone=location.timezone,
            latitude=location.latitude,
            longitude=location.longitude
        )
        self._last_check_date = None
        self._sunrise = None
        self._sunset = None
        logger.info(f"SunChecker initialized for location: "
                    f"{location.latitude:.4f}, {location.longitude:.4f} "
                    f"(timezone: {location.timezone})")

    def _update_sun_times(self):
        """Update sunrise/sunset times for today (handles DST automatically)."""
        try:
            today = date.today()
            if self._last_check_date != today:
                # astral returns timezone-aware UTC times
                s = sun(self.location.observer, date=today)
                self._sunrise = s['sunrise']
                self._sunset = s['sunset']
                self._last_check_date = today
                sunrise_local = self._sunrise.astimezone(self._local_tz)
                sunset_local = self._sunset.astimezone(self._local_tz)
                logger.info(f"Sun times updated - Sunrise: {sunrise_local.strftime('%H:%M')}, "
                            f"Sunset: {sunset_local.strftime('%H:%M')} (local time)")
        except Exception as e:
            # Polar day/night raises ValueError in astral
            logger.error(f"Error calculating sun times: {e}")
            now = datetime.now(self._local_tz)
            self._sunrise = datetime.combine(now.date(), dt_time(6, 0), tzinfo=self._local_tz)
            self._sunset = datetime.combine(now.date(), dt_time(20, 0), tzinfo=self._local_tz)

    def get_sun_times(self):
        """Today's (sunrise, sunset) as timezone-aware datetimes."""
        self._update_sun_times()
        return self._sunrise, self._sunset

    def is_daytime(self) -> bool:
        """Check if it's currently daytime."""
        self._update_sun_times()

        now = datetime.now(timezone.utc)

        if self._sunrise and self._sunset:
            return self._sunrise <= now <= self._sunset

        return True

    def get_sun_info(self) -> dict:
        """Get sunrise/sunset information in local time (DST-aware)."""
        self._update_sun_times()

        sunrise_local = self._sunrise.astimezone(self._local_tz) if self._sunrise else None
        sunset_local = self._sunset.astimezone(self._local_tz) if self._sunset else None

        return {
            'sunrise': sunrise_local.strftime('%H:%M') if sunrise_local else 'Unknown',
            'sunset': sunset_local.strftime('%H:%M') if sunset_local else 'Unknown',
            'is_daytime': self.is_daytime()
        }
