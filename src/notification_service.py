"""
Notification service for the BirdCam bridge.

Applies the alert policy (per-type toggles, ignored species, quiet hours and
rate limiting) and delivers messages through a Telegram bot. Every failure
is logged and reported as ``False``; nothing here raises into the caller.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Optional

import telegram

from config import NotificationConfig, parse_clock

logger = logging.getLogger(__name__)

PRIORITY_LOW = "low"
PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"
PRIORITY_URGENT = "urgent"


class NotificationFormatter:
    """Message formatting utilities for notifications."""

    @staticmethod
    def format_new_species(species: str, confidence: float) -> str:
        return f"🎉 New Species!\nFirst sighting of {species}! ({confidence * 100:.0f}% confidence)"

    @staticmethod
    def format_rare_bird(species: str, confidence: float) -> str:
        return f"⭐ Rare Bird Alert!\n{species} spotted! ({confidence * 100:.0f}% confidence)"

    @staticmethod
    def format_bird_detected(species: str, confidence: float) -> str:
        return f"🐦 Bird Detected\n{species} ({confidence * 100:.0f}% confidence)"

    @staticmethod
    def format_motion(timestamp: datetime) -> str:
        return f"📹 Motion Detected\nMovement detected on camera at {timestamp.strftime('%H:%M:%S')}"

    @staticmethod
    def format_camera_offline() -> str:
        return "⚠️ Camera Offline\nThe camera stream has stopped"

    @staticmethod
    def format_storage_low(used_percent: float) -> str:
        return f"💾 Storage Low\nStorage is {used_percent:.0f}% full"


class NotificationService:
    """
    Policy-checked Telegram notifications.

    The ``notify_*`` methods are synchronous and safe to call from worker
    threads; each delivery runs in its own event loop. ``bot_factory``
    returns a fresh ``telegram.Bot`` per delivery.
    """

    def __init__(self, config: NotificationConfig,
                 bot_factory: Optional[Callable[[], telegram.Bot]] = None):
        self.config = config
        self.formatter = NotificationFormatter()
        self._bot_factory = bot_factory
        if self._bot_factory is None and config.telegram_configured:
            self._bot_factory = lambda: telegram.Bot(token=config.telegram_token)
        self._recent: Deque[float] = deque()
        self._lock = threading.Lock()
        self._stats = {'sent': 0, 'failed': 0, 'suppressed': 0}

        if config.enabled and self._bot_factory is None:
            logger.warning("Telegram is not configured, notifications will be logged only")

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def is_quiet_hours(self, now: Optional[datetime] = None) -> bool:
        """True inside the quiet window. Windows that cross midnight are supported."""
        if not self.config.quiet_hours_enabled:
            return False
        now = now or datetime.now()
        current = now.hour * 60 + now.minute
        start = parse_clock(self.config.quiet_hours_start)
        end = parse_clock(self.config.quiet_hours_end)
        if start == end:
            return False
        if start > end:
            return current >= start or current < end
        return start <= current < end

    def _prune(self, now: float) -> None:
        while self._recent and now - self._recent[0] >= 3600:
            self._recent.popleft()

    def _limited(self, now: float) -> bool:
        """Caller holds the lock."""
        self._prune(now)
        if len(self._recent) >= self.config.max_per_hour:
            return True
        return bool(self._recent) and now - self._recent[-1] < self.config.min_interval_seconds

    def is_rate_limited(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        with self._lock:
            return self._limited(now)

    def is_rare_species(self, species: str) -> bool:
        wanted = species.strip().lower()
        return any(wanted == rare.strip().lower() for rare in self.config.rare_species)

    def is_ignored_species(self, species: str) -> bool:
        wanted = species.strip().lower()
        return any(wanted == ignored.strip().lower() for ignored in self.config.ignored_species)

    def _reserve_slot(self, kind: str, priority: str) -> bool:
        """Apply global policy and, if allowed, count this notification against the rate limit."""
        if not self.config.enabled:
            logger.debug(f"Notifications disabled, skipping {kind}")
            return False
        if priority != PRIORITY_URGENT and self.is_quiet_hours():
            logger.info(f"Quiet hours, skipping {kind} notification")
            self._stats['suppressed'] += 1
            return False
        now = time.monotonic()
        with self._lock:
            if self._limited(now):
                self._stats['suppressed'] += 1
                logger.info(f"Rate limited, skipping {kind} notification")
                return False
            self._recent.append(now)
        return True

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def send_text_message(self, message: str) -> bool:
        """Send a plain text message to the configured chat."""
        if self._bot_factory is None:
            logger.info(f"[notification] {message}")
            return False
        try:
            async with self._bot_factory() as bot:
                await bot.send_message(chat_id=self.config.telegram_chat_id, text=message)
            self._stats['sent'] += 1
            return True
        except telegram.error.TelegramError as e:
            logger.error(f"Telegram rejected notification: {e}")
        except Exception as e:
            logger.error(f"Error sending Telegram notification: {e}")
        self._stats['failed'] += 1
        return False

    async def send(self, kind: str, message: str, priority: str = PRIORITY_NORMAL) -> bool:
        """Policy-check and deliver one notification."""
        if not self._reserve_slot(kind, priority):
            return False
        return await self.send_text_message(message)

    def _send_sync(self, kind: str, message: str, priority: str = PRIORITY_NORMAL) -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            logger.error(f"Cannot deliver {kind} notification synchronously from inside an event loop")
            return False
        try:
            return asyncio.run(self.send(kind, message, priority))
        except Exception as e:
            logger.error(f"Notification delivery failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Notification types
    # ------------------------------------------------------------------

    def notify_bird_detected(self, species: str, confidence: float,
                             is_new: bool = False, is_rare: bool = False) -> bool:
        """New species takes precedence over rare, rare over a plain detection."""
        if self.is_ignored_species(species):
            logger.debug(f"Ignoring notification for {species}")
            return False

        if is_new and self.config.on_new_species:
            return self._send_sync("new_species", self.formatter.format_new_species(species, confidence),
                                   PRIORITY_HIGH)
        if is_rare and self.config.on_rare_bird:
            return self._send_sync("rare_bird", self.formatter.format_rare_bird(species, confidence),
                                   PRIORITY_HIGH)
        if self.config.on_bird_detected:
            return self._send_sync("bird_detected", self.formatter.format_bird_detected(species, confidence))
        return False

    def notify_motion(self, timestamp: Optional[datetime] = None) -> bool:
        if not self.config.on_motion:
            return False
        return self._send_sync("motion", self.formatter.format_motion(timestamp or datetime.now()),
                               PRIORITY_LOW)

    def notify_camera_offline(self) -> bool:
        return self._send_sync("camera_offline", self.formatter.format_camera_offline(), PRIORITY_URGENT)

    async def notify_storage_low(self, used_percent: float) -> bool:
        """Async so the bridge maintenance loop can await it directly."""
        if not self.config.on_storage_low:
            return False
        priority = PRIORITY_HIGH if used_percent > 95 else PRIORITY_NORMAL
        return await self.send("storage_low", self.formatter.format_storage_low(used_percent), priority)

    def get_statistics(self) -> dict:
        return {**self._stats, 'telegram_configured': self._bot_factory is not None}
