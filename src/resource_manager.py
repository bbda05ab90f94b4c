"""
Resource management for the BirdCam bridge.

Consolidates memory management, file/storage management, and system monitoring
into a cohesive module for Raspberry Pi resource optimization.
"""

import gc
import logging
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import psutil

from config import Config

logger = logging.getLogger(__name__)


class MemoryManager:
    """Memory management utilities for Raspberry Pi."""

    def __init__(self, config: Config):
        self.config = config
        self.memory_threshold = config.performance.memory_threshold

    def get_memory_usage(self) -> float:
        """Get current memory usage as a ratio (0.0 to 1.0)."""
        try:
            return psutil.virtual_memory().percent / 100.0
        except Exception as e:
            logger.error(f"Error getting memory usage: {e}")
            return 0.5  # Default to 50% if unable to determine

    def is_memory_available(self) -> bool:
        """Check if memory usage is below threshold."""
        return self.get_memory_usage() < self.memory_threshold

    def force_cleanup(self) -> None:
        gc.collect()

    def get_memory_info(self) -> Optional[dict]:
        """Get detailed memory information."""
        try:
            mem = psutil.virtual_memory()
            return {
                'total_mb': mem.total / (1024 * 1024),
                'available_mb': mem.available / (1024 * 1024),
                'used_mb': mem.used / (1024 * 1024),
                'percent': mem.percent,
            }
        except Exception as e:
            logger.error(f"Error getting memory info: {e}")
            return None


class StorageManager:
    """Working directory housekeeping: temp samples, classifier output and snapshots."""

    def __init__(self, config: Config):
        self.config = config

    def ensure_directories(self) -> bool:
        """Ensure all required directories exist."""
        storage = self.config.storage
        try:
            for directory in (storage.data_dir, storage.tracker_dir, storage.audio_dir,
                              storage.results_dir, storage.snapshot_dir):
                directory.mkdir(parents=True, exist_ok=True)
            return True
        except OSError as e:
            logger.error(f"Error creating directories: {e}")
            return False

    def cleanup_temp_files(self, max_age: Optional[float] = None) -> int:
        """
        Delete audio samples and classifier output older than ``max_age`` seconds.

        Cycles delete their own files; this catches leftovers from crashes or
        killed processes.
        """
        max_age = self.config.performance.temp_file_max_age if max_age is None else max_age
        cutoff = time.time() - max_age
        deleted = 0
        for directory in (self.config.storage.audio_dir, self.config.storage.results_dir):
            if not directory.exists():
                continue
            for path in directory.iterdir():
                try:
                    if path.stat().st_mtime >= cutoff:
                        continue
                    if path.is_dir():
                        shutil.rmtree(path, ignore_errors=True)
                    else:
                        path.unlink()
                    deleted += 1
                except OSError as e:
                    logger.error(f"Error deleting {path}: {e}")
        if deleted:
            logger.info(f"Cleaned up {deleted} stale temp files")
        return deleted

    def cleanup_old_snapshots(self) -> int:
        """Delete the oldest motion snapshots beyond the configured maximum."""
        snapshot_dir = self.config.storage.snapshot_dir
        if not snapshot_dir.exists():
            return 0
        try:
            snapshots = sorted(snapshot_dir.glob("motion_*.jpg"), key=lambda p: p.stat().st_mtime)
        except OSError as e:
            logger.error(f"Error listing snapshots: {e}")
            return 0

        excess = len(snapshots) - self.config.storage.max_snapshots
        deleted = 0
        for path in snapshots[:max(0, excess)]:
            try:
                path.unlink()
                deleted += 1
            except OSError as e:
                logger.error(f"Error deleting {path}: {e}")
        if deleted:
            logger.info(f"Cleaned up {deleted} old snapshots")
        return deleted

    def get_snapshot_count(self) -> int:
        snapshot_dir = self.config.storage.snapshot_dir
        if not snapshot_dir.exists():
            return 0
        return sum(1 for _ in snapshot_dir.glob("motion_*.jpg"))

    def get_storage_info(self) -> Optional[dict]:
        """Get storage space information."""
        try:
            usage = psutil.disk_usage(str(self.config.storage.data_dir))
            return {
                'total_mb': usage.total / (1024 * 1024),
                'used_mb': usage.used / (1024 * 1024),
                'free_mb': usage.free / (1024 * 1024),
                'percent': (usage.used / usage.total) * 100
            }
        except Exception as e:
            logger.error(f"Error getting storage info: {e}")
            return None

    def is_storage_low(self) -> bool:
        info = self.get_storage_info()
        return bool(info) and info['percent'] >= self.config.performance.storage_low_percent


class SystemMonitor:
    """
    Unified system resource monitoring for Raspberry Pi.

    Combines memory monitoring, storage management, and CPU temperature
    tracking into a single interface.
    """

    def __init__(self, config: Config):
        self.config = config
        self.memory_manager = MemoryManager(config)
        self.storage_manager = StorageManager(config)

    def get_system_status(self) -> dict:
        """Get comprehensive system status."""
        return {
            'timestamp': datetime.now().isoformat(),
            'memory': self.memory_manager.get_memory_info(),
            'storage': self.storage_manager.get_storage_info(),
            'snapshot_count': self.storage_manager.get_snapshot_count(),
            'memory_available': self.memory_manager.is_memory_available(),
            'cpu_temp': self.get_cpu_temperature()
        }

    def should_skip_processing(self) -> bool:
        """Determine if processing should be skipped due to resource constraints."""
        if not self.memory_manager.is_memory_available():
            logger.warning(f"Skipping processing: Memory usage above "
                           f"{self.config.performance.memory_threshold * 100:.0f}%")
            self.memory_manager.force_cleanup()
            return True
        return False

    def log_system_status(self) -> dict:
        """Log current system status and return it."""
        status = self.get_system_status()
        if status['memory']:
            logger.info(f"Memory: {status['memory']['percent']:.1f}% used "
                        f"({status['memory']['available_mb']:.0f}MB available)")
        if status['storage']:
            logger.info(f"Storage: {status['storage']['percent']:.1f}% used "
                        f"({status['storage']['free_mb']:.0f}MB free)")
        if status['cpu_temp']:
            logger.info(f"CPU Temp: {status['cpu_temp']:.1f}°C")
        logger.info(f"Snapshots stored: {status['snapshot_count']}")
        return status

    def get_cpu_temperature(self) -> Optional[float]:
        """Get Raspberry Pi CPU temperature. Returns None where unavailable."""
        thermal_zone = Path("/sys/class/thermal/thermal_zone0/temp")
        try:
            return float(thermal_zone.read_text()) / 1000.0
        except (OSError, ValueError) as e:
            logger.debug(f"CPU temperature unavailable: {e}")
            return None
