"""
External tool integrations: ffmpeg audio capture and BirdNET classification.

Both tools run as subprocesses. Each wrapper owns at most one in-flight
process, exposes ``terminate()`` for shutdown, and raises the
ExternalToolError family on launch failure, non-zero exit or timeout.
"""

import csv
import logging
import subprocess
import threading
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from exceptions import (
    ToolExecutionError,
    ToolLaunchError,
    ToolTimeoutError,
)
from models import ClassificationResult, ClassificationRow
from utils import PerformanceTimer, redact_url

logger = logging.getLogger(__name__)

PRIMARY_INVOCATION = "birdnetlib"
FALLBACK_INVOCATION = "birdnet_analyzer"


class AudioCapture(Protocol):
    def capture(self, source: str, duration: float, output: Path) -> Path: ...

    def terminate(self) -> None: ...


class AcousticClassifier(Protocol):
    def is_available(self) -> bool: ...

    def classify(self, audio_file: Path, results_dir: Path) -> ClassificationResult: ...

    def terminate(self) -> None: ...


class _ProcessRunner:
    """Runs one subprocess at a time and remembers it so it can be terminated."""

    def __init__(self, name: str):
        self.name = name
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def run(self, cmd: Sequence[str], timeout: float, display_cmd: Optional[str] = None):
        """Run ``cmd`` to completion. Returns (returncode, stdout, stderr)."""
        display_cmd = display_cmd or " ".join(cmd)
        logger.debug(f"{self.name}: {display_cmd}")
        try:
            process = subprocess.Popen(
                list(cmd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise ToolLaunchError(f"{self.name} could not be started: {e}") from e

        with self._lock:
            self._process = process
        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            raise ToolTimeoutError(f"{self.name} exceeded {timeout:.1f}s: {display_cmd}")
        finally:
            with self._lock:
                self._process = None
        return process.returncode, stdout or "", stderr or ""

    def terminate(self) -> None:
        with self._lock:
            process = self._process
        if process is not None and process.poll() is None:
            logger.debug(f"Terminating in-flight {self.name} process")
            process.terminate()


def _stderr_tail(stderr: str, lines: int = 5) -> str:
    return "\n".join(stderr.strip().splitlines()[-lines:])


# =============================================================================
# Audio capture
# =============================================================================

class FFmpegAudioCapture:
    """Record a short mono 16-bit PCM WAV sample from a stream with ffmpeg."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", sample_rate: int = 48000, grace_seconds: float = 10.0):
        self.ffmpeg_path = ffmpeg_path
        self.sample_rate = sample_rate
        self.grace_seconds = grace_seconds
        self._runner = _ProcessRunner("ffmpeg")

    def build_command(self, source: str, duration: float, output: Path) -> List[str]:
        cmd = [self.ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y"]
        if source.startswith("rtsp://") or source.startswith("rtsps://"):
            cmd += ["-rtsp_transport", "tcp"]
        cmd += [
            "-t", f"{duration:g}",
            "-i", source,
            "-vn",
            "-acodec", "pcm_s16le",
            "-ar", str(self.sample_rate),
            "-ac", "1",
            str(output),
        ]
        return cmd

    def capture(self, source: str, duration: float, output: Path) -> Path:
        output = Path(output)
        cmd = self.build_command(source, duration, output)
        display_cmd = " ".join(cmd).replace(source, redact_url(source))
        returncode, _stdout, stderr = self._runner.run(
            cmd, timeout=duration + self.grace_seconds, display_cmd=display_cmd
        )
        if returncode != 0:
            raise ToolExecutionError(
                f"ffmpeg exited with code {returncode}: {_stderr_tail(stderr)}",
                returncode=returncode,
                stderr=stderr,
            )
        if not output.exists() or output.stat().st_size == 0:
            raise ToolExecutionError(f"ffmpeg produced no audio at {output}", returncode=returncode, stderr=stderr)
        return output

    def terminate(self) -> None:
        self._runner.terminate()


# =============================================================================
# Classification
# =============================================================================

def parse_results_csv(path: Path) -> List[ClassificationRow]:
    """
    Parse classifier CSV output.

    Expected columns: Start (s), End (s), Scientific name, Common name,
    Confidence. The header, rows with fewer than five columns and rows whose
    numeric fields do not parse are skipped. File order is preserved.
    """
    path = Path(path)
    if not path.exists():
        return []

    rows = []
    try:
        with open(path, newline="", encoding="utf-8") as f:
            for line_number, cols in enumerate(csv.reader(f), start=1):
                if len(cols) < 5:
                    continue
                start, end, scientific, common, confidence = cols[:5]
                try:
                    row = ClassificationRow(
                        start_time=float(start),
                        end_time=float(end),
                        scientific_name=scientific.strip(),
                        common_name=common.strip(),
                        confidence=float(confidence),
                    )
                except ValueError:
                    if line_number > 1:
                        logger.debug(f"Skipping malformed result row {line_number} in {path.name}: {cols}")
                    continue
                rows.append(row)
    except (UnicodeDecodeError, csv.Error, OSError) as e:
        logger.warning(f"Could not parse classifier output {path.name}, treating as no detections: {e}")
        return []
    return rows


class BirdNETClassifier:
    """
    Classify audio samples with BirdNET.

    The birdnetlib entry point is tried first; if it exits non-zero the
    birdnet_analyzer entry point is tried with the same sample. Which one
    produced the result is recorded on the returned ClassificationResult.
    """

    def __init__(self, python_path: str, min_confidence: float = 0.7,
                 latitude: Optional[float] = None, longitude: Optional[float] = None,
                 locale: Optional[str] = "en", timeout: float = 6.0, check_timeout: float = 5.0):
        self.python_path = python_path
        self.min_confidence = min_confidence
        self.latitude = latitude
        self.longitude = longitude
        self.locale = locale
        self.timeout = timeout
        self.check_timeout = check_timeout
        self._runner = _ProcessRunner("BirdNET")

    def _location_args(self) -> List[str]:
        if self.latitude is None or self.longitude is None:
            return []
        return ["--lat", str(self.latitude), "--lon", str(self.longitude)]

    def build_primary_command(self, audio_file: Path, output_file: Path) -> List[str]:
        cmd = [
            self.python_path, "-m", "birdnetlib.analyze",
            "--i", str(audio_file),
            "--o", str(output_file),
            "--min_conf", str(self.min_confidence),
        ]
        cmd += self._location_args()
        if self.locale:
            cmd += ["--locale", self.locale]
        return cmd

    def build_fallback_command(self, audio_file: Path, output_dir: Path) -> List[str]:
        cmd = [
            self.python_path, "-m", "birdnet_analyzer.analyze",
            "--i", str(audio_file),
            "--o", str(output_dir),
            "--min_conf", str(self.min_confidence),
            "--rtype", "csv",
        ]
        return cmd + self._location_args()

    def is_available(self) -> bool:
        """Check whether either BirdNET package is importable by the configured interpreter."""
        check = (
            "import importlib.util, sys; "
            "sys.exit(0 if importlib.util.find_spec('birdnetlib') "
            "or importlib.util.find_spec('birdnet_analyzer') else 1)"
        )
        try:
            returncode, _stdout, _stderr = self._runner.run(
                [self.python_path, "-c", check], timeout=self.check_timeout
            )
        except (ToolLaunchError, ToolTimeoutError) as e:
            logger.warning(f"BirdNET availability check failed: {e}")
            return False
        return returncode == 0

    def classify(self, audio_file: Path, results_dir: Path) -> ClassificationResult:
        audio_file = Path(audio_file)
        results_dir = Path(results_dir)
        results_dir.mkdir(parents=True, exist_ok=True)

        with PerformanceTimer("BirdNET classification") as timer:
            output_file = results_dir / f"{audio_file.stem}.csv"
            returncode, _stdout, stderr = self._runner.run(
                self.build_primary_command(audio_file, output_file), timeout=self.timeout
            )
            if returncode == 0:
                rows = parse_results_csv(output_file)
                invocation = PRIMARY_INVOCATION
            elif returncode < 0:
                # Killed by a signal, normally terminate() during shutdown
                raise ToolExecutionError(
                    f"birdnetlib was terminated (signal {-returncode})", returncode=returncode, stderr=stderr
                )
            else:
                logger.warning(f"birdnetlib exited with code {returncode}, "
                               f"trying birdnet_analyzer: {_stderr_tail(stderr, 2)}")
                rows = self._classify_fallback(audio_file, results_dir)
                invocation = FALLBACK_INVOCATION

        return ClassificationResult(rows=rows, invocation=invocation, processing_time=timer.stop())

    def _classify_fallback(self, audio_file: Path, results_dir: Path) -> List[ClassificationRow]:
        output_dir = results_dir / FALLBACK_INVOCATION
        output_dir.mkdir(parents=True, exist_ok=True)
        returncode, _stdout, stderr = self._runner.run(
            self.build_fallback_command(audio_file, output_dir), timeout=self.timeout
        )
        if returncode != 0:
            raise ToolExecutionError(
                f"birdnet_analyzer exited with code {returncode}: {_stderr_tail(stderr)}",
                returncode=returncode,
                stderr=stderr,
            )
        csv_files = sorted(output_dir.rglob("*.csv"), key=lambda p: p.stat().st_mtime)
        if not csv_files:
            return []
        return parse_results_csv(csv_files[-1])

    def terminate(self) -> None:
        self._runner.terminate()
