"""
Consolidated exception hierarchy for the BirdCam bridge.

This module provides a unified exception hierarchy that allows for:
- Consistent error handling across all components
- Hierarchical exception catching (e.g., catch all ExternalToolError)
- Clear categorization of error types
"""


# =============================================================================
# Base Exception
# =============================================================================

class BirdBridgeError(Exception):
    """Base exception for all bridge errors."""
    pass


class ConfigurationError(BirdBridgeError):
    """Raised when configuration is missing or inconsistent."""
    pass


# =============================================================================
# External Tool Errors
# =============================================================================

class ExternalToolError(BirdBridgeError):
    """Base exception for failures of external processes (ffmpeg, BirdNET)."""
    pass


class ToolLaunchError(ExternalToolError):
    """Raised when an external tool cannot be started."""
    pass


class ToolExecutionError(ExternalToolError):
    """Raised when an external tool exits with a non-zero status."""

    def __init__(self, message: str, returncode: int = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ToolTimeoutError(ExternalToolError):
    """Raised when an external tool exceeds its time budget."""
    pass


# =============================================================================
# Processing Errors
# =============================================================================

class ProcessingError(BirdBridgeError):
    """Base exception for processing-related errors."""
    pass


class MotionDetectionError(ProcessingError):
    """Raised when a frame cannot be scored."""
    pass


# =============================================================================
# Persistence Errors
# =============================================================================

class PersistenceError(BirdBridgeError):
    """Raised when tracker state or archives cannot be read or written."""
    pass
