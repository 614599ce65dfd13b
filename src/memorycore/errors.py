"""
Error taxonomy shared by the chat, extraction and configuration layers.
"""

from __future__ import annotations

from typing import Iterable


class MemoryCoreError(Exception):
    """Base class for every error raised by memorycore."""


class ConfigMissing(MemoryCoreError):
    """No system configuration has been saved yet."""


class ConfigIncomplete(MemoryCoreError):
    """System configuration exists but required fields are empty."""

    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(f"Incomplete API configuration, missing: {', '.join(self.missing)}")


class TransportError(MemoryCoreError):
    """Non-success HTTP status or a failed connection to the completion endpoint."""

    def __init__(self, message: str, *, status: int | None = None):
        self.status = status
        super().__init__(message)


class StreamFrameParseError(MemoryCoreError):
    """A single streamed `data:` frame could not be decoded."""


class ToolCallArgError(MemoryCoreError):
    """Tool-call arguments are not valid JSON, even after repair."""


class ExtractionShapeError(MemoryCoreError):
    """Model response has neither a tool call nor usable JSON, or lacks required keys."""


class ToolUnavailable(MemoryCoreError):
    """A required capability is not exposed by the connected provider."""

    def __init__(self, names: Iterable[str]):
        self.names = list(names)
        super().__init__(f"Required capability not available: {', '.join(self.names)}")


class PreferenceParseError(MemoryCoreError):
    """The preference model reply is not a single JSON object."""
