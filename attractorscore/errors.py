from __future__ import annotations


class AttractorScoreError(Exception):
    """Base error for the attractorscore library."""


class InvalidConfigError(AttractorScoreError):
    """Raised when a pattern, synth config or trajectory cannot be parsed or validated."""


class PatternSyncError(AttractorScoreError):
    """Raised when saving patterns to the remote store fails."""


class RenderError(AttractorScoreError):
    """Raised when an offline render cannot be produced."""


class PlaybackError(AttractorScoreError):
    """Raised when realtime audio output is unavailable."""
