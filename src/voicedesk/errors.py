"""Exception types shared across the orchestrator."""


class VoiceDeskError(Exception):
    """Base class for orchestrator errors."""


class ConfigError(VoiceDeskError):
    """Raised when configuration is invalid or missing."""


class GenerationError(VoiceDeskError):
    """Raised when the reply generator fails (timeout, rate limit, transport)."""

    def __init__(self, message: str, *, rate_limited: bool = False):
        super().__init__(message)
        self.rate_limited = rate_limited


class TranscriptionWriteError(VoiceDeskError):
    """Raised when audio cannot be written to the transcription stream."""
