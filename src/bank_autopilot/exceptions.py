"""Custom exceptions for the bank automation engine."""


class AutopilotError(Exception):
    """Base exception for bank-autopilot errors."""

    pass


class LLMProviderError(AutopilotError):
    """Raised when LLM provider configuration is invalid."""

    pass


class BrowserError(AutopilotError):
    """Raised when browser operations fail."""

    pass


class ResolutionFailure(AutopilotError):
    """Raised when a recorded element cannot be located after all strategies and retries."""

    def __init__(self, message: str, step_index: int | None = None, attempted: list[str] | None = None):
        super().__init__(message)
        self.step_index = step_index
        self.attempted = list(attempted or [])


class NavigationTimeout(AutopilotError):
    """Raised when the page did not signal load completion within the settle timeout."""

    pass


class ExtractionParseFailure(AutopilotError):
    """Raised when a vision response cannot be parsed or repaired into a transaction list."""

    pass


class ServiceUnavailable(AutopilotError):
    """Raised when the AI vision provider is unreachable, misconfigured or timed out."""

    pass


class ScheduleConfigError(AutopilotError):
    """Raised when a schedule configuration (cron expression or interval) is invalid."""

    pass


class PlaybackBusyError(AutopilotError):
    """Raised when a playback is requested while another one is active."""

    pass


class PlaybackStateError(AutopilotError):
    """Raised on an illegal playback phase transition."""

    pass


class PlaybackCancelled(AutopilotError):
    """Raised inside playback when the browser session was closed underneath it."""

    pass
