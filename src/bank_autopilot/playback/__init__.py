"""Recipe playback: replay recorded steps against a live browser session."""

from .clock import Clock, SystemClock
from .engine import PlaybackEngine, PlaybackResult, PlaybackStatus, SensitiveValueProvider
from .state import ALLOWED_TRANSITIONS, TERMINAL_PHASES, PlaybackPhase, PlaybackState

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_PHASES",
    "Clock",
    "PlaybackEngine",
    "PlaybackPhase",
    "PlaybackResult",
    "PlaybackState",
    "PlaybackStatus",
    "SensitiveValueProvider",
    "SystemClock",
]
