"""Record bank transaction-export flows once and replay them unattended."""

from .config import settings
from .exceptions import AutopilotError, BrowserError, LLMProviderError
from .providers import get_llm
from .server import main, serve

__all__ = [
    "main",
    "serve",
    "settings",
    "get_llm",
    "AutopilotError",
    "LLMProviderError",
    "BrowserError",
]
