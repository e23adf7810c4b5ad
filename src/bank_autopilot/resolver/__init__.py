"""Element resolution: relocate recorded elements despite page drift."""

from .resolver import ElementResolver
from .similarity import levenshtein, similarity
from .snapshot import Candidate, PageSnapshot, parse_snapshot
from .strategies import STRATEGY_ORDER, ElementHandle, ResolutionResult, run_waterfall

__all__ = [
    "STRATEGY_ORDER",
    "Candidate",
    "ElementHandle",
    "ElementResolver",
    "PageSnapshot",
    "ResolutionResult",
    "levenshtein",
    "parse_snapshot",
    "run_waterfall",
    "similarity",
]
