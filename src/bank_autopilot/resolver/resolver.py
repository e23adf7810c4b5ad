"""Element resolver: snapshot the live page, then run the strategy waterfall."""

import logging

from ..browser import BrowserSession
from ..recipes.models import ElementIdentification
from .snapshot import build_snapshot_script, parse_snapshot
from .strategies import ResolutionResult, run_waterfall

logger = logging.getLogger(__name__)


class ElementResolver:
    """Locates recorded elements in the current page of a browser session."""

    def __init__(self, session: BrowserSession):
        self.session = session

    async def resolve(self, identification: ElementIdentification, expected_role: str | None = None) -> ResolutionResult:
        """Map an identification back to a live element.

        Returns a not-found result (never raises) when no strategy matches.
        Browser errors from the snapshot evaluation propagate.
        """
        point = None
        if identification.coordinates is not None:
            point = {"x": identification.coordinates.x, "y": identification.coordinates.y}
            if identification.viewport is not None:
                point["scrollX"] = identification.viewport.scroll_x
                point["scrollY"] = identification.viewport.scroll_y

        raw = await self.session.evaluate(build_snapshot_script(point))
        snapshot = parse_snapshot(raw)
        skipped = [f.index for f in snapshot.frames if not f.accessible]
        if skipped:
            logger.debug(f"Skipping {len(skipped)} inaccessible frame(s): {skipped}")

        result = run_waterfall(identification, snapshot, expected_role=expected_role)
        target = identification.describe()
        if result.found:
            note = " (ambiguous, took first)" if result.ambiguous else ""
            logger.debug(f"Resolved '{target}' via {result.strategy}{note}")
        else:
            logger.debug(f"Could not resolve '{target}'; tried {', '.join(result.attempted) or 'nothing'}")
        return result
