"""Utilities for file persistence and helpers."""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEBUG_SCREENSHOT_DIR = "debug-screenshots"


def _unique_path(directory: Path, base: str, suffix: str) -> Path:
    file_path = directory / f"{base}{suffix}"
    # Extremely unlikely, but still handle same-microsecond collisions deterministically.
    if file_path.exists():
        for i in range(1, 10_000):
            candidate = directory / f"{base}_{i}{suffix}"
            if not candidate.exists():
                return candidate
        raise RuntimeError("Failed to allocate a unique result filename after 10,000 attempts")
    return file_path


def save_execution_result(
    transactions: list[dict[str, Any]],
    results_dir: Path,
    prefix: str = "transactions",
    metadata: dict[str, Any] | None = None,
) -> Path:
    """Save scraped transactions as JSON in the results directory.

    Args:
        transactions: Serialized transactions (already by-alias dumped).
        results_dir: Target directory; created if missing.
        prefix: Filename prefix, usually the recipe name.
        metadata: Extra fields stored alongside the transactions.

    Returns:
        Path to the saved file.
    """
    results_dir.mkdir(parents=True, exist_ok=True)
    # Include microseconds to avoid collisions when called multiple times per second.
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")

    # Sanitize prefix for filesystem
    safe_prefix = re.sub(r"[^\w\-]", "_", prefix)[:30]
    file_path = _unique_path(results_dir, f"{timestamp}_{safe_prefix}", ".json")

    payload = {
        "timestamp": datetime.now().isoformat(),
        **(metadata or {}),
        "count": len(transactions),
        "transactions": transactions,
    }
    file_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    logger.info(f"Saved {len(transactions)} transaction(s) to {file_path}")
    return file_path


def save_debug_screenshot(image: bytes, results_dir: Path, prefix: str = "empty-result") -> Path:
    """Store a screenshot under ``<results_dir>/debug-screenshots/`` for diagnosis."""
    debug_dir = results_dir / DEBUG_SCREENSHOT_DIR
    debug_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    file_path = _unique_path(debug_dir, f"{prefix}-{timestamp}", ".png")
    file_path.write_bytes(image)
    logger.warning(f"Screenshot saved for debugging: {file_path}")
    return file_path
