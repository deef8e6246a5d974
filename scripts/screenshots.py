"""Screenshot output directory."""

from __future__ import annotations

import logging
from pathlib import Path, PureWindowsPath

from config import Config
from errors import ResourceIOError

log = logging.getLogger(__name__)


class ScreenshotStore:
    """Fixed output root for screenshot tasks.

    Caller-supplied paths are reduced to their basename, so every
    screenshot lands directly in the root.
    """

    def __init__(self, root: Path | None = None):
        self.root = Path(root or Config.SCREENSHOTS_DIR).resolve()

    def resolve(self, requested: str) -> Path:
        # Strip both separator styles so "..\\x.png" and "../x.png" agree
        name = PureWindowsPath(requested).name
        if name in ("", ".", ".."):
            raise ValueError(f"Invalid screenshot path: {requested!r}")
        return self.root / name

    def prepare(self, requested: str) -> Path:
        """Resolve a screenshot path and create its parent directory."""
        path = self.resolve(requested)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceIOError(f"Cannot create screenshots dir {path.parent}: {e}") from e
        return path

    def clear_all(self) -> dict:
        """Delete every regular file in the root. The directory stays.

        Not transactional: files removed before a failure stay removed.
        """
        if not self.root.exists():
            log.warning("Screenshots dir %s not found; nothing to clear", self.root)
            return {
                "success": True,
                "message": "Screenshots directory not found. Nothing to clear.",
            }

        removed = 0
        try:
            for entry in sorted(self.root.iterdir()):
                if not entry.is_file():
                    continue
                entry.unlink()
                removed += 1
                log.info("Deleted screenshot %s", entry)
        except OSError as e:
            log.error("Failed clearing screenshots in %s after %d file(s): %s",
                      self.root, removed, e)
            return {
                "success": False,
                "message": f"Error clearing screenshots directory ({removed} file(s) removed).",
                "error": str(e),
            }

        log.info("Cleared %d file(s) from %s", removed, self.root)
        return {
            "success": True,
            "message": f"Deleted {removed} file(s) from the screenshots directory.",
        }
