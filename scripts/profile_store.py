"""
Browser profile persistence.

Maps an (engine, session id) pair to a stable on-disk directory under the
sessions root. Engines point their user-data dir at this path, so the
directory itself is the persisted session: cookies, storage and cache all
survive across executions that reuse the same session id.

Session ids are sanitised to [A-Za-z0-9_-]; anything else becomes '_'.
The mapping is many-to-one ("a/b" and "a_b" share one profile).
"""

from __future__ import annotations

import errno
import logging
import re
import shutil
from pathlib import Path

from config import Config
from errors import InvalidArgument

log = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_session_id(session_id: str) -> str:
    return _UNSAFE_CHARS_RE.sub("_", session_id)


class ProfileStore:
    """Resolves, creates and deletes per-session profile directories."""

    def __init__(
        self,
        root: Path,
        state_file_engines: frozenset[str] | None = None,
    ):
        self.root = Path(root)
        self.state_file_engines = (
            Config.STATE_FILE_ENGINES if state_file_engines is None else state_file_engines
        )

    def resolve(self, engine: str, session_id: str) -> Path:
        """Profile path for an engine/session pair. Pure; touches nothing on disk."""
        if not engine or not session_id:
            raise InvalidArgument("Engine and session id are required")
        return self.root / engine.lower() / sanitize_session_id(session_id)

    def ensure_exists(self, engine: str, session_id: str) -> bool:
        """Create the profile directory tree. Returns False on I/O failure."""
        path = self.resolve(engine, session_id)
        target = path.parent if engine.lower() in self.state_file_engines else path
        try:
            target.mkdir(parents=True, exist_ok=True, mode=0o755)
        except OSError as e:
            log.error("Could not create profile dir for %s/%s at %s: %s",
                      engine, session_id, target, e)
            if e.errno in (errno.EACCES, errno.EPERM):
                log.warning("Permission denied; check write access to %s", self.root)
            return False
        return True

    def delete(self, engine: str, session_id: str) -> bool:
        """Remove a profile directory. A missing profile counts as deleted."""
        path = self.resolve(engine, session_id)
        if not path.exists():
            log.info("Profile %s/%s not found at %s; nothing to delete",
                     engine, session_id, path)
            return True
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return True
        except OSError as e:
            log.error("Failed to delete profile %s/%s at %s: %s", engine, session_id, path, e)
            return False
        log.info("Deleted profile %s/%s from %s", engine, session_id, path)
        return True
