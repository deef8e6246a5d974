"""Configuration for the browser task runner."""

import logging
import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")

log = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Server
    DEFAULT_HOST = os.getenv("BROWSER_TASKS_HOST", "127.0.0.1")
    DEFAULT_PORT = int(os.getenv("BROWSER_TASKS_PORT", "3000"))
    LOG_LEVEL = os.getenv("BROWSER_TASKS_LOG_LEVEL", "INFO")

    # Server auth: set BROWSER_TASKS_TOKEN to enable
    AUTH_TOKEN = os.getenv("BROWSER_TASKS_TOKEN", "")

    # Persistence roots, relative to the process working directory
    SESSIONS_DIR = Path(os.getenv("BROWSER_TASKS_SESSIONS_DIR", "sessions_data"))
    SESSIONS_FALLBACK_DIR = Path(tempfile.gettempdir()) / "browser-tasks-sessions"
    SCREENSHOTS_DIR = Path(os.getenv("BROWSER_TASKS_SCREENSHOTS_DIR", "screenshots"))

    # Engines whose profile is a single state file: only the parent dir is created
    STATE_FILE_ENGINES = frozenset({"playwright"})

    # Browser launch
    HEADLESS = _env_flag("BROWSER_TASKS_HEADLESS", "1")
    CHROME_EXECUTABLE = os.getenv("BROWSER_TASKS_CHROME_PATH", "")
    CHROMIUM_ARGS = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-blink-features=AutomationControlled",
    ]
    # Extra flags Playwright passes to Chromium-family persistent contexts
    PLAYWRIGHT_EXTRA_ARGS = [
        "--disable-features=IsolateOrigins,site-per-process",
        "--disable-site-isolation-trials",
    ]
    DEFAULT_BROWSER_TYPE = "chrome"

    # Task defaults (ms)
    GOTO_TIMEOUT = 60_000
    CLICK_TIMEOUT = 10_000
    FOCUS_TIMEOUT = 10_000
    WAIT_FOR_SELECTOR_TIMEOUT = 30_000
    TYPE_CHAR_DELAY = 100
    POST_TYPE_DELAY = 1_000
    DEFAULT_DELAY = 1_000
    EXTRACT_SELECTOR = "body"

    @classmethod
    def ensure_dirs(cls) -> None:
        cls.SCREENSHOTS_DIR.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# Well-known Chrome install locations, searched in order
# ---------------------------------------------------------------------------

def chrome_candidates() -> list[Path]:
    """Install locations to probe for a system Chrome, most specific first."""
    candidates: list[str] = []
    if Config.CHROME_EXECUTABLE:
        candidates.append(Config.CHROME_EXECUTABLE)
    candidates += [
        r"C:\Program Files\Google\Chrome\Application\chrome.exe",
        r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
    ]
    local_app_data = os.getenv("LOCALAPPDATA")
    if local_app_data:
        candidates.append(str(Path(local_app_data) / "Google" / "Chrome" / "Application" / "chrome.exe"))
    candidates += [
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
    ]
    return [Path(c) for c in candidates]


def find_chrome_executable() -> Path | None:
    for candidate in chrome_candidates():
        if candidate.is_file():
            return candidate
    return None


# ---------------------------------------------------------------------------
# Sessions root probe (run once at startup)
# ---------------------------------------------------------------------------

def _writable(directory: Path) -> bool:
    try:
        directory.mkdir(parents=True, exist_ok=True, mode=0o755)
        probe = directory / ".write-test"
        probe.write_text("ok")
        probe.unlink()
        return True
    except OSError as e:
        log.error("Sessions root %s is not writable: %s", directory, e)
        return False


def resolve_sessions_root(
    primary: Path | None = None,
    fallback: Path | None = None,
) -> Path:
    """Pick the sessions root: the primary dir if writable, else the temp fallback.

    The result is meant to be computed once and handed to ProfileStore.
    Returns the primary path even when both probes fail so later operations
    report their own I/O errors.
    """
    primary = (primary or Config.SESSIONS_DIR).resolve()
    fallback = (fallback or Config.SESSIONS_FALLBACK_DIR).resolve()
    if _writable(primary):
        return primary
    log.warning("Falling back to sessions root %s", fallback)
    if _writable(fallback):
        return fallback
    log.warning("Fallback sessions root unusable too; session operations may fail")
    return primary
