"""
Browser engines behind one capability surface.

playwright: Playwright persistent context (chromium / firefox / webkit, or a
            system Chrome driven through the chromium family).
puppeteer:  pyppeteer, the Python port of Puppeteer (Chromium only).

Both engines implement EngineAdapter: detect() → launch() → persist() → teardown().
Pages are wrapped in a PageHandle exposing goto / click / type / wait_for /
screenshot / extract. Selectors may carry an ``xpath=`` prefix; Playwright
understands it natively, pyppeteer gets it emulated via document.evaluate.
"""

from __future__ import annotations

import abc
import logging
from pathlib import Path
from typing import Any

from config import Config, find_chrome_executable
from errors import TaskError
from models import Platform

log = logging.getLogger(__name__)

XPATH_PREFIX = "xpath="

EXTRACT_TEXT_JS = "el => el.innerText || el.textContent"

# Resolves true once the first node matching the XPath is rendered and visible
XPATH_VISIBLE_JS = """
(xpath) => {
    const node = document.evaluate(
        xpath, document, null, XPathResult.FIRST_ORDERED_NODE_TYPE, null
    ).singleNodeValue;
    if (!node) return false;
    if (node.nodeType !== Node.ELEMENT_NODE) return true;
    const style = window.getComputedStyle(node);
    const rect = node.getBoundingClientRect();
    return style.visibility !== 'hidden' && style.display !== 'none'
        && rect.width > 0 && rect.height > 0;
}
"""


def split_xpath(selector: str) -> str | None:
    """Return the XPath expression of an ``xpath=`` selector, else None."""
    if selector.startswith(XPATH_PREFIX):
        return selector[len(XPATH_PREFIX):]
    return None


def _resolve_chrome() -> Path | None:
    executable = find_chrome_executable()
    if executable:
        log.info("Using installed Chrome at %s", executable)
    else:
        log.warning("Installed Chrome not found; using the bundled Chromium")
    return executable


# ---------------------------------------------------------------------------
# PageHandle ABC
# ---------------------------------------------------------------------------

class PageHandle(abc.ABC):
    """A live page plus the engine objects that keep it alive.

    Owned by exactly one execution. ``closed`` flips once teardown ran.
    """

    engine: str = ""

    def __init__(self, page: Any):
        self.page = page
        self.closed = False

    @abc.abstractmethod
    async def goto(self, url: str, timeout: float) -> None:
        ...

    @abc.abstractmethod
    async def click(self, selector: str, timeout: float) -> None:
        ...

    @abc.abstractmethod
    async def type(self, selector: str, text: str, delay: float, focus_timeout: float) -> None:
        """Focus the element, then send one keystroke per character."""
        ...

    @abc.abstractmethod
    async def wait_for(self, selector: str, timeout: float) -> None:
        """Wait until the selector matches a visible element."""
        ...

    @abc.abstractmethod
    async def screenshot(self, path: Path, full_page: bool = True) -> None:
        ...

    @abc.abstractmethod
    async def extract(self, selector: str) -> str:
        """Visible text of the first element matching the selector."""
        ...


# ---------------------------------------------------------------------------
# EngineAdapter ABC
# ---------------------------------------------------------------------------

class EngineAdapter(abc.ABC):
    """Abstract base class for browser engines.

    Each engine implements the lifecycle:
      detect()   → is the engine's library installed?
      launch()   → start a browser bound to a profile dir, return a PageHandle
      persist()  → advisory hook once a named session's batch finished
      teardown() → idempotent shutdown, never raises
    """

    default_variant: str = "chromium"

    @property
    @abc.abstractmethod
    def name(self) -> str:
        ...

    @abc.abstractmethod
    async def detect(self) -> bool:
        ...

    @abc.abstractmethod
    def resolve_variant(self, variant: str | None) -> tuple[str, Path | None]:
        """Map a requested browser variant to (engine family, executable or None)."""
        ...

    @abc.abstractmethod
    async def launch(
        self,
        variant: str | None = None,
        launch_options: dict[str, Any] | None = None,
        profile_path: Path | None = None,
    ) -> PageHandle:
        ...

    @abc.abstractmethod
    async def _close(self, handle: PageHandle) -> None:
        ...

    async def teardown(self, handle: PageHandle | None) -> None:
        if handle is None or handle.closed:
            return
        handle.closed = True
        try:
            await self._close(handle)
        except Exception as e:
            log.warning("[%s] Error while closing browser: %s", self.name, e)
        else:
            log.info("[%s] Browser closed", self.name)

    async def persist(self, handle: PageHandle | None, session_id: str) -> None:
        # The profile dir is the persistence mechanism for both engines
        log.info("[%s] Session %s is persisted through its profile directory",
                 self.name, session_id)


# ---------------------------------------------------------------------------
# Playwright
# ---------------------------------------------------------------------------

class PlaywrightPage(PageHandle):
    engine = Platform.PLAYWRIGHT.value

    def __init__(self, page: Any, context: Any, pw: Any):
        super().__init__(page)
        self.context = context
        self.pw = pw

    async def goto(self, url: str, timeout: float) -> None:
        await self.page.goto(url, wait_until="networkidle", timeout=timeout)

    async def click(self, selector: str, timeout: float) -> None:
        await self.page.click(selector, timeout=timeout)

    async def type(self, selector: str, text: str, delay: float, focus_timeout: float) -> None:
        await self.page.focus(selector, timeout=focus_timeout)
        await self.page.keyboard.type(text, delay=delay)

    async def wait_for(self, selector: str, timeout: float) -> None:
        await self.page.wait_for_selector(selector, state="visible", timeout=timeout)

    async def screenshot(self, path: Path, full_page: bool = True) -> None:
        await self.page.screenshot(path=str(path), full_page=full_page)

    async def extract(self, selector: str) -> str:
        text = await self.page.eval_on_selector(selector, EXTRACT_TEXT_JS)
        return "" if text is None else str(text)


class PlaywrightAdapter(EngineAdapter):
    """Playwright persistent contexts.

    The profile dir is the context's user-data dir; an empty string asks
    Playwright for a throwaway temp profile.
    """

    FAMILIES = ("chromium", "firefox", "webkit")
    default_variant = Config.DEFAULT_BROWSER_TYPE

    @property
    def name(self) -> str:
        return Platform.PLAYWRIGHT.value

    async def detect(self) -> bool:
        try:
            import playwright  # noqa: F401
            return True
        except ImportError:
            return False

    def resolve_variant(self, variant: str | None) -> tuple[str, Path | None]:
        requested = (variant or self.default_variant).strip().lower()
        if requested == "chrome":
            return "chromium", _resolve_chrome()
        if requested in self.FAMILIES:
            return requested, None
        log.warning("[playwright] Unknown browser type %r; using chromium", variant)
        return "chromium", None

    async def launch(
        self,
        variant: str | None = None,
        launch_options: dict[str, Any] | None = None,
        profile_path: Path | None = None,
    ) -> PageHandle:
        from playwright.async_api import async_playwright

        family, executable = self.resolve_variant(variant)
        opts: dict[str, Any] = {"headless": Config.HEADLESS}
        if family == "chromium":
            opts["args"] = [*Config.CHROMIUM_ARGS, *Config.PLAYWRIGHT_EXTRA_ARGS]
        if executable:
            opts["executable_path"] = str(executable)
        opts.update(launch_options or {})

        user_data_dir = str(profile_path) if profile_path else ""
        log.info("[playwright] Launching %s persistent context (profile: %s)",
                 family, user_data_dir or "temporary")

        pw = await async_playwright().start()
        context = None
        try:
            context = await getattr(pw, family).launch_persistent_context(user_data_dir, **opts)
            page = context.pages[0] if context.pages else await context.new_page()
            await page.bring_to_front()
        except BaseException:
            if context is not None:
                try:
                    await context.close()
                except Exception:
                    pass
            try:
                await pw.stop()
            except Exception:
                pass
            raise

        return PlaywrightPage(page, context, pw)

    async def _close(self, handle: PageHandle) -> None:
        if not isinstance(handle, PlaywrightPage):
            raise TypeError(f"Expected a PlaywrightPage, got {type(handle).__name__}")
        try:
            await handle.context.close()
        finally:
            await handle.pw.stop()


# ---------------------------------------------------------------------------
# Puppeteer (pyppeteer)
# ---------------------------------------------------------------------------

class PuppeteerPage(PageHandle):
    engine = Platform.PUPPETEER.value

    def __init__(self, page: Any, browser: Any):
        super().__init__(page)
        self.browser = browser

    async def _first_xpath(self, expression: str) -> Any:
        nodes = await self.page.xpath(expression)
        if not nodes:
            raise TaskError(f"Element not found for XPath: {expression}",
                            code="ELEMENT_NOT_FOUND")
        return nodes[0]

    async def goto(self, url: str, timeout: float) -> None:
        await self.page.goto(url, {"waitUntil": "networkidle0", "timeout": timeout})

    async def click(self, selector: str, timeout: float) -> None:
        expression = split_xpath(selector)
        if expression is not None:
            element = await self._first_xpath(expression)
            await element.click()
            return
        await self.page.waitForSelector(selector, {"timeout": timeout})
        await self.page.click(selector)

    async def type(self, selector: str, text: str, delay: float, focus_timeout: float) -> None:
        expression = split_xpath(selector)
        if expression is not None:
            element = await self._first_xpath(expression)
            await element.focus()
        else:
            # pyppeteer's focus() takes no timeout
            await self.page.waitForSelector(selector, {"timeout": focus_timeout})
            await self.page.focus(selector)
        await self.page.keyboard.type(text, {"delay": delay})

    async def wait_for(self, selector: str, timeout: float) -> None:
        expression = split_xpath(selector)
        if expression is not None:
            await self.page.waitForFunction(XPATH_VISIBLE_JS, {"timeout": timeout}, expression)
            return
        await self.page.waitForSelector(selector, {"visible": True, "timeout": timeout})

    async def screenshot(self, path: Path, full_page: bool = True) -> None:
        await self.page.screenshot({"path": str(path), "fullPage": full_page})

    async def extract(self, selector: str) -> str:
        expression = split_xpath(selector)
        if expression is not None:
            element = await self._first_xpath(expression)
            text = await self.page.evaluate(EXTRACT_TEXT_JS, element)
        else:
            text = await self.page.querySelectorEval(selector, EXTRACT_TEXT_JS)
        return "" if text is None else str(text)


class PuppeteerAdapter(EngineAdapter):
    """pyppeteer browser with an optional user-data dir.

    Without a profile dir pyppeteer creates and removes its own temp profile.
    """

    VARIANTS = ("chromium", "chrome")
    default_variant = "chromium"

    @property
    def name(self) -> str:
        return Platform.PUPPETEER.value

    async def detect(self) -> bool:
        try:
            import pyppeteer  # noqa: F401
            return True
        except ImportError:
            return False

    def resolve_variant(self, variant: str | None) -> tuple[str, Path | None]:
        requested = (variant or self.default_variant).strip().lower()
        if requested == "chrome":
            return "chromium", _resolve_chrome()
        if requested not in self.VARIANTS:
            log.warning("[puppeteer] Unknown browser type %r; using chromium", variant)
        return "chromium", None

    async def launch(
        self,
        variant: str | None = None,
        launch_options: dict[str, Any] | None = None,
        profile_path: Path | None = None,
    ) -> PageHandle:
        from pyppeteer import launch as pyppeteer_launch

        _, executable = self.resolve_variant(variant)
        opts: dict[str, Any] = {
            "headless": Config.HEADLESS,
            "args": list(Config.CHROMIUM_ARGS),
            # The HTTP server owns process signals and closes browsers itself
            "handleSIGINT": False,
            "handleSIGTERM": False,
            "handleSIGHUP": False,
        }
        if executable:
            opts["executablePath"] = str(executable)
        if profile_path:
            opts["userDataDir"] = str(profile_path)
        opts.update(launch_options or {})

        log.info("[puppeteer] Launching browser (profile: %s)", profile_path or "temporary")
        browser = await pyppeteer_launch(opts)
        try:
            pages = await browser.pages()
            page = pages[0] if pages else await browser.newPage()
            await page.bringToFront()
        except BaseException:
            try:
                await browser.close()
            except Exception:
                pass
            raise

        return PuppeteerPage(page, browser)

    async def _close(self, handle: PageHandle) -> None:
        if not isinstance(handle, PuppeteerPage):
            raise TypeError(f"Expected a PuppeteerPage, got {type(handle).__name__}")
        await handle.browser.close()


# ---------------------------------------------------------------------------
# Engine registry
# ---------------------------------------------------------------------------

ENGINES: dict[str, EngineAdapter] = {
    Platform.PLAYWRIGHT.value: PlaywrightAdapter(),
    Platform.PUPPETEER.value: PuppeteerAdapter(),
}


async def detect_available_engines(
    engines: dict[str, EngineAdapter] | None = None,
) -> dict[str, bool]:
    """Probe which engine libraries are importable."""
    engines = ENGINES if engines is None else engines
    return {name: await impl.detect() for name, impl in sorted(engines.items())}
