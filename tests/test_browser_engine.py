from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

import browser_engine
from browser_engine import (
    EXTRACT_TEXT_JS,
    XPATH_VISIBLE_JS,
    PlaywrightAdapter,
    PlaywrightPage,
    PuppeteerAdapter,
    PuppeteerPage,
    detect_available_engines,
    split_xpath,
)
from config import Config, find_chrome_executable
from errors import TaskError

from conftest import FakeAdapter


def test_split_xpath():
    assert split_xpath("xpath=//div[@id='a']") == "//div[@id='a']"
    assert split_xpath("#a") is None
    assert split_xpath("div >> xpath=//a") is None


# ---------------------------------------------------------------------------
# Variant resolution
# ---------------------------------------------------------------------------

def test_playwright_chrome_uses_installed_executable(monkeypatch):
    chrome = Path("/opt/google/chrome/chrome")
    monkeypatch.setattr(browser_engine, "find_chrome_executable", lambda: chrome)
    adapter = PlaywrightAdapter()

    assert adapter.resolve_variant("chrome") == ("chromium", chrome)
    assert adapter.resolve_variant(None) == ("chromium", chrome)


def test_playwright_chrome_falls_back_to_bundled_chromium(monkeypatch):
    monkeypatch.setattr(browser_engine, "find_chrome_executable", lambda: None)

    assert PlaywrightAdapter().resolve_variant("Chrome") == ("chromium", None)


@pytest.mark.parametrize("variant, family", [
    ("firefox", "firefox"),
    ("webkit", "webkit"),
    ("chromium", "chromium"),
    ("netscape", "chromium"),
])
def test_playwright_families(variant, family):
    assert PlaywrightAdapter().resolve_variant(variant) == (family, None)


def test_puppeteer_is_chromium_only(monkeypatch):
    monkeypatch.setattr(browser_engine, "find_chrome_executable", lambda: None)
    adapter = PuppeteerAdapter()

    assert adapter.resolve_variant(None) == ("chromium", None)
    assert adapter.resolve_variant("firefox") == ("chromium", None)
    assert adapter.resolve_variant("chrome") == ("chromium", None)


def test_configured_chrome_path_is_searched_first(tmp_path, monkeypatch):
    chrome = tmp_path / "chrome"
    chrome.write_text("")
    monkeypatch.setattr(Config, "CHROME_EXECUTABLE", str(chrome))

    assert find_chrome_executable() == chrome


async def test_detect_available_engines_reports_each_engine():
    engines = {"puppeteer": FakeAdapter("puppeteer"), "playwright": FakeAdapter("playwright")}

    assert await detect_available_engines(engines) == {"playwright": True, "puppeteer": True}


# ---------------------------------------------------------------------------
# Playwright pages
# ---------------------------------------------------------------------------

def _playwright_page() -> tuple[PlaywrightPage, AsyncMock]:
    page = AsyncMock()
    return PlaywrightPage(page, AsyncMock(), AsyncMock()), page


async def test_playwright_page_operations():
    handle, page = _playwright_page()
    page.eval_on_selector.return_value = "Hello"

    await handle.goto("https://example.com", timeout=100)
    await handle.click("xpath=//button", timeout=200)
    await handle.type("#q", "abc", delay=5, focus_timeout=300)
    await handle.wait_for("#done", timeout=400)
    await handle.screenshot(Path("/tmp/shot.png"), full_page=False)

    page.goto.assert_awaited_once_with("https://example.com", wait_until="networkidle", timeout=100)
    page.click.assert_awaited_once_with("xpath=//button", timeout=200)
    page.focus.assert_awaited_once_with("#q", timeout=300)
    page.keyboard.type.assert_awaited_once_with("abc", delay=5)
    page.wait_for_selector.assert_awaited_once_with("#done", state="visible", timeout=400)
    page.screenshot.assert_awaited_once_with(path="/tmp/shot.png", full_page=False)
    assert await handle.extract("h1") == "Hello"
    page.eval_on_selector.assert_awaited_with("h1", EXTRACT_TEXT_JS)


async def test_playwright_extract_of_empty_element_is_empty_string():
    handle, page = _playwright_page()
    page.eval_on_selector.return_value = None

    assert await handle.extract("body") == ""


def _fake_async_playwright(monkeypatch, context=None, error=None):
    pw = MagicMock()
    pw.stop = AsyncMock()
    family = MagicMock()
    family.launch_persistent_context = AsyncMock(return_value=context, side_effect=error)
    pw.chromium = family
    starter = MagicMock()
    starter.start = AsyncMock(return_value=pw)
    monkeypatch.setattr("playwright.async_api.async_playwright", lambda: starter)
    monkeypatch.setattr(browser_engine, "find_chrome_executable", lambda: None)
    return pw, family


async def test_playwright_launch_without_profile_uses_temp_context(monkeypatch):
    page = AsyncMock()
    context = MagicMock(pages=[page])
    context.close = AsyncMock()
    pw, family = _fake_async_playwright(monkeypatch, context=context)

    handle = await PlaywrightAdapter().launch("chromium", {}, None)

    assert isinstance(handle, PlaywrightPage)
    assert handle.page is page
    args, kwargs = family.launch_persistent_context.call_args
    assert args == ("",)
    assert "--no-sandbox" in kwargs["args"]
    page.bring_to_front.assert_awaited_once()


async def test_playwright_launch_passes_profile_dir(monkeypatch, tmp_path):
    context = MagicMock(pages=[AsyncMock()])
    _, family = _fake_async_playwright(monkeypatch, context=context)

    await PlaywrightAdapter().launch(None, {"headless": False}, tmp_path / "p")

    args, kwargs = family.launch_persistent_context.call_args
    assert args == (str(tmp_path / "p"),)
    assert kwargs["headless"] is False


async def test_playwright_launch_failure_stops_driver(monkeypatch):
    pw, _ = _fake_async_playwright(monkeypatch, error=RuntimeError("Executable doesn't exist"))

    with pytest.raises(RuntimeError):
        await PlaywrightAdapter().launch("chromium", {}, None)
    pw.stop.assert_awaited_once()


async def test_playwright_teardown_stops_driver_even_if_context_close_fails():
    handle, _ = _playwright_page()
    handle.context.close.side_effect = RuntimeError("Target closed")

    await PlaywrightAdapter().teardown(handle)

    assert handle.closed is True
    handle.pw.stop.assert_awaited_once()


# ---------------------------------------------------------------------------
# Puppeteer pages
# ---------------------------------------------------------------------------

def _puppeteer_page() -> tuple[PuppeteerPage, AsyncMock]:
    page = AsyncMock()
    return PuppeteerPage(page, AsyncMock()), page


async def test_puppeteer_css_operations_wait_before_acting():
    handle, page = _puppeteer_page()
    page.querySelectorEval.return_value = "Title"

    await handle.goto("https://example.com", timeout=100)
    await handle.click("#go", timeout=200)
    await handle.type("#q", "hi", delay=7, focus_timeout=300)
    await handle.wait_for("#done", timeout=400)
    await handle.screenshot(Path("/tmp/s.png"), full_page=True)

    page.goto.assert_awaited_once_with(
        "https://example.com", {"waitUntil": "networkidle0", "timeout": 100}
    )
    page.click.assert_awaited_once_with("#go")
    page.focus.assert_awaited_once_with("#q")
    page.keyboard.type.assert_awaited_once_with("hi", {"delay": 7})
    page.waitForSelector.assert_any_await("#go", {"timeout": 200})
    page.waitForSelector.assert_any_await("#q", {"timeout": 300})
    page.waitForSelector.assert_any_await("#done", {"visible": True, "timeout": 400})
    page.screenshot.assert_awaited_once_with({"path": "/tmp/s.png", "fullPage": True})
    assert await handle.extract("h1") == "Title"
    page.querySelectorEval.assert_awaited_with("h1", EXTRACT_TEXT_JS)


async def test_puppeteer_xpath_click_and_type_use_first_match():
    handle, page = _puppeteer_page()
    first, second = AsyncMock(), AsyncMock()
    page.xpath.return_value = [first, second]

    await handle.click("xpath=//button", timeout=100)
    await handle.type("xpath=//input", "x", delay=0, focus_timeout=100)

    page.xpath.assert_any_await("//button")
    first.click.assert_awaited_once()
    first.focus.assert_awaited_once()
    second.click.assert_not_awaited()
    page.click.assert_not_awaited()


async def test_puppeteer_xpath_without_match_raises():
    handle, page = _puppeteer_page()
    page.xpath.return_value = []

    with pytest.raises(TaskError) as excinfo:
        await handle.click("xpath=//nothing", timeout=100)

    assert excinfo.value.code == "ELEMENT_NOT_FOUND"
    assert "//nothing" in excinfo.value.message


async def test_puppeteer_xpath_wait_checks_visibility():
    handle, page = _puppeteer_page()

    await handle.wait_for("xpath=//div[@class='ready']", timeout=250)

    page.waitForFunction.assert_awaited_once_with(
        XPATH_VISIBLE_JS, {"timeout": 250}, "//div[@class='ready']"
    )
    page.waitForSelector.assert_not_awaited()


async def test_puppeteer_xpath_extract_evaluates_element():
    handle, page = _puppeteer_page()
    element = AsyncMock()
    page.xpath.return_value = [element]
    page.evaluate.return_value = "Body text"

    assert await handle.extract("xpath=//main") == "Body text"
    page.evaluate.assert_awaited_once_with(EXTRACT_TEXT_JS, element)


async def test_teardown_is_idempotent_and_never_raises():
    adapter = PuppeteerAdapter()
    handle, _ = _puppeteer_page()
    handle.browser.close.side_effect = RuntimeError("Target closed")

    await adapter.teardown(handle)
    await adapter.teardown(handle)
    await adapter.teardown(None)

    handle.browser.close.assert_awaited_once()
    assert handle.closed is True


async def test_close_rejects_a_foreign_handle():
    foreign, _ = _puppeteer_page()

    with pytest.raises(TypeError):
        await PlaywrightAdapter()._close(foreign)
    with pytest.raises(TypeError):
        await PuppeteerAdapter()._close(_playwright_page()[0])


async def test_teardown_of_a_foreign_handle_does_not_raise():
    foreign, _ = _puppeteer_page()

    await PlaywrightAdapter().teardown(foreign)

    assert foreign.closed is True
    foreign.browser.close.assert_not_awaited()
