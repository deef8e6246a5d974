"""Shared fixtures: fake engines that never start a real browser."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "scripts"))

from browser_engine import EngineAdapter, PageHandle  # noqa: E402
from profile_store import ProfileStore  # noqa: E402
from screenshots import ScreenshotStore  # noqa: E402
from task_executor import TaskExecutor  # noqa: E402


class FakePage(PageHandle):
    engine = "fake"

    def __init__(self, missing: set[str] | None = None):
        super().__init__(page=None)
        self.missing = missing or set()
        self.calls: list[tuple[Any, ...]] = []

    def _check(self, selector: str, timeout: float) -> None:
        if selector in self.missing:
            raise TimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    async def goto(self, url: str, timeout: float) -> None:
        self.calls.append(("goto", url, timeout))

    async def click(self, selector: str, timeout: float) -> None:
        self.calls.append(("click", selector, timeout))
        self._check(selector, timeout)

    async def type(self, selector: str, text: str, delay: float, focus_timeout: float) -> None:
        self.calls.append(("type", selector, text, delay, focus_timeout))
        self._check(selector, focus_timeout)

    async def wait_for(self, selector: str, timeout: float) -> None:
        self.calls.append(("wait_for", selector, timeout))
        self._check(selector, timeout)

    async def screenshot(self, path: Path, full_page: bool = True) -> None:
        self.calls.append(("screenshot", path, full_page))
        Path(path).write_bytes(b"\x89PNG fake")

    async def extract(self, selector: str) -> str:
        self.calls.append(("extract", selector))
        self._check(selector, 0)
        return f"text of {selector}"


class FakeAdapter(EngineAdapter):
    """Counts launches and teardowns; optionally fails to launch."""

    def __init__(self, name: str, fail_launch: bool = False, missing: set[str] | None = None):
        self._name = name
        self.fail_launch = fail_launch
        self.missing = missing or set()
        self.launches = 0
        self.teardown_calls = 0
        self.closed = 0
        self.persisted: list[str] = []
        self.launch_args: list[tuple[Any, ...]] = []
        self.page: FakePage | None = None

    @property
    def name(self) -> str:
        return self._name

    async def detect(self) -> bool:
        return True

    def resolve_variant(self, variant: str | None) -> tuple[str, Path | None]:
        return (variant or "chromium"), None

    async def launch(self, variant=None, launch_options=None, profile_path=None) -> PageHandle:
        self.launches += 1
        self.launch_args.append((variant, launch_options, profile_path))
        if self.fail_launch:
            raise RuntimeError("Executable doesn't exist at /nowhere/chrome")
        self.page = FakePage(self.missing)
        return self.page

    async def teardown(self, handle: PageHandle | None) -> None:
        self.teardown_calls += 1
        await super().teardown(handle)

    async def _close(self, handle: PageHandle) -> None:
        self.closed += 1

    async def persist(self, handle: PageHandle | None, session_id: str) -> None:
        self.persisted.append(session_id)
        await super().persist(handle, session_id)


@pytest.fixture
def profiles(tmp_path: Path) -> ProfileStore:
    return ProfileStore(tmp_path / "sessions_data")


@pytest.fixture
def screenshots(tmp_path: Path) -> ScreenshotStore:
    return ScreenshotStore(tmp_path / "screenshots")


@pytest.fixture
def engines() -> dict[str, FakeAdapter]:
    return {
        "playwright": FakeAdapter("playwright", missing={"#missing"}),
        "puppeteer": FakeAdapter("puppeteer", missing={"#missing"}),
    }


@pytest.fixture
def executor(profiles, screenshots, engines) -> TaskExecutor:
    return TaskExecutor(profiles, screenshots, engines=engines)
