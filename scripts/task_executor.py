"""Sequential task execution against one browser session.

A batch runs through:
  IDLE → LAUNCHING → RUNNING → SAVING → CLOSING_RESOURCES → DONE
A failed launch skips straight to CLOSING_RESOURCES. The browser is held by
an async context manager, so teardown happens on every exit path, including
cancellation.

Task failures never abort the batch: each task gets exactly one TaskResult,
in input order. ExecutionResult.success reports whether the engine ran to
completion, not whether every task succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from browser_engine import ENGINES, EngineAdapter, PageHandle
from errors import (
    EngineLaunchError,
    OptionalTaskError,
    TaskError,
    TaskRunnerError,
    UnknownTaskType,
    classify_error,
    error_message,
)
from models import (
    ClickTask,
    DelayTask,
    ExecutionResult,
    ExecutionState,
    ExtractContentTask,
    GotoTask,
    InvalidTask,
    Platform,
    ScreenshotTask,
    TaskDescriptor,
    TaskResult,
    TaskStatus,
    TypeTask,
    UnknownTask,
    WaitForSelectorTask,
    ephemeral_session_id,
    parse_task,
)
from profile_store import ProfileStore
from screenshots import ScreenshotStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Batch state machine
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[ExecutionState, list[ExecutionState]] = {
    ExecutionState.IDLE: [ExecutionState.LAUNCHING],
    ExecutionState.LAUNCHING: [ExecutionState.RUNNING, ExecutionState.CLOSING_RESOURCES],
    ExecutionState.RUNNING: [ExecutionState.SAVING, ExecutionState.CLOSING_RESOURCES],
    ExecutionState.SAVING: [ExecutionState.CLOSING_RESOURCES],
    ExecutionState.CLOSING_RESOURCES: [ExecutionState.DONE],
    ExecutionState.DONE: [],
}


class BatchRun:
    """State and accumulated results of one execution."""

    def __init__(self, platform: str, session_id: str, ephemeral: bool):
        self.platform = platform
        self.session_id = session_id
        self.ephemeral = ephemeral
        self.state = ExecutionState.IDLE
        self.history: list[ExecutionState] = [self.state]
        self.results: list[TaskResult] = []
        self.started = time.monotonic()

    def transition(self, to: ExecutionState) -> None:
        if to not in VALID_TRANSITIONS[self.state]:
            raise TaskRunnerError(
                f"Invalid transition: {self.state.value} → {to.value}",
                code="INVALID_TRANSITION",
            )
        log.debug("[%s:%s] %s → %s", self.platform, self.session_id,
                  self.state.value, to.value)
        self.state = to
        self.history.append(to)

    def record(
        self,
        raw: Any,
        status: TaskStatus,
        details: str,
        content: str | None = None,
        code: str | None = None,
    ) -> None:
        self.results.append(TaskResult(
            task=raw, status=status, details=details, content=content, code=code,
        ))

    def finish(self, error: str | None = None) -> ExecutionResult:
        elapsed = time.monotonic() - self.started
        if error is None:
            log.info("[%s] Finished %d task(s) for session %s in %.1fs",
                     self.platform, len(self.results), self.session_id, elapsed)
        return ExecutionResult(
            success=error is None,
            results=self.results,
            session_id=self.session_id,
            error=error,
        )


# ---------------------------------------------------------------------------
# Open browser registry (closed on process shutdown)
# ---------------------------------------------------------------------------

_open_handles: dict[int, tuple[EngineAdapter, PageHandle]] = {}


def open_handle_count() -> int:
    return len(_open_handles)


async def close_all_open() -> int:
    """Tear down every browser still held by a running execution."""
    pending = list(_open_handles.values())
    _open_handles.clear()
    for adapter, handle in pending:
        await adapter.teardown(handle)
    if pending:
        log.info("Closed %d open browser(s) on shutdown", len(pending))
    return len(pending)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

TaskHandler = Callable[[PageHandle, Any], Awaitable[tuple[str, str | None]]]


class TaskExecutor:
    """Runs task batches. One instance serves every request."""

    def __init__(
        self,
        profiles: ProfileStore,
        screenshots: ScreenshotStore,
        engines: dict[str, EngineAdapter] | None = None,
    ):
        self.profiles = profiles
        self.screenshots = screenshots
        self.engines = ENGINES if engines is None else engines
        self._handlers: dict[type, TaskHandler] = {
            GotoTask: self._goto,
            ScreenshotTask: self._screenshot,
            ExtractContentTask: self._extract_content,
            ClickTask: self._click,
            TypeTask: self._type,
            WaitForSelectorTask: self._wait_for_selector,
            DelayTask: self._delay,
        }

    async def run(
        self,
        platform: str,
        tasks: list[Any],
        session_id: str | None = None,
    ) -> ExecutionResult:
        """Execute a batch in order and return its aggregated result."""
        engine = Platform.parse(platform)
        run = BatchRun(
            platform=engine.value if engine else str(platform),
            session_id=session_id or ephemeral_session_id(),
            ephemeral=not session_id,
        )
        log.info("[%s] Received %d task(s) for session %s%s", run.platform, len(tasks),
                 run.session_id, " (ephemeral)" if run.ephemeral else "")

        adapter = self.engines.get(engine.value) if engine else None
        if adapter is None:
            log.error("Unknown platform: %s", platform)
            return run.finish(error=f"Unknown platform: {platform}")

        parsed = [parse_task(raw) for raw in tasks]
        variant = next((t.browser_type for t in parsed if t.browser_type), None)

        try:
            async with self._browser(run, adapter, variant) as page:
                run.transition(ExecutionState.RUNNING)
                for raw, task in zip(tasks, parsed):
                    await self._run_task(run, page, raw, task)

                if not run.ephemeral:
                    run.transition(ExecutionState.SAVING)
                    try:
                        await adapter.persist(page, run.session_id)
                    except Exception as e:
                        log.warning("[%s] Saving session %s failed: %s",
                                    run.platform, run.session_id, e)
        except EngineLaunchError as e:
            log.error("[%s] %s", run.platform, e.message)
            return run.finish(error=e.message)
        except Exception as e:
            log.exception("[%s] Execution crashed for session %s", run.platform, run.session_id)
            return run.finish(error=error_message(e))
        finally:
            run.transition(ExecutionState.DONE)

        return run.finish()

    # -- Browser scope ----------------------------------------------------

    @asynccontextmanager
    async def _browser(
        self,
        run: BatchRun,
        adapter: EngineAdapter,
        variant: str | None,
    ) -> AsyncIterator[PageHandle]:
        """Launch the engine for a run and always tear it down afterwards."""
        handle: PageHandle | None = None
        run.transition(ExecutionState.LAUNCHING)
        try:
            profile_path = self._profile_for(run)
            try:
                handle = await adapter.launch(variant, {}, profile_path)
            except Exception as e:
                raise EngineLaunchError(f"Browser launch failed: {error_message(e)}") from e
            _open_handles[id(handle)] = (adapter, handle)
            log.info("[%s] Browser ready for session %s", run.platform, run.session_id)
            yield handle
        finally:
            run.transition(ExecutionState.CLOSING_RESOURCES)
            if handle is not None:
                _open_handles.pop(id(handle), None)
            log.info("[%s] Closing browser for session %s", run.platform, run.session_id)
            await adapter.teardown(handle)

    def _profile_for(self, run: BatchRun) -> Path | None:
        if run.ephemeral:
            return None
        if not self.profiles.ensure_exists(run.platform, run.session_id):
            raise EngineLaunchError(
                f"Could not create profile directory for session {run.session_id}"
            )
        return self.profiles.resolve(run.platform, run.session_id)

    # -- Per-task dispatch ------------------------------------------------

    async def _run_task(
        self,
        run: BatchRun,
        page: PageHandle,
        raw: Any,
        task: TaskDescriptor,
    ) -> None:
        log.info("[%s] Running task %r for session %s", run.platform, task.type, run.session_id)
        try:
            details, content = await self._dispatch(page, task)
        except UnknownTaskType as e:
            log.warning("[%s] %s", run.platform, e.message)
            run.record(raw, TaskStatus.SKIPPED, e.message)
            return
        except Exception as e:
            message = error_message(e)
            code = classify_error(e)
            if task.optional:
                failure: TaskError = OptionalTaskError(message, code=code)
                log.warning("[%s] Optional task %r failed: %s. Continuing.",
                            run.platform, task.type, message)
                run.record(raw, TaskStatus.SKIPPED_OPTIONAL_ERROR,
                           f"Optional task failed: {failure.message}", code=failure.code)
            else:
                failure = TaskError(message, code=code)
                log.error("[%s] Task %r failed: %s", run.platform, task.type, message)
                run.record(raw, TaskStatus.ERROR, failure.message, code=failure.code)
            return
        run.record(raw, TaskStatus.SUCCESS, details, content=content)

    async def _dispatch(self, page: PageHandle, task: TaskDescriptor) -> tuple[str, str | None]:
        if isinstance(task, UnknownTask):
            raise UnknownTaskType(f"Unknown task type: {task.type}")
        if isinstance(task, InvalidTask):
            raise TaskError(task.reason, code="INVALID_TASK")
        return await self._handlers[type(task)](page, task)

    # -- Handlers ---------------------------------------------------------

    async def _goto(self, page: PageHandle, task: GotoTask) -> tuple[str, str | None]:
        await page.goto(task.url, timeout=task.timeout)
        return f"Navigated to {task.url}", None

    async def _screenshot(self, page: PageHandle, task: ScreenshotTask) -> tuple[str, str | None]:
        path = self.screenshots.prepare(task.path)
        await page.screenshot(path, full_page=task.full_page)
        return f"Screenshot saved to {path}", None

    async def _extract_content(
        self, page: PageHandle, task: ExtractContentTask
    ) -> tuple[str, str | None]:
        content = await page.extract(task.selector)
        return f"Extracted content from selector: {task.selector}", content

    async def _click(self, page: PageHandle, task: ClickTask) -> tuple[str, str | None]:
        await page.click(task.selector, timeout=task.timeout)
        return f"Clicked element: {task.selector}", None

    async def _type(self, page: PageHandle, task: TypeTask) -> tuple[str, str | None]:
        await page.type(task.selector, task.text, delay=task.delay,
                        focus_timeout=task.focus_timeout)
        if task.post_type_delay > 0:
            await asyncio.sleep(task.post_type_delay / 1000)
        return (
            f"Typed {len(task.text)} char(s) into {task.selector} "
            f"(delay {task.delay:g}ms per char, settled {task.post_type_delay:g}ms)",
            None,
        )

    async def _wait_for_selector(
        self, page: PageHandle, task: WaitForSelectorTask
    ) -> tuple[str, str | None]:
        await page.wait_for(task.selector, timeout=task.timeout)
        return f"Element visible: {task.selector}", None

    async def _delay(self, page: PageHandle, task: DelayTask) -> tuple[str, str | None]:
        await asyncio.sleep(task.duration / 1000)
        return f"Waited {task.duration:g}ms", None
