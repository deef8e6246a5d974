"""Data models for the browser task runner.

Task descriptors are a tagged union on ``type``. ``parse_task`` is the
boundary: it turns a raw caller dict into exactly one variant and never
raises, so an unrecognised or malformed task still occupies its slot in the
result list.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from config import Config


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Platform(str, Enum):
    """Supported browser-automation engines."""
    PLAYWRIGHT = "playwright"
    PUPPETEER = "puppeteer"

    @classmethod
    def parse(cls, value: Any) -> Platform | None:
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class TaskStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"
    SKIPPED_OPTIONAL_ERROR = "skipped_optional_error"


class ExecutionState(str, Enum):
    """Lifecycle of one batch execution."""
    IDLE = "IDLE"
    LAUNCHING = "LAUNCHING"
    RUNNING = "RUNNING"
    SAVING = "SAVING"
    CLOSING_RESOURCES = "CLOSING_RESOURCES"
    DONE = "DONE"


# ---------------------------------------------------------------------------
# Task descriptors
# ---------------------------------------------------------------------------

def _reject_bool(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("must be a number, not a boolean")
    return value


# Milliseconds. Numbers and numeric strings are accepted; booleans are not.
Millis = Annotated[float, BeforeValidator(_reject_bool), Field(ge=0)]


class _TaskBase(BaseModel):
    """Fields shared by every task.

    An explicit timeout of 0 is passed through and disables the engine's
    timeout, so the step can wait indefinitely. Omit the field or send null
    to get the default.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    optional: bool = False
    browser_type: str | None = None


class GotoTask(_TaskBase):
    type: Literal["goto"] = "goto"
    url: str = Field(min_length=1)
    timeout: Millis = Config.GOTO_TIMEOUT


class ScreenshotTask(_TaskBase):
    type: Literal["screenshot"] = "screenshot"
    path: str = Field(min_length=1)
    full_page: bool = True


class ExtractContentTask(_TaskBase):
    type: Literal["extract_content"] = "extract_content"
    selector: str = Field(default=Config.EXTRACT_SELECTOR, min_length=1)


class ClickTask(_TaskBase):
    type: Literal["click"] = "click"
    selector: str = Field(min_length=1)
    timeout: Millis = Config.CLICK_TIMEOUT


class TypeTask(_TaskBase):
    type: Literal["type"] = "type"
    selector: str = Field(min_length=1)
    text: str
    delay: Millis = Config.TYPE_CHAR_DELAY
    focus_timeout: Millis = Config.FOCUS_TIMEOUT
    post_type_delay: Millis = Config.POST_TYPE_DELAY


class WaitForSelectorTask(_TaskBase):
    type: Literal["wait_for_selector"] = "wait_for_selector"
    selector: str = Field(min_length=1)
    timeout: Millis = Config.WAIT_FOR_SELECTOR_TIMEOUT


class DelayTask(_TaskBase):
    type: Literal["delay"] = "delay"
    duration: Millis = Config.DEFAULT_DELAY


class UnknownTask(_TaskBase):
    """A task whose type is not in the dispatch table."""
    type: str = ""


class InvalidTask(_TaskBase):
    """A known task type whose fields failed validation."""
    type: str
    reason: str


KnownTask = Annotated[
    Union[
        GotoTask,
        ScreenshotTask,
        ExtractContentTask,
        ClickTask,
        TypeTask,
        WaitForSelectorTask,
        DelayTask,
    ],
    Field(discriminator="type"),
]

TaskDescriptor = Union[
    GotoTask,
    ScreenshotTask,
    ExtractContentTask,
    ClickTask,
    TypeTask,
    WaitForSelectorTask,
    DelayTask,
    UnknownTask,
    InvalidTask,
]

_known_adapter: TypeAdapter = TypeAdapter(KnownTask)

KNOWN_TASK_TYPES = frozenset({
    "goto", "screenshot", "extract_content", "click",
    "type", "wait_for_selector", "delay",
})


def _describe_validation_error(task_type: str, exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"] if p != task_type)
        if err["type"] == "missing":
            problems.append(f"requires '{loc}'")
        else:
            problems.append(f"'{loc}': {err['msg']}")
    return f"Task '{task_type}' " + "; ".join(problems)


def parse_task(raw: Any) -> TaskDescriptor:
    """Turn a raw caller dict into a task variant. Never raises."""
    if not isinstance(raw, dict):
        return InvalidTask(type="", reason=f"Task must be an object, got {type(raw).__name__}")

    raw_type = raw.get("type")
    task_type = raw_type.strip().lower() if isinstance(raw_type, str) else ""
    optional = raw.get("optional") is True

    if task_type not in KNOWN_TASK_TYPES:
        return UnknownTask(type=str(raw_type or ""), optional=optional)

    data = {k: v for k, v in raw.items() if v is not None}
    data["type"] = task_type
    try:
        return _known_adapter.validate_python(data)
    except ValidationError as e:
        return InvalidTask(
            type=task_type,
            optional=optional,
            reason=_describe_validation_error(task_type, e),
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class TaskResult(BaseModel):
    task: Any
    status: TaskStatus
    details: str
    content: str | None = None
    code: str | None = None


class ExecutionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    results: list[TaskResult] = Field(default_factory=list)
    session_id: str = Field(alias="sessionId")
    error: str | None = None

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TaskRequest(BaseModel):
    """Body of POST /tasks, after the route's presence checks."""
    model_config = ConfigDict(populate_by_name=True)

    platform: Platform
    tasks: list[Any] = Field(min_length=1)
    session_id: str | None = Field(default=None, alias="sessionId")


def ephemeral_session_id() -> str:
    return f"temp_session_{int(time.time() * 1000)}"
