"""Error types and engine-exception classification for the task runner.

Every error raised on purpose derives from TaskRunnerError and carries a
stable ``code`` plus the HTTP status it maps to when it reaches the route
layer. Exceptions thrown by the engines themselves are classified by
message pattern so logs and task results get a stable code too.
"""

from __future__ import annotations

from http import HTTPStatus


# ---------------------------------------------------------------------------
# Typed errors
# ---------------------------------------------------------------------------

class TaskRunnerError(Exception):
    code = "UNKNOWN"
    status = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(TaskRunnerError):
    """Missing or malformed request fields."""
    code = "VALIDATION_ERROR"
    status = HTTPStatus.BAD_REQUEST


class InvalidArgument(ValidationError):
    code = "INVALID_ARGUMENT"


class EngineLaunchError(TaskRunnerError):
    """The browser or its profile failed to start."""
    code = "ENGINE_LAUNCH_FAILED"


class TaskError(TaskRunnerError):
    """A single task failed. Recorded per task; the batch continues."""
    code = "TASK_FAILED"


class OptionalTaskError(TaskError):
    """A task marked optional failed. Recorded as skipped."""
    code = "OPTIONAL_TASK_FAILED"


class UnknownTaskType(TaskError):
    code = "UNKNOWN_TASK_TYPE"


class ResourceIOError(TaskRunnerError):
    """A profile or screenshot filesystem operation failed."""
    code = "RESOURCE_IO_ERROR"


# ---------------------------------------------------------------------------
# Engine exception classification
# ---------------------------------------------------------------------------

_PATTERN_MAP: list[tuple[str, str]] = [
    ("TimeoutError", "TIMEOUT"),
    ("timeout", "TIMEOUT"),
    ("not found for xpath", "ELEMENT_NOT_FOUND"),
    ("no node found", "ELEMENT_NOT_FOUND"),
    ("failed to find element", "ELEMENT_NOT_FOUND"),
    ("not visible", "ELEMENT_NOT_VISIBLE"),
    ("detached", "ELEMENT_DETACHED"),
    ("Target closed", "TARGET_CLOSED"),
    ("has been closed", "TARGET_CLOSED"),
    ("net::ERR_", "NETWORK_ERROR"),
    ("Execution context was destroyed", "CONTEXT_DESTROYED"),
]


def classify_error(error: BaseException) -> str:
    """Map an exception to a stable error code."""
    if isinstance(error, TaskRunnerError):
        return error.code
    text = f"{type(error).__name__}: {error}".lower()
    for pattern, code in _PATTERN_MAP:
        if pattern.lower() in text:
            return code
    return "UNKNOWN"


def error_message(error: BaseException) -> str:
    """Human-readable message for an exception; never a stack trace."""
    msg = str(error).strip()
    if not msg:
        return type(error).__name__
    # Playwright appends a multi-line call log after the first line
    return msg.splitlines()[0]
