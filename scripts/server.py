#!/usr/bin/env python3
"""
HTTP server for the browser task runner.

Each POST /tasks launches a browser, runs the submitted batch in order and
closes the browser again. Named sessions keep their profile directory on
disk between requests.

Usage:
    python scripts/server.py [--host 127.0.0.1] [--port 3000]

Routes:
    GET    /                                  liveness
    POST   /tasks                             {platform, tasks, sessionId?}
    DELETE /sessions/screenshots              clear the screenshots dir
    DELETE /sessions/{platform}/{sessionId}   delete a stored profile
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import secrets
import sys
from http import HTTPStatus

# Ensure scripts/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from aiohttp import web
from pydantic import ValidationError as PydanticValidationError

from browser_engine import detect_available_engines
from config import Config, resolve_sessions_root
from errors import TaskRunnerError, ValidationError
from models import Platform, TaskRequest
from profile_store import ProfileStore
from screenshots import ScreenshotStore
from task_executor import TaskExecutor, close_all_open

log = logging.getLogger(__name__)

EXECUTOR_KEY = web.AppKey("executor", TaskExecutor)
PROFILES_KEY = web.AppKey("profiles", ProfileStore)
SCREENSHOTS_KEY = web.AppKey("screenshots", ScreenshotStore)


def _error_envelope(message: str, status: int) -> web.Response:
    return web.json_response({"error": {"message": message, "status": status}}, status=status)


# ---------------------------------------------------------------------------
# Middlewares
# ---------------------------------------------------------------------------

@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Turn every failure into a JSON body. Stack traces stay in the log."""
    try:
        return await handler(request)
    except TaskRunnerError as e:
        log.warning("%s %s rejected: %s", request.method, request.path, e.message)
        return web.json_response(
            {"success": False, "message": e.message, "error": e.code},
            status=e.status,
        )
    except web.HTTPException as e:
        if e.status < 400:
            raise
        if e.status == HTTPStatus.NOT_FOUND:
            log.warning("Route not found: %s %s", request.method, request.path)
            return _error_envelope("Route not found.", e.status)
        return _error_envelope(e.reason, e.status)
    except Exception as e:
        log.exception("Unhandled error on %s %s", request.method, request.path)
        status = getattr(e, "status", None)
        if not isinstance(status, int) or not 400 <= status < 600:
            status = HTTPStatus.INTERNAL_SERVER_ERROR
        return _error_envelope(str(e) or "Internal server error.", status)


@web.middleware
async def access_log_middleware(request: web.Request, handler) -> web.StreamResponse:
    log.info("Request: %s %s (from %s)", request.method, request.path_qs, request.remote)
    return await handler(request)


@web.middleware
async def auth_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Bearer token auth middleware.

    Skips auth for the liveness route and when no token is configured.
    """
    if request.path == "/":
        return await handler(request)

    token = Config.AUTH_TOKEN
    if not token:
        return await handler(request)

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return web.json_response(
            {"success": False, "message": "Missing or malformed Authorization header"},
            status=HTTPStatus.UNAUTHORIZED,
        )

    provided = auth_header[7:]  # strip "Bearer "
    if not secrets.compare_digest(provided, token):
        return web.json_response(
            {"success": False, "message": "Invalid token"},
            status=HTTPStatus.FORBIDDEN,
        )

    return await handler(request)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def handle_root(request: web.Request) -> web.Response:
    executor = request.app[EXECUTOR_KEY]
    return web.json_response({
        "status": "ok",
        "message": "Browser task API is online",
        "engines": await detect_available_engines(executor.engines),
    })


async def _read_task_request(request: web.Request) -> TaskRequest:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Invalid JSON: {e}") from e

    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    tasks = body.get("tasks")
    if not body.get("platform") or not isinstance(tasks, list) or not tasks:
        raise ValidationError("Platform and a non-empty list of tasks are required.")
    if Platform.parse(body["platform"]) is None:
        raise ValidationError(
            f"Invalid platform '{body['platform']}'. Use one of: "
            + ", ".join(p.value for p in Platform)
        )

    try:
        return TaskRequest.model_validate({
            "platform": body["platform"].strip().lower(),
            "tasks": tasks,
            "sessionId": body.get("sessionId") or None,
        })
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid request: {problems}") from e


async def handle_tasks(request: web.Request) -> web.Response:
    task_request = await _read_task_request(request)
    executor = request.app[EXECUTOR_KEY]

    result = await executor.run(
        task_request.platform.value,
        task_request.tasks,
        task_request.session_id,
    )

    if result.success:
        log.info("Batch finished for session %s (%d result(s))",
                 result.session_id, len(result.results))
        return web.json_response(result.to_response())
    log.error("Batch failed for session %s: %s", result.session_id, result.error)
    return web.json_response(result.to_response(), status=HTTPStatus.INTERNAL_SERVER_ERROR)


async def handle_delete_session(request: web.Request) -> web.Response:
    raw_platform = request.match_info.get("platform", "")
    session_id = request.match_info.get("session_id", "")

    platform = Platform.parse(raw_platform)
    if platform is None:
        raise ValidationError(
            f"Invalid platform '{raw_platform}'. Use one of: "
            + ", ".join(p.value for p in Platform)
        )
    if not session_id:
        raise ValidationError("Platform and sessionId are required.")

    profiles = request.app[PROFILES_KEY]
    if profiles.delete(platform.value, session_id):
        return web.json_response({
            "success": True,
            "message": f"Delete completed for session {platform.value}-{session_id}.",
        })
    return web.json_response(
        {
            "success": False,
            "message": f"Error deleting session {platform.value}-{session_id}. Check the server logs.",
        },
        status=HTTPStatus.INTERNAL_SERVER_ERROR,
    )


async def handle_missing_session_id(request: web.Request) -> web.Response:
    raise ValidationError("Platform and sessionId are required.")


async def handle_clear_screenshots(request: web.Request) -> web.Response:
    result = request.app[SCREENSHOTS_KEY].clear_all()
    status = HTTPStatus.OK if result["success"] else HTTPStatus.INTERNAL_SERVER_ERROR
    return web.json_response(result, status=status)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

async def cleanup(app: web.Application) -> None:
    """Close any browser still open when the server shuts down."""
    await close_all_open()


def create_app(
    executor: TaskExecutor | None = None,
    profiles: ProfileStore | None = None,
    screenshots: ScreenshotStore | None = None,
) -> web.Application:
    if executor is None:
        profiles = profiles or ProfileStore(resolve_sessions_root())
        screenshots = screenshots or ScreenshotStore()
        executor = TaskExecutor(profiles, screenshots)

    app = web.Application(middlewares=[error_middleware, access_log_middleware, auth_middleware])
    app[EXECUTOR_KEY] = executor
    app[PROFILES_KEY] = profiles or executor.profiles
    app[SCREENSHOTS_KEY] = screenshots or executor.screenshots

    app.router.add_get("/", handle_root)
    app.router.add_post("/tasks", handle_tasks)
    # Registered before the dynamic session routes so it is matched first
    app.router.add_delete("/sessions/screenshots", handle_clear_screenshots)
    app.router.add_delete("/sessions/{platform}/{session_id}", handle_delete_session)
    app.router.add_delete("/sessions/{platform}", handle_missing_session_id)
    app.on_cleanup.append(cleanup)
    return app


def main():
    parser = argparse.ArgumentParser(description="browser task runner HTTP server")
    parser.add_argument("--port", type=int, default=Config.DEFAULT_PORT,
                        help=f"Port (default: {Config.DEFAULT_PORT})")
    parser.add_argument("--host", default=Config.DEFAULT_HOST,
                        help=f"Host (default: {Config.DEFAULT_HOST})")
    args = parser.parse_args()

    logging.basicConfig(
        level=Config.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    Config.ensure_dirs()
    sessions_root = resolve_sessions_root()
    log.info("Sessions root: %s", sessions_root)

    app = create_app(profiles=ProfileStore(sessions_root))

    auth_status = "enabled (token set)" if Config.AUTH_TOKEN else "disabled (no BROWSER_TASKS_TOKEN)"
    log.info("browser task server starting on %s:%s [auth: %s]", args.host, args.port, auth_status)
    web.run_app(app, host=args.host, port=args.port, print=None)


if __name__ == "__main__":
    main()
