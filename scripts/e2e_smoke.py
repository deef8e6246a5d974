#!/usr/bin/env python3
"""Live smoke run against a running browser task server.

Sends real batches to both engines against example.com, prints a report
and exits non-zero if any check failed. Start the server first:

    python scripts/server.py --port 3000
    python scripts/e2e_smoke.py
"""
import asyncio
import os
import sys
import time
import traceback

import aiohttp

BASE = os.getenv("BROWSER_TASKS_URL", "http://127.0.0.1:3000")
TOKEN = os.getenv("BROWSER_TASKS_TOKEN", "")
TIMEOUT = aiohttp.ClientTimeout(total=180)
results: list[dict] = []


def log(msg: str):
    print(f"[{time.strftime('%H:%M:%S')}] {msg}", flush=True)


def _headers() -> dict:
    if TOKEN:
        return {"Authorization": f"Bearer {TOKEN}"}
    return {}


async def run_tasks(session: aiohttp.ClientSession, payload: dict) -> tuple[int, dict]:
    async with session.post(f"{BASE}/tasks", json=payload, timeout=TIMEOUT,
                            headers=_headers()) as resp:
        return resp.status, await resp.json()


async def delete(session: aiohttp.ClientSession, path: str) -> tuple[int, dict]:
    async with session.delete(f"{BASE}{path}", timeout=TIMEOUT, headers=_headers()) as resp:
        return resp.status, await resp.json()


def record(name: str, passed: bool, detail: str = ""):
    status = "PASS" if passed else "FAIL"
    results.append({"name": name, "passed": passed, "detail": detail})
    log(f"  [{status}] {name}" + (f": {detail}" if detail else ""))


def statuses(body: dict) -> list[str]:
    return [r.get("status", "?") for r in body.get("results", [])]


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

async def check_root(s):
    log("--- Liveness ---")
    async with s.get(f"{BASE}/", timeout=TIMEOUT) as resp:
        body = await resp.json()
    record("root", body.get("status") == "ok", f"engines={body.get('engines')}")
    return body.get("engines", {})


async def check_batch(s, platform: str):
    log(f"--- {platform}: example.com batch ---")
    code, body = await run_tasks(s, {
        "platform": platform,
        "tasks": [
            {"type": "goto", "url": "https://example.com"},
            {"type": "wait_for_selector", "selector": "h1"},
            {"type": "extract_content", "selector": "h1"},
            {"type": "extract_content", "selector": "xpath=//p[1]"},
            {"type": "click", "selector": "#does-not-exist", "timeout": 1000, "optional": True},
            {"type": "screenshot", "path": f"smoke-{platform}.png"},
            {"type": "delay", "duration": 100},
        ],
    })
    record(f"{platform} batch", code == 200 and body.get("success", False),
           f"http={code}, statuses={statuses(body)}"
           + (f", error={body.get('error')}" if code != 200 else ""))
    if code != 200:
        return

    results_ = body["results"]
    heading = results_[2].get("content", "")
    record(f"{platform} extract css", "Example Domain" in heading, f"content={heading!r}")
    record(f"{platform} extract xpath", results_[3].get("status") == "success",
           f"content={str(results_[3].get('content', ''))[:60]!r}")
    record(f"{platform} optional click skipped",
           results_[4].get("status") == "skipped_optional_error",
           results_[4].get("details", "")[:100])


async def check_named_session(s, platform: str):
    log(f"--- {platform}: named session ---")
    sid = f"smoke_{int(time.time())}"
    try:
        for attempt in (1, 2):
            code, body = await run_tasks(s, {
                "platform": platform,
                "sessionId": sid,
                "tasks": [{"type": "goto", "url": "https://example.com"}],
            })
            record(f"{platform} session run {attempt}",
                   code == 200 and body.get("sessionId") == sid,
                   f"http={code}, statuses={statuses(body)}")
    finally:
        code, body = await delete(s, f"/sessions/{platform}/{sid}")
        record(f"{platform} delete session", code == 200, body.get("message", ""))
        code, _ = await delete(s, f"/sessions/{platform}/{sid}")
        record(f"{platform} delete session again", code == 200, f"http={code}")


async def check_validation(s):
    log("--- Validation ---")
    code, _ = await run_tasks(s, {"platform": "playwright", "tasks": []})
    record("empty tasks rejected", code == 400, f"http={code}")
    code, _ = await run_tasks(s, {"platform": "selenium", "tasks": [{"type": "delay"}]})
    record("unknown platform rejected", code == 400, f"http={code}")


async def check_clear_screenshots(s):
    log("--- Screenshot cleanup ---")
    code, body = await delete(s, "/sessions/screenshots")
    record("clear screenshots", code == 200, body.get("message", ""))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

async def main():
    log("=" * 60)
    log("browser task server smoke run")
    log("=" * 60)

    async with aiohttp.ClientSession() as s:
        try:
            engines = await check_root(s)
            await check_validation(s)
            for platform in ("playwright", "puppeteer"):
                if not engines.get(platform):
                    log(f"Skipping {platform}: engine not installed")
                    continue
                await check_batch(s, platform)
                await check_named_session(s, platform)
            await check_clear_screenshots(s)
        except Exception as e:
            log(f"FATAL: {e}")
            traceback.print_exc()
            record("smoke run", False, str(e))

    log("")
    log("=" * 60)
    log("RESULTS")
    log("=" * 60)
    passed = sum(1 for r in results if r["passed"])
    failed = sum(1 for r in results if not r["passed"])
    for r in results:
        status = "PASS" if r["passed"] else "FAIL"
        print(f"  [{status}] {r['name']}: {r['detail']}")
    log(f"\nTotal: {passed} passed, {failed} failed, {len(results)} total")
    return 0 if failed == 0 else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
