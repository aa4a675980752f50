from __future__ import annotations

import sys
import time
from typing import Any, cast

import psutil

from screencap.model.models import ForegroundApp, ForegroundSnapshot, ForegroundWindow
from screencap.watchers.automation import AutomationExecutor, is_automation_denied
from screencap.watchers.logger import logger

if sys.platform == "win32":
    import pywintypes  # pyright: ignore[reportMissingImports]
    import win32gui  # pyright: ignore[reportMissingImports]
    import win32process  # pyright: ignore[reportMissingImports]
else:  # pragma: no cover
    pywintypes = cast("Any", None)
    win32gui = cast("Any", None)
    win32process = cast("Any", None)

log = logger.getChild("ActiveWindow")

_SYSTEM_EVENTS_SCRIPT = """
tell application "System Events"
  set frontApp to first application process whose frontmost is true
  set appName to name of frontApp
  set bundleId to bundle identifier of frontApp
  set appPid to unix id of frontApp
  set winTitle to ""
  try
    set winTitle to name of front window of frontApp
  end try
  return appName & "|||" & bundleId & "|||" & appPid & "|||" & winTitle
end tell
""".strip()


def get_active_app() -> dict[str, Any]:
    """Return the foreground application on Windows."""
    empty: dict[str, Any] = {"active_app": None, "title": None, "pid": None}
    if sys.platform != "win32":
        return empty

    hwnd = win32gui.GetForegroundWindow()
    if not hwnd:
        return empty

    try:
        title = win32gui.GetWindowText(hwnd)
        _, pid = win32process.GetWindowThreadProcessId(hwnd)
    except pywintypes.error:
        return empty

    try:
        process = psutil.Process(pid)
        process_name = process.name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return empty
    return {"active_app": process_name, "title": title, "pid": pid}


def parse_system_events_output(output: str, captured_at: int) -> ForegroundSnapshot | None:
    """System Events スクリプトの出力をスナップショットにする."""
    parts = output.split("|||")
    if len(parts) < 4:  # noqa: PLR2004
        return None
    name, bundle_id, pid_text, title = (p.strip() for p in parts[:4])
    if not bundle_id or bundle_id == "missing value":
        bundle_id = name
    if not bundle_id:
        return None
    try:
        pid = int(pid_text)
    except ValueError:
        pid = 0
    return ForegroundSnapshot(
        app=ForegroundApp(name=name, bundle_id=bundle_id, pid=pid),
        window=ForegroundWindow(title=title),
        captured_at=captured_at,
    )


class ForegroundWatcher:
    """前面アプリのスナップショットを取得する."""

    def __init__(self, executor: AutomationExecutor) -> None:
        self.executor = executor
        self.last_error: str | None = None
        self.automation_denied = False

    async def snapshot(self) -> ForegroundSnapshot | None:
        captured_at = int(time.time() * 1000)
        if sys.platform == "win32":
            data = get_active_app()
            if not data["active_app"]:
                return None
            return ForegroundSnapshot(
                app=ForegroundApp(
                    name=data["active_app"],
                    bundle_id=data["active_app"],
                    pid=data["pid"] or 0,
                ),
                window=ForegroundWindow(title=data["title"] or ""),
                captured_at=captured_at,
            )

        if sys.platform != "darwin":
            return None

        result = await self.executor.run(_SYSTEM_EVENTS_SCRIPT)
        if not result.success:
            self.last_error = result.error
            self.automation_denied = is_automation_denied(result.error)
            if self.automation_denied:
                log.warning("System Events automation denied")
            return None

        self.last_error = None
        self.automation_denied = False
        return parse_system_events_output(result.output, captured_at)
