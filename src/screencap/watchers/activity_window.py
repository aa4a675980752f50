"""Activity window tracking.

Between two scheduler ticks the tracker polls the foreground context every
few seconds and records :class:`ActivitySegment` objects. Once a context has
been stable long enough it grabs a *candidate* capture for it. When the
scheduler finalizes the window, the dominant context decides which candidate
(if any) becomes the event for that window.
"""

from __future__ import annotations

import asyncio
import shutil
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Literal, Protocol

from screencap.model.models import (
    IDLE_APP_ID,
    SELF_APP_ID,
    ActivityContext,
    ActivitySegment,
    Capture,
    CaptureWindow,
    ForegroundSnapshot,
    SkipWindow,
    WindowedResult,
    is_self_app,
)
from screencap.watchers.automation_rules import AutomationRules, evaluate_automation_policy
from screencap.watchers.context import ContextCollector, build_context_key
from screencap.watchers.dominance import compute_dominant_segment
from screencap.watchers.idle import IDLE_AWAY_SECONDS, get_idle_seconds
from screencap.watchers.logger import logger

log = logger.getChild("ActivityWindow")

POLL_MS = 3_000
BROWSER_HOST_REFRESH_MS = 2_000
MIN_STABLE_MS = 10_000
MIN_DOMINANT_TOTAL_MS = 10_000


class CaptureSource(Protocol):
    def capture_all_displays(
        self,
        high_res_display_id: str | None = None,
        dirs: tuple[Path, Path] | None = None,
    ) -> Awaitable[list[Capture]]: ...


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _Candidate:
    key: str
    app_id: str
    display_id: str
    primary_display_id: str | None
    context: ActivityContext | None
    captures: list[Capture]


@dataclass
class _HostCache:
    app_id: str
    display_id: str
    host: str | None
    updated_at: int


class ActivityWindowTracker:
    """前面コンテキストの区間を集計し、ウィンドウごとに代表を決める."""

    def __init__(
        self,
        collector: ContextCollector,
        capture: CaptureSource,
        temp_dir: Path,
        thumbnails_dir: Path,
        originals_dir: Path,
        *,
        rules_provider: Callable[[], AutomationRules | None] = lambda: None,
        idle_source: Callable[[], int] = get_idle_seconds,
        clock: Callable[[], int] = now_ms,
        primary_display_id: Callable[[], str] = lambda: "1",
        poll_ms: int | None = POLL_MS,
        min_stable_ms: int = MIN_STABLE_MS,
        min_dominant_total_ms: int = MIN_DOMINANT_TOTAL_MS,
    ) -> None:
        self.collector = collector
        self.capture = capture
        self.temp_dir = Path(temp_dir)
        self.thumbnails_dir = Path(thumbnails_dir)
        self.originals_dir = Path(originals_dir)
        self.rules_provider = rules_provider
        self.idle_source = idle_source
        self.clock = clock
        self.primary_display_id = primary_display_id
        self.poll_ms = poll_ms
        self.min_stable_ms = min_stable_ms
        self.min_dominant_total_ms = min_dominant_total_ms

        self._status: Literal["stopped", "running"] = "stopped"
        self._window_start = clock()
        self._window_dir: Path | None = None
        self._segments: list[ActivitySegment] = []
        self._current: ActivitySegment | None = None
        self._candidates: dict[str, _Candidate] = {}
        self._last_snapshot: ForegroundSnapshot | None = None
        self._host_cache: _HostCache | None = None
        self._lock = asyncio.Lock()
        self._poll_task: asyncio.Task[None] | None = None
        self._capture_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # 状態参照
    @property
    def is_tracking(self) -> bool:
        return self._status == "running"

    @property
    def window_start(self) -> int:
        return self._window_start

    @property
    def segments(self) -> list[ActivitySegment]:
        """閉じた区間＋開いている区間のコピー."""
        out = [replace(s) for s in self._segments]
        if self._current:
            out.append(replace(self._current))
        return out

    @property
    def last_snapshot(self) -> ForegroundSnapshot | None:
        return self._last_snapshot

    # ------------------------------------------------------------------
    # ライフサイクル
    def start(self) -> None:
        if self._status == "running":
            return
        self._status = "running"
        self._cleanup_temp_root()
        self._init_window(self.clock(), None)
        if self.poll_ms:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        log.info("Activity window tracking started")

    def stop(self) -> None:
        if self._poll_task:
            self._poll_task.cancel()
            self._poll_task = None
        self._status = "stopped"

        window_dir = self._window_dir
        if self._capture_task and not self._capture_task.done():
            self._capture_task.add_done_callback(lambda _: _safe_rm(window_dir))
        else:
            _safe_rm(window_dir)

        self._window_dir = None
        self._segments = []
        self._current = None
        self._candidates.clear()
        self._last_snapshot = None
        self._host_cache = None
        log.info("Activity window tracking stopped")

    async def _poll_loop(self) -> None:
        assert self.poll_ms is not None
        while self._status == "running":
            try:
                await self.poll_once()
            except Exception as exc:  # noqa: BLE001
                log.debug("Activity poll failed: %s", exc)
            await asyncio.sleep(self.poll_ms / 1000)

    # ------------------------------------------------------------------
    # 区間管理
    def _init_window(self, now: int, continuation: ForegroundSnapshot | None) -> None:
        self._window_start = now
        self._segments = []
        self._candidates.clear()

        self._window_dir = self.temp_dir / uuid.uuid4().hex
        for sub in ("thumbnails", "originals"):
            (self._window_dir / sub).mkdir(parents=True, exist_ok=True)

        if continuation is None:
            self._current = None
            return

        display_id = continuation.window.display_id or self.primary_display_id()
        app_id = continuation.app.bundle_id
        self._current = ActivitySegment(
            key=build_context_key(display_id, app_id, None),
            app_id=app_id,
            display_id=display_id,
            url_host=None,
            start_at=now,
        )

    def _close_current(self, end_at: int) -> None:
        if self._current is None:
            return
        if end_at <= self._current.start_at:
            self._current = None
            return
        self._segments.append(replace(self._current, end_at=end_at))
        self._current = None

    def observe(
        self,
        key: str,
        app_id: str,
        display_id: str,
        url_host: str | None,
        at: int,
    ) -> ActivitySegment:
        """前面コンテキストを1件記録する。キーが変わったら区間を切り替える."""
        if self._current is None:
            self._current = ActivitySegment(
                key=key,
                app_id=app_id,
                display_id=display_id,
                url_host=url_host,
                start_at=max(self._window_start, at),
            )
        elif key != self._current.key:
            self._close_current(at)
            self._current = ActivitySegment(
                key=key,
                app_id=app_id,
                display_id=display_id,
                url_host=url_host,
                start_at=at,
            )
        return self._current

    async def _resolve_url_host(
        self, snapshot: ForegroundSnapshot, display_id: str
    ) -> str | None:
        registry = self.collector.registry
        if not any(p.supports(snapshot) for p in registry):
            return None

        now = snapshot.captured_at
        app_id = snapshot.app.bundle_id
        cached = self._host_cache
        if (
            cached
            and cached.app_id == app_id
            and cached.display_id == display_id
            and now - cached.updated_at < BROWSER_HOST_REFRESH_MS
        ):
            return cached.host

        _, enrichment = await registry.enrich(snapshot)
        host = enrichment.url.host if enrichment and enrichment.url else None
        self._host_cache = _HostCache(app_id, display_id, host, now)
        return host

    async def poll_once(self) -> None:
        """前面コンテキストを1回観測する."""
        async with self._lock:
            if self._status != "running":
                return
            idle_seconds = self.idle_source()
            now = self.clock()

            if idle_seconds > IDLE_AWAY_SECONDS:
                idle_start = max(self._window_start, now - idle_seconds * 1000)
                display_id = (
                    self._current.display_id
                    if self._current
                    else (
                        self._last_snapshot.window.display_id
                        if self._last_snapshot and self._last_snapshot.window.display_id
                        else self.primary_display_id()
                    )
                )
                if self._current is None or self._current.app_id != IDLE_APP_ID:
                    self._close_current(idle_start)
                    self._current = ActivitySegment(
                        key=build_context_key(display_id, IDLE_APP_ID, None),
                        app_id=IDLE_APP_ID,
                        display_id=display_id,
                        url_host=None,
                        start_at=idle_start,
                    )
                return

            if self._current and self._current.app_id == IDLE_APP_ID:
                self._close_current(max(self._window_start, now - idle_seconds * 1000))

            snapshot = await self.collector.collect_foreground_snapshot()
            if self._status != "running" or snapshot is None:
                return
            self._last_snapshot = snapshot

            display_id = snapshot.window.display_id or self.primary_display_id()
            app_id = snapshot.app.bundle_id
            url_host = await self._resolve_url_host(snapshot, display_id)
            key = build_context_key(display_id, app_id, url_host)
            current = self.observe(key, app_id, display_id, url_host, snapshot.captured_at)

            if key in self._candidates:
                return
            if snapshot.captured_at - current.start_at < self.min_stable_ms:
                return
            if self._capture_task and not self._capture_task.done():
                return
            self._capture_task = asyncio.get_running_loop().create_task(
                self._capture_candidate(key, app_id, display_id, url_host)
            )

    # ------------------------------------------------------------------
    # 候補キャプチャ
    def _should_skip(self, app_id: str, url_host: str | None) -> bool:
        if app_id == SELF_APP_ID:
            return True
        policy = evaluate_automation_policy(app_id, url_host, self.rules_provider())
        return policy.capture == "skip"

    def _should_skip_context(self, context: ActivityContext) -> bool:
        if is_self_app(context.app.bundle_id, context.app.name, context.window.title):
            return True
        return self._should_skip(
            context.app.bundle_id, context.url.host if context.url else None
        )

    async def _capture_candidate(
        self, key: str, app_id: str, display_id: str, url_host: str | None
    ) -> None:
        if self._status != "running":
            return
        if self.idle_source() > IDLE_AWAY_SECONDS:
            return
        if key in self._candidates or self._window_dir is None:
            return
        window_dir = self._window_dir

        try:
            context = await self.collector.collect_activity_context()
            if self._status != "running" or context is None:
                return
            if context.app.bundle_id != app_id:
                return
            if context.window.display_id and context.window.display_id != display_id:
                return
            if url_host and (context.url is None or context.url.host != url_host):
                return
            if self._should_skip_context(context):
                return

            primary = context.window.display_id or display_id or self.primary_display_id()
            captures = await self.capture.capture_all_displays(
                high_res_display_id=primary,
                dirs=(window_dir / "thumbnails", window_dir / "originals"),
            )
            if self._status != "running" or not captures:
                return
            if window_dir != self._window_dir:
                # ウィンドウが確定済みなら捨てる
                return

            self._candidates[key] = _Candidate(
                key=key,
                app_id=app_id,
                display_id=display_id,
                primary_display_id=primary,
                context=context,
                captures=captures,
            )
        except Exception as exc:  # noqa: BLE001
            log.debug("Candidate capture failed: %s", exc)

    async def _wait_capture(self) -> None:
        task = self._capture_task
        if task and not task.done():
            await asyncio.wait({task})

    def last_known_candidate(self) -> tuple[ActivityContext | None, str] | None:
        """現在（なければ直近）の候補コンテキストと app id."""
        current = self._current
        if current is None or current.app_id in (IDLE_APP_ID, SELF_APP_ID):
            return None

        candidate = self._candidates.get(current.key)
        if candidate:
            return candidate.context, candidate.app_id

        for segment in reversed(self._segments):
            if segment.app_id in (IDLE_APP_ID, SELF_APP_ID):
                continue
            candidate = self._candidates.get(segment.key)
            if candidate:
                return candidate.context, candidate.app_id
        return None

    # ------------------------------------------------------------------
    # 確定・破棄
    def _move_to_permanent(self, capture: Capture) -> Capture:
        self.thumbnails_dir.mkdir(parents=True, exist_ok=True)
        self.originals_dir.mkdir(parents=True, exist_ok=True)
        thumbnail = self.thumbnails_dir / Path(capture.thumbnail_path).name
        original = self.originals_dir / Path(capture.original_path).name
        shutil.move(capture.thumbnail_path, thumbnail)
        shutil.move(capture.original_path, original)

        high_res = Path(capture.original_path).with_suffix(".hq.png")
        if high_res.exists():
            shutil.move(str(high_res), self.originals_dir / high_res.name)
        return replace(capture, thumbnail_path=str(thumbnail), original_path=str(original))

    def _reset(self, window_end: int) -> None:
        _safe_rm(self._window_dir)
        self._init_window(window_end, self._last_snapshot)

    async def discard(self, window_end: int) -> None:
        """現在のウィンドウを捨てて ``window_end`` から新しく始める."""
        async with self._lock:
            safe_end = max(self._window_start, window_end)
            await self._wait_capture()
            self._reset(safe_end)

    async def finalize(self, window_end: int) -> WindowedResult:
        """``window_end`` でウィンドウを閉じ、代表アクティビティを決める.

        例外は投げない。代表が決まらない場合は :class:`SkipWindow` を返す。
        """
        async with self._lock:
            window_start = self._window_start
            safe_end = max(window_start, window_end)

            if self._status != "running":
                return SkipWindow("not-running", window_start, safe_end)

            await self._wait_capture()

            finalized = list(self._segments)
            if self._current:
                finalized.append(replace(self._current, end_at=safe_end))
            active = [s for s in finalized if s.app_id != IDLE_APP_ID]

            dominant = compute_dominant_segment(active, safe_end, self.min_dominant_total_ms)
            if dominant is None:
                self._reset(safe_end)
                return SkipWindow("no-data", window_start, safe_end)

            if self._should_skip(dominant.app_id, dominant.url_host):
                self._reset(safe_end)
                reason = "self" if dominant.app_id == SELF_APP_ID else "policy-skip"
                return SkipWindow(reason, window_start, safe_end)

            candidate = self._candidates.get(dominant.key)
            if candidate is None:
                self._reset(safe_end)
                return SkipWindow("no-candidate", window_start, safe_end)

            try:
                captures = [
                    replace(self._move_to_permanent(c), timestamp=safe_end)
                    for c in candidate.captures
                ]
            except OSError as exc:
                log.debug("Failed to finalize candidate capture: %s", exc)
                self._reset(safe_end)
                return SkipWindow("no-candidate", window_start, safe_end)

            self._reset(safe_end)
            return CaptureWindow(
                captures=captures,
                context=candidate.context,
                window_start=window_start,
                window_end=safe_end,
                primary_display_id=candidate.primary_display_id,
            )

    def _cleanup_temp_root(self) -> None:
        if not self.temp_dir.exists():
            return
        for entry in self.temp_dir.iterdir():
            _safe_rm(entry)


def _safe_rm(path: Path | None) -> None:
    if path is None:
        return
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    else:
        path.unlink(missing_ok=True)
