from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, Protocol

from screencap.model.models import (
    ActivityContext,
    Capture,
    CaptureTriggerResult,
    CaptureWindow,
    ManualCaptureOptions,
    SchedulerState,
    WindowedResult,
)
from screencap.watchers.activity_window import now_ms
from screencap.watchers.idle import IDLE_AWAY_SECONDS, get_idle_seconds
from screencap.watchers.logger import logger

log = logger.getChild("Scheduler")

DEFAULT_INTERVAL_MINUTES = 5


class WindowTracker(Protocol):
    @property
    def is_tracking(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    async def finalize(self, window_end: int) -> WindowedResult: ...

    async def discard(self, window_end: int) -> None: ...

    def last_known_candidate(self) -> tuple[ActivityContext | None, str] | None: ...


class DisplayCapture(Protocol):
    def primary_display_id(self) -> str: ...

    async def capture_all_displays(
        self, high_res_display_id: str | None = None
    ) -> list[Capture]: ...


class CaptureProcessor(Protocol):
    async def process_capture_group(
        self,
        captures: list[Capture],
        context: ActivityContext | None,
        primary_display_id: str,
        interval_ms: int,
        *,
        allow_merge: bool = True,
        enqueue: bool = True,
    ) -> CaptureTriggerResult: ...

    def update_event(self, event_id: str, **fields: Any) -> None: ...


def _no_event() -> CaptureTriggerResult:
    return {"merged": False, "event_id": None}


class Scheduler:
    """定期キャプチャと手動キャプチャを制御する.

    定期サイクルは ``ActivityWindowTracker`` のウィンドウを確定させ、手動サイクルは
    その場で全ディスプレイを撮影する。キャプチャは同時に1つしか走らない。
    """

    def __init__(
        self,
        tracker: WindowTracker,
        capture: DisplayCapture,
        processor: CaptureProcessor,
        *,
        permission_checker: Callable[[], bool],
        idle_source: Callable[[], int] = get_idle_seconds,
        notifier: Callable[[], Any] = lambda: None,
        clock: Callable[[], int] = now_ms,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
    ) -> None:
        self.tracker = tracker
        self.capture = capture
        self.processor = processor
        self.permission_checker = permission_checker
        self.idle_source = idle_source
        self.notifier = notifier
        self.clock = clock
        self.interval_minutes = interval_minutes

        self._state = SchedulerState.STOPPED
        self._timer: asyncio.Task[None] | None = None
        self._capture_lock = asyncio.Lock()
        self._capture_waiters = 0
        self._in_flight: asyncio.Future[None] | None = None
        self._cycles: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # 状態遷移
    @property
    def interval_ms(self) -> int:
        return self.interval_minutes * 60 * 1000

    def get_state(self) -> SchedulerState:
        return self._state

    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    def is_paused(self) -> bool:
        return self._state is SchedulerState.PAUSED

    @property
    def in_flight(self) -> asyncio.Future[None] | None:
        """実行中のキャプチャサイクル（終了時に完了する）."""
        return self._in_flight

    def start(self, interval_minutes: int | None = None) -> None:
        """タイマーを（再）設定してトラッキングをやり直す."""
        if interval_minutes:
            self.interval_minutes = interval_minutes
        self._cancel_timer()

        self.tracker.stop()
        self.tracker.start()

        self._state = SchedulerState.RUNNING
        log.info(
            "Starting scheduler (interval=%s min, idle skip=%ss)",
            self.interval_minutes,
            IDLE_AWAY_SECONDS,
        )
        self._timer = asyncio.get_running_loop().create_task(self._timer_loop())

    def stop(self) -> None:
        self._cancel_timer()
        self.tracker.stop()
        self._state = SchedulerState.STOPPED
        log.info("Scheduler stopped")

    def pause(self) -> None:
        self._state = SchedulerState.PAUSED
        self.tracker.stop()
        log.info("Scheduler paused")

    def resume(self) -> None:
        if self._timer is None:
            self.start()
            return
        self._state = SchedulerState.RUNNING
        self.tracker.start()
        log.info("Scheduler resumed")

    def set_interval(self, minutes: int) -> None:
        log.info("Changing interval to %s minutes", minutes)
        self.stop()
        self.start(minutes)

    def _cancel_timer(self) -> None:
        if self._timer:
            self._timer.cancel()
            self._timer = None

    async def _timer_loop(self) -> None:
        # タイマーを止めても実行中のサイクルは最後まで走らせる
        while True:
            await asyncio.sleep(self.interval_ms / 1000)
            cycle = asyncio.get_running_loop().create_task(self.tick())
            self._cycles.add(cycle)
            cycle.add_done_callback(self._cycles.discard)
            await asyncio.shield(cycle)

    def _capture_busy(self) -> bool:
        return (
            self._capture_lock.locked()
            or self._in_flight is not None
            or self._capture_waiters > 0
        )

    @asynccontextmanager
    async def _hold_capture(self) -> AsyncIterator[None]:
        """キャプチャロックを取り、保持中は ``in_flight`` を立てる."""
        self._capture_waiters += 1
        try:
            await self._capture_lock.acquire()
        finally:
            self._capture_waiters -= 1
        in_flight = asyncio.get_running_loop().create_future()
        self._in_flight = in_flight
        try:
            yield
        finally:
            self._in_flight = None
            in_flight.set_result(None)
            self._capture_lock.release()

    async def tick(self) -> None:
        """タイマーから呼ばれる。例外はログに残して握りつぶす."""
        if self._state is not SchedulerState.RUNNING:
            log.debug("Scheduler is %s, skipping tick", self._state.value)
            return
        log.info("Scheduler tick")
        try:
            await self.run_windowed_capture_cycle()
        except Exception:
            log.exception("Scheduled capture cycle failed")

    # ------------------------------------------------------------------
    # 定期サイクル
    async def _process_window(self, windowed: CaptureWindow) -> CaptureTriggerResult:
        primary = windowed.primary_display_id or self.capture.primary_display_id()
        result = await self.processor.process_capture_group(
            windowed.captures,
            windowed.context,
            primary,
            self.interval_ms,
        )
        event_id = result["event_id"]
        if not result["merged"] and event_id:
            self.processor.update_event(
                event_id,
                timestamp=windowed.window_start,
                end_timestamp=windowed.window_end,
            )
        return result

    async def run_windowed_capture_cycle(self) -> CaptureTriggerResult:
        # 待たずに取れるときだけ進む（手動サイクルの待ちがあれば譲る）
        if self._capture_busy():
            log.debug("Capture already in progress, skipping")
            return _no_event()

        async with self._hold_capture():
            has_permission = self.permission_checker()
            idle_seconds = self.idle_source()
            window_end = self.clock()
            log.info(
                "Scheduled capture starting (permission=%s, idle=%ss)",
                has_permission,
                idle_seconds,
            )

            if not has_permission:
                log.warning("No screen capture permission")
                self.notifier()
                await self.tracker.discard(window_end)
                return _no_event()

            if idle_seconds > IDLE_AWAY_SECONDS:
                idle_start = window_end - idle_seconds * 1000
                log.info("System idle for %ss, finalizing at %s", idle_seconds, idle_start)
                windowed = await self.tracker.finalize(idle_start)
                await self.tracker.discard(window_end)
                if not isinstance(windowed, CaptureWindow):
                    log.info("Scheduled capture skipped (idle): %s", windowed.reason)
                    return _no_event()
                return await self._process_window(windowed)

            windowed = await self.tracker.finalize(window_end)
            if not isinstance(windowed, CaptureWindow):
                log.info("Scheduled capture skipped: %s", windowed.reason)
                return _no_event()
            log.info("Scheduled capture completed (%s captures)", len(windowed.captures))
            return await self._process_window(windowed)

    # ------------------------------------------------------------------
    # 手動サイクル
    async def _run_manual_cycle(
        self, options: ManualCaptureOptions | None = None
    ) -> CaptureTriggerResult:
        options = options or {}
        if self._capture_busy():
            log.debug("Capture already in progress, waiting")

        async with self._hold_capture():
            try:
                if not self.permission_checker():
                    log.warning("No screen capture permission")
                    self.notifier()
                    return _no_event()

                candidate = self.tracker.last_known_candidate()
                context = candidate[0] if candidate else None

                primary = (
                    options.get("primary_display_id")
                    or (context.window.display_id if context else None)
                    or self.capture.primary_display_id()
                )
                captures = await self.capture.capture_all_displays(high_res_display_id=primary)
                log.info("Captured %s displays", len(captures))
                if not captures:
                    log.warning("No displays captured, skipping event creation")
                    return _no_event()

                project_progress = options.get("intent") == "project_progress"
                result = await self.processor.process_capture_group(
                    captures,
                    context,
                    primary,
                    self.interval_ms,
                    allow_merge=not project_progress,
                    enqueue=not project_progress,
                )
                if project_progress and result["event_id"]:
                    self.processor.update_event(
                        result["event_id"],
                        project_progress=1,
                        project_progress_evidence="manual",
                    )
                log.info("Manual capture completed")
                return result
            except Exception:
                log.exception("Manual capture failed")
                raise

    async def trigger_manual_capture(self) -> None:
        log.info("Manual capture triggered")
        await self._run_manual_cycle()

    async def trigger_manual_capture_with_primary_display(
        self, options: ManualCaptureOptions | None = None
    ) -> CaptureTriggerResult:
        log.info(
            "Manual capture triggered (primary=%s, intent=%s)",
            (options or {}).get("primary_display_id"),
            (options or {}).get("intent", "default"),
        )
        return await self._run_manual_cycle(options)
