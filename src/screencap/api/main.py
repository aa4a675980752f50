"""FastAPI app exposing the capture scheduler controls and monitoring data."""

from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Literal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, field_validator

from screencap.api.services.classification import ClassificationPipeline
from screencap.api.services.events import CaptureGroupProcessor
from screencap.api.services.llm import OpenRouterClient, call_records
from screencap.api.services.router import (
    AiRouter,
    OpenRouterTextProvider,
    OpenRouterVisionProvider,
)
from screencap.config import Settings
from screencap.ui.notifications import NotificationService
from screencap.watchers.active_window import ForegroundWatcher
from screencap.watchers.activity_window import ActivityWindowTracker
from screencap.watchers.automation import AutomationExecutor
from screencap.watchers.context import ContextCollector
from screencap.watchers.providers import default_registry
from screencap.watchers.scheduler import Scheduler
from screencap.watchers.screen_capture import ScreenCapture

CALL_RECORD_TAIL = 50

# グローバルな状態管理
STATE: dict[str, Any] = {
    "settings": None,
    "scheduler": None,
    "processor": None,
    "executor": None,
    "notifications": None,
    "logs": deque(maxlen=100),  # ログを保存 (最大100件)
}


def log_message(message: str) -> None:
    """ログキューに追加する."""
    STATE["logs"].append(message)


def build_services(settings: Settings) -> dict[str, Any]:
    """設定からキャプチャパイプライン一式を組み立てる."""
    executor = AutomationExecutor()
    registry = default_registry(executor)
    watcher = ForegroundWatcher(executor)
    capture = ScreenCapture(settings.thumbnails_dir, settings.originals_dir)
    collector = ContextCollector(watcher.snapshot, registry, capture.primary_display_id)

    tracker = ActivityWindowTracker(
        collector,
        capture,
        settings.temp_dir,
        settings.thumbnails_dir,
        settings.originals_dir,
        rules_provider=settings.automation_rules,
        primary_display_id=capture.primary_display_id,
    )

    pipeline = ClassificationPipeline(
        OpenRouterClient(settings.api_key, settings.model),
        addictions=settings.addictions,
        projects=lambda: settings.projects,
    )
    router = AiRouter([OpenRouterTextProvider(pipeline), OpenRouterVisionProvider(pipeline)])
    processor = CaptureGroupProcessor(
        router,
        provider_context=settings.provider_context,
        rules_provider=settings.automation_rules,
        provider_order=settings.provider_order,
    )

    notifications = NotificationService()
    scheduler = Scheduler(
        tracker,
        capture,
        processor,
        permission_checker=capture.has_permission,
        notifier=notifications.notify_permission_required,
        interval_minutes=settings.interval_minutes,
    )
    return {
        "settings": settings,
        "scheduler": scheduler,
        "processor": processor,
        "executor": executor,
        "notifications": notifications,
    }


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """起動時にパイプラインを組み立ててスケジューラを開始する."""
    settings = Settings.from_env()
    STATE.update(build_services(settings))
    STATE["scheduler"].start(settings.interval_minutes)
    log_message(f"Scheduler started (interval={settings.interval_minutes}min)")
    yield
    STATE["scheduler"].stop()
    log_message("Scheduler stopped")


# FastAPIアプリケーションのインスタンスを作成
app = FastAPI(
    title="Screencap",
    description="Activity-window screen capture and classification API",
    lifespan=lifespan,
)


# --- Pydanticモデル定義 ---


class IntervalUpdate(BaseModel):
    """キャプチャ間隔の更新リクエスト."""

    minutes: int

    @field_validator("minutes")
    @classmethod
    def minutes_must_be_positive(cls, v: int) -> int:
        """1分以上であること"""
        if v <= 0:
            msg = "minutes must be positive"
            raise ValueError(msg)
        return v


class CaptureRequest(BaseModel):
    """手動キャプチャのリクエスト."""

    primary_display_id: str | None = None
    intent: Literal["default", "project_progress"] = "default"


def _scheduler() -> Scheduler:
    scheduler: Scheduler | None = STATE["scheduler"]
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not available")
    return scheduler


def _status(scheduler: Scheduler) -> dict[str, Any]:
    return {
        "state": scheduler.get_state().value,
        "interval_minutes": scheduler.interval_minutes,
    }


# --- APIエンドポイント定義 ---


@app.get("/status")
async def get_current_status() -> dict[str, Any]:
    """スケジューラの状態を取得する."""
    return _status(_scheduler())


@app.post("/scheduler/start")
async def start_scheduler() -> dict[str, Any]:
    scheduler = _scheduler()
    scheduler.start()
    log_message("Scheduler started")
    return {"ok": True, **_status(scheduler)}


@app.post("/scheduler/stop")
async def stop_scheduler() -> dict[str, Any]:
    scheduler = _scheduler()
    scheduler.stop()
    log_message("Scheduler stopped")
    return {"ok": True, **_status(scheduler)}


@app.post("/scheduler/pause")
async def pause_scheduler() -> dict[str, Any]:
    scheduler = _scheduler()
    scheduler.pause()
    log_message("Scheduler paused")
    return {"ok": True, **_status(scheduler)}


@app.post("/scheduler/resume")
async def resume_scheduler() -> dict[str, Any]:
    scheduler = _scheduler()
    scheduler.resume()
    log_message("Scheduler resumed")
    return {"ok": True, **_status(scheduler)}


@app.post("/scheduler/interval")
async def update_interval(req: IntervalUpdate) -> dict[str, Any]:
    """キャプチャ間隔を変更する（タイマーは作り直される）."""
    scheduler = _scheduler()
    scheduler.set_interval(req.minutes)
    log_message(f"Interval updated to: {req.minutes}min")
    return {"ok": True, **_status(scheduler)}


@app.post("/capture")
async def trigger_capture(req: CaptureRequest | None = None) -> dict[str, Any]:
    """手動キャプチャを実行する."""
    scheduler = _scheduler()
    req = req or CaptureRequest()
    result = await scheduler.trigger_manual_capture_with_primary_display(
        {"primary_display_id": req.primary_display_id, "intent": req.intent}
    )
    log_message(f"Manual capture: event={result['event_id']} merged={result['merged']}")
    return {"ok": True, **result}


# --- モニタリング用エンドポイント ---


@app.get("/api/monitoring_data")
async def get_monitoring_data() -> dict[str, Any]:
    """モニタリング用に最新データを返す."""
    processor: CaptureGroupProcessor | None = STATE["processor"]
    executor: AutomationExecutor | None = STATE["executor"]
    notifications: NotificationService | None = STATE["notifications"]
    return {
        "events": processor.events(limit=20) if processor else [],
        "logs": list(STATE["logs"]),
        "automation": executor.health() if executor else None,
        "openrouter_calls": [asdict(r) for r in call_records()[-CALL_RECORD_TAIL:]],
        "notifications": notifications.get_notification_history() if notifications else [],
        "notification_capabilities": notifications.get_capabilities() if notifications else None,
    }
