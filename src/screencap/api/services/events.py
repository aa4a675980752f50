import asyncio
import uuid
from collections import OrderedDict
from collections.abc import Callable, Iterable
from typing import Any

from screencap.api.services.router import (
    DEFAULT_PROVIDER_ORDER,
    AiRouter,
    ClassificationInput,
    ProviderContext,
)
from screencap.model.models import ActivityContext, Capture, CaptureTriggerResult, ScreenContext
from screencap.watchers.automation_rules import AutomationRules, evaluate_automation_policy
from screencap.watchers.logger import logger
from screencap.watchers.screen_capture import encode_image_base64

log = logger.getChild("Events")

MAX_EVENTS = 500


class CaptureGroupProcessor:
    """キャプチャ群をイベントにして分類まで行う（イベントはメモリ上に保持）."""

    def __init__(
        self,
        router: AiRouter,
        provider_context: Callable[[], ProviderContext] = ProviderContext,
        rules_provider: Callable[[], AutomationRules | None] = lambda: None,
        provider_order: Iterable[str] = DEFAULT_PROVIDER_ORDER,
        max_events: int = MAX_EVENTS,
    ) -> None:
        self.router = router
        self.provider_context = provider_context
        self.rules_provider = rules_provider
        self.provider_order = list(provider_order)
        self.max_events = max_events
        self._events: OrderedDict[str, dict[str, Any]] = OrderedDict()

    # ------------------------------------------------------------------
    # ストア
    def events(self, limit: int | None = None) -> list[dict[str, Any]]:
        """新しい順のイベント一覧."""
        items = [dict(e) for e in reversed(self._events.values())]
        return items[:limit] if limit else items

    def get_event(self, event_id: str) -> dict[str, Any] | None:
        event = self._events.get(event_id)
        return dict(event) if event else None

    def update_event(self, event_id: str, **fields: Any) -> None:
        event = self._events.get(event_id)
        if event is None:
            log.warning("Event %s not found for update", event_id)
            return
        event.update(fields)

    def _store(self, event: dict[str, Any]) -> None:
        self._events[event["id"]] = event
        while len(self._events) > self.max_events:
            self._events.popitem(last=False)

    def _mergeable(
        self, context: ActivityContext | None, timestamp: int, interval_ms: int
    ) -> dict[str, Any] | None:
        if context is None or not self._events:
            return None
        last = next(reversed(self._events.values()))
        if last.get("context_key") != context.key:
            return None
        if timestamp - last["end_timestamp"] > interval_ms:
            return None
        return last

    # ------------------------------------------------------------------
    # 処理
    async def process_capture_group(
        self,
        captures: list[Capture],
        context: ActivityContext | None,
        primary_display_id: str,
        interval_ms: int,
        *,
        allow_merge: bool = True,
        enqueue: bool = True,
    ) -> CaptureTriggerResult:
        if not captures:
            return {"merged": False, "event_id": None}

        primary = next(
            (c for c in captures if c.display_id == primary_display_id), captures[0]
        )
        timestamp = primary.timestamp

        if allow_merge:
            previous = self._mergeable(context, timestamp, interval_ms)
            if previous is not None:
                previous["end_timestamp"] = timestamp + interval_ms
                log.info("Merged capture into event %s", previous["id"])
                return {"merged": True, "event_id": previous["id"]}

        url_host = context.url.host if context and context.url else None
        app_id = context.app.bundle_id if context else None
        policy = evaluate_automation_policy(app_id, url_host, self.rules_provider())

        event: dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "timestamp": timestamp,
            "end_timestamp": timestamp + interval_ms,
            "display_id": primary.display_id,
            "thumbnail_path": primary.thumbnail_path,
            "original_path": primary.original_path,
            "context_key": context.key if context else None,
            "app_bundle_id": app_id,
            "app_name": context.app.name if context else None,
            "window_title": context.window.title if context else None,
            "url_host": url_host,
            "status": "pending",
        }
        self._store(event)

        if policy.llm == "skip":
            event.update(status="completed", **policy.overrides)
            log.info("Automation rule skips classification for %s", app_id)
        elif enqueue:
            await self._classify(event, primary, context, policy.overrides)
        return {"merged": False, "event_id": event["id"]}

    async def _classify(
        self,
        event: dict[str, Any],
        primary: Capture,
        context: ActivityContext | None,
        overrides: dict[str, Any],
    ) -> None:
        image = await asyncio.to_thread(encode_image_base64, primary.original_path)
        data = ClassificationInput(
            image_base64=image,
            context=ScreenContext.from_activity(context),
        )
        decision = await asyncio.to_thread(
            self.router.classify, data, self.provider_context(), self.provider_order
        )
        if not decision.ok or decision.result is None:
            event["status"] = "failed"
            return

        event.update(decision.result)
        event.update(overrides)
        event["status"] = "completed"
        event["provider_id"] = decision.provider_id
