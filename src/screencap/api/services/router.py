import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Literal, Protocol

from screencap.api.services.classification import ClassificationPipeline
from screencap.model.models import ClassificationResult, ScreenContext
from screencap.watchers.logger import logger

log = logger.getChild("AiRouter")

AiMode = Literal["off", "local", "hybrid", "cloud"]

TEXT_PROVIDER_ID = "cloud.openrouter.text"
VISION_PROVIDER_ID = "cloud.openrouter.vision"
DEFAULT_PROVIDER_ORDER = (TEXT_PROVIDER_ID, VISION_PROVIDER_ID)


@dataclass(frozen=True)
class ProviderContext:
    mode: AiMode = "cloud"
    api_key: str | None = None
    allow_vision_uploads: bool = True
    cloud_model: str | None = None


@dataclass(frozen=True)
class ClassificationInput:
    image_base64: str | None = None
    context: ScreenContext | None = None
    ocr_text: str | None = None


@dataclass(frozen=True)
class Availability:
    available: bool
    reason: str | None = None


@dataclass(frozen=True)
class ProviderAttempt:
    provider_id: str
    available: bool
    latency_ms: int
    error: str | None


@dataclass(frozen=True)
class ClassificationDecision:
    ok: bool
    provider_id: str | None = None
    result: ClassificationResult | None = None
    attempts: list[ProviderAttempt] = field(default_factory=list)


class ClassificationProvider(Protocol):
    id: str

    def is_available(self, ctx: ProviderContext) -> Availability: ...

    def classify(
        self, data: ClassificationInput, ctx: ProviderContext
    ) -> ClassificationResult | None: ...


def _cloud_availability(ctx: ProviderContext) -> Availability | None:
    if ctx.mode == "off":
        return Availability(available=False, reason="AI is disabled")
    if ctx.mode == "local":
        return Availability(available=False, reason="Cloud providers disabled")
    return None


class OpenRouterTextProvider:
    """OCR テキストによる分類（画像は送らない）."""

    id = TEXT_PROVIDER_ID

    def __init__(self, pipeline: ClassificationPipeline) -> None:
        self.pipeline = pipeline

    def is_available(self, ctx: ProviderContext) -> Availability:
        blocked = _cloud_availability(ctx)
        if blocked:
            return blocked
        if not ctx.api_key:
            return Availability(available=False, reason="No API key configured")
        return Availability(available=True)

    def classify(
        self, data: ClassificationInput, ctx: ProviderContext
    ) -> ClassificationResult | None:
        return self.pipeline.classify_text(
            data.ocr_text,
            data.context,
            image_base64=data.image_base64,
            allow_vision_uploads=ctx.allow_vision_uploads,
            model=ctx.cloud_model,
        )


class OpenRouterVisionProvider:
    """スクリーンショットをアップロードして分類する."""

    id = VISION_PROVIDER_ID

    def __init__(self, pipeline: ClassificationPipeline) -> None:
        self.pipeline = pipeline

    def is_available(self, ctx: ProviderContext) -> Availability:
        blocked = _cloud_availability(ctx)
        if blocked:
            return blocked
        if not ctx.allow_vision_uploads:
            return Availability(available=False, reason="Vision uploads disabled")
        if not ctx.api_key:
            return Availability(available=False, reason="No API key configured")
        return Availability(available=True)

    def classify(
        self, data: ClassificationInput, ctx: ProviderContext
    ) -> ClassificationResult | None:
        if ctx.mode in ("off", "local") or not ctx.allow_vision_uploads:
            return None
        if not data.image_base64:
            return None
        return self.pipeline.classify_vision(
            data.image_base64, data.context, model=ctx.cloud_model
        )


class AiRouter:
    """設定順にプロバイダを試し、最初に結果を返したものを採用する."""

    def __init__(self, providers: Iterable[ClassificationProvider]) -> None:
        self.providers: dict[str, ClassificationProvider] = {}
        for provider in providers:
            if provider.id in self.providers:
                msg = f"Duplicate provider id: {provider.id}"
                raise ValueError(msg)
            self.providers[provider.id] = provider

    def get_availability(
        self, order: Iterable[str], ctx: ProviderContext
    ) -> dict[str, Availability]:
        out: dict[str, Availability] = {}
        for provider_id in order:
            provider = self.providers.get(provider_id)
            if provider is None:
                out[provider_id] = Availability(False, "Provider not registered")
                continue
            try:
                out[provider_id] = provider.is_available(ctx)
            except Exception as exc:  # noqa: BLE001
                out[provider_id] = Availability(False, str(exc))
        return out

    def classify(
        self,
        data: ClassificationInput,
        ctx: ProviderContext,
        order: Iterable[str] = DEFAULT_PROVIDER_ORDER,
    ) -> ClassificationDecision:
        order = list(order)
        log.info(
            "Starting classification (order=%s, mode=%s, image=%s, ocr=%s)",
            order,
            ctx.mode,
            bool(data.image_base64),
            bool(data.ocr_text),
        )
        if ctx.mode == "off":
            log.info("Classification skipped: mode is off")
            return ClassificationDecision(ok=False)

        attempts: list[ProviderAttempt] = []
        for provider_id in order:
            provider = self.providers.get(provider_id)
            if provider is None:
                log.warning("Provider not registered: %s", provider_id)
                attempts.append(ProviderAttempt(provider_id, False, 0, "Provider not registered"))
                continue

            try:
                availability = provider.is_available(ctx)
            except Exception as exc:  # noqa: BLE001
                log.warning("Availability check failed for %s: %s", provider_id, exc)
                attempts.append(ProviderAttempt(provider_id, False, 0, str(exc)))
                continue
            if not availability.available:
                log.info("Provider %s not available: %s", provider_id, availability.reason)
                attempts.append(ProviderAttempt(provider_id, False, 0, availability.reason))
                continue

            started = time.perf_counter()
            try:
                result = provider.classify(data, ctx)
            except Exception as exc:  # noqa: BLE001
                latency_ms = round((time.perf_counter() - started) * 1000)
                log.warning("Provider %s failed: %s", provider_id, exc)
                attempts.append(ProviderAttempt(provider_id, True, latency_ms, str(exc)))
                continue

            latency_ms = round((time.perf_counter() - started) * 1000)
            if result is not None:
                attempts.append(ProviderAttempt(provider_id, True, latency_ms, None))
                log.info(
                    "Classification succeeded via %s (%sms): %s",
                    provider_id,
                    latency_ms,
                    result["category"],
                )
                return ClassificationDecision(
                    ok=True, provider_id=provider_id, result=result, attempts=attempts
                )

            log.info("Provider %s returned no result, trying next", provider_id)
            attempts.append(ProviderAttempt(provider_id, True, latency_ms, "Null result"))

        log.warning("All providers failed: %s", attempts)
        return ClassificationDecision(ok=False, attempts=attempts)
