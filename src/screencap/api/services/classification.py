"""Two-stage screenshot classification.

Stage 1 assigns a category / project / caption and triages tracked
addictions. Stage 2 runs only when stage 1 produced candidates and decides
whether one of them is confirmed, needs manual review, or is rejected.

The text path (OCR + context, no image) only runs stage 1 and signals a
fallback to the vision path by returning ``None``.
"""

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from screencap.api.services.llm import OpenRouterClient, RequestOptions
from screencap.api.services.prompts import (
    build_system_prompt_stage1,
    build_system_prompt_stage1_text_only,
    build_system_prompt_stage2,
)
from screencap.api.services.schemas import (
    ClassificationStage1,
    ClassificationStage2,
    ProjectProgress,
)
from screencap.model.models import AddictionOption, ClassificationResult, ScreenContext, is_self_app
from screencap.watchers.logger import logger

log = logger.getChild("ClassificationPipeline")

OCR_MAX_CHARS = 12_000
FALLBACK_CONFIDENCE_THRESHOLD = 0.55
CONFIRM_CONFIDENCE_THRESHOLD = 0.75
MAX_STAGE2_CANDIDATES = 5
TEXT_MAX_TOKENS = 900


def normalize_project_progress(
    project: str | None, progress: ProjectProgress
) -> dict[str, Any]:
    """プロジェクトが無い、または進捗が映っていなければ 0 にする."""
    if not project or not progress.shown:
        return {"shown": False, "confidence": 0}
    return {"shown": True, "confidence": progress.confidence}


def should_fallback_to_vision(
    stage1: ClassificationStage1,
    *,
    has_image: bool,
    allow_vision_uploads: bool,
) -> bool:
    if not allow_vision_uploads or not has_image:
        return False
    if stage1.confidence < FALLBACK_CONFIDENCE_THRESHOLD:
        return True
    triage = stage1.addiction_triage
    return triage.tracking_enabled and len(triage.candidates) > 0


def select_stage2_candidates(
    stage1: ClassificationStage1, addictions: list[AddictionOption]
) -> list[AddictionOption]:
    """既知の依存対象に絞り、尤度の高い順に上位だけ残す."""
    by_id = {a.id: a for a in addictions}
    known = [c for c in stage1.addiction_triage.candidates if c.addiction_id in by_id]
    known.sort(key=lambda c: c.likelihood, reverse=True)
    return [by_id[c.addiction_id] for c in known[:MAX_STAGE2_CANDIDATES]]


@dataclass(frozen=True)
class Stage2Resolution:
    confirmed: AddictionOption | None = None
    candidate: AddictionOption | None = None
    confidence: float | None = None
    prompt: str | None = None


def resolve_stage2(
    candidates: list[AddictionOption], stage2: ClassificationStage2
) -> Stage2Resolution:
    option = next((c for c in candidates if c.id == stage2.addiction_id), None)
    if option is None:
        return Stage2Resolution()
    if stage2.decision == "confirmed" and stage2.confidence >= CONFIRM_CONFIDENCE_THRESHOLD:
        return Stage2Resolution(confirmed=option)
    if stage2.decision == "candidate":
        return Stage2Resolution(
            candidate=option,
            confidence=stage2.confidence,
            prompt=stage2.manual_prompt,
        )
    return Stage2Resolution()


def is_meta_screen(context: ScreenContext | None) -> bool:
    """自分自身の画面では依存トラッキングをしない."""
    if context is None:
        return False
    return is_self_app(context.app_bundle_id, context.app_name, context.window_title)


def _image_part(image_base64: str) -> dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:image/webp;base64,{image_base64}"},
    }


class ClassificationPipeline:
    """OpenRouter を使った2段階分類."""

    def __init__(
        self,
        client: OpenRouterClient,
        addictions: Callable[[], list[AddictionOption]] = list,
        projects: Callable[[], list[str]] = list,
    ) -> None:
        self.client = client
        self.addictions = addictions
        self.projects = projects

    def _result(
        self,
        stage1: ClassificationStage1,
        resolution: Stage2Resolution | None = None,
    ) -> ClassificationResult:
        resolution = resolution or Stage2Resolution()
        detected = resolution.confirmed is not None
        candidate = None if detected else resolution.candidate
        return {
            "category": stage1.category,
            "subcategories": stage1.subcategories,
            "project": stage1.project,
            "project_progress": normalize_project_progress(
                stage1.project, stage1.project_progress
            ),
            "tags": stage1.tags,
            "confidence": stage1.confidence,
            "caption": stage1.caption,
            "tracked_addiction": {
                "detected": detected,
                "name": resolution.confirmed.name if resolution.confirmed else None,
            },
            "addiction_candidate": candidate.name if candidate else None,
            "addiction_confidence": resolution.confidence if candidate else None,
            "addiction_prompt": resolution.prompt if candidate else None,
        }

    def classify_text(
        self,
        ocr_text: str | None,
        context: ScreenContext | None,
        *,
        image_base64: str | None = None,
        allow_vision_uploads: bool = True,
        model: str | None = None,
    ) -> ClassificationResult | None:
        """OCR とコンテキストだけで分類する.

        Returns:
            ClassificationResult | None: 画像での再分類が必要な場合・入力が
            何も無い場合は None

        """
        text = (ocr_text or "").strip()[:OCR_MAX_CHARS]
        if context is None and not text:
            return None

        stage1 = self.client.request(
            [
                {
                    "role": "system",
                    "content": build_system_prompt_stage1_text_only(
                        self.projects(), self.addictions(), context
                    ),
                },
                {
                    "role": "user",
                    "content": json.dumps({"ocr_text": text or None}, ensure_ascii=False, indent=2),
                },
            ],
            ClassificationStage1,
            RequestOptions(model=model, max_tokens=TEXT_MAX_TOKENS, temperature=0),
        )

        if should_fallback_to_vision(
            stage1,
            has_image=bool(image_base64),
            allow_vision_uploads=allow_vision_uploads,
        ):
            log.debug("Text classification fell back (confidence=%s)", stage1.confidence)
            return None
        return self._result(stage1)

    def classify_vision(
        self,
        image_base64: str,
        context: ScreenContext | None = None,
        *,
        model: str | None = None,
    ) -> ClassificationResult:
        """スクリーンショットで分類し、必要なら2段目で依存判定する."""
        log.debug("Starting classification (context=%s)", context is not None)
        addictions = self.addictions()
        options = RequestOptions(model=model)

        stage1 = self.client.request(
            [
                {
                    "role": "system",
                    "content": build_system_prompt_stage1(self.projects(), addictions, context),
                },
                {
                    "role": "user",
                    "content": [
                        _image_part(image_base64),
                        {"type": "text", "text": "Classify this screenshot."},
                    ],
                },
            ],
            ClassificationStage1,
            options,
        )

        tracking = (
            bool(addictions)
            and stage1.addiction_triage.tracking_enabled
            and not is_meta_screen(context)
        )
        candidates = select_stage2_candidates(stage1, addictions) if tracking else []
        if not candidates:
            return self._result(stage1)

        stage2 = self.client.request(
            [
                {"role": "system", "content": build_system_prompt_stage2(candidates, context)},
                {
                    "role": "user",
                    "content": [
                        _image_part(image_base64),
                        {
                            "type": "text",
                            "text": json.dumps(
                                {
                                    "candidates": [
                                        {"id": c.id, "definition": c.definition}
                                        for c in candidates
                                    ],
                                    "triage": stage1.addiction_triage.model_dump(),
                                },
                                ensure_ascii=False,
                                indent=2,
                            ),
                        },
                    ],
                },
            ],
            ClassificationStage2,
            options,
        )
        result = self._result(stage1, resolve_stage2(candidates, stage2))
        log.debug("Classification complete: %s", result["category"])
        return result
