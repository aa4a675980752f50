from unittest.mock import Mock

import pytest

from screencap.api.services.classification import (
    ClassificationPipeline,
    normalize_project_progress,
    resolve_stage2,
    select_stage2_candidates,
)
from screencap.api.services.llm import NoApiKeyError, SchemaViolationError
from screencap.api.services.schemas import (
    ClassificationStage1,
    ClassificationStage2,
    ProjectProgress,
)
from screencap.model.models import SELF_APP_ID, AddictionOption, ScreenContext

ADDICTIONS = [
    AddictionOption(id="a1", name="Doomscrolling", definition="Doomscrolling"),
    AddictionOption(id="a2", name="Short videos", definition="Short videos"),
]
CONTEXT = ScreenContext(app_bundle_id="com.google.Chrome", app_name="Chrome", url_host="x.com")


def triage(*candidates: tuple[str, float], enabled: bool = True) -> dict:
    return {
        "tracking_enabled": enabled,
        "potentially_addictive": bool(candidates),
        "candidates": [
            {"addiction_id": cid, "likelihood": likelihood, "evidence": [], "rationale": ""}
            for cid, likelihood in candidates
        ],
    }


def stage2(decision: str, addiction_id: str | None, confidence: float, prompt=None):
    return ClassificationStage2(
        decision=decision,
        addiction_id=addiction_id,
        confidence=confidence,
        evidence=["feed"],
        manual_prompt=prompt,
    )


@pytest.fixture
def client():
    return Mock()


@pytest.fixture
def pipeline(client):
    """依存対象ありのパイプライン"""
    return ClassificationPipeline(client, addictions=lambda: ADDICTIONS, projects=lambda: ["screencap"])


class TestTextPath:
    """テキスト分類のテスト"""

    def test_low_confidence_falls_back(self, pipeline, client, stage1_factory):
        """確信度 0.40 で画像ありならフォールバック (None)"""
        client.request.return_value = ClassificationStage1(**stage1_factory(confidence=0.40))

        result = pipeline.classify_text("some text", CONTEXT, image_base64="aW1n")

        assert result is None

    def test_high_confidence_returns_result(self, pipeline, client, stage1_factory):
        """確信度 0.90 なら結果を返す（依存フィールドは空）"""
        client.request.return_value = ClassificationStage1(**stage1_factory(confidence=0.90))

        result = pipeline.classify_text("some text", CONTEXT, image_base64="aW1n")

        assert result is not None
        assert result["category"] == "Work"
        assert result["confidence"] == 0.90
        assert result["tracked_addiction"] == {"detected": False, "name": None}
        assert result["addiction_candidate"] is None
        assert result["addiction_confidence"] is None
        assert result["addiction_prompt"] is None

    def test_triage_candidates_fall_back(self, pipeline, client, stage1_factory):
        """トリアージ候補があれば画像へフォールバック"""
        client.request.return_value = ClassificationStage1(
            **stage1_factory(addiction_triage=triage(("a1", 0.7)))
        )

        assert pipeline.classify_text("feed", CONTEXT, image_base64="aW1n") is None

    def test_no_fallback_without_image_or_uploads(self, pipeline, client, stage1_factory):
        """画像が無い、またはアップロード不可ならフォールバックしない"""
        client.request.return_value = ClassificationStage1(**stage1_factory(confidence=0.2))

        assert pipeline.classify_text("text", CONTEXT) is not None
        assert (
            pipeline.classify_text(
                "text", CONTEXT, image_base64="aW1n", allow_vision_uploads=False
            )
            is not None
        )

    def test_no_input_returns_none_without_call(self, pipeline, client):
        """コンテキストも OCR も無ければ呼び出さない"""
        assert pipeline.classify_text("   ", None) is None
        client.request.assert_not_called()

    def test_ocr_is_truncated(self, pipeline, client, stage1_factory):
        """OCR は 12000 文字で切られる"""
        client.request.return_value = ClassificationStage1(**stage1_factory())

        pipeline.classify_text("x" * 20_000, None)

        messages = client.request.call_args.args[0]
        assert '"ocr_text": "' + "x" * 12_000 + '"' in messages[1]["content"]
        options = client.request.call_args.args[2]
        assert options.max_tokens == 900
        assert options.temperature == 0


class TestVisionPath:
    """画像分類のテスト"""

    def test_stage1_only_without_candidates(self, pipeline, client, stage1_factory):
        """候補が無ければ Stage2 は呼ばれない"""
        client.request.return_value = ClassificationStage1(**stage1_factory())

        result = pipeline.classify_vision("aW1n", CONTEXT)

        assert client.request.call_count == 1
        assert result["project_progress"] == {"shown": True, "confidence": 0.8}

    def test_confirmed_addiction(self, pipeline, client, stage1_factory):
        """confirmed かつ 0.75 以上なら検出"""
        client.request.side_effect = [
            ClassificationStage1(**stage1_factory(addiction_triage=triage(("a1", 0.9)))),
            stage2("confirmed", "a1", 0.8),
        ]

        result = pipeline.classify_vision("aW1n", CONTEXT)

        assert client.request.call_count == 2
        assert client.request.call_args_list[1].args[1] is ClassificationStage2
        assert result["tracked_addiction"] == {"detected": True, "name": "Doomscrolling"}
        assert result["addiction_candidate"] is None

    def test_candidate_addiction(self, pipeline, client, stage1_factory):
        """candidate なら手動確認の候補になる"""
        client.request.side_effect = [
            ClassificationStage1(**stage1_factory(addiction_triage=triage(("a2", 0.6)))),
            stage2("candidate", "a2", 0.5, prompt="Was this intentional?"),
        ]

        result = pipeline.classify_vision("aW1n", CONTEXT)

        assert result["tracked_addiction"] == {"detected": False, "name": None}
        assert result["addiction_candidate"] == "Short videos"
        assert result["addiction_confidence"] == 0.5
        assert result["addiction_prompt"] == "Was this intentional?"

    def test_meta_screen_disables_tracking(self, pipeline, client, stage1_factory):
        """自分自身の画面では Stage2 を呼ばない"""
        client.request.return_value = ClassificationStage1(
            **stage1_factory(addiction_triage=triage(("a1", 0.9)))
        )

        pipeline.classify_vision("aW1n", ScreenContext(app_bundle_id=SELF_APP_ID))

        assert client.request.call_count == 1

    def test_no_known_addictions(self, client, stage1_factory):
        """追跡対象が無ければ Stage2 を呼ばない"""
        client.request.return_value = ClassificationStage1(
            **stage1_factory(addiction_triage=triage(("a1", 0.9)))
        )

        ClassificationPipeline(client).classify_vision("aW1n", CONTEXT)

        assert client.request.call_count == 1

    def test_errors_propagate(self, pipeline, client):
        """スキーマ違反・キー無しは呼び出し元へ伝わる"""
        client.request.side_effect = SchemaViolationError("bad")
        with pytest.raises(SchemaViolationError):
            pipeline.classify_vision("aW1n", CONTEXT)

        client.request.side_effect = NoApiKeyError("no key")
        with pytest.raises(NoApiKeyError):
            pipeline.classify_text("text", CONTEXT)


class TestHelpers:
    """補助関数のテスト"""

    def test_normalize_project_progress(self):
        """プロジェクトが無ければ進捗は 0"""
        shown = ProjectProgress(shown=True, confidence=0.7)

        assert normalize_project_progress(None, shown) == {"shown": False, "confidence": 0}
        assert normalize_project_progress("p", ProjectProgress(shown=False, confidence=0.9)) == {
            "shown": False,
            "confidence": 0,
        }
        assert normalize_project_progress("p", shown) == {"shown": True, "confidence": 0.7}

    def test_select_candidates_filters_and_sorts(self, stage1_factory):
        """未知の id を除き、尤度順に最大5件"""
        stage1 = ClassificationStage1(
            **stage1_factory(
                addiction_triage=triage(
                    ("a1", 0.3), ("unknown", 0.99), ("a2", 0.8), *[("a1", 0.1)] * 5
                )
            )
        )

        selected = select_stage2_candidates(stage1, ADDICTIONS)

        assert len(selected) == 5
        assert selected[0].id == "a2"
        assert all(s.id in {"a1", "a2"} for s in selected)

    def test_resolve_stage2(self):
        """Stage2 の判定を解決する"""
        assert resolve_stage2(ADDICTIONS, stage2("confirmed", "a1", 0.75)).confirmed == ADDICTIONS[0]
        low = resolve_stage2(ADDICTIONS, stage2("confirmed", "a1", 0.74))
        assert low.confirmed is None
        assert low.candidate is None
        assert resolve_stage2(ADDICTIONS, stage2("confirmed", "zzz", 0.99)).confirmed is None
        assert resolve_stage2(ADDICTIONS, stage2("none", "a1", 0.9)).candidate is None
