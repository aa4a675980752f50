from unittest.mock import Mock

import pytest

from screencap.api.services.router import (
    TEXT_PROVIDER_ID,
    VISION_PROVIDER_ID,
    AiRouter,
    Availability,
    ClassificationInput,
    OpenRouterTextProvider,
    OpenRouterVisionProvider,
    ProviderContext,
)

RESULT = {"category": "Work"}


class StubProvider:
    def __init__(self, provider_id, result=None, available=True, error=None):
        self.id = provider_id
        self.result = result
        self.available = available
        self.error = error
        self.calls = 0

    def is_available(self, ctx):
        return Availability(self.available, None if self.available else "off")

    def classify(self, data, ctx):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def ctx():
    return ProviderContext(mode="cloud", api_key="sk-test", allow_vision_uploads=True)


class TestAiRouter:
    """AiRouter のテスト"""

    def test_duplicate_ids_rejected(self):
        """同じ id は登録できない"""
        with pytest.raises(ValueError):
            AiRouter([StubProvider("a"), StubProvider("a")])

    def test_null_result_falls_through(self, ctx):
        """None を返したら次のプロバイダへ"""
        text = StubProvider("text", result=None)
        vision = StubProvider("vision", result=RESULT)
        router = AiRouter([text, vision])

        decision = router.classify(ClassificationInput(), ctx, ["text", "vision"])

        assert decision.ok is True
        assert decision.provider_id == "vision"
        assert decision.result == RESULT
        assert [a.error for a in decision.attempts] == ["Null result", None]

    def test_errors_and_unavailable_are_recorded(self, ctx):
        """例外・利用不可・未登録は記録して次へ"""
        router = AiRouter(
            [
                StubProvider("broken", error=RuntimeError("boom")),
                StubProvider("off", available=False),
            ]
        )

        decision = router.classify(ClassificationInput(), ctx, ["missing", "off", "broken"])

        assert decision.ok is False
        assert decision.result is None
        assert [(a.provider_id, a.available, a.error) for a in decision.attempts] == [
            ("missing", False, "Provider not registered"),
            ("off", False, "off"),
            ("broken", True, "boom"),
        ]

    def test_mode_off(self):
        """mode=off なら何も試さない"""
        provider = StubProvider("a", result=RESULT)

        decision = AiRouter([provider]).classify(
            ClassificationInput(), ProviderContext(mode="off"), ["a"]
        )

        assert decision.ok is False
        assert decision.attempts == []
        assert provider.calls == 0

    def test_get_availability(self, ctx):
        """順序どおりの可用性"""
        router = AiRouter([StubProvider("a"), StubProvider("b", available=False)])

        availability = router.get_availability(["a", "b", "c"], ctx)

        assert availability["a"].available is True
        assert availability["b"].available is False
        assert availability["c"].reason == "Provider not registered"


class TestOpenRouterProviders:
    """OpenRouter プロバイダの可用性テスト"""

    @pytest.mark.parametrize(
        ("ctx", "reason"),
        [
            (ProviderContext(mode="off", api_key="k"), "AI is disabled"),
            (ProviderContext(mode="local", api_key="k"), "Cloud providers disabled"),
            (ProviderContext(mode="cloud", api_key=None), "No API key configured"),
        ],
    )
    def test_text_unavailable(self, ctx, reason):
        provider = OpenRouterTextProvider(Mock())

        availability = provider.is_available(ctx)

        assert availability.available is False
        assert availability.reason == reason

    def test_vision_requires_uploads(self):
        """画像アップロード不可なら vision は使えない"""
        provider = OpenRouterVisionProvider(Mock())

        availability = provider.is_available(
            ProviderContext(mode="hybrid", api_key="k", allow_vision_uploads=False)
        )

        assert availability.reason == "Vision uploads disabled"

    def test_text_then_vision(self, ctx):
        """テキストがフォールバックしたら画像で分類する"""
        pipeline = Mock()
        pipeline.classify_text.return_value = None
        pipeline.classify_vision.return_value = RESULT
        router = AiRouter([OpenRouterTextProvider(pipeline), OpenRouterVisionProvider(pipeline)])

        decision = router.classify(
            ClassificationInput(image_base64="aW1n", ocr_text="hello"),
            ctx,
            [TEXT_PROVIDER_ID, VISION_PROVIDER_ID],
        )

        assert decision.provider_id == VISION_PROVIDER_ID
        pipeline.classify_text.assert_called_once_with(
            "hello", None, image_base64="aW1n", allow_vision_uploads=True, model=None
        )
        pipeline.classify_vision.assert_called_once_with("aW1n", None, model=None)

    def test_vision_without_image(self, ctx):
        """画像が無ければ vision は None"""
        provider = OpenRouterVisionProvider(Mock())

        assert provider.classify(ClassificationInput(), ctx) is None
