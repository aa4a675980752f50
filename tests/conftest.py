from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest

from screencap.model.models import (
    Capture,
    ForegroundApp,
    ForegroundSnapshot,
    ForegroundWindow,
)


def make_snapshot(
    bundle_id: str = "com.apple.Terminal",
    name: str = "Terminal",
    title: str = "zsh",
    captured_at: int = 0,
    display_id: str | None = None,
) -> ForegroundSnapshot:
    return ForegroundSnapshot(
        app=ForegroundApp(name=name, bundle_id=bundle_id, pid=42),
        window=ForegroundWindow(title=title, display_id=display_id),
        captured_at=captured_at,
    )


def stage1_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "category": "Work",
        "subcategories": ["coding"],
        "project": "screencap",
        "project_progress": {"shown": True, "confidence": 0.8},
        "potential_progress": True,
        "tags": ["python"],
        "confidence": 0.9,
        "caption": "Editing scheduler module",
        "addiction_triage": {
            "tracking_enabled": False,
            "potentially_addictive": False,
            "candidates": [],
        },
    }
    payload.update(overrides)
    return payload


def openrouter_response(content: str, status_code: int = 200) -> Mock:
    response = Mock()
    response.status_code = status_code
    response.text = content
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


class FakeClock:
    """手動で進める ms 単位の時計."""

    def __init__(self, now: int = 0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeCapture:
    """ディスクにダミー画像を書くキャプチャ."""

    def __init__(self, displays: tuple[str, ...] = ("1",)) -> None:
        self.displays = displays
        self.calls: list[str | None] = []
        self.counter = 0

    def primary_display_id(self) -> str:
        return "1"

    async def capture_all_displays(
        self,
        high_res_display_id: str | None = None,
        dirs: tuple[Path, Path] | None = None,
    ) -> list[Capture]:
        self.calls.append(high_res_display_id)
        captures: list[Capture] = []
        for display_id in self.displays:
            self.counter += 1
            if dirs:
                thumbnails_dir, originals_dir = dirs
                thumbnail = thumbnails_dir / f"shot{self.counter}.webp"
                original = originals_dir / f"shot{self.counter}.webp"
                thumbnail.write_bytes(b"thumb")
                original.write_bytes(b"orig")
            else:
                thumbnail = Path(f"/tmp/shot{self.counter}-thumb.webp")
                original = Path(f"/tmp/shot{self.counter}.webp")
            captures.append(
                Capture(
                    display_id=display_id,
                    thumbnail_path=str(thumbnail),
                    original_path=str(original),
                    timestamp=1,
                    width=1920,
                    height=1080,
                    is_high_res=display_id == high_res_display_id,
                )
            )
        return captures


@pytest.fixture
def snapshot_factory():
    """前面スナップショットのファクトリ"""
    return make_snapshot


@pytest.fixture
def fake_clock():
    """テスト用の時計"""
    return FakeClock()


@pytest.fixture
def fake_capture():
    """テスト用のキャプチャ"""
    return FakeCapture()


@pytest.fixture
def stage1_factory():
    """Stage1 レスポンスのファクトリ"""
    return stage1_payload


@pytest.fixture
def response_factory():
    """OpenRouter レスポンスのモックファクトリ"""
    return openrouter_response
