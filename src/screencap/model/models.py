__all__ = [
    "IDLE_APP_ID",
    "SELF_APP_ID",
    "ActivityContext",
    "ActivitySegment",
    "AddictionOption",
    "AutomationCallResult",
    "BackgroundContext",
    "Capture",
    "CaptureTriggerResult",
    "CaptureWindow",
    "ClassificationResult",
    "ContentDescriptor",
    "ContextEnrichment",
    "DominantSegment",
    "ForegroundApp",
    "ForegroundSnapshot",
    "ForegroundWindow",
    "ManualCaptureOptions",
    "SchedulerState",
    "ScreenContext",
    "SkipWindow",
    "UrlMetadata",
    "WindowBounds",
    "WindowedResult",
    "is_self_app",
]


from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, TypedDict

# 自分自身（トラッカーアプリ）のアプリID
SELF_APP_ID = "app.screencap.tracker"
SELF_APP_NAME = "Screencap"
# アイドル区間を表す疑似アプリID
IDLE_APP_ID = "__idle__"


class SchedulerState(Enum):
    """スケジューラの状態."""

    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


@dataclass
class ActivitySegment:
    """1つの(app, display, url)が前面にあった連続区間.

    ``end_at`` が None の場合は現在も開いている区間。時刻はすべてミリ秒。
    """

    key: str
    app_id: str
    display_id: str
    url_host: str | None
    start_at: int
    end_at: int | None = None


@dataclass(frozen=True)
class DominantSegment:
    """ウィンドウ内で支配的だったアクティビティ."""

    key: str
    app_id: str
    display_id: str
    url_host: str | None


@dataclass(frozen=True)
class AutomationCallResult:
    """外部スクリプト呼び出し1回分の結果."""

    success: bool
    output: str
    error: str | None
    timed_out: bool


# --- 前面コンテキスト ---


@dataclass(frozen=True)
class ForegroundApp:
    name: str
    bundle_id: str
    pid: int


@dataclass(frozen=True)
class WindowBounds:
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class ForegroundWindow:
    title: str
    bounds: WindowBounds = field(default_factory=WindowBounds)
    display_id: str | None = None
    is_fullscreen: bool = False


@dataclass(frozen=True)
class ForegroundSnapshot:
    """ある時点の前面アプリ・ウィンドウ."""

    app: ForegroundApp
    window: ForegroundWindow
    captured_at: int


@dataclass(frozen=True)
class UrlMetadata:
    url_canonical: str
    host: str
    title: str | None = None


@dataclass(frozen=True)
class ContentDescriptor:
    kind: str
    id: str
    title: str | None
    url_canonical: str
    subtitle: str | None = None
    image_url: str | None = None


@dataclass(frozen=True)
class ContextEnrichment:
    """プロバイダが返す付加情報."""

    url: UrlMetadata | None = None
    content: ContentDescriptor | None = None
    confidence: float = 0.5


@dataclass(frozen=True)
class BackgroundContext:
    provider: str
    kind: str
    id: str
    title: str | None = None
    subtitle: str | None = None
    image_url: str | None = None
    action_url: str | None = None


@dataclass(frozen=True)
class ActivityContext:
    """スナップショットとプロバイダ情報を統合したコンテキスト."""

    captured_at: int
    app: ForegroundApp
    window: ForegroundWindow
    url: UrlMetadata | None
    content: ContentDescriptor | None
    provider: str
    confidence: float
    key: str
    background: tuple[BackgroundContext, ...] = ()


def is_self_app(
    bundle_id: str | None,
    name: str | None = None,
    window_title: str | None = None,
) -> bool:
    """トラッカー自身の画面かどうか."""
    if bundle_id == SELF_APP_ID:
        return True
    if name and name.strip().lower() == SELF_APP_NAME.lower():
        return True
    return bool(window_title and window_title.strip() == SELF_APP_NAME)


# --- キャプチャ ---


@dataclass(frozen=True)
class Capture:
    """1ディスプレイ分のスクリーンショット."""

    display_id: str
    thumbnail_path: str
    original_path: str
    timestamp: int
    width: int
    height: int
    is_high_res: bool = False


@dataclass(frozen=True)
class CaptureWindow:
    """ウィンドウ確定時にキャプチャが得られた結果."""

    captures: list[Capture]
    context: ActivityContext | None
    window_start: int
    window_end: int
    primary_display_id: str | None
    kind: Literal["capture"] = "capture"


SkipReason = Literal["not-running", "no-data", "self", "policy-skip", "no-candidate"]


@dataclass(frozen=True)
class SkipWindow:
    """ウィンドウ確定時にイベントを作らない結果."""

    reason: SkipReason
    window_start: int
    window_end: int
    kind: Literal["skip"] = "skip"


WindowedResult = CaptureWindow | SkipWindow


class CaptureTriggerResult(TypedDict):
    merged: bool
    event_id: str | None


class ManualCaptureOptions(TypedDict, total=False):
    primary_display_id: str | None
    intent: Literal["default", "project_progress"]


# --- 分類 ---


@dataclass(frozen=True)
class ScreenContext:
    """分類プロンプトに渡す画面コンテキスト."""

    app_bundle_id: str | None = None
    app_name: str | None = None
    window_title: str | None = None
    url_host: str | None = None
    content_kind: str | None = None
    content_title: str | None = None
    user_caption: str | None = None
    selected_project: str | None = None

    @classmethod
    def from_activity(cls, context: ActivityContext | None) -> "ScreenContext | None":
        if context is None:
            return None
        return cls(
            app_bundle_id=context.app.bundle_id,
            app_name=context.app.name,
            window_title=context.window.title,
            url_host=context.url.host if context.url else None,
            content_kind=context.content.kind if context.content else None,
            content_title=context.content.title if context.content else None,
        )


@dataclass(frozen=True)
class AddictionOption:
    """ユーザーが追跡している依存対象."""

    id: str
    name: str
    definition: str


class ClassificationResult(TypedDict):
    """分類パイプラインの最終結果."""

    category: str
    subcategories: list[str]
    project: str | None
    project_progress: dict[str, Any]
    tags: list[str]
    confidence: float
    caption: str
    tracked_addiction: dict[str, Any]
    addiction_candidate: str | None
    addiction_confidence: float | None
    addiction_prompt: str | None
