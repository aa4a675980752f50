from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from screencap.model.models import ActivitySegment, DominantSegment


@dataclass
class _Total:
    duration_ms: int
    app_id: str
    display_id: str
    url_host: str | None


def compute_dominant_segment(
    segments: Iterable[ActivitySegment],
    window_end: int,
    min_total_ms: int,
) -> DominantSegment | None:
    """ウィンドウ内で最も長く前面にあったキーを返す.

    開いたままの区間は ``window_end`` で閉じたものとして扱い、閉じた区間も
    ``window_end`` で切り詰める（それ以降に始まる区間は数えない）。同じキーの区間は
    離れていても合算する。合計が ``min_total_ms`` 以上（境界を含む）で、かつ
    それまでの最大より真に長いキーだけが勝者を更新するため、同点の場合は先に
    現れたキーが残る。
    """
    totals: dict[str, _Total] = {}
    for s in segments:
        end_at = window_end if s.end_at is None else min(s.end_at, window_end)
        duration_ms = end_at - s.start_at
        if duration_ms <= 0:
            continue
        prev = totals.get(s.key)
        if prev:
            prev.duration_ms += duration_ms
        else:
            totals[s.key] = _Total(duration_ms, s.app_id, s.display_id, s.url_host)

    best: DominantSegment | None = None
    best_duration = 0
    for key, data in totals.items():
        if data.duration_ms < min_total_ms:
            continue
        if data.duration_ms > best_duration:
            best_duration = data.duration_ms
            best = DominantSegment(
                key=key,
                app_id=data.app_id,
                display_id=data.display_id,
                url_host=data.url_host,
            )
    return best
