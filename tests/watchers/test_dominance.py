from screencap.model.models import ActivitySegment
from screencap.watchers.dominance import compute_dominant_segment

MIN_TOTAL = 10_000


def seg(key: str, start: int, end: int | None = None, app: str | None = None) -> ActivitySegment:
    return ActivitySegment(
        key=key,
        app_id=app or key,
        display_id="1",
        url_host=None,
        start_at=start,
        end_at=end,
    )


class TestComputeDominantSegment:
    """支配的アクティビティ判定のテスト"""

    def test_longest_key_wins(self):
        """最も長いキーが選ばれる"""
        # Given: A=20s, B=40s
        segments = [seg("A", 0, 20_000), seg("B", 20_000, 60_000)]

        # When
        dominant = compute_dominant_segment(segments, 60_000, MIN_TOTAL)

        # Then
        assert dominant is not None
        assert dominant.key == "B"

    def test_same_key_segments_are_summed(self):
        """離れた同一キーの区間は合算される"""
        # Given: A=15s+15s, B=20s
        segments = [
            seg("A", 0, 15_000),
            seg("B", 15_000, 35_000),
            seg("A", 35_000, 50_000),
        ]

        dominant = compute_dominant_segment(segments, 50_000, MIN_TOTAL)

        assert dominant is not None
        assert dominant.key == "A"

    def test_below_threshold_returns_none(self):
        """閾値未満しかなければ None"""
        segments = [seg("A", 0, 9_000), seg("B", 9_000, 18_000)]

        assert compute_dominant_segment(segments, 18_000, MIN_TOTAL) is None

    def test_threshold_is_inclusive(self):
        """ちょうど閾値なら勝者になれる"""
        segments = [seg("A", 0, 10_000)]

        dominant = compute_dominant_segment(segments, 10_000, MIN_TOTAL)

        assert dominant is not None
        assert dominant.key == "A"

    def test_open_segment_is_closed_at_window_end(self):
        """開いた区間はウィンドウ終端で閉じたものとして数える"""
        # Given: A=20s 確定, B は 20s から開いたまま
        segments = [seg("A", 0, 20_000), seg("B", 20_000)]

        # When: 終端 50s -> B=30s
        dominant = compute_dominant_segment(segments, 50_000, MIN_TOTAL)

        # Then
        assert dominant is not None
        assert dominant.key == "B"

    def test_non_positive_durations_are_ignored(self):
        """長さ0以下の区間は無視される"""
        segments = [seg("A", 5_000, 5_000), seg("B", 10_000, 5_000), seg("C", 0, 12_000)]

        dominant = compute_dominant_segment(segments, 12_000, MIN_TOTAL)

        assert dominant is not None
        assert dominant.key == "C"

    def test_tie_keeps_first_key(self):
        """同点なら先に現れたキーが勝つ"""
        segments = [seg("A", 0, 20_000), seg("B", 20_000, 40_000)]

        dominant = compute_dominant_segment(segments, 40_000, MIN_TOTAL)

        assert dominant is not None
        assert dominant.key == "A"

    def test_dominant_carries_segment_attributes(self):
        """勝者の app/display/host が返る"""
        segments = [
            ActivitySegment(
                key="2::host:com.google.Chrome:github.com",
                app_id="com.google.Chrome",
                display_id="2",
                url_host="github.com",
                start_at=0,
                end_at=30_000,
            )
        ]

        dominant = compute_dominant_segment(segments, 30_000, MIN_TOTAL)

        assert dominant is not None
        assert dominant.app_id == "com.google.Chrome"
        assert dominant.display_id == "2"
        assert dominant.url_host == "github.com"

    def test_empty_segments(self):
        """区間が無ければ None"""
        assert compute_dominant_segment([], 60_000, MIN_TOTAL) is None

    def test_segments_are_clipped_to_window_end(self):
        """終端を越える区間は切り詰め、終端以降に始まる区間は数えない"""
        # Given: A=0..15s, B=15s..60s と C=40s.. だが終端は 30s（アイドル開始）
        segments = [seg("A", 0, 15_000), seg("B", 15_000, 60_000), seg("C", 40_000, 80_000)]

        # When
        dominant = compute_dominant_segment(segments, 30_000, MIN_TOTAL)

        # Then: B は 15s 扱いで A と同点、先に現れた A が残る
        assert dominant is not None
        assert dominant.key == "A"
