import base64
from pathlib import Path
from unittest.mock import MagicMock, patch

import mss.exception
import pytest
from PIL import Image

from screencap.watchers.screen_capture import (
    ORIGINAL_MAX_WIDTH,
    ScreenCapture,
    encode_image_base64,
)


@pytest.fixture
def capture(tmp_path):
    return ScreenCapture(tmp_path / "thumbnails", tmp_path / "originals")


def fake_mss(monitors, image=None, error=None):
    """mss.mss() のコンテキストマネージャを差し替える"""
    sct = MagicMock()
    sct.monitors = monitors
    if error:
        sct.grab.side_effect = error
    elif image is not None:
        shot = MagicMock()
        shot.size = image.size
        shot.bgra = image.convert("RGBX").tobytes()
        sct.grab.return_value = shot
    factory = MagicMock()
    factory.return_value.__enter__.return_value = sct
    return factory


class TestScreenCapture:
    """ScreenCapture のテスト"""

    def test_save_writes_resized_files(self, capture, tmp_path):
        """元画像は最大幅に縮小、サムネイルも保存される"""
        image = Image.new("RGB", (3840, 2160), "white")

        result = capture._save(
            image,
            "1",
            high_res=True,
            thumbnails_dir=tmp_path / "thumbnails",
            originals_dir=tmp_path / "originals",
        )

        assert result.display_id == "1"
        assert result.is_high_res is True
        assert (result.width, result.height) == (3840, 2160)
        with Image.open(result.original_path) as original:
            assert original.width == ORIGINAL_MAX_WIDTH
        assert Path(result.thumbnail_path).exists()
        assert Path(result.original_path).with_suffix(".hq.png").exists()

    def test_capture_all_displays_sync(self, capture, tmp_path):
        """合成モニタ (monitors[0]) を除いた各ディスプレイを撮る"""
        monitor = {"top": 0, "left": 0, "width": 8, "height": 6}
        image = Image.new("RGB", (8, 6), "red")

        with patch("mss.mss", fake_mss([monitor, monitor, monitor], image)):
            captures = capture.capture_all_displays_sync(high_res_display_id="2")

        assert [c.display_id for c in captures] == ["1", "2"]
        assert [c.is_high_res for c in captures] == [False, True]
        assert all(Path(c.thumbnail_path).parent == tmp_path / "thumbnails" for c in captures)

    def test_capture_failure_returns_empty(self, capture):
        monitor = {"top": 0, "left": 0, "width": 8, "height": 6}
        error = mss.exception.ScreenShotError("denied")

        with patch("mss.mss", fake_mss([monitor, monitor], error=error)):
            assert capture.capture_all_displays_sync() == []

    def test_has_permission(self, capture):
        """1px の試し撮りで権限を判定する"""
        monitor = {"top": 0, "left": 0, "width": 8, "height": 6}
        image = Image.new("RGB", (1, 1))

        with patch("mss.mss", fake_mss([monitor, monitor], image)):
            assert capture.has_permission() is True
        with patch("mss.mss", fake_mss([monitor])):
            assert capture.has_permission() is False
        with patch(
            "mss.mss", fake_mss([monitor, monitor], error=mss.exception.ScreenShotError("x"))
        ):
            assert capture.has_permission() is False

    def test_encode_image_base64(self, tmp_path):
        path = tmp_path / "a.webp"
        path.write_bytes(b"abc")

        assert base64.b64decode(encode_image_base64(str(path))) == b"abc"
