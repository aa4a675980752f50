import asyncio
import base64
import time
import uuid
from pathlib import Path

import mss  # pyright: ignore[reportMissingImports]
import mss.exception  # pyright: ignore[reportMissingImports]
from PIL import Image  # pyright: ignore[reportMissingImports]

from screencap.model.models import Capture
from screencap.watchers.logger import logger

log = logger.getChild("ScreenCapture")

THUMBNAIL_SIZE = (480, 270)
ORIGINAL_MAX_WIDTH = 1920


class ScreenCapture:
    """全ディスプレイのスクリーンキャプチャを取得するクラス."""

    def __init__(self, thumbnails_dir: Path, originals_dir: Path) -> None:
        """初期化する

        Args:
        thumbnails_dir: サムネイルの保存先
        originals_dir: 元画像（と高解像度 PNG）の保存先

        """
        self.thumbnails_dir = Path(thumbnails_dir)
        self.originals_dir = Path(originals_dir)
        self.last_capture_time: float = 0.0

    def primary_display_id(self) -> str:
        return "1"

    def has_permission(self) -> bool:
        """画面収録が許可されているか（1px を試し撮りして判定）."""
        try:
            with mss.mss() as sct:
                monitors = sct.monitors
                if len(monitors) < 2:  # noqa: PLR2004
                    return False
                mon = monitors[1]
                sct.grab({"top": mon["top"], "left": mon["left"], "width": 1, "height": 1})
        except mss.exception.ScreenShotError:
            return False
        return True

    def _grab(self, sct: "mss.base.MSSBase", display_id: str) -> Image.Image | None:
        index = int(display_id)
        if index < 1 or index >= len(sct.monitors):
            return None
        shot = sct.grab(sct.monitors[index])
        return Image.frombytes("RGB", shot.size, shot.bgra, "raw", "BGRX")

    def _save(
        self,
        image: Image.Image,
        display_id: str,
        *,
        high_res: bool,
        thumbnails_dir: Path,
        originals_dir: Path,
    ) -> Capture:
        thumbnails_dir.mkdir(parents=True, exist_ok=True)
        originals_dir.mkdir(parents=True, exist_ok=True)
        capture_id = uuid.uuid4().hex
        original_path = originals_dir / f"{capture_id}.webp"
        thumbnail_path = thumbnails_dir / f"{capture_id}.webp"

        if high_res:
            image.save(originals_dir / f"{capture_id}.hq.png", format="PNG")

        original = image.copy()
        if original.width > ORIGINAL_MAX_WIDTH:
            ratio = ORIGINAL_MAX_WIDTH / original.width
            original = original.resize((ORIGINAL_MAX_WIDTH, int(original.height * ratio)))
        original.save(original_path, format="WEBP", quality=80)

        thumb = image.copy()
        thumb.thumbnail(THUMBNAIL_SIZE)
        thumb.save(thumbnail_path, format="WEBP", quality=70)

        self.last_capture_time = time.time()
        return Capture(
            display_id=display_id,
            thumbnail_path=str(thumbnail_path),
            original_path=str(original_path),
            timestamp=int(self.last_capture_time * 1000),
            width=image.width,
            height=image.height,
            is_high_res=high_res,
        )

    def capture_all_displays_sync(
        self,
        high_res_display_id: str | None = None,
        dirs: tuple[Path, Path] | None = None,
    ) -> list[Capture]:
        thumbnails_dir, originals_dir = dirs or (self.thumbnails_dir, self.originals_dir)
        captures: list[Capture] = []
        try:
            with mss.mss() as sct:
                for index in range(1, len(sct.monitors)):
                    display_id = str(index)
                    image = self._grab(sct, display_id)
                    if image is None:
                        continue
                    captures.append(
                        self._save(
                            image,
                            display_id,
                            high_res=display_id == high_res_display_id,
                            thumbnails_dir=thumbnails_dir,
                            originals_dir=originals_dir,
                        )
                    )
        except mss.exception.ScreenShotError as exc:
            log.warning("Screen capture failed: %s", exc)
            return []
        return captures

    async def capture_all_displays(
        self,
        high_res_display_id: str | None = None,
        dirs: tuple[Path, Path] | None = None,
    ) -> list[Capture]:
        """全ディスプレイを撮影する（I/O はワーカースレッドで実行）."""
        return await asyncio.to_thread(
            self.capture_all_displays_sync, high_res_display_id, dirs
        )


def encode_image_base64(path: str) -> str:
    """画像ファイルを base64 にする."""
    return base64.b64encode(Path(path).read_bytes()).decode()
