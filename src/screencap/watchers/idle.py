"""Idle detection helpers.

Windows uses LASTINPUTINFO, macOS reads ``HIDIdleTime`` from ``ioreg``;
other platforms fall back to 0.
"""

from __future__ import annotations

import re
import subprocess
import sys
from typing import Any, ClassVar

# 5分を超えるアイドルは「離席」とみなす
IDLE_AWAY_SECONDS = 5 * 60

_HID_IDLE_RE = re.compile(r'"HIDIdleTime"\s*=\s*(\d+)')
_NS_PER_SECOND = 1_000_000_000

if sys.platform == "win32":
    # Windows 専用の ctypes 構成要素だけこのブロックで import する
    from ctypes import Structure, byref, sizeof, windll, wintypes

    class LASTINPUTINFO(Structure):
        """Windows LASTINPUTINFO structure."""

        _fields_: ClassVar[Any] = [
            ("cbSize", wintypes.UINT),
            ("dwTime", wintypes.DWORD),
        ]

    def get_idle_ms() -> int:
        """最後の入力からの経過時間をミリ秒で取得（Windows）。"""
        lii = LASTINPUTINFO()
        lii.cbSize = sizeof(LASTINPUTINFO)
        try:
            ok = windll.user32.GetLastInputInfo(byref(lii))
        except OSError:
            return 0
        else:
            if ok:
                current_tick = int(windll.kernel32.GetTickCount())
                idle_time = int(current_tick - lii.dwTime)
                return max(0, idle_time)
            return 0

elif sys.platform == "darwin":

    def get_idle_ms() -> int:
        """IOHIDSystem の HIDIdleTime (ns) からミリ秒を取得（macOS）。"""
        try:
            result = subprocess.run(
                ["ioreg", "-c", "IOHIDSystem", "-d", "4"],  # noqa: S607
                capture_output=True,
                text=True,
                timeout=2,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired):
            return 0
        return parse_hid_idle_ms(result.stdout)

else:
    # その他（CI等）は 0 を返すフォールバック
    def get_idle_ms() -> int:
        """非対応プラットフォームでは 0 を返すフォールバック実装。"""
        return 0


def parse_hid_idle_ms(ioreg_output: str) -> int:
    """ioreg の出力から HIDIdleTime を取り出してミリ秒にする."""
    match = _HID_IDLE_RE.search(ioreg_output)
    if not match:
        return 0
    return int(match.group(1)) * 1000 // _NS_PER_SECOND


def get_idle_seconds() -> int:
    """システムのアイドル秒数."""
    return get_idle_ms() // 1000

