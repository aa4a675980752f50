import platform
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from screencap.watchers.logger import logger

if sys.platform == "win32":
    from win10toast import ToastNotifier  # type: ignore[import-untyped, unused-ignore]

log = logger.getChild("Notifications")

APP_TITLE = "Screencap"
PERMISSION_MESSAGE = (
    "画面収録の権限がありません。システム設定で Screencap に画面収録を許可してください。"
)


class NotificationLevel(Enum):
    """Notification severity levels used by the service."""

    INFO = "info"
    WARNING = "warning"
    URGENT = "urgent"


@dataclass
class NotificationConfig:
    """Configuration for :class:`NotificationService`."""

    duration: int = 5


class NotificationService:
    """Notification service with history tracking."""

    def __init__(self, config: NotificationConfig | None = None) -> None:
        self.platform = platform.system()
        self.config = config or NotificationConfig()
        self._history: list[dict[str, Any]] = []

    def notify(
        self,
        title: str,
        message: str,
        level: NotificationLevel = NotificationLevel.INFO,
    ) -> bool:
        """Display a notification and record it.

        On Windows a toast is shown through ``win10toast``. Other platforms
        only record the notification and report ``False``.
        """
        delivered = False
        if self.platform == "Windows":
            notifier = ToastNotifier()
            notifier.show_toast(  # pyright: ignore[reportUnknownMemberType]
                title, message, duration=self.config.duration, threaded=True
            )
            delivered = True
        self._history.append(
            {
                "title": title,
                "message": message,
                "level": level.value,
                "timestamp": time.time(),
                "delivered": delivered,
            },
        )
        log.info("Notification [%s] %s: %s", level.value, title, message)
        return delivered

    def notify_permission_required(self) -> bool:
        """画面収録権限が無いことを知らせる."""
        return self.notify(APP_TITLE, PERMISSION_MESSAGE, NotificationLevel.WARNING)

    def get_capabilities(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "supports_toast": self.platform == "Windows",
        }

    def get_notification_history(self) -> list[dict[str, Any]]:
        """Return a copy of the notification history."""
        return list(self._history)
