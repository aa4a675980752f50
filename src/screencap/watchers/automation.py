"""OS automation (AppleScript etc.) executor with bounded concurrency.

Every call spawns one external process. At most ``max_concurrent`` processes
run at once; further calls wait in FIFO order. A call that outlives its
timeout is killed and reported as ``timed_out``.
"""

from __future__ import annotations

import asyncio
import signal
from collections import deque
from collections.abc import Callable, Iterable, Sequence

from screencap.model.models import AutomationCallResult
from screencap.watchers.logger import logger

DEFAULT_TIMEOUT_MS = 800
MAX_CONCURRENT_CALLS = 5

DENIAL_PATTERNS: tuple[str, ...] = (
    "not authorized",
    "not allowed to send",
    "access not allowed",
    "assistive access",
    "System Events got an error",
)

_SIGKILL = getattr(signal, "SIGKILL", None)

log = logger.getChild("AutomationExecutor")

CommandBuilder = Callable[[str], Sequence[str]]


def osascript_command(script: str) -> list[str]:
    """AppleScript を osascript で実行するコマンドライン."""
    return ["osascript", "-e", script]


class DenialClassifier:
    """エラー文字列が OS の自動化権限拒否によるものか判定する.

    ヒューリスティックであり、スクリプトのバグやクラッシュと完全には区別できない。
    """

    def __init__(self, patterns: Iterable[str] = DENIAL_PATTERNS) -> None:
        self.patterns = tuple(p.lower() for p in patterns)

    def is_denied(self, error: str | None) -> bool:
        if not error:
            return False
        lower = error.lower()
        return any(p in lower for p in self.patterns)


_default_classifier = DenialClassifier()


def is_automation_denied(
    error: str | None,
    classifier: DenialClassifier | None = None,
) -> bool:
    """Return True when ``error`` looks like an automation permission denial."""
    return (classifier or _default_classifier).is_denied(error)


class AutomationExecutor:
    """外部スクリプト呼び出しを同時実行数とタイムアウトで制御する."""

    def __init__(
        self,
        max_concurrent: int = MAX_CONCURRENT_CALLS,
        command_builder: CommandBuilder = osascript_command,
    ) -> None:
        if max_concurrent < 1:
            msg = "max_concurrent must be >= 1"
            raise ValueError(msg)
        self.max_concurrent = max_concurrent
        self._command_builder = command_builder
        self._in_flight = 0
        self._queue: deque[asyncio.Future[None]] = deque()

    # ------------------------------------------------------------------
    # スロット管理
    async def _acquire_slot(self) -> None:
        if self._in_flight < self.max_concurrent:
            self._in_flight += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # 枠を譲られた直後にキャンセルされた場合は次へ回す
            if waiter.done() and not waiter.cancelled():
                self._release_slot()
            raise

    def _release_slot(self) -> None:
        self._in_flight -= 1
        while self._queue:
            waiter = self._queue.popleft()
            if waiter.done():
                continue
            # 枠はそのまま次の待機者へ引き継ぐ
            self._in_flight += 1
            waiter.set_result(None)
            return

    def health(self) -> dict[str, int]:
        """現在の実行数と待ち行列の長さ."""
        return {"in_flight": self._in_flight, "queue_length": len(self._queue)}

    # ------------------------------------------------------------------
    # 実行
    async def run(
        self,
        script: str,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> AutomationCallResult:
        """スクリプトを実行し結果を返す（例外は投げない）."""
        if self._in_flight >= self.max_concurrent:
            log.debug("Automation call queued (in_flight=%s)", self._in_flight)
        await self._acquire_slot()
        try:
            return await self._execute(script, timeout_ms)
        finally:
            self._release_slot()

    async def _execute(self, script: str, timeout_ms: int) -> AutomationCallResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command_builder(script),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return AutomationCallResult(
                success=False, output="", error=str(exc), timed_out=False
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            _kill(proc)
            await proc.wait()
            log.debug("Automation call timed out after %sms", timeout_ms)
            return AutomationCallResult(
                success=False, output="", error="timeout", timed_out=True
            )

        output = stdout.decode(errors="replace").strip()
        if proc.returncode == 0:
            return AutomationCallResult(
                success=True, output=output, error=None, timed_out=False
            )

        timed_out = _SIGKILL is not None and proc.returncode == -_SIGKILL
        error_text = stderr.decode(errors="replace").strip()
        if timed_out:
            error_text = "timeout"
        elif not error_text:
            error_text = f"exit status {proc.returncode}"
        return AutomationCallResult(
            success=False, output=output, error=error_text, timed_out=timed_out
        )


def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass
