#!/usr/bin/env python3
import contextlib
import os
from pathlib import Path

import psutil
import requests

from scripts.boot.utils import API_HOST, API_PID_FILE, API_PORT, REPO_ROOT, logger

TERMINATE_TIMEOUT = 10.0
SERVER_MARKER = "screencap.api.main:app"


def request_scheduler_stop() -> bool:
    """新しいキャプチャサイクルが始まらないよう先にスケジューラを止める."""
    try:
        resp = requests.post(f"http://{API_HOST}:{API_PORT}/scheduler/stop", timeout=2.5)
    except requests.RequestException:
        return False
    return resp.ok


def is_api_process(proc: psutil.Process) -> bool:
    """PID が使い回されていないか、コマンドラインで確認する."""
    try:
        return any(SERVER_MARKER in part for part in proc.cmdline())
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def stop_api(pid_file: Path, timeout: float = TERMINATE_TIMEOUT) -> bool:
    """PID ファイルのサーバーを終了させる。終了させたら True."""
    if not pid_file.exists():
        logger.info("PID ファイルがありません")
        return False

    stopped = False
    try:
        proc = psutil.Process(int(pid_file.read_text(encoding="ascii")))
        if not is_api_process(proc):
            logger.warning("PID %s は Screencap のサーバーではありません", proc.pid)
        else:
            proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except psutil.TimeoutExpired:
                logger.warning("終了しないため kill します (PID %s)", proc.pid)
                proc.kill()
            stopped = True
    except (ValueError, psutil.NoSuchProcess):
        logger.info("すでに停止済みです")
    finally:
        with contextlib.suppress(OSError):
            pid_file.unlink(missing_ok=True)
    return stopped


def main() -> int:
    os.chdir(REPO_ROOT)

    logger.info("============== Screencap 停止中 ================")
    if request_scheduler_stop():
        logger.info("スケジューラを停止しました")
    stop_api(API_PID_FILE)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
