#!/usr/bin/env python3
import os
import subprocess
import sys
from pathlib import Path

from scripts.boot.utils import (
    API_HOST,
    API_PID_FILE,
    API_PORT,
    LOG_DIR,
    REPO_ROOT,
    http_ok,
    load_local_env,
    logger,
)


def background_popen(
    cmd: list[str], stdout_path: Path, stderr_path: Path, env: dict[str, str]
) -> subprocess.Popen[bytes]:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    kwargs: dict[str, int] = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
    with (
        stdout_path.open("ab", buffering=0) as stdout_f,
        stderr_path.open("ab", buffering=0) as stderr_f,
    ):
        return subprocess.Popen(  # noqa: S603
            cmd,
            cwd=str(REPO_ROOT),
            stdout=stdout_f,
            stderr=stderr_f,
            env=env,
            **kwargs,
        )


def start_api(env: dict[str, str]) -> None:
    proc = background_popen(
        [
            sys.executable,
            "-m",
            "uvicorn",
            "screencap.api.main:app",
            "--app-dir",
            "src",
            "--port",
            str(API_PORT),
            "--host",
            API_HOST,
        ],
        stdout_path=LOG_DIR / "api.log",
        stderr_path=LOG_DIR / "api.err.log",
        env=env,
    )
    API_PID_FILE.write_text(str(proc.pid), encoding="ascii")
    if http_ok(f"http://{API_HOST}:{API_PORT}/status", 30):
        logger.info(f"API Server: http://{API_HOST}:{API_PORT} が起動 (PID {proc.pid})")
    else:
        logger.warning("FastAPI が応答しません ./log/ 以下を見て")


def main() -> int:
    os.chdir(REPO_ROOT)

    logger.info("================ Screencap Starting up... ===============")

    load_local_env()
    if not os.environ.get("OPENROUTER_API_KEY"):
        logger.warning("OPENROUTER_API_KEY が未設定です（分類はスキップされます）")

    start_api(os.environ.copy())

    logger.info("\n============== Screencap is now running! =================\n")
    logger.info("\nLogs: ./log/api.log, ./log/screencap.log")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
