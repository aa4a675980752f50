"""設定の読み込み.

``.env.local``（無ければ ``.env``）を python-dotenv で読み込んだ後、環境変数から
:class:`Settings` を組み立てる。設定値は各コンポーネントに引数で渡す。
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from screencap.api.services.llm import DEFAULT_MODEL
from screencap.api.services.router import DEFAULT_PROVIDER_ORDER, AiMode, ProviderContext
from screencap.model.models import AddictionOption
from screencap.watchers.automation_rules import AutomationRules
from screencap.watchers.logger import logger

log = logger.getChild("Config")

REPO_ROOT = Path(__file__).resolve().parents[2]
AI_MODES: tuple[AiMode, ...] = ("off", "local", "hybrid", "cloud")
TRUE_VALUES = ("1", "true", "yes", "on")


def _bool(value: str | None, *, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in TRUE_VALUES


def _csv(value: str | None) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def build_addiction_definition(name: str, description: str | None) -> str:
    about = (description or "").strip()
    return f"{name}\nAbout: {about}" if about else name


def load_addictions(path: Path | None) -> list[AddictionOption]:
    """``[{"id", "name", "description"?}]`` 形式の JSON を読む."""
    if path is None or not path.exists():
        return []
    try:
        raw: Any = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        log.warning("Failed to load addictions from %s: %s", path, exc)
        return []
    if not isinstance(raw, list):
        return []
    return [
        AddictionOption(
            id=str(item["id"]),
            name=str(item["name"]),
            definition=build_addiction_definition(str(item["name"]), item.get("description")),
        )
        for item in raw
        if isinstance(item, dict) and item.get("id") and item.get("name")
    ]


@dataclass
class Settings:
    api_key: str | None = None
    model: str = DEFAULT_MODEL
    interval_minutes: int = 5
    ai_mode: AiMode = "cloud"
    allow_vision_uploads: bool = True
    provider_order: list[str] = field(default_factory=lambda: list(DEFAULT_PROVIDER_ORDER))
    automation_rules_path: Path | None = None
    addictions_path: Path | None = None
    projects: list[str] = field(default_factory=list)
    data_dir: Path = Path("./data")

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "Settings":
        if env_file is not None:
            load_dotenv(env_file, override=True)
        else:
            for candidate in (REPO_ROOT / ".env.local", REPO_ROOT / ".env"):
                if candidate.exists():
                    load_dotenv(candidate, override=True)
                    break

        mode = (os.getenv("SCREENCAP_AI_MODE") or "cloud").strip().lower()
        if mode not in AI_MODES:
            msg = f"SCREENCAP_AI_MODE must be one of {', '.join(AI_MODES)}: {mode}"
            raise ValueError(msg)

        interval = int(os.getenv("SCREENCAP_INTERVAL_MINUTES") or "5")
        if interval <= 0:
            msg = "SCREENCAP_INTERVAL_MINUTES must be positive"
            raise ValueError(msg)

        rules = os.getenv("SCREENCAP_AUTOMATION_RULES")
        addictions = os.getenv("SCREENCAP_ADDICTIONS")
        return cls(
            api_key=os.getenv("OPENROUTER_API_KEY") or None,
            model=os.getenv("SCREENCAP_MODEL", "").strip() or DEFAULT_MODEL,
            interval_minutes=interval,
            ai_mode=mode,  # type: ignore[arg-type]
            allow_vision_uploads=_bool(
                os.getenv("SCREENCAP_ALLOW_VISION_UPLOADS"), default=True
            ),
            provider_order=_csv(os.getenv("SCREENCAP_PROVIDER_ORDER"))
            or list(DEFAULT_PROVIDER_ORDER),
            automation_rules_path=Path(rules) if rules else None,
            addictions_path=Path(addictions) if addictions else None,
            projects=_csv(os.getenv("SCREENCAP_PROJECTS")),
            data_dir=Path(os.getenv("SCREENCAP_DATA_DIR") or "./data"),
        )

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / "tmp" / "activity-window"

    @property
    def thumbnails_dir(self) -> Path:
        return self.data_dir / "thumbnails"

    @property
    def originals_dir(self) -> Path:
        return self.data_dir / "originals"

    def automation_rules(self) -> AutomationRules:
        return AutomationRules.load(self.automation_rules_path)

    def addictions(self) -> list[AddictionOption]:
        return load_addictions(self.addictions_path)

    def provider_context(self) -> ProviderContext:
        return ProviderContext(
            mode=self.ai_mode,
            api_key=self.api_key,
            allow_vision_uploads=self.allow_vision_uploads,
            cloud_model=self.model,
        )
