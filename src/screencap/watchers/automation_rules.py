"""Per-app / per-host automation rules.

Rules file (JSON)::

    {
      "apps":  {"com.spotify.client": {"capture": "skip"}},
      "hosts": {"github.com": {"category": "Work", "llm": "skip"}}
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from screencap.watchers.logger import logger

log = logger.getChild("AutomationRules")

Decision = Literal["allow", "skip"]

_OVERRIDE_FIELDS = ("category", "tags", "project_mode", "project")
_ADULT_HOST_MARKERS = ("porn", "nsfw", "adult")


@dataclass(frozen=True)
class AutomationRule:
    capture: Decision | None = None
    llm: Decision | None = None
    category: str | None = None
    tags: list[str] | None = None
    project_mode: str | None = None
    project: str | None = None


@dataclass(frozen=True)
class AutomationRules:
    apps: dict[str, AutomationRule] = field(default_factory=dict)
    hosts: dict[str, AutomationRule] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AutomationRules:
        def _rules(section: Any) -> dict[str, AutomationRule]:
            if not isinstance(section, dict):
                return {}
            return {
                key: AutomationRule(
                    capture=value.get("capture"),
                    llm=value.get("llm"),
                    category=value.get("category"),
                    tags=value.get("tags"),
                    project_mode=value.get("project_mode"),
                    project=value.get("project"),
                )
                for key, value in section.items()
                if isinstance(value, dict)
            }

        return cls(apps=_rules(data.get("apps")), hosts=_rules(data.get("hosts")))

    @classmethod
    def load(cls, path: Path | None) -> AutomationRules:
        """JSON ファイルから読み込む（無い・壊れている場合は空）."""
        if path is None or not path.exists():
            return cls()
        try:
            return cls.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("Failed to load automation rules from %s: %s", path, exc)
            return cls()


@dataclass(frozen=True)
class PolicyResult:
    capture: Decision = "allow"
    llm: Decision = "allow"
    overrides: dict[str, Any] = field(default_factory=dict)


def _host_implies_adult(url_host: str | None) -> bool:
    host = (url_host or "").strip().lower()
    if not host:
        return False
    return any(marker in host for marker in _ADULT_HOST_MARKERS)


def _merge_rule(base: PolicyResult, rule: AutomationRule) -> PolicyResult:
    overrides = dict(base.overrides)
    for name in _OVERRIDE_FIELDS:
        value = getattr(rule, name)
        if value is not None:
            overrides[name] = value
    return PolicyResult(
        capture=rule.capture or base.capture,
        llm=rule.llm or base.llm,
        overrides=overrides,
    )


def evaluate_automation_policy(
    app_id: str | None,
    url_host: str | None,
    rules: AutomationRules | None,
) -> PolicyResult:
    """アプリ→ホストの順にルールを重ねて最終ポリシーを決める."""
    result = PolicyResult()
    if _host_implies_adult(url_host):
        result = replace(result, overrides={"category": "Leisure"})

    if rules is None:
        return result

    if app_id:
        app_rule = rules.apps.get(app_id)
        if app_rule:
            result = _merge_rule(result, app_rule)

    if url_host:
        host_rule = rules.hosts.get(url_host)
        if host_rule:
            result = _merge_rule(result, host_rule)

    return result
