from __future__ import annotations

from typing import Literal

from screencap.model.models import (
    ContentDescriptor,
    ContextEnrichment,
    ForegroundSnapshot,
    UrlMetadata,
)
from screencap.watchers.automation import (
    AutomationExecutor,
    DenialClassifier,
    is_automation_denied,
)
from screencap.watchers.context import ProviderRegistry, canonicalize_url, extract_host
from screencap.watchers.logger import logger

log = logger.getChild("Providers")

AutomationState = Literal["not-attempted", "granted", "denied", "unavailable"]

CHROMIUM_APPS: dict[str, str] = {
    "com.google.Chrome": "Google Chrome",
    "com.google.Chrome.beta": "Google Chrome Beta",
    "com.brave.Browser": "Brave Browser",
    "com.microsoft.edgemac": "Microsoft Edge",
    "com.vivaldi.Vivaldi": "Vivaldi",
    "company.thebrowser.Browser": "Arc",
}
SAFARI_APPS: dict[str, str] = {
    "com.apple.Safari": "Safari",
    "com.apple.SafariTechnologyPreview": "Safari Technology Preview",
}

_CHROMIUM_SCRIPT = (
    'tell application "{app}" to return (URL of active tab of front window)'
    ' & "|||" & (title of active tab of front window)'
)
_SAFARI_SCRIPT = (
    'tell application "{app}" to return (URL of front document)'
    ' & "|||" & (name of front document)'
)
_SEPARATOR = "|||"


class BrowserUrlProvider:
    """ブラウザのアクティブタブの URL を読むプロバイダ."""

    def __init__(
        self,
        provider_id: str,
        apps: dict[str, str],
        script_template: str,
        executor: AutomationExecutor,
        priority: int = 100,
        classifier: DenialClassifier | None = None,
    ) -> None:
        self.id = provider_id
        self.priority = priority
        self.apps = apps
        self.script_template = script_template
        self.executor = executor
        self.classifier = classifier
        self.automation_state: AutomationState = "not-attempted"
        self.last_error: str | None = None

    def supports(self, snapshot: ForegroundSnapshot) -> bool:
        return snapshot.app.bundle_id in self.apps

    async def collect(self, snapshot: ForegroundSnapshot) -> ContextEnrichment | None:
        app_name = self.apps.get(snapshot.app.bundle_id)
        if app_name is None:
            return None

        result = await self.executor.run(self.script_template.format(app=app_name))
        if not result.success:
            self.last_error = result.error
            if is_automation_denied(result.error, self.classifier):
                self.automation_state = "denied"
                log.warning("Automation denied for %s", app_name)
            else:
                self.automation_state = "unavailable"
            return None

        self.automation_state = "granted"
        self.last_error = None
        return parse_tab_output(result.output)


def parse_tab_output(output: str) -> ContextEnrichment | None:
    """``url|||title`` 形式の出力を解釈する."""
    url, _, title = output.partition(_SEPARATOR)
    url = url.strip()
    host = extract_host(url)
    if not host:
        return None
    canonical = canonicalize_url(url)
    title = title.strip() or None
    return ContextEnrichment(
        url=UrlMetadata(url_canonical=canonical, host=host, title=title),
        content=ContentDescriptor(
            kind="web_page", id=canonical, title=title, url_canonical=canonical
        ),
        confidence=0.8,
    )


def chromium_provider(executor: AutomationExecutor) -> BrowserUrlProvider:
    return BrowserUrlProvider("chromium", CHROMIUM_APPS, _CHROMIUM_SCRIPT, executor)


def safari_provider(executor: AutomationExecutor) -> BrowserUrlProvider:
    return BrowserUrlProvider("safari", SAFARI_APPS, _SAFARI_SCRIPT, executor)


def default_registry(executor: AutomationExecutor) -> ProviderRegistry:
    """組み込みプロバイダのレジストリ."""
    return ProviderRegistry([safari_provider(executor), chromium_provider(executor)])
