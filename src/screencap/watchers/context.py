"""Foreground context enrichment.

Providers are given a :class:`ForegroundSnapshot` and may add URL/content
information. The registry is an explicit ordered list built at startup and
handed to whoever needs it.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from typing import Protocol, runtime_checkable
from urllib.parse import urlsplit, urlunsplit

from screencap.model.models import (
    ActivityContext,
    BackgroundContext,
    ContextEnrichment,
    ForegroundSnapshot,
)
from screencap.watchers.logger import logger

log = logger.getChild("Context")

SnapshotSource = Callable[[], Awaitable[ForegroundSnapshot | None]]


@runtime_checkable
class ContextProvider(Protocol):
    """前面アプリに付加情報を与えるプロバイダ."""

    id: str
    priority: int

    def supports(self, snapshot: ForegroundSnapshot) -> bool: ...

    async def collect(self, snapshot: ForegroundSnapshot) -> ContextEnrichment | None: ...


@runtime_checkable
class BackgroundCapableProvider(ContextProvider, Protocol):
    """前面以外（再生中の音楽など）も報告できるプロバイダ."""

    async def collect_background(self) -> BackgroundContext | None: ...


def is_background_capable(provider: ContextProvider) -> bool:
    return callable(getattr(provider, "collect_background", None))


# --- URL helpers ---


def extract_host(url: str | None) -> str | None:
    """URL からホスト名（小文字, www. なし）を取り出す."""
    if not url:
        return None
    try:
        host = urlsplit(url.strip()).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def canonicalize_url(url: str) -> str:
    """フラグメントを落とし、スキームとホストを小文字にした URL."""
    parts = urlsplit(url.strip())
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), parts.path, parts.query, "")
    )


def build_context_key(display_id: str, app_id: str, url_host: str | None) -> str:
    """(display, app, host) の組を一意に表すキー."""
    if url_host:
        return f"{display_id}::host:{app_id}:{url_host}"
    return f"{display_id}::app:{app_id}"


# --- registry ---


class ProviderRegistry:
    """優先度順に並んだプロバイダの一覧."""

    def __init__(self, providers: Iterable[ContextProvider] = ()) -> None:
        # sorted は安定なので同じ優先度は登録順のまま
        self._providers = sorted(providers, key=lambda p: -(p.priority or 0))

    def __iter__(self):  # noqa: ANN204
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    @property
    def providers(self) -> list[ContextProvider]:
        return list(self._providers)

    def find(self, provider_id: str) -> ContextProvider | None:
        return next((p for p in self._providers if p.id == provider_id), None)

    async def enrich(
        self, snapshot: ForegroundSnapshot
    ) -> tuple[str, ContextEnrichment | None]:
        """最初に非 None を返したプロバイダの結果を採用する."""
        for provider in self._providers:
            try:
                if not provider.supports(snapshot):
                    continue
                enrichment = await provider.collect(snapshot)
            except Exception as exc:  # noqa: BLE001
                # プロバイダの失敗はキャプチャサイクルを止めない
                log.debug("Provider %s failed: %s", provider.id, exc)
                continue
            if enrichment is not None:
                return provider.id, enrichment
        return "system", None

    async def collect_background(self) -> list[BackgroundContext]:
        out: list[BackgroundContext] = []
        for provider in self._providers:
            if not is_background_capable(provider):
                continue
            try:
                background = await provider.collect_background()  # type: ignore[attr-defined]
            except Exception as exc:  # noqa: BLE001
                log.debug("Background collect failed for %s: %s", provider.id, exc)
                continue
            if background is not None:
                out.append(background)
        return out


def build_activity_context(
    snapshot: ForegroundSnapshot,
    provider_id: str,
    enrichment: ContextEnrichment | None,
    background: Iterable[BackgroundContext] = (),
    primary_display_id: str = "1",
) -> ActivityContext:
    display_id = snapshot.window.display_id or primary_display_id
    url = enrichment.url if enrichment else None
    return ActivityContext(
        captured_at=snapshot.captured_at,
        app=snapshot.app,
        window=snapshot.window,
        url=url,
        content=enrichment.content if enrichment else None,
        provider=provider_id,
        confidence=enrichment.confidence if enrichment else 1.0,
        key=build_context_key(display_id, snapshot.app.bundle_id, url.host if url else None),
        background=tuple(background),
    )


class ContextCollector:
    """スナップショット取得とプロバイダ適用をまとめる."""

    def __init__(
        self,
        snapshot_source: SnapshotSource,
        registry: ProviderRegistry,
        primary_display_id: Callable[[], str] = lambda: "1",
    ) -> None:
        self.snapshot_source = snapshot_source
        self.registry = registry
        self.primary_display_id = primary_display_id

    async def collect_foreground_snapshot(self) -> ForegroundSnapshot | None:
        try:
            return await self.snapshot_source()
        except Exception as exc:  # noqa: BLE001
            log.debug("Foreground snapshot failed: %s", exc)
            return None

    async def collect_activity_context(self) -> ActivityContext | None:
        snapshot = await self.collect_foreground_snapshot()
        if snapshot is None:
            return None
        provider_id, enrichment = await self.registry.enrich(snapshot)
        background = await self.registry.collect_background()
        return build_activity_context(
            snapshot,
            provider_id,
            enrichment,
            background,
            primary_display_id=self.primary_display_id(),
        )
