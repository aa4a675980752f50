"""分類用のシステムプロンプト."""

import re

from screencap.model.models import SELF_APP_ID, SELF_APP_NAME, AddictionOption, ScreenContext

_WHITESPACE = re.compile(r"\s+")

_STAGE1_SCHEMA = """
{
  "category": "Study" | "Work" | "Leisure" | "Chores" | "Social" | "Unknown",
  "subcategories": string[],
  "project": string | null,
  "project_progress": {"shown": boolean, "confidence": number},
  "potential_progress": boolean,
  "tags": string[],
  "confidence": number,
  "caption": string,
  "addiction_triage": {
    "tracking_enabled": boolean,
    "potentially_addictive": boolean,
    "candidates": Array<{
      "addiction_id": string,
      "likelihood": number,
      "evidence": string[],
      "rationale": string
    }>
  }
}
""".strip()

_STAGE1_RULES = f"""
Rules:
- "caption" is a concise, specific title (3-8 words) of the activity.
- "tracking_enabled" is true only when TRACKED ADDICTIONS is not "none" and the
  screen is not a meta/review screen (addiction lists, trackers, settings).
- Screens from {SELF_APP_NAME} ({SELF_APP_ID}) are meta/review screens.
- If "tracking_enabled" is false, "candidates" MUST be [].
- "candidates" must be a subset of the provided addiction ids.
- "project" must be one of the provided project names, or null.
- If a "Selected project" is given in CURRENT CONTEXT, use it as "project".
- "project_progress.shown" is true only when visible output of the project is
  on screen (not planning or chatting about it).
- "confidence" is 0..1.
""".strip()


def compact_text(value: str | None, max_chars: int) -> str | None:
    """空白を詰め、長ければ末尾を「…」で切る."""
    normalized = _WHITESPACE.sub(" ", value or "").strip()
    if not normalized:
        return None
    if len(normalized) <= max_chars:
        return normalized
    return normalized[: max(0, max_chars - 1)] + "…"


def format_screen_context(context: ScreenContext | None) -> str | None:
    if context is None:
        return None
    parts: list[str] = []
    if context.app_name:
        parts.append(f"App: {context.app_name}")
    if context.app_bundle_id:
        parts.append(f"App bundle: {context.app_bundle_id}")
    if context.window_title:
        parts.append(f"Window: {context.window_title}")
    if context.url_host:
        parts.append(f"Site: {context.url_host}")
    if context.content_kind:
        parts.append(f"Content type: {context.content_kind.replace('_', ' ')}")
    if context.content_title:
        parts.append(f"Content title: {context.content_title}")
    selected = compact_text(context.selected_project, 200)
    if selected:
        parts.append(f"Selected project: {selected}")
    caption = compact_text(context.user_caption, 500)
    if caption:
        parts.append(f"User caption: {caption}")
    return "\n".join(parts) if parts else None


def format_addiction_item(option: AddictionOption) -> str:
    lines = [line.strip() for line in option.definition.split("\n") if line.strip()]
    first = lines[0] if lines else option.name
    rest = lines[1:]
    if not rest:
        return f"- {option.id}: {first}"
    joined = "\n  ".join(rest)
    return f"- {option.id}: {first}\n  {joined}"


def _common_sections(
    projects: list[str],
    addictions: list[AddictionOption],
    context: ScreenContext | None,
) -> str:
    sections = [
        "KNOWN PROJECTS:\n" + ("\n".join(f"- {p}" for p in projects) if projects else "none"),
        "TRACKED ADDICTIONS:\n"
        + ("\n".join(format_addiction_item(a) for a in addictions) if addictions else "none"),
    ]
    formatted = format_screen_context(context)
    if formatted:
        sections.append(f"CURRENT CONTEXT:\n{formatted}")
    return "\n\n".join(sections)


def build_system_prompt_stage1(
    projects: list[str],
    addictions: list[AddictionOption],
    context: ScreenContext | None,
) -> str:
    """スクリーンショットを見て分類させるプロンプト."""
    return (
        "You are an intelligent screen activity classifier.\n\n"
        f"Return ONLY valid JSON matching this schema:\n{_STAGE1_SCHEMA}\n\n"
        f"{_STAGE1_RULES}\n\n"
        f"{_common_sections(projects, addictions, context)}"
    )


def build_system_prompt_stage1_text_only(
    projects: list[str],
    addictions: list[AddictionOption],
    context: ScreenContext | None,
) -> str:
    """OCR テキストとコンテキストだけで分類させるプロンプト."""
    return (
        "You are an intelligent screen activity classifier. You do not see the "
        "screenshot; you get OCR text of it and the foreground context. Lower "
        '"confidence" when the text is ambiguous.\n\n'
        f"Return ONLY valid JSON matching this schema:\n{_STAGE1_SCHEMA}\n\n"
        f"{_STAGE1_RULES}\n\n"
        f"{_common_sections(projects, addictions, context)}"
    )


def build_system_prompt_stage2(
    candidates: list[AddictionOption],
    context: ScreenContext | None,
) -> str:
    """候補の依存対象について確定・保留・否定を判断させるプロンプト."""
    prompt = f"""
You verify whether a screenshot shows one of the candidate addictions.

Return ONLY valid JSON:
{{
  "decision": "none" | "confirmed" | "candidate",
  "addiction_id": string | null,
  "confidence": number,
  "evidence": string[],
  "manual_prompt": string | null
}}

Rules:
- "confirmed" only with concrete visual evidence.
- "candidate" when it is plausible but a human should decide; then
  "manual_prompt" is a short question for the user.
- "addiction_id" must be one of the candidate ids, or null with "none".

CANDIDATES:
{chr(10).join(format_addiction_item(c) for c in candidates)}
""".strip()
    formatted = format_screen_context(context)
    if formatted:
        prompt += f"\n\nCURRENT CONTEXT:\n{formatted}"
    return prompt
