"""
Intent Hints

Text normalization performed once per inbound message before routing:
mention stripping, explain/summary keyword detection, feedback prefix
stripping, natural-language resolve eligibility and the retry keyword.
"""

from __future__ import annotations

import re

from chatgate.core.domain.routing import AdapterRequestIds, MessageEvent, RouteContext

EXPLAIN_KEYWORDS = ("explain", "解释", "解释一下", "解释下")
SUMMARY_KEYWORDS = ("summary", "summarize", "摘要", "总结", "概括", "简要", "简述")

_FEEDBACK_PREFIX = re.compile(r"^(/feedback(?:@[A-Za-z0-9_]+)?|feedback|反馈)[:：]?\s*", re.IGNORECASE)
_RETRY = re.compile(r"(?:^|\s)(retry|重试)(?:$|\s)", re.IGNORECASE)


def _contains_keyword(text: str, keywords: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def is_explain_request(text: str) -> bool:
    return _contains_keyword(text, EXPLAIN_KEYWORDS)


def wants_summary(text: str) -> bool:
    return _contains_keyword(text, SUMMARY_KEYWORDS)


def wants_retry(text: str) -> bool:
    return bool(_RETRY.search(text or ""))


def strip_mention(text: str, bot_username: str | None) -> str:
    """Remove every ``@bot`` token (case-insensitive)."""
    if not bot_username:
        return text
    token = bot_username if bot_username.startswith("@") else f"@{bot_username}"
    return re.sub(re.escape(token), "", text, flags=re.IGNORECASE).strip()


def strip_feedback_prefix(text: str) -> tuple[str, bool]:
    """Return ``(text_without_prefix, prefix_was_present)``."""
    trimmed = (text or "").strip()
    if not trimmed:
        return "", False
    replaced = _FEEDBACK_PREFIX.sub("", trimmed, count=1)
    if replaced == trimmed:
        return trimmed, False
    return replaced.strip(), True


def should_attempt_resolve(
    raw_text: str,
    stripped_text: str,
    *,
    is_group: bool,
    mentions_bot: bool,
    used_feedback_prefix: bool,
) -> bool:
    """Natural-language resolution is skipped for slash commands and for
    group messages that do not address the bot."""
    raw = (raw_text or "").strip()
    if not raw:
        return False
    if raw.startswith("/") and not used_feedback_prefix:
        return False
    if is_group and not mentions_bot:
        return False
    return bool(stripped_text)


def build_route_context(
    event: MessageEvent,
    *,
    bot_username: str | None = None,
    project_id: str | None = None,
    window_spec_id: str | None = None,
    request_ids: AdapterRequestIds | None = None,
) -> RouteContext:
    raw_text = (event.text or "").strip()
    clean_text = raw_text
    if event.is_group and event.mentions_bot:
        clean_text = strip_mention(raw_text, bot_username)

    wants_explain = is_explain_request(clean_text)
    summary = wants_summary(clean_text)
    resolve_text, used_prefix = strip_feedback_prefix(clean_text)
    allow_resolve = (
        not wants_explain
        and not summary
        and should_attempt_resolve(
            clean_text,
            resolve_text,
            is_group=event.is_group,
            mentions_bot=event.mentions_bot,
            used_feedback_prefix=used_prefix,
        )
    )
    return RouteContext(
        event=event,
        raw_text=raw_text,
        clean_text=clean_text,
        is_group=event.is_group,
        mentions_bot=event.mentions_bot,
        has_reply=event.has_reply,
        resolve_text=resolve_text,
        wants_explain=wants_explain,
        wants_summary=summary,
        feedback_prefixed=used_prefix,
        allow_resolve=allow_resolve,
        explicit_retry=wants_retry(clean_text),
        project_id=project_id,
        window_spec_id=window_spec_id,
        request_ids=request_ids,
    )
