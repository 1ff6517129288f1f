"""Mask contact details in messages sent on the free plan."""

from __future__ import annotations

import re


MASK_EMAIL = "[email hidden]"
MASK_PHONE = "[phone hidden]"
MASK_LINK = "[link hidden]"
MASK_HANDLE = "[hidden]"

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
_PHONE_RE = re.compile(r"(\+?\d[\d .\-()]{6,}\d)")
_URL_RE = re.compile(
    r"((?:https?://|www\.)\S+|\b[a-z0-9.-]+\.(?:com|fr|net|io|gg|me|org|app|co|live|tv)\S*)",
    re.IGNORECASE,
)
_AT_HANDLE_RE = re.compile(r"(^|\s)@([a-z0-9_.-]{3,})\b", re.IGNORECASE)
_DISCORD_TAG_RE = re.compile(r"\b([a-z0-9_.]{3,})#\d{4}\b", re.IGNORECASE)

_SOCIAL_WORDS = (
    r"(?:instagram|insta|ig|snapchat|snap|facebook|fb|tiktok|tt|telegram|signal|whatsapp|wa"
    r"|discord|dc|linkedin|x|twitter|reddit|messenger|skype)"
)
_HANDLE_CONTEXT_WORDS = r"(?:pseudo|identifiant|username|user|handle|profil|profile|compte|account|contact|id)"
_SOCIAL_CONTEXT_RE = re.compile(rf"\b{_SOCIAL_WORDS}\b([^\n\r]{{0,50}})", re.IGNORECASE)
_HANDLE_CONTEXT_RE = re.compile(rf"\b{_HANDLE_CONTEXT_WORDS}\b([^\n\r]{{0,50}})", re.IGNORECASE)
_CONTEXT_HANDLE_RE = re.compile(r"@?[a-z0-9_.-]{3,}", re.IGNORECASE)
_PLACEHOLDER_RE = re.compile(r"\[[^\]]*\]")

_WHOLE_HANDLE_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]{4,}[a-z0-9]$", re.IGNORECASE)
_MIXED_TOKEN_RE = re.compile(r"\b(?=[a-z0-9_.-]*[_\d.])[a-z0-9_.-]{5,}\b", re.IGNORECASE)
_LONG_TOKEN_RE = re.compile(r"\b[a-z0-9]{11,}\b", re.IGNORECASE)


def _mask_handle_in_context(match: re.Match[str]) -> str:
    # Mask the first handle-like word after the keyword, skipping earlier placeholders.
    full = match.group(0)
    offset = match.start(1) - match.start(0)
    visible = _PLACEHOLDER_RE.sub(lambda placeholder: " " * len(placeholder.group(0)), match.group(1) or "")
    handle = _CONTEXT_HANDLE_RE.search(visible)
    if handle is None:
        return full
    return full[: offset + handle.start()] + MASK_HANDLE + full[offset + handle.end() :]


def sanitize_for_free_plan(raw: str) -> str:
    """Hide emails, phone numbers, links and social handles.

    Free-plan conversations must stay on the platform, so anything that looks
    like an off-platform contact channel is replaced by a placeholder.
    """
    if not raw:
        return raw
    if _WHOLE_HANDLE_RE.match(raw.strip()):
        return MASK_HANDLE

    text = _EMAIL_RE.sub(MASK_EMAIL, raw)
    text = _PHONE_RE.sub(MASK_PHONE, text)
    text = _URL_RE.sub(MASK_LINK, text)
    text = _SOCIAL_CONTEXT_RE.sub(_mask_handle_in_context, text)
    text = _HANDLE_CONTEXT_RE.sub(_mask_handle_in_context, text)
    text = _AT_HANDLE_RE.sub(lambda match: f"{match.group(1)}{MASK_HANDLE}", text)
    text = _DISCORD_TAG_RE.sub(MASK_HANDLE, text)
    text = _MIXED_TOKEN_RE.sub(MASK_HANDLE, text)
    text = _LONG_TOKEN_RE.sub(MASK_HANDLE, text)
    return text
