"""Display text for a conversation's last message."""

from __future__ import annotations

from typing import Literal, Optional

ShareKind = Literal["club", "event", "profile"]

_SHARE_PREFIXES: tuple[tuple[str, ShareKind], ...] = (
	("SHARE_CLUB|", "club"),
	("SHARE_EVENT|", "event"),
	("SHARE_CONNECTION|", "profile"),
)


def format_share_preview(kind: ShareKind, *, sender_is_me: bool) -> str:
	return f"You shared a {kind}" if sender_is_me else f"Shared a {kind} with you"


def format_message_preview(content: Optional[str], *, sender_is_me: bool) -> str:
	raw = (content or "").strip()
	if not raw:
		return ""
	for prefix, kind in _SHARE_PREFIXES:
		if raw.startswith(prefix):
			return format_share_preview(kind, sender_is_me=sender_is_me)
	return raw
