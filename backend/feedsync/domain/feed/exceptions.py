"""Domain-level exceptions for the activity feed."""

from __future__ import annotations


class FeedError(Exception):
	"""Base class for feed errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class SourceUnavailable(FeedError):
	reason = "source_unavailable"


class RepairWriteFailed(FeedError):
	reason = "repair_write_failed"


class RequestActionError(FeedError):
	"""Raised to the caller of a user-initiated request action."""


class RequestNotFound(RequestActionError):
	reason = "not_found"


class RequestForbidden(RequestActionError):
	reason = "forbidden"


class RequestGone(RequestActionError):
	reason = "gone"


class NotificationNotFound(FeedError):
	reason = "notification_not_found"


class ConversationNotFound(FeedError):
	reason = "conversation_not_found"
