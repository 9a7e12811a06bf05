"""Merges requests, conversations, and notifications into one timeline."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from feedsync.domain.feed.models import ItemKind
from feedsync.domain.feed.schemas import ActivityItem, ConnectionRequest, Conversation, Notification


def conversation_timestamp(conversation: Conversation) -> Optional[datetime]:
	if conversation.last_message is not None:
		return conversation.last_message.created_at
	return conversation.created_at


def _conversation_item(conversation: Conversation) -> ActivityItem:
	timestamp = conversation_timestamp(conversation)
	fallback = conversation.partner.id or conversation.id
	return ActivityItem(
		kind=ItemKind.MESSAGE,
		id=conversation.id,
		timestamp=timestamp,
		sort_key=timestamp.isoformat() if timestamp else fallback,
		conversation=conversation,
	)


def _request_item(request: ConnectionRequest) -> ActivityItem:
	return ActivityItem(
		kind=ItemKind.REQUEST,
		id=request.id,
		timestamp=request.created_at,
		sort_key=request.created_at.isoformat(),
		request=request,
	)


def _notification_item(notification: Notification) -> ActivityItem:
	return ActivityItem(
		kind=ItemKind.NOTIFICATION,
		id=notification.id,
		timestamp=notification.created_at,
		sort_key=notification.created_at.isoformat(),
		notification=notification,
	)


def merge_timeline(
	requests: Sequence[ConnectionRequest],
	conversations: Sequence[Conversation],
	notifications: Sequence[Notification],
) -> list[ActivityItem]:
	"""Most recent first. Items without any timestamp go last, in fetch order.

	``sorted`` is stable, so equal timestamps keep the request, conversation,
	notification fetch order.
	"""
	items = [
		*(_request_item(request) for request in requests),
		*(_conversation_item(conversation) for conversation in conversations),
		*(_notification_item(notification) for notification in notifications),
	]
	dated = [item for item in items if item.timestamp is not None]
	undated = [item for item in items if item.timestamp is None]
	dated = sorted(dated, key=lambda item: item.timestamp, reverse=True)
	return dated + undated
