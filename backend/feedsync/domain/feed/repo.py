"""Async data-access layer for every relation the feed reads or repairs."""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Mapping, Optional, Sequence

import asyncpg
from pydantic import ValidationError

from feedsync.domain.feed import preview
from feedsync.domain.feed.capabilities import SchemaCapabilities
from feedsync.domain.feed.models import (
	DOMAIN_TABLES,
	EventDomain,
	EventRecord,
	InterestRow,
	InterestStatus,
	NotificationType,
	RequestStatus,
	RsvpRow,
	RsvpStatus,
)
from feedsync.domain.feed.schemas import (
	ConnectionRequest,
	Conversation,
	LastMessage,
	Notification,
	Profile,
)
from feedsync.infra.postgres import get_pool

logger = logging.getLogger(__name__)


def _json_field(value: Any) -> Any:
	if isinstance(value, str):
		try:
			return json.loads(value)
		except json.JSONDecodeError:
			return None
	return value


def _str_or_none(value: Any) -> Optional[str]:
	return str(value) if value is not None else None


def _sender_profile(record: Mapping) -> Profile:
	# LEFT JOIN: the sender columns are null when the profile cannot be resolved.
	profile_id = _str_or_none(record.get("sender_profile_id"))
	try:
		return Profile(
			id=profile_id,
			username=record.get("sender_username"),
			avatar_url=record.get("sender_avatar_url"),
			detailed_interests=_json_field(record.get("sender_detailed_interests")),
		)
	except ValidationError:
		logger.warning("feed.profile_unreadable", extra={"profile_id": profile_id})
		return Profile(id=profile_id)


def _record_to_request(record: Mapping) -> ConnectionRequest:
	return ConnectionRequest(
		id=str(record["id"]),
		sender_id=str(record["sender_id"]),
		sender=_sender_profile(record),
		status=RequestStatus(record["status"]),
		created_at=record["created_at"],
	)


def _record_to_conversation(record: Mapping, viewer_id: str) -> Conversation:
	last_message = None
	if record.get("last_message_created_at") is not None:
		last_message = LastMessage(
			content=record.get("last_message_content"),
			created_at=record["last_message_created_at"],
			sender_id=_str_or_none(record.get("last_message_sender_id")),
		)
	text = ""
	if last_message is not None:
		text = preview.format_message_preview(
			last_message.content,
			sender_is_me=last_message.sender_id == viewer_id,
		)
	return Conversation(
		id=str(record["id"]),
		partner=Profile(
			id=_str_or_none(record.get("partner_id")),
			username=record.get("partner_username"),
			avatar_url=record.get("partner_avatar_url"),
		),
		last_message=last_message,
		preview=text,
		unread_count=record.get("unread_count") or 0,
		created_at=record.get("connection_created_at"),
	)


def _notification_type(value: Any) -> Optional[NotificationType]:
	if value is None:
		return None
	try:
		return NotificationType(value)
	except ValueError:
		logger.warning("feed.notification_unknown_type", extra={"notification_type": str(value)})
		return None


def _record_to_notification(record: Mapping) -> Notification:
	return Notification(
		id=str(record["id"]),
		type=_notification_type(record.get("type")),
		title=record.get("title") or "",
		body=record.get("body") or "",
		data=_json_field(record.get("data")),
		read=bool(record.get("read")),
		created_at=record["created_at"],
	)


_PENDING_REQUESTS_SQL = """
SELECT i.id, i.sender_id, i.status, i.created_at,
	p.id AS sender_profile_id,
	p.username AS sender_username,
	p.avatar_url AS sender_avatar_url,
	p.detailed_interests AS sender_detailed_interests
FROM interests i
LEFT JOIN profiles p ON p.id = i.sender_id
WHERE i.receiver_id = $1 AND i.status = 'pending'
ORDER BY i.created_at DESC
"""

_ACCEPTED_BETWEEN_SQL = """
SELECT sender_id, receiver_id
FROM interests
WHERE status = 'accepted'
	AND (
		(sender_id = $1 AND receiver_id = ANY($2::uuid[]))
		OR (receiver_id = $1 AND sender_id = ANY($2::uuid[]))
	)
"""


class FeedRepository:
	"""Thin data-access layer around asyncpg."""

	def __init__(self, capabilities: SchemaCapabilities | None = None) -> None:
		self.capabilities = capabilities or SchemaCapabilities()

	# --- Requests ---------------------------------------------------------

	async def list_pending_requests(self, viewer_id: str) -> list[ConnectionRequest]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(_PENDING_REQUESTS_SQL, viewer_id)
		return [_record_to_request(row) for row in rows]

	async def list_accepted_counterparts(self, viewer_id: str, user_ids: Sequence[str]) -> set[str]:
		"""Return the subset of ``user_ids`` holding an accepted request with the viewer, either direction."""
		if not user_ids:
			return set()
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(_ACCEPTED_BETWEEN_SQL, viewer_id, list(user_ids))
		counterparts: set[str] = set()
		for row in rows:
			sender_id = str(row["sender_id"])
			partner_id = str(row["receiver_id"]) if sender_id == viewer_id else sender_id
			counterparts.add(partner_id)
		return counterparts

	async def decline_requests(self, request_ids: Iterable[str]) -> int:
		"""Transition still-pending requests to declined; already-resolved rows are untouched."""
		ids = list(request_ids)
		if not ids:
			return 0
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				UPDATE interests
				SET status = 'declined'
				WHERE id = ANY($1::uuid[]) AND status = 'pending'
				RETURNING id
				""",
				ids,
			)
		return len(rows)

	async def get_request(self, request_id: str) -> Optional[Mapping]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			record = await conn.fetchrow(
				"SELECT id, sender_id, receiver_id, status, created_at FROM interests WHERE id = $1",
				request_id,
			)
		return dict(record) if record else None

	async def set_request_status(self, request_id: str, status: RequestStatus) -> bool:
		pool = await get_pool()
		async with pool.acquire() as conn:
			record = await conn.fetchrow(
				"""
				UPDATE interests
				SET status = $2
				WHERE id = $1 AND status = 'pending'
				RETURNING id
				""",
				request_id,
				status.value,
			)
		return record is not None

	# --- Conversations ----------------------------------------------------

	async def list_conversations(self, viewer_id: str) -> list[Conversation]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch("SELECT * FROM get_my_inbox_conversations($1)", viewer_id)
		return [_record_to_conversation(row, viewer_id) for row in rows]

	# --- Notifications ----------------------------------------------------

	async def list_notifications(
		self,
		viewer_id: str,
		*,
		limit: int,
		read: Optional[bool] = None,
	) -> list[Notification]:
		params: list[object] = [viewer_id]
		where_read = ""
		if read is not None:
			params.append(read)
			where_read = " AND read = $2"
		params.append(limit)
		query = (
			"SELECT id, type, title, body, data, read, created_at"
			" FROM notifications"
			" WHERE user_id = $1"
			f"{where_read}"
			" ORDER BY created_at DESC"
			" LIMIT $" + str(len(params))
		)
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(query, *params)
		return [_record_to_notification(row) for row in rows]

	async def mark_notification_read(self, viewer_id: str, notification_id: str) -> bool:
		pool = await get_pool()
		async with pool.acquire() as conn:
			record = await conn.fetchrow(
				"""
				UPDATE notifications
				SET read = TRUE, read_at = NOW()
				WHERE id = $1 AND user_id = $2
				RETURNING id
				""",
				notification_id,
				viewer_id,
			)
		return record is not None

	async def mark_all_notifications_read(self, viewer_id: str) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				UPDATE notifications
				SET read = TRUE, read_at = NOW()
				WHERE user_id = $1 AND read = FALSE
				RETURNING id
				""",
				viewer_id,
			)
		return len(rows)

	async def mark_latest_received_unread(self, viewer_id: str, conversation_id: str, partner_id: str) -> bool:
		"""Reset read state on the newest message ``partner_id`` sent the viewer in the conversation."""
		pool = await get_pool()
		async with pool.acquire() as conn:
			record = await conn.fetchrow(
				"""
				UPDATE messages
				SET read = FALSE, read_at = NULL
				WHERE id = (
					SELECT id FROM messages
					WHERE conversation_id = $1 AND receiver_id = $2 AND sender_id = $3
					ORDER BY created_at DESC
					LIMIT 1
				)
				RETURNING id
				""",
				conversation_id,
				viewer_id,
				partner_id,
			)
		return record is not None

	# --- Events -----------------------------------------------------------

	async def list_rsvps(self, domain: EventDomain, viewer_id: str) -> list[RsvpRow]:
		tables = DOMAIN_TABLES[domain]
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"SELECT event_id, status FROM {tables.rsvps} WHERE user_id = $1",
				viewer_id,
			)
		return [RsvpRow.from_record(row) for row in rows]

	async def list_interests(self, domain: EventDomain, viewer_id: str) -> list[InterestRow]:
		if not self.capabilities.for_domain(domain).has_interests:
			return []
		tables = DOMAIN_TABLES[domain]
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"SELECT event_id, status FROM {tables.interests} WHERE user_id = $1 AND status = $2",
				viewer_id,
				InterestStatus.INTERESTED.value,
			)
		return [InterestRow.from_record(row) for row in rows]

	async def list_hosted_event_ids(self, domain: EventDomain, viewer_id: str) -> list[str]:
		tables = DOMAIN_TABLES[domain]
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"SELECT id FROM {tables.events} WHERE created_by = $1 AND is_cancelled = FALSE",
				viewer_id,
			)
		return [str(row["id"]) for row in rows]

	def _event_columns(self, domain: EventDomain) -> str:
		tables = DOMAIN_TABLES[domain]
		caps = self.capabilities.for_domain(domain)
		columns = ["id", "created_by", "title", "event_date", "location", "is_cancelled"]
		if tables.owner_column:
			columns.append(f"{tables.owner_column} AS owner_id")
		if caps.has_ends_at:
			columns.append("ends_at")
		if caps.has_duration:
			columns.append("duration_minutes")
		return ", ".join(columns)

	async def fetch_events(self, domain: EventDomain, event_ids: Sequence[str]) -> list[EventRecord]:
		"""Fetch non-cancelled events by id, ordered by start time."""
		if not event_ids:
			return []
		tables = DOMAIN_TABLES[domain]
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"SELECT {self._event_columns(domain)} FROM {tables.events}"
				" WHERE id = ANY($1::uuid[]) AND is_cancelled = FALSE"
				" ORDER BY event_date ASC",
				list(event_ids),
			)
		return [EventRecord.from_record(row, domain) for row in rows]

	async def insert_going_rsvps(self, domain: EventDomain, viewer_id: str, event_ids: Sequence[str]) -> int:
		"""Insert "going" rows; an existing row for the pair is left as is."""
		if not event_ids:
			return 0
		tables = DOMAIN_TABLES[domain]
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				INSERT INTO {tables.rsvps} (event_id, user_id, status)
				SELECT event_id, $2, $3 FROM unnest($1::uuid[]) AS event_id
				ON CONFLICT (event_id, user_id) DO NOTHING
				RETURNING event_id
				""",
				list(event_ids),
				viewer_id,
				RsvpStatus.GOING.value,
			)
		return len(rows)
