from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence
from uuid import uuid4

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from feedsync.domain.feed.capabilities import SchemaCapabilities
from feedsync.domain.feed.models import (
	EventDomain,
	EventRecord,
	InterestRow,
	InterestStatus,
	RequestStatus,
	RsvpRow,
	RsvpStatus,
)
from feedsync.domain.feed.schemas import ConnectionRequest, Conversation, Notification, Profile
from feedsync.infra import postgres


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from feedsync.infra.redis import redis_client, set_redis_client

	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


class FakeFeedRepository:
	"""In-memory stand-in for FeedRepository with the same method surface."""

	def __init__(self) -> None:
		self.capabilities = SchemaCapabilities()
		self.profiles: dict[str, Profile] = {}
		self.requests: dict[str, dict] = {}
		self.conversations: dict[str, list[Conversation]] = defaultdict(list)
		self.notifications: dict[str, list[Notification]] = defaultdict(list)
		self.events: dict[EventDomain, dict[str, EventRecord]] = defaultdict(dict)
		self.rsvps: dict[EventDomain, dict[tuple[str, str], RsvpStatus]] = defaultdict(dict)
		self.event_interests: dict[EventDomain, dict[tuple[str, str], InterestStatus]] = defaultdict(dict)
		self.messages: list[dict] = []
		self.failing: set[str] = set()
		self.decline_calls: list[list[str]] = []
		self.backfill_calls: list[tuple[EventDomain, list[str]]] = []

	def _maybe_fail(self, name: str) -> None:
		if name in self.failing:
			raise RuntimeError(f"{name} unavailable")

	# --- seeding helpers --------------------------------------------------

	def add_profile(self, username: str) -> str:
		user_id = str(uuid4())
		self.profiles[user_id] = Profile(id=user_id, username=username)
		return user_id

	def add_request(
		self,
		sender_id: str,
		receiver_id: str,
		*,
		status: RequestStatus = RequestStatus.PENDING,
		created_at: Optional[datetime] = None,
	) -> str:
		request_id = str(uuid4())
		self.requests[request_id] = {
			"id": request_id,
			"sender_id": sender_id,
			"receiver_id": receiver_id,
			"status": status.value,
			"created_at": created_at or utcnow(),
		}
		return request_id

	def add_event(
		self,
		domain: EventDomain,
		*,
		created_by: str,
		starts_at: datetime,
		title: str = "Meetup",
		ends_at: Optional[datetime] = None,
		duration_minutes: Optional[int] = None,
		is_cancelled: bool = False,
	) -> str:
		event_id = str(uuid4())
		self.events[domain][event_id] = EventRecord(
			id=event_id,
			domain=domain,
			created_by=created_by,
			title=title,
			starts_at=starts_at,
			ends_at=ends_at,
			duration_minutes=duration_minutes,
			is_cancelled=is_cancelled,
		)
		return event_id

	def add_message(
		self,
		conversation_id: str,
		*,
		sender_id: str,
		receiver_id: str,
		created_at: datetime,
		read: bool = True,
	) -> None:
		self.messages.append(
			{
				"conversation_id": conversation_id,
				"sender_id": sender_id,
				"receiver_id": receiver_id,
				"created_at": created_at,
				"read": read,
			}
		)

	# --- requests ---------------------------------------------------------

	async def list_pending_requests(self, viewer_id: str) -> list[ConnectionRequest]:
		self._maybe_fail("list_pending_requests")
		rows = [
			row
			for row in self.requests.values()
			if row["receiver_id"] == viewer_id and row["status"] == RequestStatus.PENDING.value
		]
		rows.sort(key=lambda row: row["created_at"], reverse=True)
		return [
			ConnectionRequest(
				id=row["id"],
				sender_id=row["sender_id"],
				sender=self.profiles.get(row["sender_id"], Profile()),
				status=RequestStatus(row["status"]),
				created_at=row["created_at"],
			)
			for row in rows
		]

	async def list_accepted_counterparts(self, viewer_id: str, user_ids: Sequence[str]) -> set[str]:
		self._maybe_fail("list_accepted_counterparts")
		wanted = set(user_ids)
		counterparts = set()
		for row in self.requests.values():
			if row["status"] != RequestStatus.ACCEPTED.value:
				continue
			if row["sender_id"] == viewer_id and row["receiver_id"] in wanted:
				counterparts.add(row["receiver_id"])
			elif row["receiver_id"] == viewer_id and row["sender_id"] in wanted:
				counterparts.add(row["sender_id"])
		return counterparts

	async def decline_requests(self, request_ids) -> int:
		ids = list(request_ids)
		self.decline_calls.append(ids)
		self._maybe_fail("decline_requests")
		changed = 0
		for request_id in ids:
			row = self.requests.get(request_id)
			if row and row["status"] == RequestStatus.PENDING.value:
				row["status"] = RequestStatus.DECLINED.value
				changed += 1
		return changed

	async def get_request(self, request_id: str):
		row = self.requests.get(request_id)
		return dict(row) if row else None

	async def set_request_status(self, request_id: str, status: RequestStatus) -> bool:
		row = self.requests.get(request_id)
		if not row or row["status"] != RequestStatus.PENDING.value:
			return False
		row["status"] = status.value
		return True

	# --- conversations / notifications ------------------------------------

	async def list_conversations(self, viewer_id: str) -> list[Conversation]:
		self._maybe_fail("list_conversations")
		conversations = []
		for conversation in self.conversations[viewer_id]:
			unread = sum(
				1
				for message in self.messages
				if message["conversation_id"] == conversation.id and message["receiver_id"] == viewer_id and not message["read"]
			)
			conversations.append(conversation.model_copy(update={"unread_count": unread}) if unread else conversation)
		return conversations

	async def list_notifications(self, viewer_id: str, *, limit: int, read: Optional[bool] = None) -> list[Notification]:
		self._maybe_fail("list_notifications")
		rows = [n for n in self.notifications[viewer_id] if read is None or n.read == read]
		rows.sort(key=lambda n: n.created_at, reverse=True)
		return rows[:limit]

	async def mark_notification_read(self, viewer_id: str, notification_id: str) -> bool:
		rows = self.notifications[viewer_id]
		for idx, notification in enumerate(rows):
			if notification.id == notification_id:
				rows[idx] = notification.model_copy(update={"read": True})
				return True
		return False

	async def mark_all_notifications_read(self, viewer_id: str) -> int:
		rows = self.notifications[viewer_id]
		changed = 0
		for idx, notification in enumerate(rows):
			if not notification.read:
				rows[idx] = notification.model_copy(update={"read": True})
				changed += 1
		return changed

	async def mark_latest_received_unread(self, viewer_id: str, conversation_id: str, partner_id: str) -> bool:
		received = [
			message
			for message in self.messages
			if message["conversation_id"] == conversation_id
			and message["receiver_id"] == viewer_id
			and message["sender_id"] == partner_id
		]
		if not received:
			return False
		max(received, key=lambda message: message["created_at"])["read"] = False
		return True

	# --- events -----------------------------------------------------------

	async def list_rsvps(self, domain: EventDomain, viewer_id: str) -> list[RsvpRow]:
		self._maybe_fail(f"list_rsvps:{domain.value}")
		return [
			RsvpRow(event_id=event_id, status=status)
			for (event_id, user_id), status in self.rsvps[domain].items()
			if user_id == viewer_id
		]

	async def list_interests(self, domain: EventDomain, viewer_id: str) -> list[InterestRow]:
		self._maybe_fail(f"list_interests:{domain.value}")
		if not self.capabilities.for_domain(domain).has_interests:
			return []
		return [
			InterestRow(event_id=event_id, status=status)
			for (event_id, user_id), status in self.event_interests[domain].items()
			if user_id == viewer_id and status == InterestStatus.INTERESTED
		]

	async def list_hosted_event_ids(self, domain: EventDomain, viewer_id: str) -> list[str]:
		self._maybe_fail(f"list_hosted_event_ids:{domain.value}")
		return [
			event.id
			for event in self.events[domain].values()
			if event.created_by == viewer_id and not event.is_cancelled
		]

	async def fetch_events(self, domain: EventDomain, event_ids: Sequence[str]) -> list[EventRecord]:
		self._maybe_fail(f"fetch_events:{domain.value}")
		found = [self.events[domain][event_id] for event_id in event_ids if event_id in self.events[domain]]
		found = [event for event in found if not event.is_cancelled]
		return sorted(found, key=lambda event: event.starts_at)

	async def insert_going_rsvps(self, domain: EventDomain, viewer_id: str, event_ids: Sequence[str]) -> int:
		self.backfill_calls.append((domain, list(event_ids)))
		self._maybe_fail("insert_going_rsvps")
		inserted = 0
		for event_id in event_ids:
			key = (event_id, viewer_id)
			if key not in self.rsvps[domain]:
				self.rsvps[domain][key] = RsvpStatus.GOING
				inserted += 1
		return inserted


@pytest.fixture
def feed_repo() -> FakeFeedRepository:
	return FakeFeedRepository()


@pytest.fixture
def viewer_id(feed_repo: FakeFeedRepository) -> str:
	return feed_repo.add_profile("viewer")


@pytest.fixture
def past_offset():
	def _at(**delta) -> datetime:
		return utcnow() - timedelta(**delta)

	return _at


@pytest.fixture
def future_offset():
	def _at(**delta) -> datetime:
		return utcnow() + timedelta(**delta)

	return _at
