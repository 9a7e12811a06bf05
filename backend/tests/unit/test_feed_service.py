from __future__ import annotations

import asyncio
import json

import pytest

from feedsync.domain.feed.cache import SnapshotCache
from feedsync.domain.feed.exceptions import (
	ConversationNotFound,
	NotificationNotFound,
	RequestForbidden,
	RequestGone,
	RequestNotFound,
)
from feedsync.domain.feed.fetchers import SourceFetchers
from feedsync.domain.feed.models import EventDomain, EventKind, ItemKind, RequestStatus
from feedsync.domain.feed.schemas import (
	Conversation,
	LastMessage,
	Notification,
	Profile,
	RefreshRequested,
)
from feedsync.domain.feed.service import FeedService
from feedsync.domain.feed.writes import BackgroundWrites


def _service(feed_repo, viewer_id, **kwargs) -> FeedService:
	writes = kwargs.pop("writes", None) or BackgroundWrites()
	cache = kwargs.pop("cache", None) or SnapshotCache(writes=writes)
	return FeedService(viewer_id, repository=feed_repo, cache=cache, writes=writes, **kwargs)


def _seed_feed(feed_repo, viewer_id, past_offset):
	partner = feed_repo.add_profile("pat")
	sender = feed_repo.add_profile("sam")
	request_id = feed_repo.add_request(sender, viewer_id, created_at=past_offset(hours=3))
	feed_repo.conversations[viewer_id].append(
		Conversation(
			id="c1",
			partner=Profile(id=partner, username="pat"),
			last_message=LastMessage(content="hey", created_at=past_offset(hours=1), sender_id=partner),
			preview="hey",
		)
	)
	feed_repo.notifications[viewer_id].append(
		Notification(id="n1", title="Welcome", created_at=past_offset(hours=2))
	)
	return request_id


class _GatedFetchers(SourceFetchers):
	def __init__(self, repository) -> None:
		super().__init__(repository)
		self.calls = 0
		self.gate = asyncio.Event()

	async def fetch_all(self, viewer_id):
		self.calls += 1
		await self.gate.wait()
		return await super().fetch_all(viewer_id)


@pytest.mark.asyncio
async def test_refresh_builds_timeline_and_caches_it(feed_repo, viewer_id, past_offset, fake_redis):
	request_id = _seed_feed(feed_repo, viewer_id, past_offset)
	service = _service(feed_repo, viewer_id)

	await service.refresh()
	await service.close()

	assert [(item.kind, item.id) for item in service.items] == [
		(ItemKind.MESSAGE, "c1"),
		(ItemKind.NOTIFICATION, "n1"),
		(ItemKind.REQUEST, request_id),
	]
	assert service.state.loading is False
	assert service.state.updated_at is not None
	cached = service.cache.get(f"inbox.items:{viewer_id}")
	assert [row["id"] for row in cached] == ["c1", "n1", request_id]
	durable = json.loads(await fake_redis.get(f"uiCache:inbox.items:{viewer_id}"))
	assert len(durable["value"]) == 3


@pytest.mark.asyncio
async def test_manual_refresh_toggles_loading_then_refreshing(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	service = _service(feed_repo, viewer_id)
	seen = []
	service.add_listener(lambda state: seen.append((state.loading, state.refreshing, len(state.items))))

	await service.refresh()
	await service.refresh()
	await service.close()

	assert seen[0] == (True, False, 0)
	assert seen[1] == (False, False, 3)
	assert seen[2] == (False, True, 3)
	assert seen[3] == (False, False, 3)


@pytest.mark.asyncio
async def test_silent_refresh_never_shows_flags(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	service = _service(feed_repo, viewer_id)
	seen = []
	service.add_listener(lambda state: seen.append((state.loading, state.refreshing)))

	await service.refresh(silent=True)
	await service.close()

	assert seen == [(False, False)]
	assert len(service.items) == 3


@pytest.mark.asyncio
async def test_overlapping_refreshes_share_one_run(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	fetchers = _GatedFetchers(feed_repo)
	service = _service(feed_repo, viewer_id, fetchers=fetchers)

	first = asyncio.ensure_future(service.refresh())
	second = asyncio.ensure_future(service.refresh(silent=True))
	await asyncio.sleep(0)
	fetchers.gate.set()
	await asyncio.gather(first, second)
	await service.close()

	assert fetchers.calls == 1
	assert len(service.items) == 3


@pytest.mark.asyncio
async def test_single_flight_can_be_disabled(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	fetchers = _GatedFetchers(feed_repo)
	fetchers.gate.set()
	service = _service(feed_repo, viewer_id, fetchers=fetchers, single_flight=False)

	await asyncio.gather(service.refresh(), service.refresh())
	await service.close()

	assert fetchers.calls == 2


@pytest.mark.asyncio
async def test_pipeline_error_keeps_previous_feed(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	service = _service(feed_repo, viewer_id)
	await service.refresh()
	before = service.items

	async def _boom(_viewer_id):
		raise RuntimeError("pipeline down")

	service.fetchers.fetch_all = _boom
	await service.refresh()
	await service.close()

	assert service.items == before
	assert service.state.loading is False
	assert service.state.refreshing is False


@pytest.mark.asyncio
async def test_failed_source_still_yields_a_feed(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	feed_repo.failing.add("list_notifications")
	service = _service(feed_repo, viewer_id)

	await service.refresh()
	await service.close()

	assert [item.kind for item in service.items] == [ItemKind.MESSAGE, ItemKind.REQUEST]


@pytest.mark.asyncio
async def test_stale_request_is_hidden_and_declined(feed_repo, viewer_id, past_offset, future_offset):
	sender = feed_repo.add_profile("sam")
	stale_id = feed_repo.add_request(sender, viewer_id)
	feed_repo.add_request(viewer_id, sender, status=RequestStatus.ACCEPTED)
	hosted = feed_repo.add_event(EventDomain.GROUP, created_by=viewer_id, starts_at=future_offset(days=2))
	service = _service(feed_repo, viewer_id)

	await service.refresh()
	await service.close()

	assert service.items == []
	assert feed_repo.requests[stale_id]["status"] == RequestStatus.DECLINED.value
	assert [(event.id, event.kind) for event in service.upcoming] == [(hosted, EventKind.HOSTING)]


@pytest.mark.asyncio
async def test_new_service_paints_from_memory_cache(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	writes = BackgroundWrites()
	cache = SnapshotCache(writes=writes)
	first = _service(feed_repo, viewer_id, cache=cache, writes=writes)
	await first.refresh()

	second = _service(feed_repo, viewer_id, cache=cache, writes=writes)
	await second.close()

	assert [item.id for item in second.items] == [item.id for item in first.items]


@pytest.mark.asyncio
async def test_hydrate_reads_durable_tier(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	warm = _service(feed_repo, viewer_id)
	await warm.refresh()
	await warm.close()

	cold = _service(feed_repo, viewer_id)
	assert cold.items == []
	assert await cold.hydrate() is True

	assert [item.id for item in cold.items] == [item.id for item in warm.items]
	assert cold.state.updated_at is not None


@pytest.mark.asyncio
async def test_hydrate_without_durable_copy_changes_nothing(feed_repo, viewer_id):
	service = _service(feed_repo, viewer_id)

	assert await service.hydrate() is False
	assert service.state.updated_at is None


@pytest.mark.asyncio
async def test_refresh_requests_for_other_viewers_are_ignored(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	service = _service(feed_repo, viewer_id)

	service.on_refresh_requested(
		RefreshRequested(viewer_id="someone-else", source="messages", received_at=past_offset(seconds=1))
	)
	await service.close()
	assert service.items == []

	service.on_refresh_requested(
		RefreshRequested(viewer_id=viewer_id, source="notifications", received_at=past_offset(seconds=1))
	)
	await service.close()
	assert len(service.items) == 3


@pytest.mark.asyncio
async def test_accept_request_removes_item_and_updates_status(feed_repo, viewer_id, past_offset):
	request_id = _seed_feed(feed_repo, viewer_id, past_offset)
	service = _service(feed_repo, viewer_id)
	await service.refresh()

	await service.accept_request(request_id)
	await service.close()

	assert feed_repo.requests[request_id]["status"] == RequestStatus.ACCEPTED.value
	assert all(item.id != request_id for item in service.items)


@pytest.mark.asyncio
async def test_decline_request(feed_repo, viewer_id, past_offset):
	request_id = _seed_feed(feed_repo, viewer_id, past_offset)
	service = _service(feed_repo, viewer_id)

	await service.decline_request(request_id)
	await service.close()

	assert feed_repo.requests[request_id]["status"] == RequestStatus.DECLINED.value


@pytest.mark.asyncio
async def test_request_action_errors(feed_repo, viewer_id):
	other = feed_repo.add_profile("olive")
	sender = feed_repo.add_profile("sam")
	not_mine = feed_repo.add_request(sender, other)
	answered = feed_repo.add_request(sender, viewer_id, status=RequestStatus.ACCEPTED)
	service = _service(feed_repo, viewer_id)

	with pytest.raises(RequestNotFound):
		await service.accept_request("missing")
	with pytest.raises(RequestForbidden) as forbidden:
		await service.accept_request(not_mine)
	with pytest.raises(RequestGone):
		await service.decline_request(answered)

	assert forbidden.value.reason == "not_recipient"
	assert feed_repo.requests[not_mine]["status"] == RequestStatus.PENDING.value
	await service.close()


@pytest.mark.asyncio
async def test_mark_notification_read(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	service = _service(feed_repo, viewer_id)
	await service.refresh()

	await service.mark_notification_read("n1")
	await service.close()

	notification = next(item.notification for item in service.items if item.id == "n1")
	assert notification.read is True
	assert [n.id for n in await service.notification_history()] == ["n1"]

	with pytest.raises(NotificationNotFound):
		await service.mark_notification_read("missing")


@pytest.mark.asyncio
async def test_mark_all_notifications_read(feed_repo, viewer_id, past_offset):
	for idx in range(3):
		feed_repo.notifications[viewer_id].append(
			Notification(id=f"n{idx}", title="Hi", created_at=past_offset(minutes=idx))
		)
	service = _service(feed_repo, viewer_id)
	await service.refresh()

	assert await service.mark_all_notifications_read() == 3
	await service.close()

	assert all(item.notification.read for item in service.items)
	assert len(await service.notification_history(limit=2)) == 2


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_refresh(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	service = _service(feed_repo, viewer_id)

	def _bad_listener(_state):
		raise ValueError("listener bug")

	remove = service.add_listener(_bad_listener)
	await service.refresh()
	remove()
	await service.close()

	assert len(service.items) == 3


class _HoldAfterFetchFetchers(SourceFetchers):
	"""Reads every source, then holds the first pass until ``release`` is set."""

	def __init__(self, repository) -> None:
		super().__init__(repository)
		self.calls = 0
		self.fetched = asyncio.Event()
		self.release = asyncio.Event()

	async def fetch_all(self, viewer_id):
		self.calls += 1
		snapshot = await super().fetch_all(viewer_id)
		if self.calls == 1:
			self.fetched.set()
			await self.release.wait()
		return snapshot


@pytest.mark.asyncio
async def test_change_signal_after_fetch_runs_a_follow_up_pass(feed_repo, viewer_id, past_offset):
	fetchers = _HoldAfterFetchFetchers(feed_repo)
	service = _service(feed_repo, viewer_id, fetchers=fetchers)

	first = asyncio.ensure_future(service.refresh(silent=True))
	await fetchers.fetched.wait()
	feed_repo.notifications[viewer_id].append(Notification(id="new", title="Ping", created_at=past_offset(seconds=1)))
	service.on_refresh_requested(
		RefreshRequested(viewer_id=viewer_id, source="notifications", received_at=past_offset(seconds=0))
	)
	await asyncio.sleep(0)
	fetchers.release.set()
	await first
	await service.close()

	assert any(item.id == "new" for item in service.items)
	assert fetchers.calls == 2


@pytest.mark.asyncio
async def test_declined_request_does_not_come_back_from_an_older_run(feed_repo, viewer_id, fake_redis):
	sender = feed_repo.add_profile("sam")
	request_id = feed_repo.add_request(sender, viewer_id)
	fetchers = _HoldAfterFetchFetchers(feed_repo)
	service = _service(feed_repo, viewer_id, fetchers=fetchers)
	seen_ids = []
	service.add_listener(lambda state: seen_ids.append([item.id for item in state.items]))

	background = asyncio.ensure_future(service.refresh(silent=True))
	await fetchers.fetched.wait()
	decline = asyncio.ensure_future(service.decline_request(request_id))
	await asyncio.sleep(0)
	fetchers.release.set()
	await asyncio.gather(background, decline)
	await service.close()

	assert feed_repo.requests[request_id]["status"] == RequestStatus.DECLINED.value
	assert service.items == []
	assert all(request_id not in ids for ids in seen_ids)
	assert service.cache.get(f"inbox.items:{viewer_id}") == []
	durable = json.loads(await fake_redis.get(f"uiCache:inbox.items:{viewer_id}"))
	assert durable["value"] == []


@pytest.mark.asyncio
async def test_call_before_fetch_joins_without_extra_pass(feed_repo, viewer_id, past_offset):
	_seed_feed(feed_repo, viewer_id, past_offset)
	fetchers = _HoldAfterFetchFetchers(feed_repo)
	fetchers.release.set()
	service = _service(feed_repo, viewer_id, fetchers=fetchers)

	await asyncio.gather(service.refresh(), service.refresh(silent=True))
	await service.close()

	assert fetchers.calls == 1


@pytest.mark.asyncio
async def test_mark_conversation_unread(feed_repo, viewer_id, past_offset):
	partner = feed_repo.add_profile("pat")
	feed_repo.conversations[viewer_id].append(
		Conversation(
			id="c1",
			partner=Profile(id=partner, username="pat"),
			last_message=LastMessage(content="later", created_at=past_offset(minutes=1), sender_id=partner),
		)
	)
	feed_repo.add_message("c1", sender_id=partner, receiver_id=viewer_id, created_at=past_offset(minutes=5))
	feed_repo.add_message("c1", sender_id=partner, receiver_id=viewer_id, created_at=past_offset(minutes=1))
	feed_repo.add_message("c1", sender_id=viewer_id, receiver_id=partner, created_at=past_offset(seconds=30))
	service = _service(feed_repo, viewer_id)
	await service.refresh()

	assert await service.mark_conversation_unread("c1") is True
	await service.close()

	assert [message["read"] for message in feed_repo.messages] == [True, False, True]
	assert service.items[0].conversation.unread_count == 1

	assert await service.mark_conversation_unread("c1") is False
	with pytest.raises(ConversationNotFound):
		await service.mark_conversation_unread("missing")


@pytest.mark.asyncio
async def test_viewer_id_is_compared_in_canonical_form(feed_repo, viewer_id):
	sender = feed_repo.add_profile("sam")
	request_id = feed_repo.add_request(sender, viewer_id)
	service = _service(feed_repo, viewer_id.upper())

	assert service.viewer_id == viewer_id
	await service.accept_request(request_id)
	await service.close()

	assert feed_repo.requests[request_id]["status"] == RequestStatus.ACCEPTED.value
