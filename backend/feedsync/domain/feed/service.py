"""Feed service: runs the reconciliation pipeline and owns the observable feed state."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

import ulid
from pydantic import TypeAdapter, ValidationError

from feedsync.domain.feed import capabilities as caps
from feedsync.domain.feed.cache import SnapshotCache
from feedsync.domain.feed.events import EventAggregator
from feedsync.domain.feed.exceptions import (
	ConversationNotFound,
	NotificationNotFound,
	RequestForbidden,
	RequestGone,
	RequestNotFound,
)
from feedsync.domain.feed.fetchers import SourceFetchers
from feedsync.domain.feed.models import CACHE_KEY_ITEMS, CACHE_KEY_UPCOMING, ItemKind, RequestStatus
from feedsync.domain.feed.repair import ConsistencyRepairer
from feedsync.domain.feed.repo import FeedRepository
from feedsync.domain.feed.schemas import (
	ActivityItem,
	FeedState,
	Notification,
	RefreshRequested,
	UpcomingEvent,
)
from feedsync.domain.feed.timeline import merge_timeline
from feedsync.domain.feed.writes import BackgroundWrites
from feedsync.infra.postgres import get_pool
from feedsync.obs import logging as obs_logging
from feedsync.obs import metrics as obs_metrics
from feedsync.settings import Settings, settings

logger = logging.getLogger(__name__)

FeedListener = Callable[[FeedState], None]


def normalise_user_id(user_id: str) -> str:
	"""Canonical lowercase form, the same text asyncpg produces for uuid columns."""
	return str(UUID(str(user_id)))


_ITEMS_ADAPTER = TypeAdapter(list[ActivityItem])
_UPCOMING_ADAPTER = TypeAdapter(list[UpcomingEvent])


class FeedService:
	"""One viewer's feed.

	Refreshes never expose partial state: the previous feed stays visible until the
	whole pipeline has finished, then items and upcoming events are replaced together.
	Overlapping refresh calls join the run already in flight, which makes one more
	pass when a call arrives after its sources were read.
	"""

	def __init__(
		self,
		viewer_id: str,
		*,
		repository: FeedRepository,
		cache: SnapshotCache,
		writes: BackgroundWrites,
		fetchers: SourceFetchers | None = None,
		repairer: ConsistencyRepairer | None = None,
		aggregator: EventAggregator | None = None,
		single_flight: bool = True,
		notification_history_limit: int = 200,
	) -> None:
		self.viewer_id = normalise_user_id(viewer_id)
		self.repo = repository
		self.cache = cache
		self.writes = writes
		self.fetchers = fetchers or SourceFetchers(repository)
		self.repairer = repairer or ConsistencyRepairer(repository, writes)
		self.aggregator = aggregator or EventAggregator(repository, writes)
		self.single_flight = single_flight
		self.notification_history_limit = notification_history_limit
		self._state = FeedState(
			items=self._cached(CACHE_KEY_ITEMS, _ITEMS_ADAPTER, self.cache.get),
			upcoming=self._cached(CACHE_KEY_UPCOMING, _UPCOMING_ADAPTER, self.cache.get),
		)
		self._listeners: list[FeedListener] = []
		self._inflight: Optional[asyncio.Task] = None
		self._fetch_started = False
		self._rerun = False
		self._rerun_silent = True
		self._triggered: set[asyncio.Task] = set()

	# --- State ------------------------------------------------------------

	@property
	def state(self) -> FeedState:
		return self._state

	@property
	def items(self) -> list[ActivityItem]:
		return self._state.items

	@property
	def upcoming(self) -> list[UpcomingEvent]:
		return self._state.upcoming

	def add_listener(self, listener: FeedListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _remove() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _remove

	def _cache_key(self, key: str) -> str:
		return f"{key}:{self.viewer_id}"

	def _cached(self, key: str, adapter: TypeAdapter, read: Callable[[str], object]) -> list:
		raw = read(self._cache_key(key))
		if not raw:
			return []
		try:
			return adapter.validate_python(raw)
		except ValidationError:
			logger.warning("feed.cache_invalid", extra={"key": key})
			return []

	def _set_state(self, **changes: object) -> None:
		self._state = self._state.model_copy(update=changes)
		for listener in list(self._listeners):
			try:
				listener(self._state)
			except Exception:
				logger.exception("feed.listener_failed")

	async def hydrate(self) -> bool:
		"""Cold start: paint the last persisted feed when memory holds nothing."""
		changes: dict[str, object] = {}
		if not self._state.items:
			raw = await self.cache.load_durable(self._cache_key(CACHE_KEY_ITEMS))
			items = self._cached(CACHE_KEY_ITEMS, _ITEMS_ADAPTER, lambda _key: raw)
			if items:
				changes["items"] = items
				changes["loading"] = False
		if not self._state.upcoming:
			raw = await self.cache.load_durable(self._cache_key(CACHE_KEY_UPCOMING))
			upcoming = self._cached(CACHE_KEY_UPCOMING, _UPCOMING_ADAPTER, lambda _key: raw)
			if upcoming:
				changes["upcoming"] = upcoming
		if changes:
			entry = self.cache.entry(self._cache_key(CACHE_KEY_ITEMS))
			if entry is not None:
				changes["updated_at"] = entry.written_at
			self._set_state(**changes)
		return bool(changes)

	# --- Pipeline ---------------------------------------------------------

	async def refresh(self, *, silent: bool = False) -> None:
		"""Run the pipeline, or join the run in flight.

		A call that arrives once the in-flight run has started reading its sources
		cannot be served by that run's data. It marks the run for one follow-up pass
		and returns only after that pass has committed.
		"""
		if not self.single_flight:
			await self._run(silent, discard_if_stale=False)
			return
		task = self._inflight
		if task is not None and not task.done():
			obs_metrics.inc_refresh_coalesced()
			if self._fetch_started:
				self._rerun = True
				self._rerun_silent = self._rerun_silent and silent
			await asyncio.shield(task)
			return
		task = asyncio.ensure_future(self._drive(silent))
		self._inflight = task
		task.add_done_callback(self._clear_inflight)
		await asyncio.shield(task)

	def _clear_inflight(self, task: asyncio.Task) -> None:
		if self._inflight is task:
			self._inflight = None

	async def _drive(self, silent: bool) -> None:
		settle_flags = False
		while True:
			self._fetch_started = False
			self._rerun = False
			self._rerun_silent = True
			await self._run(silent, discard_if_stale=True, settle_flags=settle_flags)
			if not self._rerun:
				return
			# A discarded manual pass leaves its flags set for the follow-up to clear.
			settle_flags = settle_flags or not silent
			silent = self._rerun_silent

	async def _run(self, silent: bool, *, discard_if_stale: bool, settle_flags: bool = False) -> None:
		mode = "silent" if silent else "manual"
		started = time.perf_counter()
		with obs_logging.run_context(self.viewer_id, str(ulid.new())):
			if not silent:
				if self._state.items:
					self._set_state(refreshing=True)
				else:
					self._set_state(loading=True)
			try:
				items, upcoming = await self._pipeline()
			except Exception:
				logger.exception("feed.refresh_failed", extra={"mode": mode})
				obs_metrics.record_refresh(mode, result="error", duration_seconds=time.perf_counter() - started)
				if not silent or settle_flags:
					self._set_state(loading=False, refreshing=False)
				return
			if discard_if_stale and self._rerun:
				obs_metrics.record_refresh(mode, result="superseded", duration_seconds=time.perf_counter() - started)
				logger.info("feed.refresh_superseded", extra={"mode": mode})
				return
			self.cache.set(self._cache_key(CACHE_KEY_ITEMS), _ITEMS_ADAPTER.dump_python(items, mode="json"))
			self.cache.set(self._cache_key(CACHE_KEY_UPCOMING), _UPCOMING_ADAPTER.dump_python(upcoming, mode="json"))
			self._set_state(
				items=items,
				upcoming=upcoming,
				loading=False,
				refreshing=False,
				updated_at=datetime.now(timezone.utc),
			)
			obs_metrics.record_refresh(mode, result="ok", duration_seconds=time.perf_counter() - started)
			logger.info("feed.refreshed", extra={"mode": mode, "items": len(items), "upcoming": len(upcoming)})

	async def _pipeline(self) -> tuple[list[ActivityItem], list[UpcomingEvent]]:
		self._fetch_started = True
		with obs_logging.pipeline_stage("fetch"):
			snapshot = await self.fetchers.fetch_all(self.viewer_id)
		with obs_logging.pipeline_stage("repair"):
			repaired = await self.repairer.repair(self.viewer_id, snapshot.requests.rows)
		with obs_logging.pipeline_stage("aggregate"):
			upcoming = await self.aggregator.aggregate(self.viewer_id, snapshot.event_signals.rows)
		with obs_logging.pipeline_stage("merge"):
			items = merge_timeline(repaired.requests, snapshot.conversations.rows, snapshot.notifications.rows)
		return items, upcoming

	def on_refresh_requested(self, message: RefreshRequested) -> None:
		"""Change-subscriber sink; schedules a silent refresh and returns immediately."""
		if message.viewer_id.lower() != self.viewer_id:
			logger.debug("feed.refresh_request_ignored", extra={"source": message.source})
			return
		task = asyncio.ensure_future(self.refresh(silent=True))
		self._triggered.add(task)
		task.add_done_callback(self._triggered.discard)

	# --- Actions ----------------------------------------------------------

	async def _respond_to_request(self, request_id: str, status: RequestStatus) -> None:
		row = await self.repo.get_request(request_id)
		if row is None:
			raise RequestNotFound()
		if str(row["receiver_id"]) != self.viewer_id:
			raise RequestForbidden("not_recipient")
		if row["status"] != RequestStatus.PENDING.value:
			raise RequestGone("not_pending")
		if not await self.repo.set_request_status(request_id, status):
			raise RequestGone("not_pending")
		logger.info("feed.request_answered", extra={"request_id": request_id, "status": status.value})
		self._set_state(
			items=[item for item in self._state.items if not (item.kind == ItemKind.REQUEST and item.id == request_id)]
		)
		await self.refresh()

	async def accept_request(self, request_id: str) -> None:
		await self._respond_to_request(request_id, RequestStatus.ACCEPTED)

	async def decline_request(self, request_id: str) -> None:
		await self._respond_to_request(request_id, RequestStatus.DECLINED)

	def _with_read(self, should_mark: Callable[[Notification], bool]) -> list[ActivityItem]:
		items = []
		for item in self._state.items:
			if item.notification is not None and not item.notification.read and should_mark(item.notification):
				notification = item.notification.model_copy(update={"read": True})
				item = item.model_copy(update={"notification": notification})
			items.append(item)
		return items

	async def mark_notification_read(self, notification_id: str) -> None:
		if not await self.repo.mark_notification_read(self.viewer_id, notification_id):
			raise NotificationNotFound()
		self._set_state(items=self._with_read(lambda notification: notification.id == notification_id))
		await self.refresh(silent=True)

	async def mark_all_notifications_read(self) -> int:
		count = await self.repo.mark_all_notifications_read(self.viewer_id)
		self._set_state(items=self._with_read(lambda _notification: True))
		await self.refresh(silent=True)
		return count

	async def mark_conversation_unread(self, conversation_id: str) -> bool:
		"""Flag the newest message received from the partner as unread again.

		A conversation that already has unread messages is left alone.
		"""
		conversation = next(
			(item.conversation for item in self._state.items if item.conversation is not None and item.id == conversation_id),
			None,
		)
		if conversation is None:
			raise ConversationNotFound()
		if conversation.unread_count > 0:
			return False
		if conversation.partner.id is None:
			raise ConversationNotFound("partner_unknown")
		marked = await self.repo.mark_latest_received_unread(self.viewer_id, conversation_id, conversation.partner.id)
		if marked:
			await self.refresh()
		return marked

	async def notification_history(self, limit: int | None = None) -> list[Notification]:
		return await self.repo.list_notifications(
			self.viewer_id,
			limit=limit or self.notification_history_limit,
			read=True,
		)

	async def close(self, timeout: float | None = None) -> None:
		if self._triggered:
			await asyncio.gather(*list(self._triggered), return_exceptions=True)
		await self.writes.drain(timeout)


async def negotiate_capabilities(config: Settings = settings) -> caps.SchemaCapabilities:
	probed = None
	if config.feed_schema_probe:
		try:
			pool = await get_pool()
			async with pool.acquire() as conn:
				probed = await caps.probe_capabilities(conn)
		except Exception:
			logger.warning("feed.schema_probe_failed", exc_info=True)
	return caps.from_settings(config, probed)


async def build_feed_service(viewer_id: str, *, config: Settings = settings) -> FeedService:
	"""Wire a feed service for ``viewer_id`` with capabilities negotiated once up front."""
	capabilities = await negotiate_capabilities(config)
	repository = FeedRepository(capabilities)
	writes = BackgroundWrites()
	cache = SnapshotCache(writes=writes, prefix=config.feed_cache_prefix)
	return FeedService(
		viewer_id,
		repository=repository,
		cache=cache,
		writes=writes,
		fetchers=SourceFetchers(repository, notifications_limit=config.feed_notifications_limit),
		aggregator=EventAggregator(
			repository,
			writes,
			default_duration_minutes=config.feed_default_event_duration_minutes,
		),
		single_flight=config.feed_single_flight,
		notification_history_limit=config.feed_notification_history_limit,
	)
