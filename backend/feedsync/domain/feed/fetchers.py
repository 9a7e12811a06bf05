"""Concurrent source fetchers for the feed pipeline."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, Optional, TypeVar

from feedsync.domain.feed.exceptions import SourceUnavailable
from feedsync.domain.feed.models import DomainSignals, EventDomain
from feedsync.domain.feed.repo import FeedRepository
from feedsync.domain.feed.schemas import ConnectionRequest, Conversation, Notification
from feedsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class FetchResult(Generic[T]):
	rows: T
	error: Optional[SourceUnavailable] = None

	@property
	def ok(self) -> bool:
		return self.error is None


@dataclass(slots=True)
class SourceSnapshot:
	requests: FetchResult[list[ConnectionRequest]]
	conversations: FetchResult[list[Conversation]]
	notifications: FetchResult[list[Notification]]
	event_signals: FetchResult[Dict[EventDomain, DomainSignals]]


async def guarded(source: str, fetch: Callable[[], Awaitable[T]], empty: Callable[[], T]) -> FetchResult[T]:
	"""Run ``fetch``; on any failure log it and return ``empty()`` with the error attached."""
	try:
		return FetchResult(rows=await fetch())
	except Exception as exc:
		obs_metrics.inc_source_failure(source)
		logger.warning("feed.source_unavailable", extra={"source": source}, exc_info=True)
		error = SourceUnavailable(source)
		error.__cause__ = exc
		return FetchResult(rows=empty(), error=error)


class SourceFetchers:
	"""Issues the four source reads for one viewer."""

	def __init__(self, repository: FeedRepository, *, notifications_limit: int = 50) -> None:
		self.repo = repository
		self.notifications_limit = notifications_limit

	async def fetch_requests(self, viewer_id: str) -> FetchResult[list[ConnectionRequest]]:
		return await guarded("requests", lambda: self.repo.list_pending_requests(viewer_id), list)

	async def fetch_conversations(self, viewer_id: str) -> FetchResult[list[Conversation]]:
		return await guarded("conversations", lambda: self.repo.list_conversations(viewer_id), list)

	async def fetch_notifications(self, viewer_id: str) -> FetchResult[list[Notification]]:
		return await guarded(
			"notifications",
			lambda: self.repo.list_notifications(viewer_id, limit=self.notifications_limit),
			list,
		)

	async def _domain_signals(self, domain: EventDomain, viewer_id: str) -> DomainSignals:
		rsvps, interests = await asyncio.gather(
			guarded(f"rsvps:{domain.value}", lambda: self.repo.list_rsvps(domain, viewer_id), list),
			guarded(f"interests:{domain.value}", lambda: self.repo.list_interests(domain, viewer_id), list),
		)
		return DomainSignals(rsvps=rsvps.rows, interests=interests.rows)

	async def fetch_event_signals(self, viewer_id: str) -> FetchResult[Dict[EventDomain, DomainSignals]]:
		domains = list(EventDomain)
		signals = await asyncio.gather(*(self._domain_signals(domain, viewer_id) for domain in domains))
		return FetchResult(rows=dict(zip(domains, signals)))

	async def fetch_all(self, viewer_id: str) -> SourceSnapshot:
		requests, conversations, notifications, event_signals = await asyncio.gather(
			self.fetch_requests(viewer_id),
			self.fetch_conversations(viewer_id),
			self.fetch_notifications(viewer_id),
			self.fetch_event_signals(viewer_id),
		)
		return SourceSnapshot(
			requests=requests,
			conversations=conversations,
			notifications=notifications,
			event_signals=event_signals,
		)
