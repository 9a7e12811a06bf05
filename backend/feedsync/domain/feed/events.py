"""Upcoming-events aggregation across the group and personal event domains."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Sequence

from feedsync.domain.feed.exceptions import RepairWriteFailed
from feedsync.domain.feed.models import (
	EVENT_KIND_RANK,
	DomainSignals,
	EventDomain,
	EventKind,
	EventRecord,
	InterestStatus,
	RsvpStatus,
)
from feedsync.domain.feed.repo import FeedRepository
from feedsync.domain.feed.schemas import UpcomingEvent
from feedsync.domain.feed.writes import BackgroundWrites
from feedsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def classify_event(
	event: EventRecord,
	viewer_id: str,
	*,
	hosted_ids: set[str],
	rsvp_ids: set[str],
	interested_ids: set[str],
) -> Optional[EventKind]:
	"""Organizers always host, whatever RSVP or interest rows say."""
	if event.created_by == viewer_id or event.id in hosted_ids:
		return EventKind.HOSTING
	if event.id in rsvp_ids:
		return EventKind.RSVPD
	if event.id in interested_ids:
		return EventKind.INTERESTED
	return None


def rank_upcoming(events: Sequence[UpcomingEvent]) -> list[UpcomingEvent]:
	return sorted(events, key=lambda event: (EVENT_KIND_RANK[event.kind], event.starts_at))


class EventAggregator:
	"""Builds the viewer's upcoming list and backfills RSVP rows implied by ownership."""

	def __init__(
		self,
		repository: FeedRepository,
		writes: BackgroundWrites,
		*,
		default_duration_minutes: int = 120,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self.repo = repository
		self.writes = writes
		self.default_duration_minutes = default_duration_minutes
		self.clock = clock
		self._inflight: set[tuple[EventDomain, str]] = set()

	async def aggregate(
		self,
		viewer_id: str,
		signals: Mapping[EventDomain, DomainSignals],
	) -> list[UpcomingEvent]:
		now = self.clock()
		domains = list(EventDomain)
		per_domain = await asyncio.gather(
			*(self._aggregate_domain(domain, viewer_id, signals.get(domain) or DomainSignals(), now) for domain in domains)
		)
		merged = [event for events in per_domain for event in events]
		return rank_upcoming(merged)

	async def _aggregate_domain(
		self,
		domain: EventDomain,
		viewer_id: str,
		signals: DomainSignals,
		now: datetime,
	) -> list[UpcomingEvent]:
		rsvp_status: Dict[str, RsvpStatus] = {row.event_id: row.status for row in signals.rsvps}
		interested_ids = {row.event_id for row in signals.interests if row.status == InterestStatus.INTERESTED}
		try:
			hosted_ids = await self.repo.list_hosted_event_ids(domain, viewer_id)
			event_ids = list(dict.fromkeys([*rsvp_status, *interested_ids, *hosted_ids]))
			records = await self.repo.fetch_events(domain, event_ids) if event_ids else []
		except Exception:
			obs_metrics.inc_source_failure(f"events:{domain.value}")
			logger.warning("feed.events_unavailable", extra={"domain": domain.value}, exc_info=True)
			return []

		hosted = set(hosted_ids)
		rsvp_ids = set(rsvp_status)
		upcoming: list[UpcomingEvent] = []
		for record in records:
			if record.is_cancelled:
				continue
			ends_at = record.resolve_end(self.default_duration_minutes)
			if ends_at <= now:
				continue
			kind = classify_event(
				record,
				viewer_id,
				hosted_ids=hosted,
				rsvp_ids=rsvp_ids,
				interested_ids=interested_ids,
			)
			if kind is None:
				continue
			status = rsvp_status.get(record.id)
			if status is None and kind == EventKind.HOSTING:
				status = RsvpStatus.GOING
			upcoming.append(
				UpcomingEvent(
					id=record.id,
					domain=domain,
					owner_id=record.owner_id,
					title=record.title,
					starts_at=record.starts_at,
					ends_at=ends_at,
					location=record.location,
					kind=kind,
					rsvp_status=status,
				)
			)

		missing = [event.id for event in upcoming if event.kind == EventKind.HOSTING and event.id not in rsvp_ids]
		self._schedule_backfill(domain, viewer_id, missing)
		return upcoming

	def _schedule_backfill(self, domain: EventDomain, viewer_id: str, event_ids: list[str]) -> None:
		pending = [event_id for event_id in event_ids if (domain, event_id) not in self._inflight]
		if not pending:
			return
		self._inflight.update((domain, event_id) for event_id in pending)
		obs_metrics.inc_backfills(domain.value, len(pending))
		logger.info("feed.backfill_rsvps", extra={"domain": domain.value, "count": len(pending)})
		self.writes.schedule("backfill", self._backfill(domain, viewer_id, pending))

	async def _backfill(self, domain: EventDomain, viewer_id: str, event_ids: list[str]) -> int:
		try:
			return await self.repo.insert_going_rsvps(domain, viewer_id, event_ids)
		except Exception as exc:
			raise RepairWriteFailed("backfill_rsvps") from exc
		finally:
			self._inflight.difference_update((domain, event_id) for event_id in event_ids)
