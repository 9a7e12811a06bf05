"""Repairs drift between pending requests and the accepted connection state."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from feedsync.domain.feed.exceptions import RepairWriteFailed
from feedsync.domain.feed.repo import FeedRepository
from feedsync.domain.feed.schemas import ConnectionRequest
from feedsync.domain.feed.writes import BackgroundWrites
from feedsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RepairResult:
	requests: list[ConnectionRequest]
	stale_ids: list[str] = field(default_factory=list)


class ConsistencyRepairer:
	"""Drops pending requests whose pair is already connected and declines them at the source.

	The decline is scheduled, not awaited. A request that is removed here but whose
	write fails comes back as pending on the next fetch and is repaired again.
	"""

	def __init__(self, repository: FeedRepository, writes: BackgroundWrites) -> None:
		self.repo = repository
		self.writes = writes
		self._inflight: set[str] = set()

	async def repair(self, viewer_id: str, requests: Sequence[ConnectionRequest]) -> RepairResult:
		pending = list(requests)
		sender_ids = list(dict.fromkeys(request.sender_id for request in pending))
		if not sender_ids:
			return RepairResult(requests=pending)

		try:
			connected = await self.repo.list_accepted_counterparts(viewer_id, sender_ids)
		except Exception:
			obs_metrics.inc_source_failure("accepted_connections")
			logger.warning("feed.repair_lookup_failed", exc_info=True)
			return RepairResult(requests=pending)

		stale_ids = [request.id for request in pending if request.sender_id in connected]
		if not stale_ids:
			return RepairResult(requests=pending)

		to_write = [request_id for request_id in stale_ids if request_id not in self._inflight]
		if to_write:
			self._inflight.update(to_write)
			obs_metrics.inc_stale_requests(len(to_write))
			logger.info("feed.stale_requests", extra={"count": len(to_write)})
			self.writes.schedule("repair", self._decline(to_write))

		stale = set(stale_ids)
		return RepairResult(
			requests=[request for request in pending if request.id not in stale],
			stale_ids=stale_ids,
		)

	async def _decline(self, request_ids: list[str]) -> int:
		try:
			return await self.repo.decline_requests(request_ids)
		except Exception as exc:
			raise RepairWriteFailed("decline_stale_requests") from exc
		finally:
			self._inflight.difference_update(request_ids)
