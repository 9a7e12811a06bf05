"""Fire-and-forget writes with an eventually consistent, self-healing contract.

Repair, backfill, and durable-cache writes are scheduled here instead of being
awaited on the read path. A failed write is logged and counted; the pipeline
recomputes the same correction on its next run, so a lost write only widens the
window in which the stale state is visible.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, Set

from feedsync.domain.feed.exceptions import FeedError
from feedsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class BackgroundWrites:
	"""Holds strong references to scheduled write tasks until they settle."""

	def __init__(self) -> None:
		self._tasks: Set[asyncio.Task] = set()

	@property
	def pending(self) -> int:
		return len(self._tasks)

	def schedule(self, kind: str, write: Awaitable[object]) -> asyncio.Task:
		task = asyncio.ensure_future(write)
		task.set_name(f"feed-write:{kind}")
		self._tasks.add(task)
		task.add_done_callback(lambda done: self._settle(kind, done))
		return task

	def _settle(self, kind: str, task: asyncio.Task) -> None:
		self._tasks.discard(task)
		if task.cancelled():
			obs_metrics.inc_background_write(kind, "cancelled")
			return
		exc = task.exception()
		if exc is None:
			obs_metrics.inc_background_write(kind, "ok")
			return
		obs_metrics.inc_background_write(kind, "error")
		reason = exc.reason if isinstance(exc, FeedError) else type(exc).__name__
		logger.warning(
			"feed.background_write_failed",
			extra={"kind": kind, "reason": reason},
			exc_info=(type(exc), exc, exc.__traceback__),
		)

	async def drain(self, timeout: Optional[float] = None) -> None:
		"""Wait for scheduled writes; cancel whatever is still running after ``timeout``."""
		if not self._tasks:
			return
		tasks = list(self._tasks)
		_, still_running = await asyncio.wait(tasks, timeout=timeout)
		for task in still_running:
			task.cancel()
		if still_running:
			await asyncio.gather(*still_running, return_exceptions=True)
