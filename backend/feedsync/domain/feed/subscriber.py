"""Change subscriber bridging per-viewer Redis streams to refresh requests."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Literal

from feedsync.domain.feed.schemas import RefreshRequested
from feedsync.infra.redis import RedisProxy, redis_client
from feedsync.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

ChangeSource = Literal["messages", "notifications"]
CHANGE_SOURCES: tuple[ChangeSource, ...] = ("messages", "notifications")
_STREAM_MAXLEN = 100


def change_stream(viewer_id: str, source: ChangeSource) -> str:
	return f"feed:changes:{viewer_id}:{source}"


async def publish_change(viewer_id: str, source: ChangeSource, **fields: str) -> str:
	"""Signal that something in ``source`` changed for ``viewer_id``; consumers re-fetch."""
	payload: Dict[str, Any] = {"source": source, "ts": datetime.now(timezone.utc).isoformat(), **fields}
	return await redis_client.xadd(change_stream(viewer_id, source), payload, maxlen=_STREAM_MAXLEN, approximate=True)


class ChangeSubscriber:
	"""Reads the viewer's change streams and emits a ``RefreshRequested`` per entry.

	Payloads are never interpreted. The sink is called synchronously and must not
	block; the feed service schedules the actual refresh.
	"""

	def __init__(
		self,
		viewer_id: str,
		sink: Callable[[RefreshRequested], None],
		*,
		redis: RedisProxy | None = None,
		block_ms: int = 1000,
		batch_size: int = 100,
		start_id: str = "$",
	) -> None:
		self.viewer_id = viewer_id
		self.sink = sink
		self.redis = redis or redis_client
		self.block_ms = block_ms
		self.batch_size = batch_size
		self._running = False
		self._last_ids: Dict[str, str] = {change_stream(viewer_id, source): start_id for source in CHANGE_SOURCES}
		self._sources: Dict[str, ChangeSource] = {change_stream(viewer_id, source): source for source in CHANGE_SOURCES}

	async def run_forever(self) -> None:
		self._running = True
		await self.prime()
		while self._running:
			try:
				await self.process_once()
			except asyncio.CancelledError:
				raise
			except Exception:
				_LOG.exception("feed.subscriber_read_failed", extra={"viewer_id": self.viewer_id})
				await asyncio.sleep(self.block_ms / 1000)

	async def prime(self) -> None:
		"""Pin "$" cursors to the current stream tail so no entry is missed between reads."""
		for stream_name, last_id in self._last_ids.items():
			if last_id != "$":
				continue
			tail = await self.redis.xrevrange(stream_name, count=1)
			self._last_ids[stream_name] = tail[0][0] if tail else "0-0"

	def stop(self) -> None:
		self._running = False

	async def process_once(self) -> int:
		messages = await self.redis.xread(streams=dict(self._last_ids), count=self.batch_size, block=self.block_ms or None)
		if not messages:
			return 0
		processed = 0
		for stream_name, entries in messages:
			source = self._sources.get(stream_name)
			for entry_id, _payload in entries:
				self._last_ids[stream_name] = entry_id
				if source is None:
					continue
				obs_metrics.inc_change_signal(source)
				self._emit(RefreshRequested(viewer_id=self.viewer_id, source=source, received_at=datetime.now(timezone.utc)))
				processed += 1
		return processed

	def _emit(self, message: RefreshRequested) -> None:
		try:
			self.sink(message)
		except Exception:
			_LOG.exception("feed.subscriber_sink_failed", extra={"source": message.source})
