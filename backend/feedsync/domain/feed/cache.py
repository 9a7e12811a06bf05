"""Two-tier snapshot cache for the last computed feed.

The memory tier answers ``get`` synchronously so a screen can paint the previous
feed before any network data arrives. Every ``set`` is written through to Redis
in the background; losing that copy only costs the cold-start paint.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from feedsync.domain.feed.writes import BackgroundWrites
from feedsync.infra.redis import RedisProxy, redis_client

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CacheEntry:
	key: str
	value: Any
	written_at: datetime

	def to_json(self) -> str:
		return json.dumps({"value": self.value, "written_at": self.written_at.isoformat()})

	@classmethod
	def from_json(cls, key: str, raw: str) -> "CacheEntry":
		data = json.loads(raw)
		return cls(key=key, value=data["value"], written_at=datetime.fromisoformat(data["written_at"]))


class SnapshotCache:
	"""Memory-first cache with a durable Redis tier. Values must be JSON-serialisable."""

	def __init__(
		self,
		*,
		writes: BackgroundWrites,
		redis: RedisProxy | None = None,
		prefix: str = "uiCache:",
	) -> None:
		self._memory: Dict[str, CacheEntry] = {}
		self._writes = writes
		self._redis = redis or redis_client
		self._prefix = prefix

	def _durable_key(self, key: str) -> str:
		return f"{self._prefix}{key}"

	def get(self, key: str) -> Optional[Any]:
		entry = self._memory.get(key)
		return entry.value if entry is not None else None

	def entry(self, key: str) -> Optional[CacheEntry]:
		return self._memory.get(key)

	def set(self, key: str, value: Any) -> None:
		entry = CacheEntry(key=key, value=value, written_at=datetime.now(timezone.utc))
		self._memory[key] = entry
		self._writes.schedule("cache", self._persist(entry))

	async def _persist(self, entry: CacheEntry) -> None:
		try:
			await self._redis.set(self._durable_key(entry.key), entry.to_json())
		except Exception:
			logger.warning("feed.cache_persist_failed", extra={"key": entry.key}, exc_info=True)

	async def load_durable(self, key: str) -> Optional[Any]:
		entry = self._memory.get(key)
		if entry is not None:
			return entry.value
		try:
			raw = await self._redis.get(self._durable_key(key))
			if not raw:
				return None
			entry = CacheEntry.from_json(key, raw)
		except Exception:
			logger.warning("feed.cache_load_failed", extra={"key": key}, exc_info=True)
			return None
		self._memory[key] = entry
		return entry.value
