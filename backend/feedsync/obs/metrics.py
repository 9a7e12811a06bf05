"""Central registry for Prometheus metrics used by the feed engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

FEED_REFRESH_RUNS = Counter(
	"feedsync_refresh_runs_total",
	"Feed pipeline runs by mode and result",
	["mode", "result"],
)

FEED_REFRESH_DURATION = Histogram(
	"feedsync_refresh_duration_seconds",
	"Feed pipeline latency in seconds",
	["mode"],
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

FEED_REFRESH_COALESCED = Counter(
	"feedsync_refresh_coalesced_total",
	"Refresh calls that joined an in-flight run",
)

FEED_SOURCE_FAILURES = Counter(
	"feedsync_source_failures_total",
	"Source fetches that failed and were substituted with an empty result",
	["source"],
)

FEED_STALE_REQUESTS = Counter(
	"feedsync_stale_requests_total",
	"Pending requests found stale and scheduled for decline",
)

FEED_BACKFILLS = Counter(
	"feedsync_backfills_total",
	"Hosted events scheduled for a going RSVP backfill",
	["domain"],
)

FEED_BACKGROUND_WRITES = Counter(
	"feedsync_background_writes_total",
	"Fire-and-forget writes by kind and result",
	["kind", "result"],
)

FEED_CHANGE_SIGNALS = Counter(
	"feedsync_change_signals_total",
	"Change signals received from the realtime channel",
	["source"],
)


def record_refresh(mode: str, *, result: str, duration_seconds: float | None = None) -> None:
	FEED_REFRESH_RUNS.labels(mode=mode, result=result).inc()
	if duration_seconds is not None:
		FEED_REFRESH_DURATION.labels(mode=mode).observe(duration_seconds)


def inc_refresh_coalesced() -> None:
	FEED_REFRESH_COALESCED.inc()


def inc_source_failure(source: str) -> None:
	FEED_SOURCE_FAILURES.labels(source=source).inc()


def inc_stale_requests(count: int) -> None:
	if count > 0:
		FEED_STALE_REQUESTS.inc(count)


def inc_backfills(domain: str, count: int) -> None:
	if count > 0:
		FEED_BACKFILLS.labels(domain=domain).inc(count)


def inc_background_write(kind: str, result: str) -> None:
	FEED_BACKGROUND_WRITES.labels(kind=kind, result=result).inc()


def inc_change_signal(source: str) -> None:
	FEED_CHANGE_SIGNALS.labels(source=source).inc()
