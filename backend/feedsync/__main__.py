"""Command line entry point: compute or watch one viewer's feed."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging

from feedsync import obs
from feedsync.domain.feed.schemas import FeedState
from feedsync.domain.feed.service import FeedService, build_feed_service
from feedsync.domain.feed.subscriber import ChangeSubscriber
from feedsync.infra.postgres import close_pool
from feedsync.settings import settings

logger = logging.getLogger("feedsync.cli")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
	parser = argparse.ArgumentParser(prog="feedsync", description="Reconcile a viewer's activity feed")
	sub = parser.add_subparsers(dest="command", required=True)

	snapshot = sub.add_parser("snapshot", help="Run the pipeline once and print the feed")
	snapshot.add_argument("--viewer", required=True, help="Viewer user id")
	snapshot.add_argument("--cached", action="store_true", help="Print the cached feed without refreshing")

	watch = sub.add_parser("watch", help="Refresh on every change signal and print each new feed")
	watch.add_argument("--viewer", required=True, help="Viewer user id")
	return parser.parse_args(argv)


def _print_state(state: FeedState) -> None:
	print(json.dumps(state.model_dump(mode="json"), indent=2))


async def snapshot(service: FeedService, *, cached: bool) -> None:
	await service.hydrate()
	if not cached:
		await service.refresh()
	_print_state(service.state)


async def watch(service: FeedService) -> None:
	await service.hydrate()
	await service.refresh()
	_print_state(service.state)
	service.add_listener(_print_state)
	subscriber = ChangeSubscriber(
		service.viewer_id,
		service.on_refresh_requested,
		block_ms=settings.feed_subscriber_block_ms,
	)
	try:
		await subscriber.run_forever()
	finally:
		subscriber.stop()


async def _main(args: argparse.Namespace) -> None:
	service = await build_feed_service(args.viewer)
	try:
		if args.command == "snapshot":
			await snapshot(service, cached=args.cached)
		else:
			await watch(service)
	finally:
		await service.close(settings.feed_background_drain_seconds)
		await close_pool()


def main(argv: list[str] | None = None) -> None:
	args = _parse_args(argv)
	obs.init()
	try:
		asyncio.run(_main(args))
	except KeyboardInterrupt:
		logger.info("feed.cli_interrupted")


if __name__ == "__main__":
	main()
