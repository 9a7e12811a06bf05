"""Unified activity-feed reconciliation engine."""

from feedsync.domain.feed.service import FeedService, build_feed_service  # noqa: F401

__version__ = "0.1.0"
