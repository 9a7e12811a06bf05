"""Activity feed domain exports."""

from . import cache, events, fetchers, repair, subscriber, timeline  # noqa: F401
from .models import EventDomain, EventKind, ItemKind, RequestStatus  # noqa: F401
from .schemas import ActivityItem, FeedState, RefreshRequested, UpcomingEvent  # noqa: F401
from .service import FeedService, build_feed_service  # noqa: F401
