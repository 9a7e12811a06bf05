"""Domain models for the activity feed and its source rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Mapping, Optional


class RequestStatus(str, Enum):
	"""Connection request states."""

	PENDING = "pending"
	ACCEPTED = "accepted"
	DECLINED = "declined"


class ItemKind(str, Enum):
	REQUEST = "request"
	MESSAGE = "message"
	NOTIFICATION = "notification"


class EventDomain(str, Enum):
	"""Independent event ownership contexts."""

	GROUP = "group"
	PERSONAL = "personal"


class EventKind(str, Enum):
	"""How the viewer relates to an upcoming event."""

	HOSTING = "hosting"
	RSVPD = "rsvpd"
	INTERESTED = "interested"


class RsvpStatus(str, Enum):
	GOING = "going"
	MAYBE = "maybe"
	CANT = "cant"


class InterestStatus(str, Enum):
	INTERESTED = "interested"
	NOT_INTERESTED = "not_interested"


class NotificationType(str, Enum):
	FORUM_REPLY = "forum_reply"
	CLUB_EVENT = "club_event"
	CLUB_MEMBER = "club_member"
	CLUB_INVITE = "club_invite"
	CLUB_JOIN_REQUEST = "club_join_request"
	CLUB_JOIN_ACCEPTED = "club_join_accepted"
	CONNECTION_REQUEST = "connection_request"
	CONNECTION_ACCEPTED = "connection_accepted"
	MESSAGE = "message"
	EVENT_RSVP = "event_rsvp"
	EVENT_RSVP_UPDATE = "event_rsvp_update"
	EVENT_UPDATE = "event_update"
	EVENT_ORGANIZER_UPDATE = "event_organizer_update"
	EVENT_COMMENT = "event_comment"
	EVENT_REMINDER = "event_reminder"
	EVENT_CANCELLED = "event_cancelled"


EVENT_KIND_RANK: Mapping[EventKind, int] = {
	EventKind.HOSTING: 0,
	EventKind.RSVPD: 1,
	EventKind.INTERESTED: 2,
}

CACHE_KEY_ITEMS = "inbox.items"
CACHE_KEY_UPCOMING = "inbox.upcoming"


@dataclass(frozen=True, slots=True)
class DomainTables:
	"""Physical relations backing one event domain."""

	events: str
	rsvps: str
	interests: str
	owner_column: Optional[str] = None


DOMAIN_TABLES: Mapping[EventDomain, DomainTables] = {
	EventDomain.GROUP: DomainTables(
		events="club_events",
		rsvps="club_event_rsvps",
		interests="event_interests",
		owner_column="club_id",
	),
	EventDomain.PERSONAL: DomainTables(
		events="user_events",
		rsvps="user_event_rsvps",
		interests="user_event_interests",
	),
}


@dataclass(slots=True)
class RsvpRow:
	event_id: str
	status: RsvpStatus

	@classmethod
	def from_record(cls, record: Mapping) -> "RsvpRow":
		return cls(event_id=str(record["event_id"]), status=RsvpStatus(record["status"]))


@dataclass(slots=True)
class InterestRow:
	event_id: str
	status: InterestStatus

	@classmethod
	def from_record(cls, record: Mapping) -> "InterestRow":
		return cls(event_id=str(record["event_id"]), status=InterestStatus(record["status"]))


@dataclass(slots=True)
class DomainSignals:
	"""RSVP and interest rows the viewer holds within one event domain."""

	rsvps: list[RsvpRow] = field(default_factory=list)
	interests: list[InterestRow] = field(default_factory=list)


@dataclass(slots=True)
class EventRecord:
	"""An event row as stored by either domain."""

	id: str
	domain: EventDomain
	created_by: Optional[str]
	title: str
	starts_at: datetime
	location: Optional[str] = None
	owner_id: Optional[str] = None
	ends_at: Optional[datetime] = None
	duration_minutes: Optional[int] = None
	is_cancelled: bool = False

	@classmethod
	def from_record(cls, record: Mapping, domain: EventDomain) -> "EventRecord":
		created_by = record.get("created_by")
		owner_id = record.get("owner_id")
		return cls(
			id=str(record["id"]),
			domain=domain,
			created_by=str(created_by) if created_by else None,
			title=record["title"],
			starts_at=record["event_date"],
			location=record.get("location"),
			owner_id=str(owner_id) if owner_id else None,
			ends_at=record.get("ends_at"),
			duration_minutes=record.get("duration_minutes"),
			is_cancelled=bool(record.get("is_cancelled") or False),
		)

	def resolve_end(self, default_duration_minutes: int) -> datetime:
		if self.ends_at is not None:
			return self.ends_at
		minutes = self.duration_minutes if self.duration_minutes and self.duration_minutes > 0 else default_duration_minutes
		return self.starts_at + timedelta(minutes=minutes)
