"""Pydantic schemas for feed items, upcoming events, and feed state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from feedsync.domain.feed.models import (
	EventDomain,
	EventKind,
	ItemKind,
	NotificationType,
	RequestStatus,
	RsvpStatus,
)


class Profile(BaseModel):
	"""Counterpart identity; every field is null when the profile could not be resolved."""

	id: Optional[str] = None
	username: Optional[str] = None
	avatar_url: Optional[str] = None
	detailed_interests: Optional[Dict[str, List[str]]] = None


class ConnectionRequest(BaseModel):
	id: str
	sender_id: str
	sender: Profile = Field(default_factory=Profile)
	status: RequestStatus
	created_at: datetime


class LastMessage(BaseModel):
	content: Optional[str] = None
	created_at: datetime
	sender_id: Optional[str] = None


class Conversation(BaseModel):
	id: str
	partner: Profile = Field(default_factory=Profile)
	last_message: Optional[LastMessage] = None
	preview: str = ""
	unread_count: int = 0
	created_at: Optional[datetime] = None


class Notification(BaseModel):
	id: str
	type: Optional[NotificationType] = None
	title: str = ""
	body: str = ""
	data: Optional[Dict[str, Any]] = None
	read: bool = False
	created_at: datetime


class UpcomingEvent(BaseModel):
	id: str
	domain: EventDomain
	owner_id: Optional[str] = None
	title: str
	starts_at: datetime
	ends_at: datetime
	location: Optional[str] = None
	kind: EventKind
	rsvp_status: Optional[RsvpStatus] = None


class ActivityItem(BaseModel):
	"""One feed entry; exactly one payload matching ``kind`` is populated."""

	kind: ItemKind
	id: str
	timestamp: Optional[datetime] = None
	sort_key: str
	request: Optional[ConnectionRequest] = None
	conversation: Optional[Conversation] = None
	notification: Optional[Notification] = None

	@model_validator(mode="after")
	def _single_payload(self) -> "ActivityItem":
		payloads = {
			ItemKind.REQUEST: self.request,
			ItemKind.MESSAGE: self.conversation,
			ItemKind.NOTIFICATION: self.notification,
		}
		populated = [kind for kind, value in payloads.items() if value is not None]
		if populated != [self.kind]:
			raise ValueError(f"{self.kind.value} item must carry exactly its own payload")
		return self


class FeedState(BaseModel):
	items: List[ActivityItem] = Field(default_factory=list)
	upcoming: List[UpcomingEvent] = Field(default_factory=list)
	loading: bool = False
	refreshing: bool = False
	updated_at: Optional[datetime] = None


class RefreshRequested(BaseModel):
	"""Message emitted by the change subscriber; carries no data beyond the trigger."""

	viewer_id: str
	source: Literal["messages", "notifications", "manual", "focus"]
	received_at: datetime
