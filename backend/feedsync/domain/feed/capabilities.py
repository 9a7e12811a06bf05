"""Schema capability negotiation.

Deployed databases lag behind migrations: an events table may not have the
``ends_at`` or ``duration_minutes`` columns yet, and the interest tables may not
exist at all. Instead of issuing a query and retrying without the optional
columns when Postgres reports them missing, the engine probes the catalog once
when the service is built and every fetch branches on the resulting flags.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import asyncpg

from feedsync.domain.feed.models import DOMAIN_TABLES, EventDomain
from feedsync.settings import Settings

logger = logging.getLogger(__name__)

_COLUMNS_SQL = """
SELECT table_name, column_name
FROM information_schema.columns
WHERE table_schema = current_schema() AND table_name = ANY($1::text[])
"""

_TABLES_SQL = """
SELECT table_name
FROM information_schema.tables
WHERE table_schema = current_schema() AND table_name = ANY($1::text[])
"""


@dataclass(frozen=True, slots=True)
class DomainCapabilities:
	has_ends_at: bool = True
	has_duration: bool = True
	has_interests: bool = True


@dataclass(frozen=True, slots=True)
class SchemaCapabilities:
	domains: Dict[EventDomain, DomainCapabilities] = field(
		default_factory=lambda: {domain: DomainCapabilities() for domain in EventDomain}
	)

	def for_domain(self, domain: EventDomain) -> DomainCapabilities:
		return self.domains.get(domain, DomainCapabilities())


def _override(probed: bool, forced: Optional[bool]) -> bool:
	return probed if forced is None else forced


def from_settings(settings: Settings, base: SchemaCapabilities | None = None) -> SchemaCapabilities:
	"""Apply explicit settings on top of probed (or default) capabilities."""
	base = base or SchemaCapabilities()
	domains = {}
	for domain in EventDomain:
		current = base.for_domain(domain)
		domains[domain] = DomainCapabilities(
			has_ends_at=_override(current.has_ends_at, settings.feed_schema_event_ends_at),
			has_duration=_override(current.has_duration, settings.feed_schema_event_duration),
			has_interests=_override(current.has_interests, settings.feed_schema_event_interests),
		)
	return SchemaCapabilities(domains=domains)


async def probe_capabilities(conn: asyncpg.Connection) -> SchemaCapabilities:
	event_tables = [tables.events for tables in DOMAIN_TABLES.values()]
	interest_tables = [tables.interests for tables in DOMAIN_TABLES.values()]
	column_rows = await conn.fetch(_COLUMNS_SQL, event_tables)
	table_rows = await conn.fetch(_TABLES_SQL, interest_tables)

	columns: Dict[str, set[str]] = {}
	for row in column_rows:
		columns.setdefault(row["table_name"], set()).add(row["column_name"])
	present_tables = {row["table_name"] for row in table_rows}

	domains = {}
	for domain, tables in DOMAIN_TABLES.items():
		event_columns = columns.get(tables.events, set())
		domains[domain] = DomainCapabilities(
			has_ends_at="ends_at" in event_columns,
			has_duration="duration_minutes" in event_columns,
			has_interests=tables.interests in present_tables,
		)
		logger.info(
			"feed.schema_probe",
			extra={
				"domain": domain.value,
				"has_ends_at": domains[domain].has_ends_at,
				"has_duration": domains[domain].has_duration,
				"has_interests": domains[domain].has_interests,
			},
		)
	return SchemaCapabilities(domains=domains)
