"""Structured logging for feed pipeline runs.

Every pipeline run binds the viewer it serves, a run id, and the stage it is in
(fetch, repair, aggregate, merge). Log lines emitted anywhere below the service
pick those up without threading them through call signatures.
"""

from __future__ import annotations

import json
import logging
import random
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from feedsync.settings import settings

_VIEWER_ID: ContextVar[Optional[str]] = ContextVar("feed_viewer_id", default=None)
_RUN_ID: ContextVar[Optional[str]] = ContextVar("feed_run_id", default=None)
_STAGE: ContextVar[Optional[str]] = ContextVar("feed_stage", default=None)

_LOGGER_NAME = "feedsync"

# Credentials are dropped outright.
_SECRET_KEYWORDS = ("token", "secret", "authorization", "password", "email")
# User-authored or personal text: only its size is logged.
_PRIVATE_KEYWORDS = ("content", "preview", "body", "title", "payload", "detailed_interests", "avatar")

_MAX_STRING_LENGTH = 256
_MAX_COLLECTION_ITEMS = 10
_ID_SAMPLE = 5

_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def current_context() -> Dict[str, str]:
	context = {"viewer_id": _VIEWER_ID.get(), "run_id": _RUN_ID.get(), "stage": _STAGE.get()}
	return {key: value for key, value in context.items() if value}


@contextmanager
def run_context(viewer_id: str, run_id: str) -> Iterator[None]:
	"""Bind viewer and run id for the duration of one pipeline run."""
	viewer_token = _VIEWER_ID.set(viewer_id)
	run_token = _RUN_ID.set(run_id)
	try:
		yield
	finally:
		_RUN_ID.reset(run_token)
		_VIEWER_ID.reset(viewer_token)


@contextmanager
def pipeline_stage(name: str) -> Iterator[None]:
	token = _STAGE.set(name)
	try:
		yield
	finally:
		_STAGE.reset(token)


def _mask(value: Any) -> str:
	if isinstance(value, str):
		return f"[redacted:{len(value)}]"
	return "[redacted]"


def _summarise_ids(values: Any) -> Any:
	ids = [str(item) for item in values]
	if len(ids) <= _MAX_COLLECTION_ITEMS:
		return ids
	return {"count": len(ids), "sample": ids[:_ID_SAMPLE]}


def _sanitize_value(value: Any) -> Any:
	if isinstance(value, str):
		return value if len(value) <= _MAX_STRING_LENGTH else f"{value[:_MAX_STRING_LENGTH]}…"
	if isinstance(value, dict):
		result: Dict[str, Any] = {}
		for idx, (key, nested) in enumerate(value.items()):
			if idx >= _MAX_COLLECTION_ITEMS:
				result["…"] = f"+{len(value) - _MAX_COLLECTION_ITEMS} keys"
				break
			result[str(key)] = _sanitize_field(str(key), nested)
		return result
	if isinstance(value, (list, tuple, set, frozenset)):
		items = [_sanitize_value(item) for item in list(value)[:_MAX_COLLECTION_ITEMS]]
		if len(value) > _MAX_COLLECTION_ITEMS:
			items.append(f"+{len(value) - _MAX_COLLECTION_ITEMS} more")
		return items
	return value


def _sanitize_field(key: str, value: Any) -> Any:
	lowered = key.lower()
	if any(keyword in lowered for keyword in _SECRET_KEYWORDS):
		return "[redacted]"
	if any(keyword in lowered for keyword in _PRIVATE_KEYWORDS):
		return _mask(value)
	if lowered.endswith("_ids") and isinstance(value, (list, tuple, set, frozenset)):
		return _summarise_ids(value)
	return _sanitize_value(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: service fields, run context, then sanitised extras."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, object] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update(current_context())
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key in _RECORD_ATTRS or key in payload:
				continue
			payload[key] = _sanitize_field(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class RunContextFilter(logging.Filter):
	"""Copies the run context onto records for the plain-text format."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		context = current_context()
		record.viewer_id = context.get("viewer_id", "-")
		record.run_id = context.get("run_id", "-")
		record.stage = context.get("stage", "-")
		return True


class InfoSamplingFilter(logging.Filter):
	"""Randomly sample info-level logs, keep warnings/errors."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
		if rate >= 1.0:
			return True
		return random.random() < rate


_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s viewer=%(viewer_id)s run=%(run_id)s stage=%(stage)s %(message)s"


def configure_logging() -> logging.Logger:
	"""Configure the root logger for JSON (or plain) output with info sampling."""
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	if settings.obs_log_json:
		handler.setFormatter(JSONLogFormatter())
	else:
		handler.addFilter(RunContextFilter())
		handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)
