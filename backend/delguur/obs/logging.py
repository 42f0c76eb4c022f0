"""JSON log output with request context and redaction of personal data."""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from delguur.settings import settings

_LOGGER_NAME = "delguur"

_CONTEXT_FIELDS = ("request_id", "route", "user_id")
_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	name: ContextVar(f"delguur_log_{name}", default=None) for name in _CONTEXT_FIELDS
}

# "register" covers national registration numbers.
_REDACT_MARKERS = ("token", "secret", "authorization", "password", "phone", "email", "register", "card")

_MAX_TEXT = 256
_MAX_ITEMS = 10

_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {
	"message",
	"asctime",
}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Bind request-scoped fields; pass the returned tokens to reset_context."""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		if value is None:
			continue
		var = _CONTEXT.get(name)
		if var is None:
			raise KeyError(f"unknown log context field: {name}")
		tokens[name] = var.set(value)
	return tokens


def reset_context(tokens: Dict[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name].reset(token)


def current_request_id(default: str = "unknown") -> str:
	return _CONTEXT["request_id"].get() or default


def _bound_fields() -> Dict[str, str]:
	bound: Dict[str, str] = {}
	for name, var in _CONTEXT.items():
		value = var.get()
		if value:
			bound[name] = value
	return bound


def _clip(value: Any) -> Any:
	if value is None or isinstance(value, (bool, int, float)):
		return value
	if isinstance(value, Enum):
		return value.value
	if isinstance(value, str):
		return value if len(value) <= _MAX_TEXT else f"{value[:_MAX_TEXT]}…"
	if isinstance(value, datetime):
		return value.isoformat()
	if isinstance(value, Mapping):
		items = list(value.items())
		clipped = {str(key): scrub(str(key), nested) for key, nested in items[:_MAX_ITEMS]}
		if len(items) > _MAX_ITEMS:
			clipped["…"] = f"+{len(items) - _MAX_ITEMS} keys"
		return clipped
	if isinstance(value, (list, tuple, set, frozenset)):
		values = list(value)
		clipped_list = [_clip(item) for item in values[:_MAX_ITEMS]]
		if len(values) > _MAX_ITEMS:
			clipped_list.append("…")
		return clipped_list
	return str(value)


def scrub(key: str, value: Any) -> Any:
	"""Redact values under personal-data keys and bound the size of everything else."""
	lowered = key.lower()
	if any(marker in lowered for marker in _REDACT_MARKERS):
		return "[redacted]"
	return _clip(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line; fields passed via `extra=` are merged in after scrubbing."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		entry: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		entry.update(_bound_fields())
		if record.exc_info:
			entry["exc_info"] = self.formatException(record.exc_info)
		for key, value in vars(record).items():
			if key in _STANDARD_ATTRS or key in entry:
				continue
			entry[key] = scrub(key, value)
		# Listing titles are mostly Cyrillic; keep them readable.
		return json.dumps(entry, ensure_ascii=False, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Keep a share of INFO records; every other level passes."""

	def __init__(self, rate: Optional[float] = None, rng: Optional[random.Random] = None) -> None:
		super().__init__()
		self._rate = rate
		self._rng = rng or random.Random()

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = settings.obs_log_sampling_rate_info if self._rate is None else self._rate
		rate = min(1.0, max(0.0, rate))
		return rate >= 1.0 or self._rng.random() < rate


def configure_logging() -> logging.Logger:
	"""Route the root logger through the JSON formatter and sampling filter."""
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root = logging.getLogger()
	root.handlers.clear()
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	# Requests are already logged by the observability middleware.
	logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
