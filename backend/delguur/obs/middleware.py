"""Request-id propagation, access logging and HTTP metrics."""

from __future__ import annotations

import logging
import re
import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from delguur.obs import logging as obs_logging
from delguur.obs import metrics
from delguur.settings import settings

REQUEST_ID_HEADER = "X-Request-Id"
_QUIET_PATHS = frozenset({"/health", "/metrics"})
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{8,64}$")


def _request_id(request: Request) -> str:
	incoming = request.headers.get(REQUEST_ID_HEADER, "")
	return incoming if _REQUEST_ID_RE.match(incoming) else uuid4().hex


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	"""Tag every request with an id; log and time it unless it is a health check."""

	def __init__(self, app, *, enabled: bool = True) -> None:
		super().__init__(app)
		self._enabled = enabled
		self._logger = obs_logging.get_logger("delguur.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		request_id = _request_id(request)
		request.state.request_id = request_id
		if not (settings.obs_enabled and self._enabled) or request.url.path in _QUIET_PATHS:
			response = await call_next(request)
			response.headers.setdefault(REQUEST_ID_HEADER, request_id)
			return response

		tokens = obs_logging.bind_context(request_id=request_id, user_id=request.headers.get("X-User-Id"))
		started = time.perf_counter()
		try:
			response = await call_next(request)
		except Exception:
			self._finish(request, 500, started)
			self._logger.exception("http_request_failed", extra={"method": request.method})
			raise
		else:
			self._finish(request, response.status_code, started)
		finally:
			obs_logging.reset_context(tokens)

		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response

	def _finish(self, request: Request, status_code: int, started: float) -> None:
		# The route is only matched once the app has handled the request.
		route = _route_template(request)
		elapsed = time.perf_counter() - started
		metrics.observe_request(route, request.method, status_code, elapsed)
		level = logging.WARNING if status_code >= 500 else logging.INFO
		self._logger.log(
			level,
			"http_request",
			extra={
				"route": route,
				"method": request.method,
				"status": status_code,
				"latency_ms": round(elapsed * 1000, 3),
			},
		)


def install(app, *, enabled: bool = True) -> None:
	app.add_middleware(ObservabilityMiddleware, enabled=enabled)
