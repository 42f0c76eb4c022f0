"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"delguur_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"delguur_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

MOD_REPORTS_TOTAL = Counter(
	"mod_reports_total",
	"Listing reports processed",
	["reason", "outcome"],
)

MOD_REPORT_TRANSITIONS_TOTAL = Counter(
	"mod_report_transitions_total",
	"Report record status transitions",
	["transition"],
)

MOD_ACTIONS_TOTAL = Counter(
	"mod_actions_total",
	"Moderation actions applied to listings",
	["violation", "action"],
)

MOD_APPEALS_TOTAL = Counter(
	"mod_appeals_total",
	"Moderation appeals processed",
	["stage", "outcome"],
)

MOD_AUDIT_LATENCY_SECONDS = Histogram(
	"mod_audit_write_latency_seconds",
	"Latency of moderation audit writes",
	buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

MOD_EVENTS_PUBLISHED = Counter(
	"mod_events_published_total",
	"Domain events published to the moderation stream",
	["kind", "result"],
)

DISCOVERY_FEED_BUILD_MS = Histogram(
	"discovery_feed_build_ms",
	"Discovery feed build latency (milliseconds)",
	buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0),
)

DISCOVERY_FEED_ITEMS = Counter(
	"discovery_feed_items_total",
	"Discovery feed items emitted by slot source",
	["source"],
)

SYSTEM_MODE_DENIALS = Counter(
	"system_mode_denials_total",
	"User actions denied by the system mode gate",
	["mode", "action"],
)

SYSTEM_MODE_ACTIVE = Gauge(
	"system_mode_active",
	"Currently active system mode (1 for the active mode)",
	["mode"],
)

CIRCUIT_BREAKER_TRANSITIONS = Counter(
	"circuit_breaker_transitions_total",
	"Circuit breaker state transitions",
	["name", "state"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def inc_report(reason: str, outcome: str) -> None:
	MOD_REPORTS_TOTAL.labels(reason=reason, outcome=outcome).inc()


def inc_report_transition(transition: str) -> None:
	MOD_REPORT_TRANSITIONS_TOTAL.labels(transition=transition).inc()


def inc_mod_action(violation: str, action: str) -> None:
	MOD_ACTIONS_TOTAL.labels(violation=violation, action=action).inc()


def inc_event_published(kind: str, result: str) -> None:
	MOD_EVENTS_PUBLISHED.labels(kind=kind, result=result).inc()


def observe_feed_build(elapsed_ms: float) -> None:
	DISCOVERY_FEED_BUILD_MS.observe(elapsed_ms)


def inc_feed_items(source: str, count: int = 1) -> None:
	if count > 0:
		DISCOVERY_FEED_ITEMS.labels(source=source).inc(count)


def inc_mode_denial(mode: str, action: str) -> None:
	SYSTEM_MODE_DENIALS.labels(mode=mode, action=action).inc()


def set_active_mode(active: str, modes: tuple[str, ...]) -> None:
	for mode in modes:
		SYSTEM_MODE_ACTIVE.labels(mode=mode).set(1 if mode == active else 0)


def inc_breaker_transition(name: str, state: str) -> None:
	CIRCUIT_BREAKER_TRANSITIONS.labels(name=name, state=state).inc()
