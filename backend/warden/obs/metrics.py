"""Central registry for Prometheus metrics used across the service."""

from __future__ import annotations

from prometheus_client import Counter, Histogram


REQUEST_COUNTER = Counter(
	"warden_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"warden_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

RATE_LIMIT_DECISIONS_TOTAL = Counter(
	"warden_rate_limit_decisions_total",
	"Rate limit decisions by action and outcome",
	["action", "outcome"],
)

RATE_LIMIT_STORE_FAILURES_TOTAL = Counter(
	"warden_rate_limit_store_failures_total",
	"Rate limit store failures by action and applied policy",
	["action", "policy"],
)

SLOW_QUERIES_TOTAL = Counter(
	"warden_slow_queries_total",
	"Weighted operations recorded above the slow threshold",
)

SCAN_ITEMS_TOTAL = Counter(
	"warden_scan_items_total",
	"Content items processed by the risk scanner",
	["result"],
)

SCAN_LATENCY_SECONDS = Histogram(
	"warden_scan_latency_seconds",
	"Latency of a single content scan",
	buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

CLASSIFIER_FALLBACKS_TOTAL = Counter(
	"warden_classifier_fallbacks_total",
	"Classifier calls that fell back to heuristics",
	["reason"],
)

FLAGS_CREATED_TOTAL = Counter(
	"warden_flags_created_total",
	"Moderation flags created",
	["source"],
)

FLAG_TRANSITIONS_TOTAL = Counter(
	"warden_flag_transitions_total",
	"Moderation flag transitions",
	["transition"],
)

QUEUE_AUTOMATION_ERRORS_TOTAL = Counter(
	"warden_queue_automation_errors_total",
	"Queue automation items that failed",
	["step"],
)

AUDIT_EVENTS_TOTAL = Counter(
	"warden_audit_events_total",
	"Audit events appended",
	["severity"],
)

BANS_ISSUED_TOTAL = Counter(
	"warden_bans_issued_total",
	"Bans applied",
	["kind", "ban_type"],
)

BANS_LIFTED_TOTAL = Counter(
	"warden_bans_lifted_total",
	"Bans lifted",
	["reason"],
)

VISIBILITY_DECISIONS_TOTAL = Counter(
	"warden_visibility_decisions_total",
	"Content visibility decisions",
	["reason"],
)

INGEST_FILTER_DECISIONS_TOTAL = Counter(
	"warden_ingest_filter_decisions_total",
	"Publish-time filter outcomes by matched rule",
	["result"],
)

RETENTION_PURGED_TOTAL = Counter(
	"warden_retention_purged_total",
	"Rows removed by the retention job",
	["table"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def inc_rate_limit_decision(action: str, allowed: bool) -> None:
	RATE_LIMIT_DECISIONS_TOTAL.labels(action=action, outcome="allowed" if allowed else "denied").inc()


def inc_rate_limit_store_failure(action: str, policy: str) -> None:
	RATE_LIMIT_STORE_FAILURES_TOTAL.labels(action=action, policy=policy).inc()


def inc_slow_query() -> None:
	SLOW_QUERIES_TOTAL.inc()


def inc_scan_item(result: str) -> None:
	SCAN_ITEMS_TOTAL.labels(result=result).inc()


def observe_scan_latency(elapsed_seconds: float) -> None:
	SCAN_LATENCY_SECONDS.observe(elapsed_seconds)


def inc_classifier_fallback(reason: str) -> None:
	CLASSIFIER_FALLBACKS_TOTAL.labels(reason=reason).inc()


def inc_flag_created(source: str) -> None:
	FLAGS_CREATED_TOTAL.labels(source=source).inc()


def inc_flag_transition(transition: str) -> None:
	FLAG_TRANSITIONS_TOTAL.labels(transition=transition).inc()


def inc_queue_automation_error(step: str) -> None:
	QUEUE_AUTOMATION_ERRORS_TOTAL.labels(step=step).inc()


def inc_audit_event(severity: str) -> None:
	AUDIT_EVENTS_TOTAL.labels(severity=severity).inc()


def inc_ban_issued(kind: str, ban_type: str) -> None:
	BANS_ISSUED_TOTAL.labels(kind=kind, ban_type=ban_type).inc()


def inc_ban_lifted(reason: str) -> None:
	BANS_LIFTED_TOTAL.labels(reason=reason).inc()


def inc_visibility_decision(reason: str) -> None:
	VISIBILITY_DECISIONS_TOTAL.labels(reason=reason).inc()


def inc_ingest_filter(result: str) -> None:
	INGEST_FILTER_DECISIONS_TOTAL.labels(result=result).inc()


def inc_retention_purged(table: str, count: int) -> None:
	if count > 0:
		RETENTION_PURGED_TOTAL.labels(table=table).inc(count)
