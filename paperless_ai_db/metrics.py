# paperless_ai_db/metrics.py
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

from paperless_ai_db.config import settings

# Prometheus counters
operations_total = Counter(
    "paperless_db_operations_total", "Data-access operations executed", ["model", "action"]
)
operation_errors_total = Counter(
    "paperless_db_operation_errors_total", "Data-access operations that failed", ["model", "action", "code"]
)
transactions_total = Counter(
    "paperless_db_transactions_total", "Transactions by outcome", ["kind", "outcome"]
)


def record_operation(model: str, action: str) -> None:
    if settings.prometheus_enabled:
        operations_total.labels(model=model, action=action).inc()


def record_failure(model: str, action: str, code: str) -> None:
    if settings.prometheus_enabled:
        operation_errors_total.labels(model=model, action=action, code=code).inc()


def record_transaction(kind: str, outcome: str) -> None:
    if settings.prometheus_enabled:
        transactions_total.labels(kind=kind, outcome=outcome).inc()


def render_latest():
    """Exposition payload and content type for a /metrics endpoint."""
    return generate_latest(), CONTENT_TYPE_LATEST
