"""
Prometheus metrics for the uninstaller.
"""
from prometheus_client import Counter, Gauge

PASSES = Counter(
    "uninstall_passes_total",
    "Teardown passes run, by outcome",
    ["outcome"],
)
STORE_MUTATIONS = Counter(
    "uninstall_store_mutations_total",
    "Store-mutating calls issued by the uninstaller",
    ["operation"],
)
REMAINING = Gauge(
    "uninstall_remaining_resources",
    "Instances of a kind seen remaining by the last scan",
    ["kind"],
)
GRACE_PERIOD = Gauge(
    "uninstall_grace_period_seconds",
    "Current grace period before finalizers are removed",
)


def record_pass(outcome: str):
    PASSES.labels(outcome=outcome).inc()


def record_mutation(operation: str):
    STORE_MUTATIONS.labels(operation=operation).inc()


def set_remaining(kind: str, count: int):
    REMAINING.labels(kind=kind).set(count)


def set_grace_period(seconds: float):
    GRACE_PERIOD.set(seconds)
