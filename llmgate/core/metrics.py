"""Prometheus metrics for the provider gateway."""

from prometheus_client import Counter, Histogram, Info, generate_latest

# --- Metrics ---

APP_INFO = Info("llmgate", "LLM provider gateway info")
APP_INFO.info({"version": "1.0.0", "name": "llmgate"})

PROVIDER_CALLS = Counter(
    "llmgate_provider_calls_total",
    "Total HTTP calls issued to LLM providers",
    ["provider", "mode", "outcome"],
)

PROVIDER_CALL_DURATION = Histogram(
    "llmgate_provider_call_duration_seconds",
    "Provider call duration in seconds",
    ["provider", "mode"],
    buckets=[0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300],
)

PROVIDER_FALLBACKS = Counter(
    "llmgate_provider_fallbacks_total",
    "Batch rounds re-dispatched to a fallback provider",
    ["from_provider", "to_provider"],
)

BATCH_ITEMS = Counter(
    "llmgate_batch_items_total",
    "Batch items settled per round",
    ["provider", "kind", "status"],
)


def metrics_payload() -> bytes:
    """Render the current registry in the Prometheus text format."""
    return generate_latest()
