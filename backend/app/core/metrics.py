"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Module may be re-imported by test runners; reuse the registered collector
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Checkout metrics
checkout_sessions_counter = _counter(
    'storefront_checkout_sessions_total',
    'Total number of checkout session attempts',
    ['rail', 'status']
)

# Webhook metrics
webhook_events_counter = _counter(
    'storefront_webhook_events_total',
    'Total number of payment notifications received',
    ['provider', 'outcome']
)

# Enrichment metrics
enrichment_counter = _counter(
    'storefront_enrichment_total',
    'Total number of order line-item enrichment attempts',
    ['outcome']
)
