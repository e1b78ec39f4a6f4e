"""Prometheus Metrics for Identity Provider Logins.

Provides metrics for monitoring external logins:
- Callback exchange counts and latencies per provider
- Failures by error class
- Configured providers and configuration errors
"""

import time
from contextlib import contextmanager

from prometheus_client import REGISTRY, Counter, Gauge, Histogram


# ==================== Exchange Metrics ====================

IDP_EXCHANGES_TOTAL = Counter(
    "idp_exchanges_total",
    "Total number of callback exchanges",
    ["provider", "status"],
)

IDP_EXCHANGE_ERRORS_TOTAL = Counter(
    "idp_exchange_errors_total",
    "Total number of failed callback exchanges",
    ["provider", "error_type"],
)

IDP_EXCHANGE_LATENCY = Histogram(
    "idp_exchange_latency_seconds",
    "Latency of callback exchanges in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


# ==================== Configuration Metrics ====================

IDP_CONFIGURED_PROVIDERS = Gauge(
    "idp_configured_providers",
    "Number of live identity providers",
)

IDP_CONFIG_ERRORS_TOTAL = Counter(
    "idp_config_errors_total",
    "Total number of rejected provider configuration entries",
    ["error_type"],
)


class MetricsRecorder:
    """Helper for recording login metrics."""

    @contextmanager
    def track_exchange(self, provider: str):
        """Context manager to track one callback exchange.

        Usage:
            with metrics.track_exchange(provider.name):
                identity = await exchange(request)
        """
        start_time = time.perf_counter()
        status = "success"

        try:
            yield
        except BaseException as e:
            status = "error"
            IDP_EXCHANGE_ERRORS_TOTAL.labels(
                provider=provider,
                error_type=type(e).__name__,
            ).inc()
            raise
        finally:
            IDP_EXCHANGES_TOTAL.labels(provider=provider, status=status).inc()
            IDP_EXCHANGE_LATENCY.labels(provider=provider).observe(
                time.perf_counter() - start_time
            )

    def record_configure(self, live_providers: int, errors: list[Exception]) -> None:
        """Record the outcome of applying a configuration snapshot."""
        IDP_CONFIGURED_PROVIDERS.set(live_providers)
        for error in errors:
            IDP_CONFIG_ERRORS_TOTAL.labels(error_type=type(error).__name__).inc()


def setup_metrics(app):
    """Set up metrics endpoint on FastAPI app."""
    from fastapi import Response
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

    @app.get("/metrics", include_in_schema=False)
    async def prometheus_metrics():
        return Response(
            content=generate_latest(REGISTRY),
            media_type=CONTENT_TYPE_LATEST,
        )


# Singleton instance
metrics = MetricsRecorder()
