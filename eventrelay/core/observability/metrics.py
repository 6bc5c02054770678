"""
OpenTelemetry Metrics

Counters and histograms for the event bus and outbox relay.
"""

import logging
from typing import Optional, Dict, Any

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    PeriodicExportingMetricReader,
)
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME

logger = logging.getLogger(__name__)

# Global meter
_meter: Optional[metrics.Meter] = None

# Metric instruments
_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}

COUNTERS = {
    "events_published_total": "Events published on the in-process bus",
    "event_handler_errors_total": "Subscriber handler failures",
    "outbox_published_total": "Outbox rows delivered to the bus",
    "outbox_failed_total": "Outbox delivery attempts that failed",
    "outbox_dead_lettered_total": "Outbox rows moved to dead_letter",
    "outbox_retried_total": "Failed outbox rows reset by the retry sweep",
}

HISTOGRAMS = {
    "outbox_processing_duration_seconds": "Duration of one relay tick",
}


def init_metrics(
    service_name: str = "eventrelay",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 60000
) -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Args:
        service_name: Name of the service
        otlp_endpoint: OTLP exporter endpoint
        console_export: Enable console export for debugging
        export_interval_ms: Export interval in milliseconds

    Returns:
        Configured meter
    """
    global _meter

    readers = []

    if otlp_endpoint:
        otlp_exporter = OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True)
        readers.append(PeriodicExportingMetricReader(
            otlp_exporter,
            export_interval_millis=export_interval_ms
        ))
        logger.info(f"OTel metrics: OTLP exporter configured -> {otlp_endpoint}")

    if console_export:
        readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms
        ))
        logger.info("OTel metrics: Console exporter enabled")

    resource = Resource.create({SERVICE_NAME: service_name})

    provider = MeterProvider(resource=resource, metric_readers=readers)
    metrics.set_meter_provider(provider)

    _meter = metrics.get_meter(service_name)
    _counters.clear()
    _histograms.clear()

    logger.info(f"OTel metrics initialized: {service_name}")

    return _meter


def get_meter() -> metrics.Meter:
    """Get the global meter."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter("eventrelay")
    return _meter


def _counter(name: str) -> Optional[metrics.Counter]:
    if name not in COUNTERS:
        return None
    if name not in _counters:
        _counters[name] = get_meter().create_counter(name, description=COUNTERS[name], unit="1")
    return _counters[name]


def _histogram(name: str) -> Optional[metrics.Histogram]:
    if name not in HISTOGRAMS:
        return None
    if name not in _histograms:
        _histograms[name] = get_meter().create_histogram(name, description=HISTOGRAMS[name], unit="s")
    return _histograms[name]


def record_counter(
    name: str,
    value: int = 1,
    attributes: Dict[str, Any] = None
):
    """Record a counter metric. Unknown names are ignored."""
    counter = _counter(name)
    if counter is not None:
        counter.add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: Dict[str, Any] = None
):
    """Record a histogram metric. Unknown names are ignored."""
    histogram = _histogram(name)
    if histogram is not None:
        histogram.record(value, attributes or {})
