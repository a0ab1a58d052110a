"""
OpenTelemetry Metrics

Counters and histograms for claims, publishes and duplicate deliveries.
Recording is a no-op until init_metrics() has been called.
"""

import logging
from typing import Any, Dict, Optional

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


def init_metrics(
    service_name: str = "postbox",
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

    _init_standard_metrics()

    logger.info(f"OTel metrics initialized: {service_name}")

    return _meter


def _init_standard_metrics():
    """Initialize the outbox and inbox instruments."""
    meter = get_meter()

    for name, description in (
        ("postbox_claimed_total", "Outbox records claimed"),
        ("postbox_acked_total", "Outbox records acknowledged"),
        ("postbox_nacked_total", "Outbox records released for immediate retry"),
        ("postbox_publish_failed_total", "Failed publish attempts"),
        ("postbox_duplicates_total", "Incoming messages skipped as duplicates"),
    ):
        _counters[name] = meter.create_counter(name, description=description, unit="1")

    _histograms["postbox_publish_duration_seconds"] = meter.create_histogram(
        "postbox_publish_duration_seconds",
        description="Publish duration per outbox record",
        unit="s"
    )


def get_meter() -> metrics.Meter:
    """Get the global meter."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter("postbox")
    return _meter


def record_counter(
    name: str,
    value: int = 1,
    attributes: Optional[Dict[str, Any]] = None
):
    """Record a counter metric."""
    if name in _counters:
        _counters[name].add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: Optional[Dict[str, Any]] = None
):
    """Record a histogram metric."""
    if name in _histograms:
        _histograms[name].record(value, attributes or {})
