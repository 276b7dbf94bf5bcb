"""OpenTelemetry and logging bootstrap for processes that drive backtests.

The engine only emits spans through `trace.get_tracer(__name__)`; nothing is
exported until one of these is called once at process start:

- `setup_telemetry()`: OTLP/HTTP export of traces, metrics and logs when an
  endpoint is configured (`OTEL_EXPORTER_OTLP_ENDPOINT`).
- `install_tracing(exporter)`: traces only, to any `SpanExporter`
  (console, in-memory, ...).

A driver script calls `configure_logging()` and then one of the two above:

    configure_logging()
    setup_telemetry("my-research-job")
    result = BacktestEngine(config, strategy, source).run()
"""

import logging
import os
from typing import Optional

from opentelemetry import trace, metrics, _logs
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, LogExporter

from holodeck.core.config import settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for scripts and notebooks driving a backtest."""
    logging.basicConfig(level=(level or settings.LOG_LEVEL).upper(), format=LOG_FORMAT)


def build_resource(service_name: Optional[str] = None) -> Resource:
    return Resource(attributes={SERVICE_NAME: service_name or settings.OTEL_SERVICE_NAME})


def install_tracing(
    exporter: SpanExporter, resource: Optional[Resource] = None, batch: bool = True
) -> TracerProvider:
    """
    Routes every engine span to `exporter` via the global tracer provider.

    `batch=False` exports each span as it ends, which suits in-memory or
    console exporters. The global provider can only be set once per process.
    """
    provider = TracerProvider(resource=resource or build_resource())
    processor = BatchSpanProcessor(exporter) if batch else SimpleSpanProcessor(exporter)
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    return provider


def install_metrics(exporter: MetricExporter, resource: Optional[Resource] = None) -> MeterProvider:
    reader = PeriodicExportingMetricReader(exporter)
    provider = MeterProvider(resource=resource or build_resource(), metric_readers=[reader])
    metrics.set_meter_provider(provider)
    return provider


def install_log_export(exporter: LogExporter, resource: Optional[Resource] = None) -> LoggerProvider:
    """Forwards standard logging records to `exporter` as OTel logs."""
    provider = LoggerProvider(resource=resource or build_resource())
    provider.add_log_record_processor(BatchLogRecordProcessor(exporter))
    _logs.set_logger_provider(provider)
    logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=provider))
    return provider


def setup_telemetry(
    service_name: Optional[str] = None, endpoint: Optional[str] = None
) -> bool:
    """
    Sets up OTLP/HTTP export of traces, metrics and logs.

    The endpoint comes from the argument, the environment or settings, in
    that order. Without one the engine's spans stay on the no-op provider.

    Returns:
        True if exporters were installed, False otherwise.
    """
    endpoint = (
        endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        or settings.OTEL_EXPORTER_OTLP_ENDPOINT
    )
    if not endpoint:
        logger.info("Telemetry: OTLP endpoint not set. Skipping setup.")
        return False

    resource = build_resource(service_name)
    endpoint = endpoint.rstrip("/")
    logger.info(f"Telemetry: exporting {resource.attributes[SERVICE_NAME]} to {endpoint}")

    install_tracing(OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces"), resource)
    install_metrics(OTLPMetricExporter(endpoint=f"{endpoint}/v1/metrics"), resource)
    install_log_export(OTLPLogExporter(endpoint=f"{endpoint}/v1/logs"), resource)

    logger.info("Telemetry: OTLP Setup Complete (Trace, Metrics, Logs)")
    return True
