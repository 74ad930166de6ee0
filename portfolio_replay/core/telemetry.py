"""OpenTelemetry setup for replay runs.

Runs are short-lived, so providers are kept here and flushed by
:func:`shutdown_telemetry` before the process exits.
"""

from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.semconv.resource import ResourceAttributes

from portfolio_replay import __version__
from portfolio_replay.config import EngineSettings

logger = logging.getLogger(__name__)

_tracer_provider: TracerProvider | None = None
_logger_provider: LoggerProvider | None = None


def build_resource(settings: EngineSettings) -> Resource:
    """Describe the replay run: engine version plus the account and window it covers."""

    attributes: dict[str, Any] = {
        ResourceAttributes.SERVICE_NAME: settings.telemetry_service_name or settings.app_name,
        ResourceAttributes.SERVICE_NAMESPACE: "portfolio-replay",
        ResourceAttributes.SERVICE_VERSION: __version__,
        "portfolio_replay.timezone": settings.timezone,
        "portfolio_replay.history_max_concurrency": settings.history_max_concurrency,
    }
    if settings.target_account_id:
        attributes["portfolio_replay.account_id"] = settings.target_account_id
    if settings.as_of_date is not None:
        attributes["portfolio_replay.as_of_date"] = settings.as_of_date.isoformat()
    return Resource.create(attributes)


def setup_telemetry(settings: EngineSettings) -> bool:
    """Export spans and logs over OTLP and trace outbound price service calls.

    Returns ``True`` when telemetry is active after the call.
    """

    global _tracer_provider, _logger_provider  # noqa: PLW0603 - single initialisation guard

    if _tracer_provider is not None:
        return True

    if not settings.telemetry_enabled:
        logger.info("Telemetry disabled via configuration")
        return False

    resource = build_resource(settings)
    exporter_options = _build_exporter_options(settings)

    _tracer_provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.telemetry_sample_ratio)),
    )
    _tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_options)))
    trace.set_tracer_provider(_tracer_provider)

    _logger_provider = LoggerProvider(resource=resource)
    _logger_provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter(**exporter_options)))
    set_logger_provider(_logger_provider)
    LoggingInstrumentor().instrument(set_logging_format=False)

    HTTPXClientInstrumentor().instrument()

    logger.info(
        "Telemetry exporting to %s",
        settings.telemetry_otlp_endpoint or "the default OTLP endpoint",
    )
    return True


def shutdown_telemetry() -> None:
    """Flush pending spans and log records."""

    global _tracer_provider, _logger_provider  # noqa: PLW0603

    if _tracer_provider is not None:
        _tracer_provider.shutdown()
    if _logger_provider is not None:
        _logger_provider.shutdown()
    _tracer_provider = None
    _logger_provider = None


def _build_exporter_options(settings: EngineSettings) -> dict[str, Any]:
    options: dict[str, Any] = {"insecure": settings.telemetry_otlp_insecure}
    if settings.telemetry_otlp_endpoint:
        options["endpoint"] = settings.telemetry_otlp_endpoint
    return options


__all__ = ["build_resource", "setup_telemetry", "shutdown_telemetry"]
