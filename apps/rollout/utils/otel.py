"""
OpenTelemetry setup for the rollout controller.

Exports controller spans over OTLP/gRPC and hooks the FastAPI app and
the logging module into the active trace.
"""

from __future__ import annotations

import os
import logging

from fastapi import FastAPI

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Root logging for the controller. Used as-is when OTEL is disabled."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_otel(app: FastAPI, otlp_endpoint: str, log_level: str = "INFO") -> None:
    """
    Configure OpenTelemetry for the rollout controller.

    ``otlp_endpoint`` comes from Settings (OTEL_EXPORTER_OTLP_ENDPOINT).
    """

    service_name = os.getenv("OTEL_SERVICE_NAME", "rollout-controller")
    environment = os.getenv("ROLLOUT_ENV", "dev")

    # 1) TracerProvider with resource
    resource = Resource.create(
        {
            "service.name": service_name,
            "deployment.environment": environment,
            "service.version": "0.1.0",
        }
    )

    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    # 2) OTLP gRPC exporter
    span_exporter = OTLPSpanExporter(
        endpoint=otlp_endpoint,
        insecure=True,
    )
    provider.add_span_processor(BatchSpanProcessor(span_exporter))

    # 3) Instrument FastAPI and logging
    FastAPIInstrumentor().instrument_app(app)

    LoggingInstrumentor().instrument(
        set_logging_format=True,
    )

    # 4) Root logging level
    configure_logging(log_level)
