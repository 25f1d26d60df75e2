"""
OpenTelemetry tracing configuration and utilities for the Leadflow backend.

Spans cover the reply-tracking path:
- Google token refresh
- Gmail API calls (list, detail, thread, history, send, watch)
- Full and incremental sync runs

Credentials, mail addresses and message text are reduced before they
become span attributes.
"""

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter


def setup_tracing(service_name: str = "leadflow-backend") -> TracerProvider:
    """
    Initialize OpenTelemetry tracing.

    Environment variables:
    - OTEL_EXPORTER_OTLP_ENDPOINT: OTLP collector endpoint (default: http://localhost:4317)
    - OTEL_TRACES_EXPORTER: "otlp", "console", or "none" (default: console)

    Args:
        service_name: Name reported as service.name on every span

    Returns:
        Configured TracerProvider
    """
    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": "0.1.0",
        }
    )

    provider = TracerProvider(resource=resource)

    exporter_type = os.getenv("OTEL_TRACES_EXPORTER", "console").lower()

    if exporter_type == "otlp":
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    elif exporter_type == "console":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    # "none": spans are created but never exported

    trace.set_tracer_provider(provider)
    return provider


def get_tracer(name: str = __name__) -> trace.Tracer:
    """Get a tracer instance for creating spans."""
    return trace.get_tracer(name)


# Attribute name fragments and how their values are reduced
SECRET_MARKERS = ("token", "secret", "password")
ADDRESS_MARKERS = ("email", "address", "recipient", "sender")
TEXT_MARKERS = ("subject", "body")


def redact_secret(value: str) -> str:
    """Keep only the last 4 characters of a credential."""
    if len(value) <= 8:
        return "***"
    return f"***{value[-4:]}"


def address_domain(address: str) -> str:
    """Reduce a mail address to its domain: lead@Example.com -> *@example.com."""
    local, at, domain = address.strip().rpartition("@")
    if not (local and at and domain):
        return "***"
    return f"*@{domain.lower()}"


def safe_span_attributes(**kwargs: Any) -> dict[str, Any]:
    """
    Build span attributes from mail context without leaking message data.

    - credentials (token/secret/password) keep their last 4 characters
    - addresses (email/address/recipient/sender) keep only their domain
    - subjects and bodies are recorded as `<key>_length`
    - None values are dropped
    """
    attributes: dict[str, Any] = {}

    for key, value in kwargs.items():
        if value is None:
            continue

        lowered = key.lower()
        if any(marker in lowered for marker in SECRET_MARKERS):
            attributes[key] = redact_secret(str(value))
        elif any(marker in lowered for marker in ADDRESS_MARKERS):
            attributes[key] = address_domain(str(value))
        elif any(marker in lowered for marker in TEXT_MARKERS):
            attributes[f"{key}_length"] = len(str(value))
        else:
            attributes[key] = value if isinstance(value, (str, int, float, bool)) else str(value)

    return attributes
