import os

from ddtrace.trace import tracer

SERVICE_NAME = "langalign"


def configure_tracing(enabled: bool | None = None) -> None:
    """Turn the datadog tracer on or off.

    Tracing is off unless DD_TRACE_ENABLED=true or the caller asks for it.
    """
    if enabled is None:
        enabled = os.getenv("DD_TRACE_ENABLED", "false").lower() == "true"
    tracer.enabled = enabled
    if enabled:
        os.environ.setdefault("DD_SERVICE", SERVICE_NAME)
