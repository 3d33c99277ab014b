#!/usr/bin/env python3
"""
OpenTelemetry tracing for nanoreader.

``init_telemetry`` installs a tracer provider and instruments outgoing aiohttp
requests, sqlite3 calls and log records. Pipeline steps (feed fetch, refresh
batch, index rebuild, storage operations) are wrapped in spans with
``trace_span``. Until ``init_telemetry`` runs, spans go to the no-op provider.

Environment variables:
  - OTEL_SERVICE_NAME (default: nanoreader)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print finished spans to stdout
  - DISABLE_TELEMETRY=true to fully disable
"""

from __future__ import annotations

import inspect
import atexit
import logging
import os
import threading
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

_init_lock = threading.Lock()
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("Nanoreader.telemetry")


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").lower() == "true"


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install tracing once per process; later calls do nothing."""
    global _provider
    if _env_flag("DISABLE_TELEMETRY"):
        return
    with _init_lock:
        if _provider is not None:
            return

        service = service_name or os.environ.get("OTEL_SERVICE_NAME", "nanoreader")
        resource_attrs = {"service.name": service}
        if os.environ.get("OTEL_ENVIRONMENT"):
            resource_attrs["deployment.environment"] = os.environ["OTEL_ENVIRONMENT"]

        # Keep a provider installed by external auto-instrumentation
        current = trace.get_tracer_provider()
        if isinstance(current, TracerProvider):
            provider = current
        else:
            provider = TracerProvider(resource=Resource.create(resource_attrs))
            trace.set_tracer_provider(provider)

        if _env_flag("OTEL_CONSOLE_EXPORT"):
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        _logger.info(
            "Telemetry initialized (service=%s, console export=%s)",
            service, _env_flag("OTEL_CONSOLE_EXPORT"),
        )

        for instrumentor in (AioHttpClientInstrumentor(), SQLite3Instrumentor(), LoggingInstrumentor()):
            if not instrumentor.is_instrumented_by_opentelemetry:
                instrumentor.instrument()

        _provider = provider
        atexit.register(_shutdown)


def _shutdown() -> None:
    if _provider is not None:
        _provider.shutdown()


def get_tracer(name: str = "nanoreader"):
    return trace.get_tracer(name)


@contextmanager
def _span(tracer, name: str, attributes: Dict[str, Any]) -> Iterator[Span]:
    with tracer.start_as_current_span(
        name, attributes=attributes, record_exception=False, set_status_on_exception=False
    ) as span:
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def trace_span(
    span_name: Optional[str] = None,
    *,
    tracer_name: Optional[str] = None,
    static_attrs: Optional[Dict[str, Any]] = None,
    attr_from_args: Optional[Callable[..., Dict[str, Any]]] = None,
):
    """Run the decorated function (sync or async) inside a span.

    Args:
        span_name: Span name, ``module.function`` by default.
        tracer_name: Tracer to use, the first dotted part of the span name by default.
        static_attrs: Attributes set on every span.
        attr_from_args: Called with the function's arguments; returns extra attributes.

    Exceptions are recorded on the span and propagate unchanged.
    """

    def decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0])

        def attributes(args, kwargs) -> Dict[str, Any]:
            attrs = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attrs.update(attr_from_args(*args, **kwargs) or {})
                except (TypeError, AttributeError, KeyError) as e:
                    _logger.debug("No span attributes for %s: %s", name, e)
            return attrs

        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                with _span(tracer, name, attributes(args, kwargs)):
                    return await func(*args, **kwargs)
            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            with _span(tracer, name, attributes(args, kwargs)):
                return func(*args, **kwargs)
        return wrapper

    return decorator
