"""Observability utilities: logging setup, Langfuse tracing and OpenTelemetry spans.

This module centralizes lightweight observability features:
- configure_logging: stdlib logging setup from settings.LOG_LEVEL / LOG_FORMAT.
- Langfuse integration via a minimal Trace wrapper that is a no-op when the
  Langfuse keys are not configured.
- OpenTelemetry span context manager around ingestion steps and chat phases.
  A console exporter is installed only when RAGDESK_OTEL_CONSOLE=1 so other
  exporters can be configured externally.

Environment/config dependencies are read from ragdesk.config.settings.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from langfuse import Langfuse
from langfuse.client import StatefulTraceClient
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from ragdesk.config import settings

logger = logging.getLogger(__name__)

_langfuse_client: Optional[Langfuse] = None
_otel_inited: bool = False
_logging_configured: bool = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once with the service format.

    Args:
        level: Optional level name overriding settings.LOG_LEVEL.
    """
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(level=(level or settings.LOG_LEVEL).upper(), format=settings.LOG_FORMAT)
    _logging_configured = True


def _init_langfuse() -> Optional[Langfuse]:
    """Initialize and memoize a Langfuse client if configuration is present.

    Returns:
        Optional[Langfuse]: A Langfuse client when LANGFUSE_HOST,
            LANGFUSE_PUBLIC_KEY and LANGFUSE_SECRET_KEY are configured; otherwise None.
    """
    global _langfuse_client
    if _langfuse_client is not None:
        return _langfuse_client
    if settings.LANGFUSE_HOST and settings.LANGFUSE_PUBLIC_KEY and settings.LANGFUSE_SECRET_KEY:
        _langfuse_client = Langfuse(
            host=settings.LANGFUSE_HOST,
            public_key=settings.LANGFUSE_PUBLIC_KEY,
            secret_key=settings.LANGFUSE_SECRET_KEY,
        )
        return _langfuse_client
    return None


def _init_otel() -> None:
    """Install a global tracer provider once."""
    global _otel_inited
    if _otel_inited:
        return
    tp = TracerProvider()
    if os.environ.get("RAGDESK_OTEL_CONSOLE", "0") == "1":
        tp.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tp)
    _otel_inited = True


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """
    Lightweight context manager for an OpenTelemetry span.
    Exceptions raised inside the block are recorded on the span and re-raised.
    """
    _init_otel()
    tracer = trace.get_tracer("ragdesk")
    with tracer.start_as_current_span(name) as otel_span:
        for k, v in (attributes or {}).items():
            if v is not None:
                otel_span.set_attribute(k, v)
        yield otel_span


class Trace:
    """
    Minimal wrapper for a Langfuse trace; methods are no-ops if not configured.
    """

    def __init__(self, name: str, input: Optional[Dict[str, Any]] = None):
        """Create a trace that wraps optional Langfuse state.

        Args:
            name: Logical name of the trace.
            input: Initial input payload to attach to the trace.
        """
        self.name = name
        self.enabled = False
        self._trace: Optional[StatefulTraceClient] = None
        client = _init_langfuse()
        if client is not None:
            self._trace = client.trace(name=name, input=input or {})
            self.enabled = True

    def event(self, name: str, data: Optional[Dict[str, Any]] = None):
        """Record a structured event on the trace if Langfuse is enabled.

        Args:
            name: Event name.
            data: Optional dictionary payload to store with the event.
        """
        if not self.enabled or self._trace is None:
            return
        try:
            self._trace.event(name=name, input=data or {})
        except Exception as e:
            logger.debug("Langfuse event failed: %s", e)

    def generation(self, name: str, prompt: Any, output: str, model: str, metadata: Optional[Dict[str, Any]] = None):
        """Record a generation with input/output and optional metadata.

        Args:
            name: Logical generation name.
            prompt: The input messages or prompt text.
            output: The generated text output.
            model: Model identifier used for the generation.
            metadata: Optional metadata to attach.
        """
        if not self.enabled or self._trace is None:
            return
        try:
            self._trace.generation(name=name, input=prompt, output=output, metadata=metadata or {}, model=model)
        except Exception as e:
            logger.debug("Langfuse generation failed: %s", e)

    def end(self, output: Optional[Dict[str, Any]] = None):
        """Finalize the trace with an optional output payload."""
        if not self.enabled or self._trace is None:
            return
        try:
            self._trace.update(output=output or {})
        except Exception as e:
            logger.debug("Langfuse trace update failed: %s", e)
