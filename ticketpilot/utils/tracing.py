"""Job tracing: one trace per job, one span per plan/execute/validate step."""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from langfuse import Langfuse

from ..config.models import TracingConfig

logger = logging.getLogger(__name__)


class TraceSpan:
    """A span that records nothing. Used when tracing is disabled."""

    @contextmanager
    def span(self, name: str, input: Any = None, **metadata: Any) -> Iterator["TraceSpan"]:
        yield self

    def record(self, output: Any = None, **metadata: Any) -> None:
        pass


class Tracer:
    """Tracer that records nothing."""

    @contextmanager
    def trace(self, name: str, **metadata: Any) -> Iterator[TraceSpan]:
        yield TraceSpan()


class LangfuseSpan(TraceSpan):
    """Wraps a span of the Langfuse SDK."""

    def __init__(self, span: Any):
        self._span = span

    @contextmanager
    def span(self, name: str, input: Any = None, **metadata: Any) -> Iterator[TraceSpan]:
        child = self._span.start_span(name=name, input=input, metadata=metadata or None)
        try:
            yield LangfuseSpan(child)
        except Exception as e:
            child.update(level="ERROR", status_message=f"{type(e).__name__}: {e}")
            raise
        finally:
            child.end()

    def record(self, output: Any = None, **metadata: Any) -> None:
        self._span.update(output=output, metadata=metadata or None)


class LangfuseTracer(Tracer):
    """Sends job traces to Langfuse and flushes once each job ends."""

    def __init__(self, client: Any):
        self.client = client

    @contextmanager
    def trace(self, name: str, **metadata: Any) -> Iterator[TraceSpan]:
        root = self.client.start_span(name=name, metadata=metadata or None)
        root.update_trace(name=name, metadata=metadata or None)
        try:
            yield LangfuseSpan(root)
        except Exception as e:
            root.update(level="ERROR", status_message=f"{type(e).__name__}: {e}")
            raise
        finally:
            root.end()
            self.client.flush()


def build_tracer(config: Optional[TracingConfig]) -> Tracer:
    """Langfuse tracer when tracing is enabled, otherwise a no-op tracer."""
    if config is None or not config.enabled:
        return Tracer()

    client = Langfuse(
        public_key=config.public_key,
        secret_key=config.secret_key,
        host=config.host,
    )
    logger.info("Tracing jobs to Langfuse at %s", config.host or "the default host")
    return LangfuseTracer(client)
