"""
File span exporter.

Writes one JSON array per trace to ``<output_path>/<prefix><service>_<trace id>_<timestamp>.json``.
A trace file stays open until the trace's root span is exported, the handle
expires, or the exporter is shut down.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import IO, Callable, Dict, Optional, Sequence

from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult
from opentelemetry.trace import format_trace_id

logger = logging.getLogger(__name__)

DEFAULT_FILE_PREFIX = "autotrace_trace_"
DEFAULT_TIME_FORMAT = "%Y-%m-%d_%H.%M.%S"
HANDLE_TIMEOUT_SECONDS = 60


@dataclass
class _FileHandle:
    stream: IO[str]
    path: str
    created: float
    first_span: bool = True


def _format_span(span: ReadableSpan) -> str:
    return span.to_json(indent=None)


class FileSpanExporter(SpanExporter):
    """Exporter writing spans to per-trace JSON files."""

    def __init__(
        self,
        output_path: str = "./.autotrace",
        file_prefix: str = DEFAULT_FILE_PREFIX,
        time_format: str = DEFAULT_TIME_FORMAT,
        service_name: Optional[str] = None,
        formatter: Callable[[ReadableSpan], str] = _format_span,
    ):
        self.output_path = output_path
        self.file_prefix = file_prefix
        self.time_format = time_format
        self.service_name = service_name
        self.formatter = formatter
        self._handles: Dict[int, _FileHandle] = {}
        self._lock = threading.Lock()

        os.makedirs(self.output_path, exist_ok=True)

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        logger.debug(f"Exporting {len(spans)} span(s) to {self.output_path}")
        with self._lock:
            root_traces = set()
            failed = False
            for span in spans:
                trace_id = span.context.trace_id
                handle = self._get_or_create_handle(trace_id, self._get_service_name(span))
                if handle is None:
                    failed = True
                    continue
                try:
                    formatted = self.formatter(span)
                    if not handle.first_span:
                        handle.stream.write(",")
                    handle.stream.write(formatted)
                    handle.first_span = False
                except (OSError, ValueError, TypeError) as e:
                    logger.error(f"Error writing span {span.context.span_id:016x} to {handle.path}: {e}")
                if span.parent is None:
                    root_traces.add(trace_id)

            for trace_id in root_traces:
                self._close_handle(trace_id)
            for handle in self._handles.values():
                handle.stream.flush()

        return SpanExportResult.FAILURE if failed else SpanExportResult.SUCCESS

    def shutdown(self) -> None:
        logger.debug("FileSpanExporter shutting down")
        with self._lock:
            for trace_id in list(self._handles):
                self._close_handle(trace_id)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        with self._lock:
            for handle in self._handles.values():
                try:
                    handle.stream.flush()
                except OSError as e:
                    logger.error(f"Error flushing file {handle.path}: {e}")
        return True

    def _get_service_name(self, span: ReadableSpan) -> str:
        if self.service_name:
            return self.service_name
        resource = span.resource.attributes if span.resource else {}
        return resource.get("service.name") or "unknown"

    def _get_or_create_handle(self, trace_id: int, service_name: str) -> Optional[_FileHandle]:
        self._cleanup_expired_handles()

        if trace_id in self._handles:
            return self._handles[trace_id]

        timestamp = datetime.now().strftime(self.time_format)
        file_name = f"{self.file_prefix}{service_name}_0x{format_trace_id(trace_id)}_{timestamp}.json"
        path = os.path.join(self.output_path, file_name)
        try:
            stream = open(path, "w", encoding="utf-8")
            stream.write("[")
        except OSError as e:
            logger.error(f"Error creating file {path}: {e}")
            return None

        handle = _FileHandle(stream=stream, path=path, created=time.monotonic())
        self._handles[trace_id] = handle
        return handle

    def _close_handle(self, trace_id: int) -> None:
        handle = self._handles.pop(trace_id, None)
        if handle is None:
            return
        try:
            handle.stream.write("]")
            handle.stream.close()
        except OSError as e:
            logger.error(f"Error closing file {handle.path}: {e}")

    def _cleanup_expired_handles(self) -> None:
        now = time.monotonic()
        for trace_id in [t for t, h in self._handles.items() if now - h.created > HANDLE_TIMEOUT_SECONDS]:
            self._close_handle(trace_id)
