"""
Span exporter construction.

Builds the exporters selected by ``AutotraceConfig.exporter`` and wraps every
exporter, built-in or user supplied, in ``SafeSpanExporter`` so export
failures are logged instead of reaching the application.
"""

import logging
from typing import List, Optional, Dict, Sequence

from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult

from .config import SUPPORTED_EXPORTERS, AutotraceConfig
from .exceptions import ErrorSeverity, get_error_handler

logger = logging.getLogger(__name__)


class SafeSpanExporter(SpanExporter):
    """
    Guard around another exporter.

    Empty batches are acknowledged without calling the wrapped exporter and
    any exception raised by it is logged and reported as ``FAILURE``.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter
        self._name = type(exporter).__name__

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        if not spans:
            return SpanExportResult.SUCCESS
        try:
            result = self.exporter.export(spans)
        except Exception as e:
            get_error_handler().handle_error(e, "exporter", f"export:{self._name}", ErrorSeverity.MEDIUM)
            return SpanExportResult.FAILURE
        if result is SpanExportResult.FAILURE:
            logger.debug(f"{self._name} reported failure exporting {len(spans)} span(s)")
        return result if isinstance(result, SpanExportResult) else SpanExportResult.SUCCESS

    def shutdown(self) -> None:
        try:
            self.exporter.shutdown()
        except Exception as e:
            get_error_handler().handle_error(e, "exporter", f"shutdown:{self._name}", ErrorSeverity.MEDIUM)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        try:
            flushed = self.exporter.force_flush(timeout_millis)
        except Exception as e:
            get_error_handler().handle_error(e, "exporter", f"force_flush:{self._name}", ErrorSeverity.MEDIUM)
            return False
        return flushed is not False


def create_otlp_exporter(
    config: AutotraceConfig,
    additional_headers: Optional[Dict[str, str]] = None,
) -> SpanExporter:
    """
    Create an OTLP/HTTP span exporter.

    Args:
        config: autotrace configuration (``otlp_endpoint`` must be set)
        additional_headers: Optional additional HTTP headers

    Returns:
        Configured OTLPSpanExporter instance

    Example:
        >>> config = AutotraceConfig(exporter="otlp", otlp_endpoint="http://localhost:4318/v1/traces")
        >>> exporter = create_otlp_exporter(config)
    """
    headers = dict(config.otlp_headers)
    if additional_headers:
        headers.update(additional_headers)

    return OTLPSpanExporter(
        endpoint=config.otlp_endpoint,
        headers=headers,
        timeout=config.timeout,
    )


def create_console_exporter() -> SpanExporter:
    """Console exporter printing each span as JSON to stdout."""
    from opentelemetry.sdk.trace.export import ConsoleSpanExporter

    return ConsoleSpanExporter()


def create_file_exporter(config: AutotraceConfig) -> SpanExporter:
    from .file_exporter import FileSpanExporter

    return FileSpanExporter(
        output_path=config.output_path,
        file_prefix=config.file_prefix,
        service_name=config.workflow_name,
    )


class NoOpExporter(SpanExporter):
    """
    No-op exporter that discards all spans.

    Selected with ``exporter="none"`` or when tracing is disabled.
    """

    def export(self, spans) -> SpanExportResult:
        return SpanExportResult.SUCCESS

    def shutdown(self) -> None:
        pass

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True


_FACTORIES = {
    "file": create_file_exporter,
    "console": lambda config: create_console_exporter(),
    "otlp": create_otlp_exporter,
    "none": lambda config: NoOpExporter(),
}


def create_exporters_for_config(config: AutotraceConfig) -> List[SpanExporter]:
    """
    Create the exporters named by ``config.exporter``.

    Unknown names fall back to the console exporter with a warning; an
    exporter that fails to build is skipped.

    Example:
        >>> config = AutotraceConfig.from_env(exporter="file,console")
        >>> exporters = create_exporters_for_config(config)
    """
    if not config.tracing_enabled:
        return [NoOpExporter()]

    exporters: List[SpanExporter] = []
    for name in config.exporter_names:
        if name not in SUPPORTED_EXPORTERS:
            logger.warning(f"Unsupported span exporter setting {name}, using default ConsoleSpanExporter.")
            name = "console"
        try:
            exporters.append(_FACTORIES[name](config))
        except Exception as e:
            get_error_handler().handle_error(e, "exporter", f"create:{name}", ErrorSeverity.HIGH)

    return exporters or [create_console_exporter()]
