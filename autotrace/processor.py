"""
autotrace span processor extending OpenTelemetry's BatchSpanProcessor.

Maps ``AutotraceConfig`` batching settings onto the SDK processor while
delegating batching, queuing and export scheduling to OpenTelemetry.
"""

import logging
from typing import Optional

from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

from .config import AutotraceConfig
from .exceptions import ErrorSeverity, get_error_handler

logger = logging.getLogger(__name__)


class AutotraceSpanProcessor(BatchSpanProcessor):
    """
    Batch span processor configured from ``AutotraceConfig``.

    Hand-off of ended spans never raises into the code ending the span.
    """

    def __init__(
        self,
        span_exporter: SpanExporter,
        config: AutotraceConfig,
        *,
        max_queue_size: Optional[int] = None,
        schedule_delay_millis: Optional[int] = None,
        max_export_batch_size: Optional[int] = None,
        export_timeout_millis: Optional[int] = None,
    ):
        """
        Initialize the processor.

        Args:
            span_exporter: Exporter receiving the batches
            config: autotrace configuration
            max_queue_size: Max spans in queue (default: from config)
            schedule_delay_millis: Flush interval in ms (default: from config)
            max_export_batch_size: Max spans per batch (default: from config)
            export_timeout_millis: Export timeout in ms (default: from config)
        """
        queue_size = max_queue_size or config.max_queue_size
        delay_millis = schedule_delay_millis or int(config.flush_interval * 1000)
        batch_size = min(max_export_batch_size or config.flush_at, queue_size)
        timeout_millis = export_timeout_millis or config.export_timeout

        super().__init__(
            span_exporter=span_exporter,
            max_queue_size=queue_size,
            schedule_delay_millis=delay_millis,
            max_export_batch_size=batch_size,
            export_timeout_millis=timeout_millis,
        )

        self.config = config

    def on_end(self, span: ReadableSpan) -> None:
        try:
            super().on_end(span)
        except Exception as e:
            get_error_handler().handle_error(e, "processor", "on_end", ErrorSeverity.MEDIUM)
