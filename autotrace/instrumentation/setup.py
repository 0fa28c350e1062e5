"""
Process-wide setup of automatic instrumentation.

``setup_autotrace`` builds the tracer provider and exporters, registers the
method map and installs wrappers around every target it can find. It is
idempotent: later calls return the instance created by the first one.
"""

import atexit
import logging
import threading
from dataclasses import replace
from typing import Iterable, List, Mapping, Optional, Sequence, Union

from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import SpanExporter

from ..config import AutotraceConfig
from ..context.scope import load_scope_config, reset_http_headers
from ..exceptions import ConfigurationError, get_error_handler
from ..exporter import SafeSpanExporter, create_exporters_for_config
from ..metamodel import MethodMapEntry, default_method_map, get_registry
from ..processor import AutotraceSpanProcessor
from ..version import __version__
from .interceptor import MethodInterceptor
from .span_handler import SpanLifecycleManager

logger = logging.getLogger(__name__)

# Global singleton instance
_global_instance: Optional["Autotrace"] = None
_setup_lock = threading.Lock()

MethodMapInput = Union[MethodMapEntry, Mapping]


class Autotrace:
    """
    Instrumentation state for one process.

    Owns the tracer provider, the span lifecycle manager and the method
    interceptor. Create it through ``setup_autotrace``.
    """

    def __init__(
        self,
        workflow_name: str,
        exporters: Optional[Sequence[SpanExporter]] = None,
        wrapper_methods: Optional[Iterable[MethodMapInput]] = None,
        exporter_mode: Optional[str] = None,
        span_processors: Optional[Sequence[SpanProcessor]] = None,
        config: Optional[AutotraceConfig] = None,
    ):
        if span_processors and exporters:
            raise ConfigurationError(
                "Pass either span_processors or exporters, not both",
                operation="setup",
            )

        self.config = self._build_config(workflow_name, exporter_mode, config)
        self.workflow_name = self.config.workflow_name
        self._shutdown = False

        if self.config.debug:
            logging.getLogger("autotrace").setLevel(logging.DEBUG)

        entries = self._method_map(wrapper_methods)

        resource = Resource.create({SERVICE_NAME: self.workflow_name})
        self._provider = TracerProvider(resource=resource)

        registry = get_registry()
        try:
            self._processors: List[SpanProcessor] = list(span_processors or [])
            if not self._processors:
                if exporters is None:
                    exporters = create_exporters_for_config(self.config)
                self._processors = [
                    AutotraceSpanProcessor(SafeSpanExporter(exporter), self.config)
                    for exporter in exporters
                ]
            for processor in self._processors:
                self._provider.add_span_processor(processor)

            self.tracer = self._provider.get_tracer(
                instrumenting_module_name="autotrace",
                instrumenting_library_version=__version__,
            )
            self.manager = SpanLifecycleManager(self.tracer, self.workflow_name)

            # Stores nothing if any entry is invalid
            registry.register_all(entries)
        except Exception:
            self._provider.shutdown()
            raise
        registry.freeze()

        self.interceptor = MethodInterceptor(get_span_manager, registry)
        if self.config.tracing_enabled:
            self.interceptor.install(registry.entries())
        else:
            logger.info("Tracing disabled, no methods instrumented")

        atexit.register(self._cleanup)

    @staticmethod
    def _build_config(workflow_name: str, exporter_mode: Optional[str],
                      config: Optional[AutotraceConfig]) -> AutotraceConfig:
        if config is None:
            overrides = {"workflow_name": workflow_name}
            if exporter_mode:
                overrides["exporter"] = exporter_mode
            return AutotraceConfig.from_env(**overrides)

        changes = {}
        if workflow_name:
            changes["workflow_name"] = workflow_name
        if exporter_mode:
            changes["exporter"] = exporter_mode
        return replace(config, **changes) if changes else config

    def _method_map(self, wrapper_methods: Optional[Iterable[MethodMapInput]]) -> List[MethodMapEntry]:
        entries: List[MethodMapEntry] = list(default_method_map())

        for method in wrapper_methods or ():
            entries.append(method if isinstance(method, MethodMapEntry) else MethodMapEntry.from_dict(method))

        for method in load_scope_config(self.config.get_scope_config_file()):
            try:
                entries.append(MethodMapEntry.from_dict({**method, "skip_span": True}))
            except ConfigurationError as e:
                logger.warning(f"Ignoring invalid scope method entry {method}: {e.message}")

        return entries

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        """Export every finished span still queued in the processors."""
        return self._provider.force_flush(timeout_millis)

    def shutdown(self) -> None:
        """
        Finalize abandoned spans, flush and shut down the exporters.

        Wrappers stay installed but pass calls straight through afterwards.
        """
        if self._shutdown:
            return
        self._shutdown = True
        self.manager.finalize_abandoned()
        self._provider.shutdown()
        atexit.unregister(self._cleanup)

        errors = get_error_handler().get_error_summary()["error_counts"]
        if errors:
            logger.debug(f"Instrumentation errors during this run: {errors}")

    def _cleanup(self):
        """Cleanup handler called on process exit."""
        self.shutdown()

    def __repr__(self) -> str:
        return (
            f"Autotrace(workflow_name='{self.workflow_name}', "
            f"installed={len(self.interceptor.installed)}, shutdown={self._shutdown})"
        )


def setup_autotrace(
    workflow_name: str,
    exporters: Optional[Sequence[SpanExporter]] = None,
    wrapper_methods: Optional[Iterable[MethodMapInput]] = None,
    exporter_mode: Optional[str] = None,
    span_processors: Optional[Sequence[SpanProcessor]] = None,
    config: Optional[AutotraceConfig] = None,
) -> Autotrace:
    """
    Set up automatic instrumentation for this process.

    Args:
        workflow_name: Application/workflow name, recorded on every span
        exporters: Span exporters; defaults to those selected by the exporter mode
        wrapper_methods: Extra method map entries (``MethodMapEntry`` or dicts)
        exporter_mode: Comma separated exporter names ('file', 'console', 'otlp', 'none')
        span_processors: Span processors to use instead of exporters
        config: Explicit configuration; otherwise read from AUTOTRACE_* variables

    Returns:
        The process-wide Autotrace instance

    Raises:
        ConfigurationError: If both exporters and span_processors are given,
            or a method map entry is invalid

    Example:
        >>> from autotrace import setup_autotrace
        >>> setup_autotrace("chatbot", exporter_mode="console")
    """
    global _global_instance

    with _setup_lock:
        if _global_instance is not None:
            logger.info(f"autotrace already set up for '{_global_instance.workflow_name}', ignoring repeated setup")
            return _global_instance

        _global_instance = Autotrace(
            workflow_name,
            exporters=exporters,
            wrapper_methods=wrapper_methods,
            exporter_mode=exporter_mode,
            span_processors=span_processors,
            config=config,
        )
        logger.info(f"autotrace set up for '{workflow_name}' ({len(_global_instance.interceptor.installed)} methods)")
        return _global_instance


def get_autotrace() -> Optional[Autotrace]:
    """The instance created by ``setup_autotrace``, if any."""
    return _global_instance


def get_span_manager() -> Optional[SpanLifecycleManager]:
    """Span manager used by wrappers; ``None`` when calls should pass through."""
    instance = _global_instance
    if instance is None or instance.is_shutdown or not instance.config.tracing_enabled:
        return None
    return instance.manager


def reset_autotrace():
    """
    Undo ``setup_autotrace``.

    Useful for testing. Should not be used in production code.
    """
    global _global_instance

    with _setup_lock:
        if _global_instance is not None:
            _global_instance.interceptor.uninstrument()
            _global_instance.shutdown()
        _global_instance = None
        get_registry().clear()
        reset_http_headers()
