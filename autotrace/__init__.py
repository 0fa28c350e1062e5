"""
autotrace - metamodel-driven automatic instrumentation on OpenTelemetry.

Calls into third-party client libraries are intercepted according to a
declarative method map and described as OpenTelemetry spans, without manual
span handling at call sites.

Basic Usage:
    >>> from autotrace import setup_autotrace
    >>> setup_autotrace("chatbot", exporter_mode="console")
    >>> client.chat.completions.create(model="gpt-4o", messages=[...])  # traced

Custom Method Maps:
    >>> from autotrace import AttributeSpec, MetamodelConfig, MethodMapEntry
    >>> entry = MethodMapEntry(
    ...     package="my_vector_store.client",
    ...     object="Index",
    ...     method="query",
    ...     span_name="vectorstore.query",
    ...     output_processors=[MetamodelConfig(
    ...         type="retrieval",
    ...         attributes=[[AttributeSpec("name", lambda call: call.instance.name)]],
    ...     )],
    ... )
    >>> setup_autotrace("rag-app", wrapper_methods=[entry])

Scopes:
    >>> from autotrace import scoped
    >>> with scoped({"x-request-id": "abc"}):
    ...     client.chat.completions.create(...)  # span carries x-request-id
"""

from .config import AutotraceConfig
from .context import (
    bind_scope,
    get_scopes,
    http_scopes,
    run_with_http_scopes,
    run_with_scope,
    scoped,
    start_trace,
)
from .exceptions import (
    ConfigurationError,
    ErrorSeverity,
    InstrumentationError,
    LibraryNotAvailableError,
    ObservabilityError,
)
from .exporter import NoOpExporter, SafeSpanExporter, create_exporters_for_config
from .file_exporter import FileSpanExporter
from .instrumentation import (
    Autotrace,
    get_autotrace,
    intercept,
    reset_autotrace,
    setup_autotrace,
)
from .metamodel import (
    AttributeSpec,
    CallRecord,
    EventConfig,
    MetamodelConfig,
    MethodMapEntry,
    SdkConfig,
    SdkDetectionResult,
    SdkDetector,
    get_registry,
)
from .processor import AutotraceSpanProcessor
from .types import AutotraceSpanAttributes, SpanTypes
from .version import __version__, __version_info__

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    # Setup
    "Autotrace",
    "AutotraceConfig",
    "setup_autotrace",
    "get_autotrace",
    "reset_autotrace",
    "intercept",
    # Method maps
    "AttributeSpec",
    "CallRecord",
    "EventConfig",
    "MetamodelConfig",
    "MethodMapEntry",
    "get_registry",
    # SDK detection
    "SdkConfig",
    "SdkDetectionResult",
    "SdkDetector",
    # Scopes
    "bind_scope",
    "get_scopes",
    "http_scopes",
    "run_with_http_scopes",
    "run_with_scope",
    "scoped",
    "start_trace",
    # Export
    "AutotraceSpanProcessor",
    "FileSpanExporter",
    "NoOpExporter",
    "SafeSpanExporter",
    "create_exporters_for_config",
    # Attributes
    "AutotraceSpanAttributes",
    "SpanTypes",
    # Errors
    "ConfigurationError",
    "ErrorSeverity",
    "InstrumentationError",
    "LibraryNotAvailableError",
    "ObservabilityError",
]
