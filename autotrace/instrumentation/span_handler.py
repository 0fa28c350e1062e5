"""
Span lifecycle management.

``SpanLifecycleManager.start`` opens an OpenTelemetry span for an intercepted
call, parents it on the span active in the current context and makes it the
active span; ``finish`` evaluates the metamodels against the completed call,
merges the active scopes, sets the status and ends the span. Every failure
inside the manager is recorded and swallowed: a broken accessor or exporter
never changes what the wrapped call returns or raises.
"""

import logging
import os
import threading
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Status, StatusCode, Tracer

from ..context.scope import ScopeStore, get_scope_store
from ..exceptions import ErrorSeverity, get_error_handler, instrumentation_context
from ..metamodel import (
    CallRecord,
    MetamodelConfig,
    MetamodelEvaluator,
    MethodMapEntry,
    SdkDetector,
    get_detector,
    to_attribute_value,
)
from ..metamodel.evaluator import EvaluatedEvent
from ..types import (
    SERVICE_NAME_MAP,
    SERVICE_TYPE_MAP,
    WORKFLOW_TYPE_GENERIC,
    WORKFLOW_TYPE_MAP,
    AutotraceSpanAttributes,
    SpanTypes,
)
from ..version import __version__

logger = logging.getLogger(__name__)

SDK_LANGUAGE = "python"

# Set in the context while a workflow-type span is active
_WORKFLOW_TYPE_KEY = otel_context.create_key("autotrace-workflow-type")


class SpanState(Enum):
    CREATED = "created"
    ACTIVE = "active"
    ENDED = "ended"


class ManagedSpan:
    """An OpenTelemetry span plus the call it describes."""

    def __init__(self, entry: MethodMapEntry, metamodels: Sequence[MetamodelConfig],
                 instance: Any, args: Tuple[Any, ...], kwargs: Mapping[str, Any]):
        self.entry = entry
        self.metamodels = tuple(metamodels)
        self.instance = instance
        self.args = args
        self.kwargs = kwargs
        self.state = SpanState.CREATED
        self.span: Optional[trace.Span] = None
        self.context: Optional[Context] = None
        self._token: Optional[object] = None
        self._lock = threading.Lock()

    @property
    def is_attached(self) -> bool:
        return self._token is not None

    def __repr__(self) -> str:
        return f"ManagedSpan(name='{self.entry.name}', state={self.state.value})"


def is_workflow_active(ctx: Optional[Context] = None) -> bool:
    return otel_context.get_value(_WORKFLOW_TYPE_KEY, ctx) is not None


def get_workflow_type(package: Optional[str]) -> str:
    """Workflow type for a wrapped package, ``workflow.generic`` by default."""
    workflow_type = WORKFLOW_TYPE_GENERIC
    for package_name, mapped_type in WORKFLOW_TYPE_MAP.items():
        if package and package_name in package:
            workflow_type = mapped_type
    return workflow_type


def get_app_hosting() -> Tuple[str, str]:
    """Identify the hosting service from the environment."""
    hosting_type, hosting_name = "app_hosting.generic", "generic"
    for type_env, type_name in SERVICE_TYPE_MAP.items():
        if os.getenv(type_env):
            hosting_type = f"app_hosting.{type_name}"
            hosting_name = os.getenv(SERVICE_NAME_MAP.get(type_name, ""), "generic") or "generic"
    return hosting_type, hosting_name


class SpanLifecycleManager:
    """Creates, populates and ends the spans of intercepted calls."""

    def __init__(
        self,
        tracer: Tracer,
        workflow_name: str,
        evaluator: Optional[MetamodelEvaluator] = None,
        detector: Optional[SdkDetector] = None,
        scope_store: Optional[ScopeStore] = None,
    ):
        self.tracer = tracer
        self.workflow_name = workflow_name
        self.evaluator = evaluator or MetamodelEvaluator()
        self._detector = detector
        self.scope_store = scope_store or get_scope_store()
        self._active: Dict[int, ManagedSpan] = {}
        self._active_lock = threading.Lock()

    @property
    def detector(self) -> SdkDetector:
        return self._detector or get_detector()

    # ========== Start ==========

    def should_skip(self, entry: MethodMapEntry) -> bool:
        """Workflow entries are not nested inside an active workflow span."""
        return entry.span_type == SpanTypes.WORKFLOW and is_workflow_active()

    def start(self, entry: MethodMapEntry, metamodels: Sequence[MetamodelConfig],
              instance: Any, args: Tuple[Any, ...], kwargs: Mapping[str, Any],
              attach: bool = True) -> ManagedSpan:
        """
        Open a span for a call and, with ``attach``, make it the active span.

        The parent is the span active in the current context; without one a
        new trace is started.
        """
        managed = ManagedSpan(entry, metamodels, instance, args, kwargs)

        parent_context = otel_context.get_current()
        is_root = not trace.get_current_span(parent_context).get_span_context().is_valid

        span = self.tracer.start_span(entry.name, context=parent_context)
        managed.span = span

        ctx = trace.set_span_in_context(span, parent_context)
        if entry.span_type == SpanTypes.WORKFLOW:
            ctx = otel_context.set_value(_WORKFLOW_TYPE_KEY, get_workflow_type(entry.package), ctx)
        managed.context = ctx

        with self._active_lock:
            self._active[id(managed)] = managed
        managed.state = SpanState.ACTIVE

        if attach:
            self.attach(managed)

        with instrumentation_context("span_handler", "start"):
            self._set_default_attributes(managed, is_root)
            self._add_events(managed, output_phase=False)

        return managed

    def attach(self, managed: ManagedSpan) -> None:
        """
        Make ``managed`` the active span of the current context.

        Attach and detach are token based and must nest: detach a span before
        leaving any ``scoped`` block or scope push that was entered after it
        was attached, otherwise the outer context is restored out of order.
        Use ``attach=False`` on ``start`` for spans that outlive such a block.
        """
        if managed.context is not None and managed._token is None:
            managed._token = otel_context.attach(managed.context)

    def detach(self, managed: ManagedSpan) -> None:
        """Restore the context that was current before ``attach``."""
        token, managed._token = managed._token, None
        if token is not None:
            otel_context.detach(token)

    def _set_default_attributes(self, managed: ManagedSpan, is_root: bool) -> None:
        span = managed.span
        span.set_attribute(AutotraceSpanAttributes.SDK_VERSION, __version__)
        span.set_attribute(AutotraceSpanAttributes.SDK_LANGUAGE, SDK_LANGUAGE)
        span.set_attribute(AutotraceSpanAttributes.WORKFLOW_NAME, self.workflow_name)
        span.set_attribute(AutotraceSpanAttributes.SPAN_SOURCE, f"{managed.entry.package}.{managed.entry.target}")

        if is_root:
            hosting_type, hosting_name = get_app_hosting()
            span.set_attribute(AutotraceSpanAttributes.WORKFLOW_TYPE, get_workflow_type(managed.entry.package))
            span.set_attribute(AutotraceSpanAttributes.APP_HOSTING_TYPE, hosting_type)
            span.set_attribute(AutotraceSpanAttributes.APP_HOSTING_NAME, hosting_name)

    # ========== Finish ==========

    def finish_success(self, managed: ManagedSpan, response: Any = None) -> None:
        self._finish(managed, response=response)

    def finish_error(self, managed: ManagedSpan, exception: BaseException) -> None:
        self._finish(managed, exception=exception)

    def _finish(self, managed: ManagedSpan, response: Any = None,
                exception: Optional[BaseException] = None) -> None:
        with managed._lock:
            if managed.state is not SpanState.ACTIVE:
                logger.debug(f"Ignoring finish of {managed!r}")
                return
            managed.state = SpanState.ENDED

        try:
            with instrumentation_context("span_handler", "finish"):
                self._populate(managed, response, exception)
        finally:
            self._end(managed)

    def _populate(self, managed: ManagedSpan, response: Any,
                  exception: Optional[BaseException]) -> None:
        span = managed.span
        record = CallRecord(
            instance=managed.instance,
            args=managed.args,
            kwargs=managed.kwargs,
            response=response,
            exception=exception,
        )

        self._add_events(managed, output_phase=True, record=record)

        attributes = self._evaluate_attributes(managed, record)
        for key, value in attributes.items():
            span.set_attribute(key, value)

        # Scopes never overwrite evaluated attributes
        for key, value in self.scope_store.current_merged(managed.context).items():
            value = to_attribute_value(value)
            if key not in attributes and value is not None:
                span.set_attribute(key, value)

        if exception is not None:
            span.record_exception(exception)
            span.set_attribute(AutotraceSpanAttributes.ERROR_TYPE, type(exception).__name__)
            span.set_status(Status(StatusCode.ERROR, str(exception) or type(exception).__name__))
        else:
            span.set_status(Status(StatusCode.OK))

    def _evaluate_attributes(self, managed: ManagedSpan, record: CallRecord) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {}
        span_type = managed.entry.span_type
        entity_count = 0

        for config in managed.metamodels:
            result = self.evaluator.evaluate_attributes(config, record)
            for key, value in result.attributes.items():
                attributes.setdefault(key, value)
            entity_count += result.entity_count

            config_type = config.type
            if config.needs_detection:
                detected = self.detector.detect(record.instance, record.args, record.kwargs)
                if detected.is_known:
                    attributes.setdefault(AutotraceSpanAttributes.SDK_NAME, detected.sdk_name)
                    attributes.setdefault(AutotraceSpanAttributes.SDK_TYPE, detected.sdk_type)
                    config_type = config_type or detected.entity_type
            span_type = span_type or config_type

        attributes[AutotraceSpanAttributes.SPAN_TYPE] = span_type or SpanTypes.GENERIC
        if entity_count:
            attributes[AutotraceSpanAttributes.ENTITY_COUNT] = entity_count
        return attributes

    def _add_events(self, managed: ManagedSpan, output_phase: bool,
                    record: Optional[CallRecord] = None) -> None:
        if record is None:
            record = CallRecord(instance=managed.instance, args=managed.args, kwargs=managed.kwargs)
        events: List[EvaluatedEvent] = []
        for config in managed.metamodels:
            events.extend(self.evaluator.evaluate_events(config, record, output_phase))
        for event in events:
            managed.span.add_event(event.name, event.attributes, timestamp=event.timestamp)

    def _end(self, managed: ManagedSpan) -> None:
        try:
            managed.span.end()
        except Exception as e:
            get_error_handler().handle_error(e, "span_handler", "end", ErrorSeverity.MEDIUM)
        finally:
            self.detach(managed)
            with self._active_lock:
                self._active.pop(id(managed), None)

    # ========== Shutdown ==========

    @property
    def active_spans(self) -> List[ManagedSpan]:
        with self._active_lock:
            return list(self._active.values())

    def finalize_abandoned(self) -> int:
        """
        End spans whose calls never completed (cancelled or abandoned
        awaitables) with an error status. Returns how many were ended.
        """
        count = 0
        for managed in self.active_spans:
            with managed._lock:
                if managed.state is not SpanState.ACTIVE:
                    continue
                managed.state = SpanState.ENDED
            try:
                managed.span.set_attribute(AutotraceSpanAttributes.ABANDONED, True)
                managed.span.set_status(Status(StatusCode.ERROR, "span abandoned before completion"))
                managed.span.end()
                count += 1
            except Exception as e:
                get_error_handler().handle_error(e, "span_handler", "finalize_abandoned", ErrorSeverity.MEDIUM)
            finally:
                managed._token = None
                with self._active_lock:
                    self._active.pop(id(managed), None)

        if count:
            logger.warning(f"Finalized {count} abandoned span(s) on shutdown")
        return count
