"""
Wrapper functions installed around intercepted methods.

Wrappers follow the ``wrapt`` calling convention ``(wrapped, instance, args,
kwargs)``. They are transparent to the caller: arguments are passed through
untouched, the original result is returned and errors raised by the wrapped
call propagate unchanged. Instrumentation failures are recorded and
swallowed.

Async contract:
- coroutine functions get a coroutine that opens the span inside the task
  awaiting it, so nothing happens until the call is awaited;
- sync functions returning an awaitable have their span opened at call
  time and finished when it completes, with the call's context re-attached
  while awaiting. Coroutines are wrapped in a new coroutine; any other
  awaitable is returned behind a transparent ``wrapt.ObjectProxy`` so its
  other protocols (async iteration, attributes) keep working;
- ``asyncio.Future`` results are returned as-is with a done callback that
  finishes the span.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional, Sequence

import wrapt
from opentelemetry import context as otel_context
from opentelemetry.context import Context

from ..context.scope import ScopeHandle, get_scope_store
from ..exceptions import ErrorSeverity, get_error_handler
from ..metamodel import MetamodelConfig, MethodMapEntry
from .span_handler import ManagedSpan, SpanLifecycleManager

logger = logging.getLogger(__name__)

ManagerProvider = Callable[[], Optional[SpanLifecycleManager]]


def _entry_scopes(entry: MethodMapEntry, instance: Any, args, kwargs) -> Dict[str, Any]:
    scopes: Dict[str, Any] = {}
    if entry.scope_name:
        scopes[entry.scope_name] = None
    values = entry.scope_values
    if callable(values):
        values = values(instance, args, kwargs)
    if values:
        scopes.update(values)
    return scopes


def _push_scopes(entry: MethodMapEntry, instance: Any, args, kwargs) -> Optional[ScopeHandle]:
    if not entry.has_scopes:
        return None
    try:
        return get_scope_store().push(_entry_scopes(entry, instance, args, kwargs))
    except Exception as e:
        get_error_handler().handle_error(e, "wrapper", f"scopes:{entry.name}", ErrorSeverity.MEDIUM)
        return None


def _pop_scopes(handle: Optional[ScopeHandle]) -> None:
    if handle is not None:
        get_scope_store().pop(handle)


class _CallInterceptor:
    """Per-entry wrapper; an instance is the ``wrapt`` wrapper function."""

    def __init__(self, entry: MethodMapEntry, metamodels: Sequence[MetamodelConfig],
                 get_manager: ManagerProvider):
        self.entry = entry
        self.metamodels = tuple(metamodels)
        self.get_manager = get_manager

    def __call__(self, wrapped, instance, args, kwargs):
        manager = self.get_manager()
        if manager is None:
            return wrapped(*args, **kwargs)
        if inspect.iscoroutinefunction(wrapped):
            return self._call_async(manager, wrapped, instance, args, kwargs)
        return self._call_sync(manager, wrapped, instance, args, kwargs)

    def _start(self, manager: SpanLifecycleManager, instance, args, kwargs) -> Optional[ManagedSpan]:
        if self.entry.skip_span or manager.should_skip(self.entry):
            return None
        try:
            return manager.start(self.entry, self.metamodels, instance, args, kwargs)
        except Exception as e:
            get_error_handler().handle_error(e, "wrapper", f"start:{self.entry.name}", ErrorSeverity.MEDIUM)
            return None

    async def _call_async(self, manager, wrapped, instance, args, kwargs):
        handle = _push_scopes(self.entry, instance, args, kwargs)
        try:
            managed = self._start(manager, instance, args, kwargs)
            try:
                result = await wrapped(*args, **kwargs)
            except BaseException as e:
                if managed is not None:
                    manager.finish_error(managed, e)
                raise
            if managed is not None:
                manager.finish_success(managed, result)
            return result
        finally:
            _pop_scopes(handle)

    def _call_sync(self, manager, wrapped, instance, args, kwargs):
        handle = _push_scopes(self.entry, instance, args, kwargs)
        try:
            managed = self._start(manager, instance, args, kwargs)
            try:
                result = wrapped(*args, **kwargs)
            except BaseException as e:
                if managed is not None:
                    manager.finish_error(managed, e)
                raise

            if isinstance(result, asyncio.Future):
                if managed is not None:
                    manager.detach(managed)
                    result.add_done_callback(lambda future: _finish_future(manager, managed, future))
                return result

            if inspect.isawaitable(result):
                ctx = managed.context if managed is not None else otel_context.get_current()
                if managed is not None:
                    manager.detach(managed)
                if inspect.iscoroutine(result):
                    return _await_in_context(result, ctx, manager, managed)
                return _AwaitableProxy(result, ctx, manager, managed)

            if managed is not None:
                manager.finish_success(managed, result)
            return result
        finally:
            _pop_scopes(handle)


async def _await_in_context(awaitable, ctx: Context, manager: SpanLifecycleManager,
                            managed: Optional[ManagedSpan]):
    token = otel_context.attach(ctx)
    try:
        try:
            result = await awaitable
        except BaseException as e:
            if managed is not None:
                manager.finish_error(managed, e)
            raise
        if managed is not None:
            manager.finish_success(managed, result)
        return result
    finally:
        otel_context.detach(token)


class _AwaitableProxy(wrapt.ObjectProxy):
    """
    Transparent proxy for awaitables that are not coroutines, such as
    paginators that are both awaitable and async-iterable.

    Awaiting it finishes the span with the awaited result. Starting async
    iteration without awaiting finishes the span with the original object.
    """

    def __init__(self, wrapped, ctx: Context, manager: SpanLifecycleManager,
                 managed: Optional[ManagedSpan]):
        super().__init__(wrapped)
        self._self_ctx = ctx
        self._self_manager = manager
        self._self_managed = managed

    def __await__(self):
        return _await_in_context(
            self.__wrapped__, self._self_ctx, self._self_manager, self._self_managed
        ).__await__()

    def __aiter__(self):
        managed = self._self_managed
        if managed is not None:
            self._self_manager.finish_success(managed, self.__wrapped__)
        return self.__wrapped__.__aiter__()


def _finish_future(manager: SpanLifecycleManager, managed: ManagedSpan, future: asyncio.Future) -> None:
    if future.cancelled():
        manager.finish_error(managed, asyncio.CancelledError())
        return
    exception = future.exception()
    if exception is not None:
        manager.finish_error(managed, exception)
    else:
        manager.finish_success(managed, future.result())


def create_wrapper(entry: MethodMapEntry, metamodels: Sequence[MetamodelConfig],
                   get_manager: ManagerProvider) -> Callable:
    """Build the ``wrapt`` wrapper function for one method map entry."""
    return _CallInterceptor(entry, metamodels, get_manager)
