"""
Scope propagation.

Scopes are caller-supplied key/value pairs attached to every span created
within a dynamic extent. They live in OpenTelemetry baggage under the
``autotrace.scope.`` prefix, so they ride the same contextvars-based context
as the active span: each asyncio task and each logical call chain sees its
own copy, and values survive ``await`` suspension points.

Usage:
    with scoped({"x-request-id": "abc"}):
        client.chat.completions.create(...)

    run_with_scope({"conversation": None}, handle_turn, message)

    worker = bind_scope({"job": "nightly"}, process_batch)
    threading.Thread(target=worker).start()
"""

import functools
import inspect
import json
import logging
import os
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Mapping, Optional

from opentelemetry import baggage
from opentelemetry import context as otel_context
from opentelemetry.context import Context
from opentelemetry.sdk.trace.id_generator import RandomIdGenerator
from opentelemetry.trace import format_trace_id

logger = logging.getLogger(__name__)

SCOPE_PREFIX = "autotrace.scope."

# Header name (lower case) -> scope name
WELL_KNOWN_HTTP_HEADERS: Dict[str, str] = {
    "x-request-id": "x-request-id",
    "x-correlation-id": "x-correlation-id",
    "x-session-id": "x-session-id",
    "x-user-id": "x-user-id",
}

_id_generator = RandomIdGenerator()


def generate_scope_id() -> str:
    """Random 32 hex character scope id."""
    return format_trace_id(_id_generator.generate_trace_id())


def _normalize(scopes: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    normalized = {}
    for name, value in (scopes or {}).items():
        if not isinstance(name, str) or not name:
            logger.warning(f"Ignoring scope with invalid name: {name!r}")
            continue
        normalized[name] = generate_scope_id() if value is None else value
    return normalized


def _with_scopes(ctx: Context, scopes: Mapping[str, Any], replace: bool = False) -> Context:
    if replace:
        for key in baggage.get_all(ctx):
            if key.startswith(SCOPE_PREFIX):
                ctx = baggage.remove_baggage(key, ctx)
    for name, value in scopes.items():
        ctx = baggage.set_baggage(f"{SCOPE_PREFIX}{name}", value, ctx)
    return ctx


class ScopeHandle:
    """Token returned by ``ScopeStore.push``; pop it exactly once."""

    __slots__ = ("scopes", "_token", "_popped")

    def __init__(self, scopes: Dict[str, Any], token: object):
        self.scopes = scopes
        self._token = token
        self._popped = False

    @property
    def popped(self) -> bool:
        return self._popped

    def __repr__(self) -> str:
        return f"ScopeHandle(scopes={self.scopes!r}, popped={self._popped})"


class ScopeStore:
    """Push/pop access to the scopes of the current logical call chain."""

    def push(self, scopes: Optional[Mapping[str, Any]]) -> ScopeHandle:
        """Apply ``scopes`` on top of the current ones. ``None`` values get a fresh id."""
        normalized = _normalize(scopes)
        ctx = _with_scopes(otel_context.get_current(), normalized)
        return ScopeHandle(normalized, otel_context.attach(ctx))

    def pop(self, handle: ScopeHandle) -> None:
        """Restore the scopes active before ``handle`` was pushed."""
        if handle.popped:
            logger.debug(f"Scope already popped, ignoring: {handle!r}")
            return
        handle._popped = True
        otel_context.detach(handle._token)

    def current_merged(self, ctx: Optional[Context] = None) -> Dict[str, Any]:
        """All active scopes, inner values overriding outer ones."""
        return {
            key[len(SCOPE_PREFIX):]: value
            for key, value in baggage.get_all(ctx).items()
            if key.startswith(SCOPE_PREFIX)
        }

    def bind(self, scopes: Optional[Mapping[str, Any]], fn: Callable) -> Callable:
        """
        Return ``fn`` wrapped so that every call runs under the scopes active
        now plus ``scopes``, whatever the scopes at the call site are.

        Span parenting is unaffected: spans still nest under the span active
        where the bound function is called.
        """
        snapshot = {**self.current_merged(), **_normalize(scopes)}

        def _attach():
            return otel_context.attach(_with_scopes(otel_context.get_current(), snapshot, replace=True))

        if inspect.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def bound_async(*args, **kwargs):
                token = _attach()
                try:
                    return await fn(*args, **kwargs)
                finally:
                    otel_context.detach(token)

            return bound_async

        @functools.wraps(fn)
        def bound(*args, **kwargs):
            token = _attach()
            try:
                return fn(*args, **kwargs)
            finally:
                otel_context.detach(token)

        return bound


_store = ScopeStore()


def get_scope_store() -> ScopeStore:
    return _store


def get_scopes() -> Dict[str, Any]:
    """Scopes visible at this point of the current call chain."""
    return _store.current_merged()


@contextmanager
def scoped(scopes: Optional[Mapping[str, Any]] = None, **kwargs: Any):
    """Apply scopes for the extent of a ``with`` block."""
    handle = _store.push({**(scopes or {}), **kwargs})
    try:
        yield handle.scopes
    finally:
        _store.pop(handle)


def run_with_scope(scopes: Optional[Mapping[str, Any]], fn: Callable, *args, **kwargs):
    """
    Call ``fn`` with ``scopes`` applied for its dynamic extent.

    For coroutine functions a coroutine is returned; the scopes are applied
    inside the task that awaits it.
    """
    if inspect.iscoroutinefunction(fn):
        async def _run():
            with scoped(scopes):
                return await fn(*args, **kwargs)

        return _run()

    with scoped(scopes):
        return fn(*args, **kwargs)


def bind_scope(scopes: Optional[Mapping[str, Any]], fn: Callable) -> Callable:
    """Return ``fn`` bound to ``scopes`` (see ``ScopeStore.bind``)."""
    return _store.bind(scopes, fn)


# ========== HTTP header scopes ==========

_http_headers: Dict[str, str] = dict(WELL_KNOWN_HTTP_HEADERS)


def register_http_header(header: str, scope_name: Optional[str] = None) -> None:
    """Map an HTTP header to a scope name for the header-derived helpers."""
    _http_headers[header.lower()] = scope_name or header.lower()


def reset_http_headers() -> None:
    _http_headers.clear()
    _http_headers.update(WELL_KNOWN_HTTP_HEADERS)


def extract_http_scopes(headers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Pick the known headers out of a header mapping, case-insensitively."""
    if not headers:
        return {}
    extracted = {}
    for name, value in headers.items():
        if not isinstance(name, str):
            continue
        scope_name = _http_headers.get(name.lower())
        if scope_name and value is not None:
            extracted[scope_name] = value
    return extracted


@contextmanager
def http_scopes(headers: Optional[Mapping[str, Any]]):
    """Apply scopes taken from HTTP headers for the extent of a ``with`` block."""
    with scoped(extract_http_scopes(headers)) as applied:
        yield applied


def run_with_http_scopes(headers: Optional[Mapping[str, Any]], fn: Callable, *args, **kwargs):
    return run_with_scope(extract_http_scopes(headers), fn, *args, **kwargs)


# ========== New traces ==========

def start_trace(fn: Callable, *args, **kwargs):
    """
    Call ``fn`` detached from the active span so its spans start a new trace.

    Scopes active at the call site are kept.
    """
    fresh = _with_scopes(Context(), get_scopes())

    if inspect.iscoroutinefunction(fn):
        async def _run():
            token = otel_context.attach(fresh)
            try:
                return await fn(*args, **kwargs)
            finally:
                otel_context.detach(token)

        return _run()

    token = otel_context.attach(fresh)
    try:
        return fn(*args, **kwargs)
    finally:
        otel_context.detach(token)


# ========== Scope configuration file ==========

def load_scope_config(path: Optional[str]) -> List[Dict[str, Any]]:
    """
    Load the scope configuration file.

    The file holds a JSON list. Entries with ``http_header`` register a header
    for the header-derived helpers; the others are returned as scope method
    entries (``package``/``object``/``method``/``scope_name``). A missing or
    unreadable file yields no entries.
    """
    if not path:
        logger.debug("Scope config path not set")
        return []
    if not os.path.exists(path):
        logger.debug(f"Scope config file not found: {path}")
        return []

    try:
        with open(path, "r", encoding="utf-8") as f:
            entries = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Error loading scope methods from {path}: {e}")
        return []

    if not isinstance(entries, list):
        logger.warning(f"Scope config file {path} must hold a JSON list")
        return []

    scope_methods = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if entry.get("http_header"):
            register_http_header(entry["http_header"], entry.get("scope_name"))
        else:
            scope_methods.append(entry)
    return scope_methods
