"""Scope propagation for the current logical call chain."""

from .scope import (
    SCOPE_PREFIX,
    WELL_KNOWN_HTTP_HEADERS,
    ScopeHandle,
    ScopeStore,
    bind_scope,
    extract_http_scopes,
    generate_scope_id,
    get_scope_store,
    get_scopes,
    http_scopes,
    load_scope_config,
    register_http_header,
    reset_http_headers,
    run_with_http_scopes,
    run_with_scope,
    scoped,
    start_trace,
)

__all__ = [
    "SCOPE_PREFIX",
    "WELL_KNOWN_HTTP_HEADERS",
    "ScopeHandle",
    "ScopeStore",
    "bind_scope",
    "extract_http_scopes",
    "generate_scope_id",
    "get_scope_store",
    "get_scopes",
    "http_scopes",
    "load_scope_config",
    "register_http_header",
    "reset_http_headers",
    "run_with_http_scopes",
    "run_with_scope",
    "scoped",
    "start_trace",
]
