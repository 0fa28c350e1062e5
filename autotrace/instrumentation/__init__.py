"""
Method interception and span lifecycle.
"""

from .interceptor import MethodInterceptor, get_wrapped_entry, intercept
from .setup import (
    Autotrace,
    get_autotrace,
    get_span_manager,
    reset_autotrace,
    setup_autotrace,
)
from .span_handler import ManagedSpan, SpanLifecycleManager, SpanState
from .wrapper import create_wrapper

__all__ = [
    "Autotrace",
    "ManagedSpan",
    "MethodInterceptor",
    "SpanLifecycleManager",
    "SpanState",
    "create_wrapper",
    "get_autotrace",
    "get_span_manager",
    "get_wrapped_entry",
    "intercept",
    "reset_autotrace",
    "setup_autotrace",
]
