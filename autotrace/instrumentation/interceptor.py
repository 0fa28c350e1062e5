"""
Method interception.

The interceptor resolves each method map entry against the live library
module, wraps the method found there in a ``wrapt.FunctionWrapper`` and
patches it back in place. Entries whose module or attribute is missing are
skipped and recorded; installing the same entry twice is a no-op.
"""

import importlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import wrapt

from ..exceptions import ErrorSeverity, LibraryNotAvailableError, get_error_handler
from ..metamodel import MetamodelRegistry, MethodMapEntry, get_registry
from .wrapper import ManagerProvider, create_wrapper

logger = logging.getLogger(__name__)

# Stored on the wrapt proxy itself (``_self_`` prefix)
ENTRY_MARKER = "_self_autotrace_entry"

MethodKey = Tuple[str, str, str]


@dataclass
class InstalledWrapper:
    entry: MethodMapEntry
    parent: Any
    attribute: str
    original: Any
    wrapper: wrapt.FunctionWrapper


def get_wrapped_entry(obj: Any) -> Optional[MethodMapEntry]:
    """
    The entry an attribute was wrapped for, or ``None`` if it is not wrapped.

    Only proxies built here carry the marker. ``FunctionWrapper`` is not an
    ``ObjectProxy`` subclass in wrapt 2.
    """
    entry = getattr(obj, ENTRY_MARKER, None)
    return entry if isinstance(entry, MethodMapEntry) else None


class MethodInterceptor:
    """Installs and removes wrappers for method map entries."""

    def __init__(self, get_manager: ManagerProvider, registry: Optional[MetamodelRegistry] = None):
        self.get_manager = get_manager
        self.registry = registry or get_registry()
        self._installed: Dict[MethodKey, InstalledWrapper] = {}
        self._errors: List[str] = []

    def install(self, entries: Iterable[MethodMapEntry]) -> int:
        """Install wrappers for ``entries``; returns how many were installed."""
        installed = 0
        for entry in entries:
            if self.install_entry(entry):
                installed += 1
        logger.debug(f"Installed {installed} method wrapper(s)")
        return installed

    def install_entry(self, entry: MethodMapEntry) -> bool:
        if entry.key in self._installed:
            logger.debug(f"Already instrumented: {entry.name}")
            return False

        try:
            module = importlib.import_module(entry.package)
            parent, attribute, original = wrapt.resolve_path(module, entry.target)
        except (ImportError, AttributeError) as e:
            self._record_skip(entry, e)
            return False

        if get_wrapped_entry(original) is not None:
            logger.debug(f"Skipping {entry.package}.{entry.target}: already wrapped")
            return False

        try:
            metamodels = self.registry.get(*entry.key) or self.registry.resolve(entry).output_processors
            wrapper = wrapt.FunctionWrapper(original, create_wrapper(entry, metamodels, self.get_manager))
            setattr(wrapper, ENTRY_MARKER, entry)
            wrapt.apply_patch(parent, attribute, wrapper)
        except Exception as e:
            error = get_error_handler().handle_error(e, entry.package, f"install:{entry.target}", ErrorSeverity.HIGH)
            self._errors.append(str(error))
            return False

        self._installed[entry.key] = InstalledWrapper(entry, parent, attribute, original, wrapper)
        logger.debug(f"Instrumented {entry.package}.{entry.target} as '{entry.name}'")
        return True

    def _record_skip(self, entry: MethodMapEntry, error: Exception) -> None:
        skipped = LibraryNotAvailableError(
            f"Target not found, skipping: {entry.target}",
            severity=ErrorSeverity.DEBUG,
            library=entry.package,
            operation="install",
            cause=error,
        )
        get_error_handler().handle_error(skipped, entry.package, "install")
        self._errors.append(str(skipped))

    def uninstrument(self) -> int:
        """Restore every patched method; returns how many were restored."""
        restored = 0
        for installed in list(self._installed.values()):
            try:
                current = getattr(installed.parent, "__dict__", {}).get(installed.attribute)
                if current is installed.wrapper:
                    wrapt.apply_patch(installed.parent, installed.attribute, installed.original)
                    restored += 1
                else:
                    logger.debug(f"{installed.entry.name} was re-patched by someone else, leaving it")
            except Exception as e:
                get_error_handler().handle_error(e, installed.entry.package, "uninstrument", ErrorSeverity.MEDIUM)
        self._installed.clear()
        logger.debug(f"Restored {restored} method(s)")
        return restored

    def is_installed(self, package: str, object: str, method: str) -> bool:
        return (package, object, method) in self._installed

    @property
    def installed(self) -> List[MethodMapEntry]:
        return [installed.entry for installed in self._installed.values()]

    @property
    def errors(self) -> List[str]:
        """Errors recorded while installing, e.g. missing targets."""
        return self._errors.copy()


def _current_manager():
    from .setup import get_span_manager

    return get_span_manager()


def intercept(entry: Union[MethodMapEntry, Mapping, None] = None, **fields) -> Callable:
    """
    Decorator form of interception for functions the application owns.

    Usage:
        @intercept(span_name="rag.answer", output_processors=[answer_metamodel])
        def answer(question):
            ...

    Without an explicit entry, the package/object/method triple is taken from
    the decorated function. Spans are only produced once ``setup_autotrace``
    has run.
    """

    def decorator(fn: Callable) -> Callable:
        resolved = entry
        if resolved is None:
            owner = fn.__qualname__.rpartition(".")[0] or "<module>"
            fields.setdefault("span_name", fn.__qualname__)
            resolved = MethodMapEntry(package=fn.__module__, object=owner, method=fn.__name__, **fields)
        elif not isinstance(resolved, MethodMapEntry):
            resolved = MethodMapEntry.from_dict(resolved)

        metamodels = get_registry().resolve(resolved).output_processors
        wrapper = wrapt.FunctionWrapper(fn, create_wrapper(resolved, metamodels, _current_manager))
        setattr(wrapper, ENTRY_MARKER, resolved)
        return wrapper

    return decorator
