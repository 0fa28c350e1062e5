"""
Process-wide metamodel registration.

The registry maps ``(package, object, method)`` to the metamodels that
describe calls through that method. It is append-only and is frozen once
interception starts; accessors named by string are resolved and every
accessor is validated at registration time.
"""

import inspect
import logging
import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..exceptions import ConfigurationError
from ._base import Accessor, AttributeSpec, EventConfig, MetamodelConfig, MethodMapEntry

logger = logging.getLogger(__name__)

ANY_ENTITY_TYPE = "*"

MethodKey = Tuple[str, str, str]


class MetamodelRegistry:
    """Append-only registry of method map entries and their metamodels."""

    def __init__(self):
        self._entries: Dict[MethodKey, MethodMapEntry] = {}
        self._metamodels: Dict[MethodKey, List[MetamodelConfig]] = {}
        self._accessors: Dict[Tuple[str, str], Accessor] = {}
        self._frozen = False
        self._lock = threading.Lock()

    # ========== Accessors ==========

    def register_accessor(self, entity_type: Optional[str], name: str, accessor: Accessor) -> None:
        """
        Register a named extraction function for an entity type.

        Attribute specs whose accessor is the string ``name`` resolve to this
        function when their metamodel has type ``entity_type``. Use ``None``
        (or ``"*"``) to make the accessor available to every entity type.
        """
        self._check_not_frozen()
        _validate_accessor(name, accessor)
        self._accessors[(entity_type or ANY_ENTITY_TYPE, name)] = accessor
        logger.debug(f"Registered accessor {name} for entity type {entity_type or ANY_ENTITY_TYPE}")

    def get_accessor(self, entity_type: Optional[str], name: str) -> Optional[Accessor]:
        if entity_type and (entity_type, name) in self._accessors:
            return self._accessors[(entity_type, name)]
        return self._accessors.get((ANY_ENTITY_TYPE, name))

    # ========== Method map ==========

    def register(self, entry: Union[MethodMapEntry, Mapping]) -> MethodMapEntry:
        """
        Register a method map entry.

        Registering the same ``(package, object, method)`` again appends its
        metamodels to the ones already registered; the first entry keeps
        its span name and flags.

        Raises:
            ConfigurationError: If the registry is frozen or an accessor is invalid
        """
        return self.register_all([entry])[0]

    def register_all(self, entries: Iterable[Union[MethodMapEntry, Mapping]]) -> List[MethodMapEntry]:
        """
        Register several entries at once.

        Every entry is resolved before any is stored, so an invalid entry
        leaves the registry unchanged.
        """
        resolved = [
            self.resolve(entry if isinstance(entry, MethodMapEntry) else MethodMapEntry.from_dict(entry))
            for entry in entries
        ]

        with self._lock:
            self._check_not_frozen()
            for entry in resolved:
                if entry.key not in self._entries:
                    self._entries[entry.key] = entry
                    self._metamodels[entry.key] = []
                self._metamodels[entry.key].extend(entry.output_processors)
            registered = [self._entries[entry.key] for entry in resolved]

        for entry in resolved:
            logger.debug(f"Registered method {'.'.join(entry.key)} ({len(entry.output_processors)} metamodels)")
        return registered

    def resolve(self, entry: MethodMapEntry) -> MethodMapEntry:
        """Return ``entry`` with every named accessor replaced by its function."""
        processors = tuple(self._resolve_metamodel(config) for config in entry.output_processors)
        return replace(entry, output_processors=processors)

    def _resolve_metamodel(self, config: MetamodelConfig) -> MetamodelConfig:
        groups = tuple(
            tuple(self._resolve_spec(config.type, spec) for spec in group)
            for group in config.attributes
        )
        events = tuple(
            EventConfig(event.name, tuple(self._resolve_spec(config.type, spec) for spec in event.attributes))
            for event in config.events
        )
        return replace(config, attributes=groups, events=events)

    def _resolve_spec(self, entity_type: Optional[str], spec: AttributeSpec) -> AttributeSpec:
        if spec.is_resolved:
            _validate_accessor(spec.attribute, spec.accessor)
            return spec

        accessor = self.get_accessor(entity_type, spec.accessor)
        if accessor is None:
            raise ConfigurationError(
                f"No accessor named '{spec.accessor}' registered for entity type "
                f"'{entity_type or ANY_ENTITY_TYPE}'"
            )
        return AttributeSpec(spec.attribute, accessor)

    def get(self, package: str, object: str, method: str) -> List[MetamodelConfig]:
        """Metamodels registered for a method, in registration order."""
        return list(self._metamodels.get((package, object, method), ()))

    def get_entry(self, key: MethodKey) -> Optional[MethodMapEntry]:
        return self._entries.get(key)

    def entries(self) -> List[MethodMapEntry]:
        """Registered entries, in registration order."""
        return list(self._entries.values())

    # ========== Lifecycle ==========

    def freeze(self) -> None:
        """Reject further registration; called once interception has begun."""
        self._frozen = True

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def clear(self) -> None:
        """Drop all registrations and unfreeze (useful for testing)."""
        with self._lock:
            self._entries.clear()
            self._metamodels.clear()
            self._accessors.clear()
            self._frozen = False

    def _check_not_frozen(self) -> None:
        if self._frozen:
            raise ConfigurationError(
                "Metamodel registry is frozen: register method maps before setup_autotrace()",
                operation="register",
            )

    def __len__(self) -> int:
        return len(self._entries)


def _validate_accessor(name: Optional[str], accessor: Accessor) -> None:
    if not callable(accessor):
        raise ConfigurationError(f"accessor for '{name}' is not callable")
    try:
        inspect.signature(accessor).bind(None)
    except TypeError:
        raise ConfigurationError(f"accessor for '{name}' must accept exactly one call record argument")
    except ValueError:
        # builtins without an introspectable signature
        pass


# Global registry instance
_registry = MetamodelRegistry()


def get_registry() -> MetamodelRegistry:
    """Get the global metamodel registry."""
    return _registry
