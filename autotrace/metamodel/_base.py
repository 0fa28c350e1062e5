"""
Declarative building blocks of the instrumentation metamodel.

A ``MethodMapEntry`` names a library method to intercept and the
``MetamodelConfig`` objects describing which attributes and events to pull
out of each call. Accessors are plain callables taking a ``CallRecord``.

Usage:
    inference = MetamodelConfig(
        type="inference",
        attributes=[
            [
                AttributeSpec("name", lambda call: call.argument("model", 0)),
                AttributeSpec("type", lambda call: "model.llm." + call.argument("model", 0)),
            ]
        ],
        events=[
            EventConfig("data.output", [
                AttributeSpec("response", lambda call: call.response.choices[0].message.content),
            ]),
        ],
    )

    entry = MethodMapEntry(
        package="openai.resources.chat.completions",
        object="Completions",
        method="create",
        span_name="openai.chat.completions.create",
        output_processors=[inference],
    )
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from ..exceptions import ConfigurationError
from ..types.attributes import EventNames

Accessor = Callable[["CallRecord"], Any]


@dataclass(frozen=True)
class CallRecord:
    """Everything an accessor may look at for one intercepted call."""

    instance: Any = None
    args: Tuple[Any, ...] = ()
    kwargs: Mapping[str, Any] = field(default_factory=dict)
    response: Any = None
    exception: Optional[BaseException] = None

    def argument(self, name: str, position: Optional[int] = None, default: Any = None) -> Any:
        """
        Look up a call argument by keyword, then by position.

        If the first positional argument is a mapping (the ``create({...})``
        calling style), ``name`` is also looked up inside it.
        """
        if name in self.kwargs:
            return self.kwargs[name]
        if position is not None and len(self.args) > position:
            return self.args[position]
        if self.args and isinstance(self.args[0], Mapping) and name in self.args[0]:
            return self.args[0][name]
        return default

    def input_view(self) -> "CallRecord":
        """The record as seen by input-phase accessors."""
        return CallRecord(instance=self.instance, args=self.args, kwargs=self.kwargs)

    def output_view(self) -> "CallRecord":
        """The record as seen by output-phase accessors."""
        return CallRecord(response=self.response, exception=self.exception)


@dataclass(frozen=True)
class AttributeSpec:
    """One ``{attribute, accessor}`` pair.

    ``accessor`` may be a callable or the name of an accessor registered with
    ``MetamodelRegistry.register_accessor``; names are resolved when the
    metamodel is registered. ``attribute`` may be ``None`` inside events, in
    which case a flat mapping returned by the accessor is merged.
    """

    attribute: Optional[str]
    accessor: Union[Accessor, str]

    def __post_init__(self):
        if self.attribute is not None and not isinstance(self.attribute, str):
            raise ConfigurationError(f"attribute name must be a string, got {self.attribute!r}")
        if not (callable(self.accessor) or isinstance(self.accessor, str)):
            raise ConfigurationError(
                f"accessor for '{self.attribute}' must be callable or a registered accessor name"
            )

    @property
    def is_resolved(self) -> bool:
        return callable(self.accessor)


@dataclass(frozen=True)
class EventConfig:
    """An event emitted on the span, with its own attribute accessors."""

    name: str
    attributes: Tuple[AttributeSpec, ...] = ()

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("event name is required")
        object.__setattr__(self, "attributes", tuple(_to_spec(a) for a in self.attributes))

    @property
    def is_output_phase(self) -> bool:
        return self.name in EventNames.OUTPUT_PHASE

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EventConfig":
        return cls(name=data.get("name", ""), attributes=tuple(data.get("attributes") or ()))


@dataclass(frozen=True)
class MetamodelConfig:
    """Declarative description of the span data extracted from one call."""

    type: Optional[str] = None
    attributes: Tuple[Tuple[AttributeSpec, ...], ...] = ()
    events: Tuple[EventConfig, ...] = ()
    detect_sdk: bool = False

    def __post_init__(self):
        groups = []
        for group in self.attributes:
            if isinstance(group, (AttributeSpec, Mapping)):
                raise ConfigurationError("attributes must be a list of attribute groups (lists)")
            groups.append(tuple(_to_spec(spec) for spec in group))
        object.__setattr__(self, "attributes", tuple(groups))
        object.__setattr__(self, "events", tuple(
            event if isinstance(event, EventConfig) else EventConfig.from_dict(event)
            for event in self.events
        ))

    @property
    def needs_detection(self) -> bool:
        """Whether the SDK Detector must resolve the entity type."""
        return self.detect_sdk or self.type is None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MetamodelConfig":
        """Build a config from the plain ``{type, attributes, events}`` shape."""
        return cls(
            type=data.get("type"),
            attributes=data.get("attributes") or (),
            events=data.get("events") or (),
            detect_sdk=bool(data.get("detect_sdk", False)),
        )


@dataclass(frozen=True)
class MethodMapEntry:
    """A library method to intercept and how to describe its calls."""

    package: str                          # "openai.resources.chat.completions"
    object: str                           # "Completions"
    method: str                           # "create"
    span_name: Optional[str] = None       # defaults to package.object.method
    output_processors: Tuple[MetamodelConfig, ...] = ()
    span_type: Optional[str] = None       # "workflow" entries are not nested
    scope_name: Optional[str] = None      # apply a scope around the call
    scope_values: Optional[Union[Dict[str, Any], Callable[..., Dict[str, Any]]]] = None
    skip_span: bool = False               # scope-only entries create no span

    def __post_init__(self):
        if not self.package or not self.object or not self.method:
            raise ConfigurationError("package, object, and method are required")
        object.__setattr__(self, "output_processors", tuple(
            processor if isinstance(processor, MetamodelConfig) else MetamodelConfig.from_dict(processor)
            for processor in self.output_processors
        ))
        if self.scope_values is not None and not (callable(self.scope_values) or isinstance(self.scope_values, Mapping)):
            raise ConfigurationError("scope_values must be a mapping or a callable")

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.package, self.object, self.method)

    @property
    def target(self) -> str:
        """Dotted attribute path inside ``package``."""
        return f"{self.object}.{self.method}"

    @property
    def name(self) -> str:
        """Span name used for calls through this entry."""
        return self.span_name or f"{self.package}.{self.object}.{self.method}"

    @property
    def has_scopes(self) -> bool:
        return self.scope_name is not None or self.scope_values is not None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MethodMapEntry":
        """Build an entry from the plain method-map dictionary shape."""
        processors = data.get("output_processors", data.get("output_processor")) or ()
        return cls(
            package=data.get("package", ""),
            object=data.get("object", ""),
            method=data.get("method", ""),
            span_name=data.get("span_name") or data.get("spanName"),
            output_processors=tuple(processors),
            span_type=data.get("span_type") or data.get("spanType"),
            scope_name=data.get("scope_name") or data.get("scopeName"),
            scope_values=data.get("scope_values") or data.get("scopeValues"),
            skip_span=bool(data.get("skip_span", data.get("skipSpan", False))),
        )


def _to_spec(spec: Union[AttributeSpec, Mapping[str, Any], Sequence[Any]]) -> AttributeSpec:
    if isinstance(spec, AttributeSpec):
        return spec
    if isinstance(spec, Mapping):
        if "accessor" not in spec:
            raise ConfigurationError(f"accessor not found for attribute {spec.get('attribute')!r}")
        return AttributeSpec(spec.get("attribute"), spec["accessor"])
    raise ConfigurationError(f"invalid attribute spec: {spec!r}")
