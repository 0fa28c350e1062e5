"""
Metamodel evaluation: turn a call record into span attributes and events.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..exceptions import ErrorSeverity, get_error_handler
from ._base import AttributeSpec, CallRecord, EventConfig, MetamodelConfig

logger = logging.getLogger(__name__)

_PRIMITIVES = (bool, str, int, float)


@dataclass
class EvaluatedEvent:
    """An event ready to be added to a span."""

    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=time.time_ns)


@dataclass
class EvaluationResult:
    """Span attributes produced from one metamodel."""

    attributes: Dict[str, Any] = field(default_factory=dict)
    entity_count: int = 0


class MetamodelEvaluator:
    """
    Evaluates ``MetamodelConfig`` accessors against a ``CallRecord``.

    Attribute groups are evaluated in order and every accessor in a group is
    evaluated independently: an accessor that raises or returns ``None``
    contributes no key and does not stop its group. When two groups produce
    the same attribute name, the first group wins.
    """

    def evaluate_attributes(self, config: MetamodelConfig, record: CallRecord) -> EvaluationResult:
        result = EvaluationResult()
        for group in config.attributes:
            group_set = False
            for spec in group:
                value = self._evaluate_spec(spec, record)
                if value is None or spec.attribute is None:
                    continue
                group_set = True
                if spec.attribute in result.attributes:
                    logger.debug(f"Attribute '{spec.attribute}' already set by an earlier group, keeping first value")
                    continue
                result.attributes[spec.attribute] = value
            if group_set:
                result.entity_count += 1
        return result

    def evaluate_events(self, config: MetamodelConfig, record: CallRecord, output_phase: bool) -> List[EvaluatedEvent]:
        """
        Evaluate the events declared for one call phase.

        Input-phase events see only ``instance``/``args``/``kwargs``;
        output-phase events (``data.output`` and ``metadata``) see only
        ``response``/``exception``.
        """
        view = record.output_view() if output_phase else record.input_view()
        return [
            self._evaluate_event(event, view)
            for event in config.events
            if event.is_output_phase == output_phase
        ]

    def _evaluate_event(self, event: EventConfig, record: CallRecord) -> EvaluatedEvent:
        evaluated = EvaluatedEvent(name=event.name)
        for spec in event.attributes:
            value = self._evaluate_spec(spec, record, coerce=spec.attribute is not None)
            if value is None:
                continue
            if spec.attribute:
                evaluated.attributes[spec.attribute] = value
            elif _is_flat_mapping(value):
                evaluated.attributes.update(value)
        return evaluated

    def _evaluate_spec(self, spec: AttributeSpec, record: CallRecord, coerce: bool = True) -> Any:
        try:
            value = spec.accessor(record)
        except Exception as e:
            get_error_handler().handle_error(
                e, "metamodel", f"accessor:{spec.attribute}", ErrorSeverity.LOW
            )
            return None
        if value is None:
            logger.debug(f"Accessor returned None for attribute: {spec.attribute}")
            return None
        return to_attribute_value(value) if coerce else value


def to_attribute_value(value: Any) -> Optional[Any]:
    """Coerce a value into something OpenTelemetry accepts as an attribute."""
    if value is None or isinstance(value, _PRIMITIVES):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Sequence):
        items = [item for item in value if item is not None]
        if all(isinstance(item, str) for item in items):
            return list(items)
        if all(isinstance(item, bool) for item in items):
            return list(items)
        if all(isinstance(item, (int, float)) and not isinstance(item, bool) for item in items):
            return [float(item) for item in items] if any(isinstance(i, float) for i in items) else list(items)
        return [item if isinstance(item, str) else _to_json(item) for item in items]
    return _to_json(value)


def _to_json(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def _is_flat_mapping(value: Any) -> bool:
    return (
        isinstance(value, Mapping)
        and len(value) > 0
        and all(isinstance(key, str) for key in value)
        and all(isinstance(item, (str, int, float)) for item in value.values())
    )
