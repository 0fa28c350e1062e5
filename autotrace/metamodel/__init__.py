"""
Declarative metamodels: what to intercept and what to extract from each call.
"""

from ._base import (
    Accessor,
    AttributeSpec,
    CallRecord,
    EventConfig,
    MetamodelConfig,
    MethodMapEntry,
)
from .detector import (
    DEFAULT_SDK_CONFIGS,
    SdkConfig,
    SdkDetectionResult,
    SdkDetector,
    detect_sdk_type,
    get_detector,
    set_sdk_configs,
)
from .evaluator import EvaluatedEvent, EvaluationResult, MetamodelEvaluator, to_attribute_value
from .registry import MetamodelRegistry, get_registry


def default_method_map():
    """Method map entries bundled for the OpenAI and Anthropic SDKs."""
    from . import anthropic, openai

    return [*openai.METHODS, *anthropic.METHODS]


__all__ = [
    "Accessor",
    "AttributeSpec",
    "CallRecord",
    "EventConfig",
    "MetamodelConfig",
    "MethodMapEntry",
    "SdkConfig",
    "SdkDetectionResult",
    "SdkDetector",
    "DEFAULT_SDK_CONFIGS",
    "detect_sdk_type",
    "get_detector",
    "set_sdk_configs",
    "EvaluatedEvent",
    "EvaluationResult",
    "MetamodelEvaluator",
    "to_attribute_value",
    "MetamodelRegistry",
    "get_registry",
    "default_method_map",
]
