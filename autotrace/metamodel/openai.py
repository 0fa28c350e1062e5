"""Bundled method map for the OpenAI Python SDK (chat completions)."""

from typing import Any, List, Optional

from ._base import AttributeSpec, CallRecord, EventConfig, MetamodelConfig, MethodMapEntry
from .detector import detect_sdk_type


def _model(call: CallRecord) -> Optional[str]:
    return call.argument("model_name") or call.argument("model")


def _inference_type(call: CallRecord) -> str:
    detected = detect_sdk_type(call.instance, call.args, call.kwargs)
    if detected == "inference.openai":
        return detected
    # Same client class, different host
    return "inference.azure_openai"


def _endpoint(call: CallRecord) -> Optional[str]:
    client = getattr(call.instance, "_client", None)
    base_url = getattr(client, "base_url", None)
    return str(base_url) if base_url else None


def _input_messages(call: CallRecord) -> List[str]:
    messages = call.argument("messages") or []
    return [
        f"{{'{_get(msg, 'role')}': '{_get(msg, 'content')}'}}"
        for msg in messages
        if _get(msg, "role") and _get(msg, "content")
    ]


def _response_text(call: CallRecord) -> List[str]:
    return [call.response.choices[0].message.content]


def _usage(call: CallRecord) -> dict:
    usage = call.response.usage
    return {
        "completion_tokens": usage.completion_tokens,
        "prompt_tokens": usage.prompt_tokens,
        "total_tokens": usage.total_tokens,
    }


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


INFERENCE = MetamodelConfig(
    type="inference",
    attributes=[
        [
            AttributeSpec("type", _inference_type),
            AttributeSpec("deployment", _model),
            AttributeSpec("inference_endpoint", _endpoint),
        ],
        [
            AttributeSpec("model.name", _model),
            AttributeSpec("model.type", lambda call: "model.llm." + _model(call)),
        ],
    ],
    events=[
        EventConfig("data.input", [AttributeSpec("input", _input_messages)]),
        EventConfig("data.output", [AttributeSpec("response", _response_text)]),
        EventConfig("metadata", [AttributeSpec(None, _usage)]),
    ],
)

METHODS = [
    MethodMapEntry(
        package="openai.resources.chat.completions",
        object="Completions",
        method="create",
        span_name="openai.chat.completions.create",
        output_processors=[INFERENCE],
    ),
    MethodMapEntry(
        package="openai.resources.chat.completions",
        object="AsyncCompletions",
        method="create",
        span_name="openai.chat.completions.create",
        output_processors=[INFERENCE],
    ),
]
