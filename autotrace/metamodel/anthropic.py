"""Bundled method map for the Anthropic Python SDK (messages)."""

import json
from typing import Any, List, Optional

from ._base import AttributeSpec, CallRecord, EventConfig, MetamodelConfig, MethodMapEntry
from .detector import detect_sdk_type


def _model(call: CallRecord) -> str:
    return call.argument("model") or "unknown_model"


def _deployment(call: CallRecord) -> Optional[str]:
    for name in ("engine", "deployment", "deployment_name", "deployment_id", "azure_deployment"):
        value = getattr(call.instance, name, None)
        if value:
            return value
    return None


def _endpoint(call: CallRecord) -> str:
    client = getattr(call.instance, "_client", None)
    base_url = getattr(client, "base_url", None)
    return str(base_url) if base_url else "unknown_endpoint"


def _input_messages(call: CallRecord) -> List[str]:
    messages = call.argument("messages")
    if not isinstance(messages, list):
        return ["unknown_input"]
    return [json.dumps({_get(msg, "role") or "unknown": _get(msg, "content")}, default=str) for msg in messages]


def _response_text(call: CallRecord) -> Optional[str]:
    if call.exception is not None:
        return str(call.exception)
    content = getattr(call.response, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        text = "".join(_get(item, "text") or "" for item in content if _get(item, "type") == "text")
        if text:
            return text
    return "unknown_response"


def _status(call: CallRecord) -> str:
    return "error" if call.exception is not None else "success"


def _status_code(call: CallRecord) -> Optional[int]:
    return getattr(call.exception, "status_code", None) if call.exception is not None else None


def _usage(call: CallRecord) -> dict:
    usage = call.response.usage
    prompt, completion = usage.input_tokens, usage.output_tokens
    return {
        "completion_tokens": completion,
        "prompt_tokens": prompt,
        "total_tokens": prompt + completion,
    }


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


INFERENCE = MetamodelConfig(
    type="inference",
    detect_sdk=True,
    attributes=[
        [
            AttributeSpec("type", lambda call: detect_sdk_type(call.instance, call.args, call.kwargs)),
            AttributeSpec("inference_endpoint", _endpoint),
            AttributeSpec("deployment", _deployment),
            AttributeSpec("provider_name", lambda call: getattr(call.instance, "provider_name", None) or "unknown_provider"),
        ],
        [
            AttributeSpec("model.name", _model),
            AttributeSpec("model.type", lambda call: "model.llm." + _model(call)),
        ],
    ],
    events=[
        EventConfig("data.input", [AttributeSpec("input", _input_messages)]),
        EventConfig("data.output", [
            AttributeSpec("response", _response_text),
            AttributeSpec("status", _status),
            AttributeSpec("status_code", _status_code),
        ]),
        EventConfig("metadata", [AttributeSpec(None, _usage)]),
    ],
)

METHODS = [
    MethodMapEntry(
        package="anthropic.resources.messages",
        object=obj,
        method="create",
        span_name="anthropic.messages.create",
        output_processors=[INFERENCE],
    )
    for obj in ("Messages", "AsyncMessages")
]
