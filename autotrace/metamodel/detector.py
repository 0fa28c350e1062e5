"""
SDK detection.

Resolves which vendor SDK sits behind an intercepted call so that entities
declared without a fixed type (or with ``detect_sdk=True``) can be named.
Pattern classes are checked across all configured SDKs in a fixed order:
base URL, model prefix, constructor name, then the wrapped client's base URL.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..exceptions import ErrorSeverity, get_error_handler

logger = logging.getLogger(__name__)

UNKNOWN_SDK = "unknown"


@dataclass(frozen=True)
class SdkConfig:
    """Pattern record identifying one SDK."""

    name: str
    type: str
    base_url: Tuple[str, ...] = ()
    model_prefix: Tuple[str, ...] = ()
    constructor_name: Tuple[str, ...] = ()
    client_base_url: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SdkConfig":
        patterns = data.get("patterns", data)
        return cls(
            name=data["name"],
            type=data["type"],
            base_url=tuple(patterns.get("base_url") or patterns.get("baseUrl") or ()),
            model_prefix=tuple(patterns.get("model_prefix") or patterns.get("modelPrefix") or ()),
            constructor_name=tuple(patterns.get("constructor_name") or patterns.get("constructorName") or ()),
            client_base_url=tuple(patterns.get("client_base_url") or patterns.get("clientBaseUrl") or ()),
        )


@dataclass(frozen=True)
class SdkDetectionResult:
    sdk_name: str
    sdk_type: Optional[str] = None

    @classmethod
    def unknown(cls) -> "SdkDetectionResult":
        return cls(sdk_name=UNKNOWN_SDK, sdk_type=None)

    @property
    def is_known(self) -> bool:
        return self.sdk_name != UNKNOWN_SDK

    @property
    def entity_type(self) -> Optional[str]:
        """Type string recorded on the span, e.g. ``inference.anthropic``."""
        if not self.is_known:
            return None
        return f"{self.sdk_type}.{self.sdk_name}" if self.sdk_type else self.sdk_name


DEFAULT_SDK_CONFIGS: Tuple[SdkConfig, ...] = (
    SdkConfig(
        name="anthropic",
        type="inference",
        base_url=("api.anthropic.com",),
        model_prefix=("claude-",),
        constructor_name=("Anthropic",),
        client_base_url=("anthropic.com",),
    ),
    SdkConfig(
        name="openai",
        type="inference",
        base_url=("api.openai.com",),
        model_prefix=("gpt-",),
        constructor_name=("OpenAI",),
        client_base_url=("openai.com",),
    ),
)


@dataclass
class SdkDetector:
    """
    Detect the SDK behind a call target from ordered pattern classes.

    The first pattern class that matches any config decides the result, so a
    base URL match for one SDK beats a model prefix match for another.
    """

    configs: Sequence[SdkConfig] = field(default_factory=lambda: DEFAULT_SDK_CONFIGS)

    def detect(self, instance: Any, args: Sequence[Any] = (),
               kwargs: Optional[Mapping[str, Any]] = None) -> SdkDetectionResult:
        kwargs = kwargs or {}
        checks = (
            ("base_url", lambda: _instance_base_url(instance), _contains),
            ("model_prefix", lambda: _model_name(args, kwargs), _startswith),
            ("constructor_name", lambda: _constructor_names(instance), _contains),
            ("client_base_url", lambda: _client_base_url(instance), _contains),
        )

        for pattern_class, extract, match in checks:
            try:
                values = extract()
                if not values:
                    continue
                if isinstance(values, str):
                    values = [values]
                for config in self.configs:
                    patterns = getattr(config, pattern_class)
                    if any(match(value, pattern) for value in values for pattern in patterns):
                        logger.debug(f"Detected SDK {config.name} by {pattern_class}")
                        return SdkDetectionResult(sdk_name=config.name, sdk_type=config.type)
            except Exception as e:
                get_error_handler().handle_error(
                    e, "detector", pattern_class, ErrorSeverity.LOW
                )

        return SdkDetectionResult.unknown()


def _contains(value: str, pattern: str) -> bool:
    return pattern in value


def _startswith(value: str, pattern: str) -> bool:
    return value.startswith(pattern)


def _as_url(value: Any) -> Optional[str]:
    # httpx.URL and similar objects render to the URL string
    return str(value) if value else None


def _instance_base_url(instance: Any) -> Optional[str]:
    for name in ("base_url", "_base_url", "baseURL"):
        value = getattr(instance, name, None)
        if value:
            return _as_url(value)
    return None


def _client_base_url(instance: Any) -> Optional[str]:
    client = getattr(instance, "_client", None)
    if client is None:
        return None
    return _instance_base_url(client)


def _model_name(args: Sequence[Any], kwargs: Mapping[str, Any]) -> Optional[str]:
    model = kwargs.get("model")
    if model is None and args:
        first = args[0]
        model = first.get("model") if isinstance(first, Mapping) else getattr(first, "model", None)
    return model if isinstance(model, str) else None


def _constructor_names(instance: Any) -> List[str]:
    names = [type(instance).__name__]
    client = getattr(instance, "_client", None)
    if client is not None:
        names.append(type(client).__name__)
    return names


# Process-wide detector used by the span lifecycle manager
_detector = SdkDetector()


def get_detector() -> SdkDetector:
    return _detector


def set_sdk_configs(configs: Iterable[SdkConfig]) -> None:
    """Replace the pattern table used by the process-wide detector."""
    global _detector
    _detector = SdkDetector(configs=tuple(configs))


def detect_sdk_type(instance: Any, args: Sequence[Any] = (),
                    kwargs: Optional[Mapping[str, Any]] = None) -> Optional[str]:
    """Entity type for ``instance``, e.g. ``inference.openai``; ``None`` if unknown."""
    return get_detector().detect(instance, args, kwargs).entity_type
