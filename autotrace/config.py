"""
Configuration management for the autotrace SDK.

Supports both programmatic configuration and environment variable-based configuration
following the 12-factor app pattern.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

SUPPORTED_EXPORTERS = ("file", "console", "otlp", "none")


@dataclass
class AutotraceConfig:
    """
    Configuration for the autotrace SDK.

    All parameters can be set programmatically or via environment variables.
    Environment variables take precedence over default values but not over
    explicit programmatic configuration.
    """

    # ========== Workflow ==========
    workflow_name: str = "generic"
    """Name of the application/workflow, recorded as the service name"""

    # ========== Export Configuration ==========
    exporter: str = "file"
    """Comma separated exporter names: 'file', 'console', 'otlp' or 'none'"""

    output_path: str = "./.autotrace"
    """Directory used by the file exporter"""

    file_prefix: str = "autotrace_trace_"
    """Prefix of trace files written by the file exporter"""

    otlp_endpoint: Optional[str] = None
    """OTLP/HTTP traces endpoint (required when 'otlp' is selected)"""

    otlp_headers: Dict[str, str] = field(default_factory=dict)
    """Extra HTTP headers sent with OTLP exports"""

    timeout: int = 30
    """OTLP request timeout in seconds"""

    # ========== Tracing Control ==========
    tracing_enabled: bool = True
    """Enable/disable tracing (if False, wrappers pass calls straight through)"""

    debug: bool = False
    """Enable debug logging"""

    # ========== Batch Configuration ==========
    flush_at: int = 512
    """Maximum batch size before flush"""

    flush_interval: float = 5.0
    """Maximum delay in seconds before flush (0.005-60.0)"""

    max_queue_size: int = 2048
    """Maximum queue size for pending spans"""

    export_timeout: int = 30000
    """Export timeout in milliseconds"""

    # ========== Scope Configuration ==========
    scope_config_path: Optional[str] = None
    """Directory holding the scope configuration file"""

    scope_method_file: str = "autotrace_scopes.json"
    """Name of the scope configuration file inside scope_config_path"""

    def __post_init__(self):
        """Validate configuration after initialization."""
        self.validate()

    @property
    def exporter_names(self) -> List[str]:
        """Exporter names, normalized and de-duplicated in order."""
        names: List[str] = []
        for name in self.exporter.split(","):
            name = name.strip().lower()
            if name and name not in names:
                names.append(name)
        return names

    def validate(self):
        """
        Validate configuration parameters.

        Raises:
            ValueError: If configuration is invalid
        """
        if not self.workflow_name:
            raise ValueError("workflow_name cannot be empty")

        if not self.exporter_names:
            raise ValueError("at least one exporter must be configured")

        if "otlp" in self.exporter_names and not self.otlp_endpoint:
            raise ValueError("otlp_endpoint is required when the 'otlp' exporter is selected")

        if self.otlp_endpoint and not self.otlp_endpoint.startswith(("http://", "https://")):
            raise ValueError("otlp_endpoint must start with http:// or https://")

        if not 1 <= self.flush_at <= 10000:
            raise ValueError("flush_at must be between 1 and 10000")

        if not 0.005 <= self.flush_interval <= 60.0:
            raise ValueError("flush_interval must be between 0.005 and 60.0 seconds")

        if self.timeout <= 0:
            raise ValueError("timeout must be positive")

        if self.max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1")

        if self.export_timeout < 1000:
            raise ValueError("export_timeout must be at least 1000 milliseconds")

    @classmethod
    def from_env(cls, **overrides) -> "AutotraceConfig":
        """
        Create configuration from environment variables.

        Environment variables:
            AUTOTRACE_WORKFLOW_NAME - Workflow name (default: "generic")
            AUTOTRACE_EXPORTER - Exporters, comma separated (default: "file")
            AUTOTRACE_TRACE_OUTPUT_PATH - File exporter directory (default: ./.autotrace)
            AUTOTRACE_FILE_PREFIX - File exporter prefix (default: autotrace_trace_)
            AUTOTRACE_OTLP_ENDPOINT - OTLP/HTTP traces endpoint
            AUTOTRACE_TIMEOUT - OTLP timeout in seconds (default: 30)
            AUTOTRACE_TRACING_ENABLED - Enable tracing (default: true)
            AUTOTRACE_DEBUG - Enable debug logging (default: false)
            AUTOTRACE_FLUSH_AT - Batch size (default: 512)
            AUTOTRACE_FLUSH_INTERVAL - Flush interval in seconds (default: 5.0)
            AUTOTRACE_MAX_QUEUE_SIZE - Queue size (default: 2048)
            AUTOTRACE_EXPORT_TIMEOUT - Export timeout in ms (default: 30000)
            AUTOTRACE_SCOPE_CONFIG_PATH - Directory of the scope config file
            AUTOTRACE_SCOPE_METHOD_FILE - Scope config file name

        Args:
            **overrides: Override specific configuration values

        Returns:
            AutotraceConfig instance

        Raises:
            ValueError: If environment variables are invalid
        """
        workflow_name = overrides.get("workflow_name") or os.getenv(
            "AUTOTRACE_WORKFLOW_NAME", "generic"
        )

        # Export
        exporter = overrides.get("exporter") or os.getenv("AUTOTRACE_EXPORTER", "file")
        output_path = overrides.get("output_path") or os.getenv(
            "AUTOTRACE_TRACE_OUTPUT_PATH", "./.autotrace"
        )
        file_prefix = overrides.get("file_prefix") or os.getenv(
            "AUTOTRACE_FILE_PREFIX", "autotrace_trace_"
        )
        otlp_endpoint = overrides.get("otlp_endpoint") or os.getenv("AUTOTRACE_OTLP_ENDPOINT")
        otlp_headers = overrides.get("otlp_headers") or {}
        timeout = int(overrides.get("timeout") or os.getenv("AUTOTRACE_TIMEOUT", "30"))

        # Tracing control
        tracing_enabled = cls._parse_bool(
            overrides.get("tracing_enabled"),
            os.getenv("AUTOTRACE_TRACING_ENABLED", "true")
        )
        debug = cls._parse_bool(
            overrides.get("debug"),
            os.getenv("AUTOTRACE_DEBUG", "false")
        )

        # Batch configuration
        flush_at = int(overrides.get("flush_at") or os.getenv("AUTOTRACE_FLUSH_AT", "512"))
        flush_interval = float(
            overrides.get("flush_interval") or os.getenv("AUTOTRACE_FLUSH_INTERVAL", "5.0")
        )
        max_queue_size = int(
            overrides.get("max_queue_size") or os.getenv("AUTOTRACE_MAX_QUEUE_SIZE", "2048")
        )
        export_timeout = int(
            overrides.get("export_timeout") or os.getenv("AUTOTRACE_EXPORT_TIMEOUT", "30000")
        )

        # Scopes
        scope_config_path = overrides.get("scope_config_path") or os.getenv(
            "AUTOTRACE_SCOPE_CONFIG_PATH"
        )
        scope_method_file = overrides.get("scope_method_file") or os.getenv(
            "AUTOTRACE_SCOPE_METHOD_FILE", "autotrace_scopes.json"
        )

        return cls(
            workflow_name=workflow_name,
            exporter=exporter,
            output_path=output_path,
            file_prefix=file_prefix,
            otlp_endpoint=otlp_endpoint,
            otlp_headers=otlp_headers,
            timeout=timeout,
            tracing_enabled=tracing_enabled,
            debug=debug,
            flush_at=flush_at,
            flush_interval=flush_interval,
            max_queue_size=max_queue_size,
            export_timeout=export_timeout,
            scope_config_path=scope_config_path,
            scope_method_file=scope_method_file,
        )

    @staticmethod
    def _parse_bool(override_value: Optional[bool], env_value: str) -> bool:
        """
        Parse boolean value from override or environment variable.

        Args:
            override_value: Explicit override value (takes precedence)
            env_value: Environment variable string value

        Returns:
            Boolean value
        """
        if override_value is not None:
            return bool(override_value)

        env_lower = env_value.lower().strip()
        return env_lower in ("true", "1", "yes", "on", "enabled")

    def get_scope_config_file(self) -> Optional[str]:
        """Full path of the scope configuration file, if a directory is configured."""
        if not self.scope_config_path:
            return None
        return os.path.join(self.scope_config_path, self.scope_method_file)

    def __repr__(self) -> str:
        return (
            f"AutotraceConfig("
            f"workflow_name='{self.workflow_name}', "
            f"exporter='{self.exporter}', "
            f"tracing_enabled={self.tracing_enabled}, "
            f"debug={self.debug})"
        )
