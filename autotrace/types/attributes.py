"""
Span attribute and event name constants.

Use these constants instead of magic strings so the span handler, the
exporters and user metamodels agree on key names.
"""


class AutotraceSpanAttributes:
    """Attribute keys written by the span lifecycle manager."""

    # ========== SDK ==========
    SDK_VERSION = "autotrace.sdk.version"
    SDK_LANGUAGE = "autotrace.sdk.language"

    # ========== Span Classification ==========
    SPAN_TYPE = "span.type"
    SPAN_SOURCE = "span.source"
    ENTITY_COUNT = "entity.count"

    # ========== Workflow (root spans) ==========
    WORKFLOW_NAME = "workflow.name"
    WORKFLOW_TYPE = "workflow.type"
    APP_HOSTING_TYPE = "app_hosting.type"
    APP_HOSTING_NAME = "app_hosting.name"

    # ========== SDK Detection ==========
    SDK_NAME = "sdk.name"
    SDK_TYPE = "sdk.type"

    # ========== Errors ==========
    ERROR_TYPE = "error.type"
    ABANDONED = "autotrace.span.abandoned"


class SpanTypes:
    """Well-known values of the ``span.type`` attribute."""

    GENERIC = "generic"
    WORKFLOW = "workflow"
    INFERENCE = "inference"
    INFERENCE_FRAMEWORK = "inference.framework"
    RETRIEVAL = "retrieval"
    EMBEDDING = "embedding"
    AGENTIC_INVOCATION = "agentic.invocation"
    AGENTIC_TOOL_INVOCATION = "agentic.tool.invocation"
    HTTP_PROCESS = "http.process"


class EventNames:
    """Event names with a fixed evaluation phase."""

    DATA_INPUT = "data.input"
    DATA_OUTPUT = "data.output"
    METADATA = "metadata"

    # Events evaluated once the wrapped call has completed
    OUTPUT_PHASE = frozenset({DATA_OUTPUT, METADATA})


WORKFLOW_TYPE_GENERIC = "workflow.generic"

# Package name fragment -> workflow type recorded on root spans
WORKFLOW_TYPE_MAP = {
    "llama_index": "workflow.llamaindex",
    "langchain": "workflow.langchain",
    "langgraph": "workflow.langgraph",
    "haystack": "workflow.haystack",
}

# Environment variable present -> hosting service type
SERVICE_TYPE_MAP = {
    "AZUREML_ENTRY_SCRIPT": "azure.mlw",
    "WEBSITE_SITE_NAME": "azure.asp",
    "FUNCTIONS_WORKER_RUNTIME": "azure.func",
    "AWS_LAMBDA_RUNTIME_API": "aws.lambda",
    "CODESPACES": "github_codespace",
    "VERCEL_URL": "vercel",
}

# Hosting service type -> environment variable holding the service name
SERVICE_NAME_MAP = {
    "azure.asp": "WEBSITE_DEPLOYMENT_ID",
    "azure.func": "WEBSITE_SITE_NAME",
    "azure.mlw": "AZUREML_ENTRY_SCRIPT",
    "aws.lambda": "AWS_LAMBDA_FUNCTION_NAME",
    "github_codespace": "GITHUB_REPOSITORY",
    "vercel": "VERCEL_URL",
}
