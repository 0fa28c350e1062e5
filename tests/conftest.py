"""Pytest configuration and fixtures for autotrace tests."""

import asyncio
import sys
import types

import pytest
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from autotrace import AttributeSpec, MetamodelConfig, MethodMapEntry, setup_autotrace
from autotrace.context import reset_http_headers
from autotrace.exceptions import get_error_handler
from autotrace.instrumentation import reset_autotrace
from autotrace.metamodel import DEFAULT_SDK_CONFIGS, get_registry, set_sdk_configs

FAKE_MODULE = "autotrace_testlib"


def _build_fake_module() -> types.ModuleType:
    """A throwaway client library; classes are fresh for every test."""
    module = types.ModuleType(FAKE_MODULE)

    async def produce(value):
        await asyncio.sleep(0)
        return value

    class Paginator:
        """Awaitable for the full list, async-iterable item by item."""

        def __init__(self, items):
            self.items = list(items)

        def __await__(self):
            return produce(self.items).__await__()

        def __aiter__(self):
            return self._iterate()

        async def _iterate(self):
            for item in self.items:
                await asyncio.sleep(0)
                yield item

    class Client:
        base_url = None

        def __init__(self):
            self.error = ValueError("boom")

        def invoke(self, *args, **kwargs):
            return "result"

        def fail(self):
            raise self.error

        def outer(self):
            return self.invoke()

        def handle(self):
            return self.invoke()

        def deferred(self, value):
            return produce(value)

        def listing(self, *items):
            return Paginator(items)

        def schedule(self):
            loop = asyncio.get_running_loop()
            future = loop.create_future()
            loop.call_soon(future.set_result, "done")
            return future

        async def ainvoke(self, value=None):
            await asyncio.sleep(0)
            return value

        async def afail(self):
            await asyncio.sleep(0)
            raise self.error

        async def aouter(self):
            return await self.ainvoke("inner")

        async def ahang(self):
            await asyncio.sleep(10)

    class OpenAI(Client):
        pass

    class HostedClient(Client):
        def __init__(self, base_url):
            super().__init__()
            self.base_url = base_url

    module.Client = Client
    module.OpenAI = OpenAI
    module.HostedClient = HostedClient
    module.Paginator = Paginator
    module.produce = produce
    return module


@pytest.fixture(autouse=True)
def reset_autotrace_state():
    """Reset process-wide singletons around every test."""
    reset_autotrace()
    get_registry().clear()
    get_error_handler().reset_errors()
    reset_http_headers()
    set_sdk_configs(DEFAULT_SDK_CONFIGS)
    yield
    reset_autotrace()
    get_error_handler().reset_errors()
    set_sdk_configs(DEFAULT_SDK_CONFIGS)


@pytest.fixture
def fake_module(monkeypatch):
    """Register the fake client library in sys.modules."""
    module = _build_fake_module()
    monkeypatch.setitem(sys.modules, FAKE_MODULE, module)
    return module


@pytest.fixture
def span_exporter():
    """In-memory exporter collecting finished spans."""
    return InMemorySpanExporter()


@pytest.fixture
def make_entry():
    """Build a method map entry targeting the fake client."""

    def _make_entry(method, attributes=None, events=None, object="Client", type="test", **kwargs):
        processors = []
        if attributes is not None or events is not None:
            processors.append(MetamodelConfig(type=type, attributes=attributes or [], events=events or []))
        kwargs.setdefault("span_name", f"testlib.{method}")
        return MethodMapEntry(
            package=FAKE_MODULE,
            object=object,
            method=method,
            output_processors=processors,
            **kwargs,
        )

    return _make_entry


@pytest.fixture
def instrument(span_exporter):
    """Set up autotrace with synchronous export into ``span_exporter``."""

    def _instrument(*entries, **kwargs):
        return setup_autotrace(
            "test-workflow",
            wrapper_methods=list(entries),
            span_processors=[SimpleSpanProcessor(span_exporter)],
            **kwargs,
        )

    return _instrument


@pytest.fixture
def fixed_name_group():
    """A single attribute group producing ``name == "fixed"``."""
    return [[AttributeSpec("name", lambda call: "fixed")]]
