"""
End-to-end tests for automatic instrumentation.

Targets are methods of a throwaway module registered in sys.modules; spans are
collected synchronously with an in-memory exporter.
"""

import asyncio
import threading
from unittest.mock import MagicMock

import pytest
import wrapt
from opentelemetry.sdk.trace import SpanProcessor
from opentelemetry.trace import StatusCode

from autotrace import (
    AttributeSpec,
    ConfigurationError,
    EventConfig,
    MetamodelConfig,
    bind_scope,
    get_autotrace,
    intercept,
    run_with_scope,
    scoped,
    setup_autotrace,
)
from autotrace.exceptions import get_error_handler
from autotrace.instrumentation import MethodInterceptor, get_span_manager, get_wrapped_entry
from autotrace.metamodel import get_registry
from autotrace.types import AutotraceSpanAttributes


def _value_group():
    return [[AttributeSpec("value", lambda call: call.argument("value", 0))]]


class TestSpanProduction:
    """Spans produced for plain synchronous calls."""

    def test_successful_call_produces_one_ok_span(self, fake_module, instrument, span_exporter, make_entry,
                                                  fixed_name_group):
        instrument(make_entry("invoke", attributes=fixed_name_group))

        result = fake_module.Client().invoke()

        assert result == "result"
        spans = span_exporter.get_finished_spans()
        assert len(spans) == 1
        span = spans[0]
        assert span.name == "testlib.invoke"
        assert span.attributes["name"] == "fixed"
        assert span.status.status_code == StatusCode.OK
        assert span.end_time >= span.start_time

    def test_span_name_defaults_to_dotted_path(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("invoke", span_name=None))

        fake_module.Client().invoke()

        assert span_exporter.get_finished_spans()[0].name == "autotrace_testlib.Client.invoke"

    def test_default_attributes(self, fake_module, instrument, span_exporter, make_entry, fixed_name_group):
        instrument(make_entry("invoke", attributes=fixed_name_group, type="inference"))

        fake_module.Client().invoke()

        attributes = span_exporter.get_finished_spans()[0].attributes
        assert attributes[AutotraceSpanAttributes.WORKFLOW_NAME] == "test-workflow"
        assert attributes[AutotraceSpanAttributes.SPAN_TYPE] == "inference"
        assert attributes[AutotraceSpanAttributes.ENTITY_COUNT] == 1
        assert attributes[AutotraceSpanAttributes.SDK_LANGUAGE] == "python"
        assert attributes[AutotraceSpanAttributes.WORKFLOW_TYPE] == "workflow.generic"
        assert attributes[AutotraceSpanAttributes.APP_HOSTING_TYPE].startswith("app_hosting.")

    def test_entry_without_metamodel_is_generic(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("invoke"))

        fake_module.Client().invoke()

        attributes = span_exporter.get_finished_spans()[0].attributes
        assert attributes[AutotraceSpanAttributes.SPAN_TYPE] == "generic"
        assert AutotraceSpanAttributes.ENTITY_COUNT not in attributes

    def test_arguments_and_result_pass_through(self, fake_module, instrument, make_entry):
        calls = []

        def record(self, *args, **kwargs):
            calls.append((args, kwargs))
            return {"ok": True}

        fake_module.Client.invoke = record
        instrument(make_entry("invoke"))

        result = fake_module.Client().invoke(1, 2, key="value")

        assert result == {"ok": True}
        assert calls == [((1, 2), {"key": "value"})]

    def test_resource_carries_workflow_name(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("invoke"))

        fake_module.Client().invoke()

        span = span_exporter.get_finished_spans()[0]
        assert span.resource.attributes["service.name"] == "test-workflow"


class TestErrors:
    """Errors raised by wrapped calls and by instrumentation itself."""

    def test_error_is_reraised_unchanged(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("fail"))
        client = fake_module.Client()

        with pytest.raises(ValueError) as exc_info:
            client.fail()

        assert exc_info.value is client.error
        span = span_exporter.get_finished_spans()[0]
        assert span.status.status_code == StatusCode.ERROR
        assert span.attributes[AutotraceSpanAttributes.ERROR_TYPE] == "ValueError"
        assert any(event.name == "exception" for event in span.events)

    def test_broken_accessor_does_not_escape(self, fake_module, instrument, span_exporter, make_entry):
        group = [[
            AttributeSpec("broken", lambda call: 1 / 0),
            AttributeSpec("name", lambda call: "fixed"),
        ]]
        instrument(make_entry("invoke", attributes=group))

        assert fake_module.Client().invoke() == "result"

        span = span_exporter.get_finished_spans()[0]
        assert "broken" not in span.attributes
        assert span.attributes["name"] == "fixed"
        assert span.status.status_code == StatusCode.OK

    def test_exporter_failure_is_swallowed(self, fake_module, make_entry):
        class FailingExporter:
            def export(self, spans):
                raise ConnectionError("collector down")

            def shutdown(self):
                pass

            def force_flush(self, timeout_millis=30000):
                return True

        autotrace = setup_autotrace(
            "test-workflow",
            exporters=[FailingExporter()],
            wrapper_methods=[make_entry("invoke")],
        )

        assert fake_module.Client().invoke() == "result"
        autotrace.force_flush()

        counts = get_error_handler().get_error_summary("exporter")["error_counts"]
        assert counts.get("exporter.export:FailingExporter") == 1

    def test_span_processors_and_exporters_are_exclusive(self, span_exporter):
        from opentelemetry.sdk.trace.export import SimpleSpanProcessor

        with pytest.raises(ConfigurationError):
            setup_autotrace(
                "test-workflow",
                exporters=[span_exporter],
                span_processors=[SimpleSpanProcessor(span_exporter)],
            )


class TestNesting:
    """Parent/child linkage across nested calls."""

    def test_nested_sync_calls(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("outer"), make_entry("invoke"))

        fake_module.Client().outer()

        inner, outer = span_exporter.get_finished_spans()
        assert inner.name == "testlib.invoke"
        assert outer.name == "testlib.outer"
        assert inner.parent.span_id == outer.context.span_id
        assert inner.context.trace_id == outer.context.trace_id
        assert outer.parent is None

    def test_sequential_calls_are_siblings(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("invoke"))
        client = fake_module.Client()

        client.invoke()
        client.invoke()

        first, second = span_exporter.get_finished_spans()
        assert first.parent is None
        assert second.parent is None
        assert first.context.trace_id != second.context.trace_id

    @pytest.mark.asyncio
    async def test_nested_async_calls(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("aouter"), make_entry("ainvoke", attributes=_value_group()))

        assert await fake_module.Client().aouter() == "inner"

        inner, outer = span_exporter.get_finished_spans()
        assert inner.parent.span_id == outer.context.span_id
        assert inner.attributes["value"] == "inner"

    def test_nested_workflow_entries_are_skipped(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("outer", span_type="workflow"), make_entry("invoke", span_type="workflow"))

        fake_module.Client().outer()

        spans = span_exporter.get_finished_spans()
        assert [span.name for span in spans] == ["testlib.outer"]
        assert spans[0].attributes[AutotraceSpanAttributes.SPAN_TYPE] == "workflow"


class TestAsync:
    """Async call contracts."""

    @pytest.mark.asyncio
    async def test_coroutine_function(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("ainvoke", attributes=_value_group()))

        pending = fake_module.Client().ainvoke("x")
        assert span_exporter.get_finished_spans() == ()

        assert await pending == "x"
        span = span_exporter.get_finished_spans()[0]
        assert span.status.status_code == StatusCode.OK
        assert span.attributes["value"] == "x"

    @pytest.mark.asyncio
    async def test_coroutine_function_error(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("afail"))
        client = fake_module.Client()

        with pytest.raises(ValueError) as exc_info:
            await client.afail()

        assert exc_info.value is client.error
        assert span_exporter.get_finished_spans()[0].status.status_code == StatusCode.ERROR

    @pytest.mark.asyncio
    async def test_sync_call_returning_awaitable(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("deferred"))

        pending = fake_module.Client().deferred("later")
        assert span_exporter.get_finished_spans() == ()

        assert await pending == "later"
        span = span_exporter.get_finished_spans()[0]
        assert span.name == "testlib.deferred"
        assert span.status.status_code == StatusCode.OK

    @pytest.mark.asyncio
    async def test_awaitable_object_supports_async_iteration(self, fake_module, instrument, span_exporter,
                                                             make_entry):
        instrument(make_entry("listing"))

        pages = fake_module.Client().listing("a", "b")
        assert isinstance(pages, fake_module.Paginator)
        assert pages.items == ["a", "b"]

        assert [item async for item in pages] == ["a", "b"]
        spans = span_exporter.get_finished_spans()
        assert len(spans) == 1
        assert spans[0].name == "testlib.listing"
        assert spans[0].status.status_code == StatusCode.OK

    @pytest.mark.asyncio
    async def test_awaitable_object_can_be_awaited(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("listing"))

        pages = fake_module.Client().listing("a", "b")
        assert span_exporter.get_finished_spans() == ()

        assert await pages == ["a", "b"]
        spans = span_exporter.get_finished_spans()
        assert len(spans) == 1
        assert spans[0].status.status_code == StatusCode.OK

    @pytest.mark.asyncio
    async def test_future_is_returned_unchanged(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("schedule"))

        future = fake_module.Client().schedule()

        assert isinstance(future, asyncio.Future)
        assert await future == "done"
        await asyncio.sleep(0)
        span = span_exporter.get_finished_spans()[0]
        assert span.status.status_code == StatusCode.OK

    @pytest.mark.asyncio
    async def test_cancelled_call_ends_with_error(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("ahang"))

        task = asyncio.ensure_future(fake_module.Client().ahang())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        span = span_exporter.get_finished_spans()[0]
        assert span.status.status_code == StatusCode.ERROR
        assert span.attributes[AutotraceSpanAttributes.ERROR_TYPE] == "CancelledError"

    def test_abandoned_span_is_finalized_on_shutdown(self, fake_module, instrument, span_exporter, make_entry):
        autotrace = instrument(make_entry("deferred"))

        pending = fake_module.Client().deferred("never")
        assert span_exporter.get_finished_spans() == ()

        autotrace.shutdown()
        pending.close()

        span = span_exporter.get_finished_spans()[0]
        assert span.attributes[AutotraceSpanAttributes.ABANDONED] is True
        assert span.status.status_code == StatusCode.ERROR


class TestScopes:
    """Scopes merged into span attributes."""

    def test_scope_applies_to_sequential_calls(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("invoke"))
        client = fake_module.Client()

        with scoped({"x-request-id": "abc"}):
            client.invoke()
            client.invoke()

        spans = span_exporter.get_finished_spans()
        assert len(spans) == 2
        assert all(span.attributes["x-request-id"] == "abc" for span in spans)

    def test_scope_does_not_leak_after_block(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("invoke"))
        client = fake_module.Client()

        run_with_scope({"x-request-id": "abc"}, client.invoke)
        client.invoke()

        inside, outside = span_exporter.get_finished_spans()
        assert inside.attributes["x-request-id"] == "abc"
        assert "x-request-id" not in outside.attributes

    def test_scope_popped_when_call_fails(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("fail"), make_entry("invoke"))
        client = fake_module.Client()

        with pytest.raises(ValueError):
            run_with_scope({"attempt": "1"}, client.fail)
        client.invoke()

        assert "attempt" not in span_exporter.get_finished_spans()[-1].attributes

    def test_evaluated_attribute_wins_over_scope(self, fake_module, instrument, span_exporter, make_entry,
                                                 fixed_name_group):
        instrument(make_entry("invoke", attributes=fixed_name_group))

        with scoped({"name": "from-scope", "tenant": "t1"}):
            fake_module.Client().invoke()

        attributes = span_exporter.get_finished_spans()[0].attributes
        assert attributes["name"] == "fixed"
        assert attributes["tenant"] == "t1"

    @pytest.mark.asyncio
    async def test_concurrent_chains_are_isolated(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("ainvoke", attributes=_value_group()))
        client = fake_module.Client()

        async def chain(request_id):
            with scoped({"x-request-id": request_id}):
                await client.ainvoke(request_id)
                await asyncio.sleep(0)
                await client.ainvoke(request_id)

        await asyncio.gather(chain("a"), chain("b"), chain("c"))

        spans = span_exporter.get_finished_spans()
        assert len(spans) == 6
        for span in spans:
            assert span.attributes["x-request-id"] == span.attributes["value"]

    def test_bound_function_keeps_scope(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("invoke"))
        client = fake_module.Client()

        with scoped({"tenant": "t1"}):
            bound = bind_scope({"job": "nightly"}, client.invoke)

        client.invoke()
        bound()

        plain, scoped_span = span_exporter.get_finished_spans()
        assert "job" not in plain.attributes
        assert scoped_span.attributes["job"] == "nightly"
        assert scoped_span.attributes["tenant"] == "t1"

    def test_bound_function_in_worker_thread(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("invoke"))
        bound = bind_scope({"job": "nightly"}, fake_module.Client().invoke)

        worker = threading.Thread(target=bound)
        worker.start()
        worker.join()

        assert span_exporter.get_finished_spans()[0].attributes["job"] == "nightly"

    def test_bound_function_replaces_call_site_scopes(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("invoke"))
        bound = bind_scope({"job": "nightly"}, fake_module.Client().invoke)

        with scoped({"job": "adhoc", "user": "u1"}):
            bound()

        attributes = span_exporter.get_finished_spans()[0].attributes
        assert attributes["job"] == "nightly"
        assert "user" not in attributes

    def test_scope_only_entry(self, fake_module, instrument, span_exporter, make_entry):
        instrument(
            make_entry("handle", scope_name="conversation", skip_span=True),
            make_entry("invoke"),
        )

        fake_module.Client().handle()

        spans = span_exporter.get_finished_spans()
        assert [span.name for span in spans] == ["testlib.invoke"]
        assert len(spans[0].attributes["conversation"]) == 32

    def test_entry_scope_values_from_call(self, fake_module, instrument, span_exporter, make_entry):
        instrument(make_entry("invoke", scope_values=lambda instance, args, kwargs: {"topic": kwargs["topic"]}))

        fake_module.Client().invoke(topic="billing")

        assert span_exporter.get_finished_spans()[0].attributes["topic"] == "billing"


class TestEvents:
    """Events evaluated at their declared phase."""

    def test_input_and_output_events(self, fake_module, instrument, span_exporter, make_entry):
        events = [
            EventConfig("data.input", [
                AttributeSpec("input", lambda call: call.argument("prompt", 0)),
                AttributeSpec("leak", lambda call: call.response),
            ]),
            EventConfig("data.output", [
                AttributeSpec("response", lambda call: call.response),
                AttributeSpec("leak", lambda call: call.argument("prompt", 0)),
            ]),
            EventConfig("metadata", [AttributeSpec(None, lambda call: {"tokens": 3, "model": "m"})]),
        ]
        instrument(make_entry("invoke", events=events))

        fake_module.Client().invoke("hello")

        span = span_exporter.get_finished_spans()[0]
        by_name = {event.name: dict(event.attributes) for event in span.events}
        assert by_name["data.input"] == {"input": "hello"}
        assert by_name["data.output"] == {"response": "result"}
        assert by_name["metadata"] == {"tokens": 3, "model": "m"}
        names = [event.name for event in span.events]
        assert names.index("data.input") < names.index("data.output")


class TestSdkDetection:
    """Entities without a fixed type are resolved by the SDK detector."""

    def test_detected_type(self, fake_module, instrument, span_exporter, fixed_name_group):
        from autotrace import MethodMapEntry

        instrument(MethodMapEntry(
            package="autotrace_testlib",
            object="HostedClient",
            method="invoke",
            output_processors=[MetamodelConfig(type=None, attributes=fixed_name_group)],
        ))

        fake_module.HostedClient("https://api.openai.com/v1").invoke()

        attributes = span_exporter.get_finished_spans()[0].attributes
        assert attributes[AutotraceSpanAttributes.SDK_NAME] == "openai"
        assert attributes[AutotraceSpanAttributes.SDK_TYPE] == "inference"
        assert attributes[AutotraceSpanAttributes.SPAN_TYPE] == "inference.openai"

    def test_unknown_sdk_keeps_generic_type(self, fake_module, instrument, span_exporter, fixed_name_group):
        from autotrace import MethodMapEntry

        instrument(MethodMapEntry(
            package="autotrace_testlib",
            object="HostedClient",
            method="invoke",
            output_processors=[MetamodelConfig(type=None, attributes=fixed_name_group)],
        ))

        fake_module.HostedClient("https://llm.internal").invoke()

        attributes = span_exporter.get_finished_spans()[0].attributes
        assert AutotraceSpanAttributes.SDK_NAME not in attributes
        assert attributes[AutotraceSpanAttributes.SPAN_TYPE] == "generic"


class TestInstallation:
    """Installing, skipping and removing wrappers."""

    def test_missing_targets_are_skipped(self, fake_module, instrument, span_exporter, make_entry):
        from autotrace import MethodMapEntry

        autotrace = instrument(
            MethodMapEntry(package="autotrace_missing_lib", object="Client", method="invoke"),
            make_entry("does_not_exist"),
            make_entry("invoke"),
        )

        assert autotrace.interceptor.is_installed("autotrace_testlib", "Client", "invoke")
        assert not autotrace.interceptor.is_installed("autotrace_missing_lib", "Client", "invoke")
        assert len(autotrace.interceptor.errors) >= 2

        fake_module.Client().invoke()
        assert len(span_exporter.get_finished_spans()) == 1

    def test_install_is_idempotent(self, fake_module, instrument, span_exporter, make_entry):
        autotrace = instrument(make_entry("invoke"))

        assert autotrace.interceptor.install(get_registry().entries()) == 0
        assert MethodInterceptor(get_span_manager).install(get_registry().entries()) == 0

        fake_module.Client().invoke()
        assert len(span_exporter.get_finished_spans()) == 1

    def test_wrapped_method_is_marked(self, fake_module, instrument, make_entry):
        entry = make_entry("invoke")
        instrument(entry)

        assert get_wrapped_entry(vars(fake_module.Client)["invoke"]) == entry

    def test_foreign_wrappers_are_not_marked(self, fake_module):
        foreign = wrapt.FunctionWrapper(
            vars(fake_module.Client)["invoke"],
            lambda wrapped, instance, args, kwargs: wrapped(*args, **kwargs),
        )

        assert get_wrapped_entry(foreign) is None
        assert get_wrapped_entry(vars(fake_module.Client)["fail"]) is None

    def test_fresh_interceptor_does_not_wrap_twice(self, fake_module, instrument, span_exporter, make_entry):
        entry = make_entry("invoke")
        instrument(entry)
        wrapped = vars(fake_module.Client)["invoke"]

        assert not MethodInterceptor(get_span_manager).install_entry(entry)

        assert vars(fake_module.Client)["invoke"] is wrapped
        fake_module.Client().invoke()
        assert len(span_exporter.get_finished_spans()) == 1

    def test_setup_is_idempotent(self, fake_module, instrument, span_exporter, make_entry):
        first = instrument(make_entry("invoke"))
        second = setup_autotrace("other-workflow")

        assert second is first
        assert get_autotrace() is first

        fake_module.Client().invoke()
        assert len(span_exporter.get_finished_spans()) == 1

    def test_failed_setup_can_be_retried(self, fake_module, instrument, span_exporter, make_entry,
                                         fixed_name_group):
        good = make_entry("invoke", attributes=fixed_name_group)
        bad = make_entry("fail", attributes=[[AttributeSpec("x", "no_such_accessor")]])
        processor = MagicMock(spec=SpanProcessor)

        with pytest.raises(ConfigurationError, match="no_such_accessor"):
            setup_autotrace("test-workflow", wrapper_methods=[good, bad], span_processors=[processor])

        processor.shutdown.assert_called_once()
        assert get_autotrace() is None
        assert get_registry().get(*good.key) == []
        assert not get_registry().is_frozen
        assert get_wrapped_entry(vars(fake_module.Client)["invoke"]) is None

        instrument(good)

        assert len(get_registry().get(*good.key)) == 1
        fake_module.Client().invoke()
        spans = span_exporter.get_finished_spans()
        assert len(spans) == 1
        assert spans[0].attributes["name"] == "fixed"

    def test_registry_frozen_after_setup(self, instrument, make_entry):
        instrument()

        with pytest.raises(ConfigurationError):
            get_registry().register(make_entry("invoke"))

    def test_pre_registered_entries_are_installed(self, fake_module, instrument, span_exporter, make_entry,
                                                  fixed_name_group):
        get_registry().register(make_entry("invoke", attributes=fixed_name_group))
        instrument()

        fake_module.Client().invoke()
        assert span_exporter.get_finished_spans()[0].attributes["name"] == "fixed"

    def test_uninstrument_restores_originals(self, fake_module, instrument, span_exporter, make_entry):
        original = vars(fake_module.Client)["invoke"]
        autotrace = instrument(make_entry("invoke"))

        assert autotrace.interceptor.uninstrument() >= 1
        assert vars(fake_module.Client)["invoke"] is original

        fake_module.Client().invoke()
        assert span_exporter.get_finished_spans() == ()

    def test_calls_pass_through_after_shutdown(self, fake_module, instrument, span_exporter, make_entry):
        autotrace = instrument(make_entry("invoke"))
        autotrace.shutdown()

        assert fake_module.Client().invoke() == "result"
        assert span_exporter.get_finished_spans() == ()

    def test_tracing_disabled_installs_nothing(self, fake_module, span_exporter, make_entry):
        from opentelemetry.sdk.trace.export import SimpleSpanProcessor

        from autotrace import AutotraceConfig

        autotrace = setup_autotrace(
            "test-workflow",
            wrapper_methods=[make_entry("invoke")],
            span_processors=[SimpleSpanProcessor(span_exporter)],
            config=AutotraceConfig(tracing_enabled=False, exporter="none"),
        )

        assert autotrace.interceptor.installed == []
        fake_module.Client().invoke()
        assert span_exporter.get_finished_spans() == ()


class TestInterceptDecorator:
    """Explicit decorator form."""

    def test_decorated_function_is_traced(self, instrument, span_exporter):
        @intercept(output_processors=[MetamodelConfig(
            type="agentic.invocation",
            attributes=[[AttributeSpec("question", lambda call: call.argument("question", 0))]],
        )])
        def answer(question):
            return question.upper()

        assert answer("why?") == "WHY?"
        assert span_exporter.get_finished_spans() == ()

        instrument()
        assert answer("why?") == "WHY?"

        span = span_exporter.get_finished_spans()[0]
        assert span.name.endswith("answer")
        assert span.attributes["question"] == "why?"
        assert span.attributes[AutotraceSpanAttributes.SPAN_TYPE] == "agentic.invocation"

    def test_decorated_function_nests_under_wrapped_method(self, fake_module, instrument, span_exporter,
                                                           make_entry):
        @intercept(span_name="app.step")
        def step():
            return fake_module.Client().invoke()

        instrument(make_entry("invoke"))
        step()

        inner, outer = span_exporter.get_finished_spans()
        assert outer.name == "app.step"
        assert inner.parent.span_id == outer.context.span_id
