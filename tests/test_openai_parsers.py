"""Tests for the OpenAI completion and chat parsers against a fake client."""

import functools
import logging
from types import SimpleNamespace

import pytest

from conftest import fake_openai_client, install_openai_client, make_document, make_prompt
from promptdoc.callbacks import CallbackManager
from promptdoc.errors import ConfigurationError, ProtocolError
from promptdoc.observability import RunObserver
from promptdoc.parsers.base import InferenceOptions
from promptdoc.parsers.openai import OpenAIChatParser, OpenAICompletionParser, build_output_data
from promptdoc.schema import ExecuteResult, ModelMetadata, OutputDataWithValue


def _chat_chunk(*choices, **extra):
    return {"id": "chatcmpl-1", "model": "gpt-4", **extra, "choices": list(choices)}


def _chat_setup(*prompts, response=None, chunks=None, models=None):
    parser = OpenAIChatParser()
    client = fake_openai_client(response=response, chunks=chunks)
    install_openai_client(parser, client)
    document = make_document(list(prompts), models=models if models is not None else {"gpt-4": {"model": "gpt-4"}})
    return parser, client, document


@pytest.mark.asyncio
async def test_chat_run_without_streaming():
    response = {
        "id": "chatcmpl-1",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello"}, "finish_reason": "stop"}],
    }
    parser, client, document = _chat_setup(make_prompt("p", "Hi", "gpt-4"), response=response)
    prompt = document.get_prompt("p")

    outputs = await parser.run(prompt, document, InferenceOptions(stream=False))

    assert client.api.calls == [{"model": "gpt-4", "messages": [{"role": "user", "content": "Hi"}], "stream": False}]
    assert len(outputs) == 1
    assert outputs[0].execution_count == 0
    assert outputs[0].data == "Hello"
    assert outputs[0].metadata["finish_reason"] == "stop"
    assert outputs[0].metadata["role"] == "assistant"
    assert prompt.outputs == outputs
    assert parser.get_output_text(document, prompt=prompt) == "Hello"


@pytest.mark.asyncio
async def test_chat_run_streams_by_default(recorded_callbacks):
    calls, callback = recorded_callbacks
    chunks = [
        SimpleNamespace(
            id="chatcmpl-1",
            choices=[SimpleNamespace(index=0, delta=SimpleNamespace(role="assistant", content="Hel"), finish_reason=None)],
        ),
        _chat_chunk({"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}),
    ]
    parser, client, document = _chat_setup(make_prompt("p", "Hi", "gpt-4"), chunks=chunks)
    prompt = document.get_prompt("p")

    outputs = await parser.run(prompt, document, InferenceOptions(stream_callback=callback))

    assert client.api.calls[0]["stream"] is True
    assert calls == [("Hel", "Hel", 0), ("lo", "Hello", 0)]
    assert [output.data for output in outputs] == ["Hello"]
    assert outputs[0].metadata["finish_reason"] == "stop"
    assert outputs[0].metadata["raw_response"] == {"role": "assistant", "content": "Hello"}


@pytest.mark.asyncio
async def test_chat_stream_with_async_callback_and_two_choices():
    seen = []

    async def callback(delta_text, accumulated_text, index):
        seen.append((index, accumulated_text))

    chunks = [
        _chat_chunk({"index": 0, "delta": {"content": "A"}}, {"index": 1, "delta": {"content": "X"}}),
        _chat_chunk({"index": 1, "delta": {"content": "Y"}}, {"index": 0, "delta": {"content": "B"}}),
    ]
    parser, _, document = _chat_setup(make_prompt("p", "Hi", "gpt-4"), chunks=chunks)

    outputs = await parser.run(document.get_prompt("p"), document, InferenceOptions(stream_callback=callback))

    assert [(o.execution_count, o.data) for o in outputs] == [(0, "AB"), (1, "XY")]
    assert seen == [(0, "A"), (1, "X"), (1, "XY"), (0, "AB")]


@pytest.mark.asyncio
async def test_chat_stream_concatenates_tool_call_arguments():
    chunks = [
        _chat_chunk(
            {
                "index": 0,
                "delta": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {"index": 0, "id": "call_1", "type": "function", "function": {"name": "lookup", "arguments": ""}}
                    ],
                },
            }
        ),
        _chat_chunk({"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"q": '}}]}}),
        _chat_chunk(
            {"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": "1}"}}]}, "finish_reason": "tool_calls"}
        ),
    ]
    parser, _, document = _chat_setup(make_prompt("p", "Look up 1", "gpt-4"), chunks=chunks)

    outputs = await parser.run(document.get_prompt("p"), document)

    assert outputs[0].data == OutputDataWithValue(
        kind="tool_calls",
        value=[{"id": "call_1", "type": "function", "function": {"name": "lookup", "arguments": '{"q": 1}'}}],
    )
    assert outputs[0].metadata["finish_reason"] == "tool_calls"


@pytest.mark.asyncio
async def test_chat_stream_choice_count_change_commits_nothing():
    chunks = [
        _chat_chunk({"index": 0, "delta": {"content": "a"}}, {"index": 1, "delta": {"content": "b"}}),
        _chat_chunk({"index": 0, "delta": {"content": "c"}}),
    ]
    parser, _, document = _chat_setup(make_prompt("p", "Hi", "gpt-4"), chunks=chunks)
    prompt = document.get_prompt("p")
    previous = [ExecuteResult(data="old")]
    prompt.outputs = previous

    with pytest.raises(ProtocolError):
        await parser.run(prompt, document)

    assert prompt.outputs is previous


@pytest.mark.asyncio
async def test_zero_choices_yield_no_outputs():
    parser, _, document = _chat_setup(
        make_prompt("p", "Hi", "gpt-4"),
        response={"choices": []},
        chunks=[{"id": "x", "choices": [], "usage": {"total_tokens": 3}}],
    )
    prompt = document.get_prompt("p")

    assert await parser.run(prompt, document, InferenceOptions(stream=False)) == []
    assert await parser.run(prompt, document) == []
    assert parser.get_output_text(document, prompt=prompt) == ""


@pytest.mark.asyncio
async def test_missing_api_key_raises_on_first_client_use():
    parser = OpenAIChatParser()
    document = make_document([make_prompt("p", "Hi", "gpt-4")])

    with pytest.raises(ConfigurationError):
        await parser.run(document.get_prompt("p"), document)


def test_client_is_created_once(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    parser = OpenAIChatParser(api_base="http://localhost:1234/v1")

    client = parser.client

    assert parser.client is client
    assert str(client.base_url).startswith("http://localhost:1234/v1")


@pytest.mark.asyncio
async def test_chat_serialize_then_deserialize_round_trips():
    tool_calls = [{"id": "call_1", "type": "function", "function": {"name": "weather", "arguments": "{}"}}]
    messages = [
        {"role": "system", "content": "You are helpful."},
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello"},
        {"role": "user", "content": "Weather?"},
        {"role": "assistant", "content": None, "tool_calls": tool_calls},
        {"role": "tool", "tool_call_id": "call_1", "content": "sunny"},
        {"role": "assistant", "content": "It is sunny"},
        {"role": "user", "content": "Thanks"},
    ]
    request = {"model": "gpt-4", "temperature": 0.2, "messages": messages}
    parser, _, document = _chat_setup(models={})

    prompts = await parser.serialize("chat", request, document)
    for prompt in prompts:
        document.add_prompt(prompt)

    assert [p.name for p in prompts] == ["chat_1", "chat_2", "chat_3", "chat"]
    assert all(p.metadata.remember_chat_context for p in prompts)
    assert prompts[0].metadata.model == ModelMetadata(
        name="gpt-4",
        settings={"model": "gpt-4", "temperature": 0.2, "system_prompt": messages[0]},
    )
    assert prompts[1].outputs[0].data == OutputDataWithValue(kind="tool_calls", value=tool_calls)
    assert prompts[3].outputs == []

    rebuilt = await parser.deserialize(document.get_prompt("chat"), document)

    assert rebuilt == request

    fresh = make_document()
    reserialized = await parser.serialize("chat", rebuilt, fresh)

    assert [p.to_dict() for p in reserialized] == [p.to_dict() for p in prompts]
    assert reserialized[0].metadata.model == prompts[0].metadata.model


@pytest.mark.asyncio
async def test_chat_serialize_uses_model_name_when_settings_match_globals():
    parser, _, document = _chat_setup(models={"gpt-4": {"model": "gpt-4"}})

    prompts = await parser.serialize("q", {"model": "gpt-4", "messages": [{"role": "user", "content": "Hi"}]}, document)

    assert [(p.name, p.input, p.metadata.model) for p in prompts] == [("q", "Hi", "gpt-4")]


@pytest.mark.asyncio
async def test_chat_deserialize_resolves_messages_stored_in_settings():
    system = {"role": "system", "content": "Talk to {{name}}"}
    models = {"gpt-4": {"model": "gpt-4", "messages": [system]}}
    parser, _, document = _chat_setup(make_prompt("p", "Q", "gpt-4"), models=models)

    request = await parser.deserialize(document.get_prompt("p"), document, {"name": "Bob"})

    assert request["messages"] == [{"role": "system", "content": "Talk to Bob"}, {"role": "user", "content": "Q"}]
    assert models["gpt-4"]["messages"] == [system]


@pytest.mark.asyncio
async def test_run_fires_lifecycle_events_in_order():
    parser, _, document = _chat_setup(
        make_prompt("p", "Hi", "gpt-4"),
        response={"choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello"}}]},
    )
    observer = RunObserver()
    document.callback_manager = CallbackManager([observer])

    await parser.run(document.get_prompt("p"), document, InferenceOptions(stream=False))

    assert observer.event_names() == ["on_run_start", "on_deserialize_start", "on_deserialize_end", "on_run_end"]


def test_build_output_data_shapes():
    assert build_output_data(None) is None
    assert build_output_data({"role": "assistant", "content": "hi"}) == "hi"
    assert build_output_data({"role": "assistant", "content": ""}) == ""
    assert build_output_data({"role": "assistant", "function_call": {"name": "f", "arguments": "{}"}}) == (
        OutputDataWithValue(kind="tool_calls", value=[{"type": "function", "function": {"name": "f", "arguments": "{}"}}])
    )


@pytest.mark.asyncio
async def test_completion_run_without_streaming():
    parser = OpenAICompletionParser()
    client = fake_openai_client(
        response={"id": "cmpl-1", "choices": [{"index": 0, "text": "Hello", "finish_reason": "stop"}]}
    )
    install_openai_client(parser, client)
    prompt = make_prompt("p", "Say {{word}}", "gpt-3.5-turbo-instruct")
    document = make_document([prompt], models={"gpt-3.5-turbo-instruct": {"model": "gpt-3.5-turbo-instruct"}})

    outputs = await parser.run(prompt, document, InferenceOptions(stream=False), {"word": "Hi"})

    assert client.api.calls == [{"model": "gpt-3.5-turbo-instruct", "prompt": "Say Hi", "stream": False}]
    assert outputs[0].data == "Hello"
    assert outputs[0].metadata["finish_reason"] == "stop"
    assert parser.get_output_text(document, outputs[0]) == "Hello"


@pytest.mark.asyncio
async def test_completion_streaming(recorded_callbacks):
    calls, callback = recorded_callbacks
    chunks = [
        {"id": "cmpl-1", "choices": [{"index": 0, "text": "Hel"}]},
        {"id": "cmpl-1", "choices": [{"index": 0, "text": "lo", "finish_reason": "stop"}]},
    ]
    parser = OpenAICompletionParser()
    install_openai_client(parser, fake_openai_client(chunks=chunks))
    prompt = make_prompt("p", "Hi", "davinci-002")
    document = make_document([prompt])

    outputs = await parser.run(prompt, document, InferenceOptions(stream_callback=callback))

    assert calls == [("Hel", "Hel", 0), ("lo", "Hello", 0)]
    assert outputs[0].data == "Hello"
    assert outputs[0].metadata["finish_reason"] == "stop"
    assert outputs[0].metadata["raw_response"] == {"id": "cmpl-1", "text": "Hello"}


@pytest.mark.asyncio
async def test_completion_serialize_keeps_template_and_settings():
    parser = OpenAICompletionParser()
    document = make_document()

    prompts = await parser.serialize(
        "p", {"model": "davinci-002", "prompt": "Say {{x}}", "max_tokens": 5}, document, {"x": "hi"}
    )

    assert len(prompts) == 1
    assert prompts[0].input == "Say {{x}}"
    assert prompts[0].metadata.model == ModelMetadata(name="davinci-002", settings={"model": "davinci-002", "max_tokens": 5})
    assert prompts[0].metadata.parameters == {"x": "hi"}

    request = await parser.deserialize(prompts[0], document, {"x": "there"})
    assert request == {"model": "davinci-002", "max_tokens": 5, "prompt": "Say there"}


class Renderer:
    def __init__(self):
        self.seen = []

    async def __call__(self, delta_text, accumulated_text, index):
        self.seen.append((delta_text, accumulated_text, index))


@pytest.mark.asyncio
async def test_stream_callback_accepts_async_callable_objects():
    chunks = [
        _chat_chunk({"index": 0, "delta": {"role": "assistant", "content": "Hel"}}),
        _chat_chunk({"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}),
    ]
    parser, _, document = _chat_setup(make_prompt("p", "Hi", "gpt-4"), chunks=chunks)
    renderer = Renderer()

    await parser.run(document.get_prompt("p"), document, InferenceOptions(stream_callback=renderer))

    assert renderer.seen == [("Hel", "Hel", 0), ("lo", "Hello", 0)]


@pytest.mark.asyncio
async def test_stream_callback_accepts_partial_of_async_function():
    seen = []

    async def render(label, delta_text, accumulated_text, index):
        seen.append((label, accumulated_text))

    chunks = [_chat_chunk({"index": 0, "delta": {"content": "Hi"}})]
    parser, _, document = _chat_setup(make_prompt("p", "Hi", "gpt-4"), chunks=chunks)

    await parser.run(
        document.get_prompt("p"), document, InferenceOptions(stream_callback=functools.partial(render, "live"))
    )

    assert seen == [("live", "Hi")]


@pytest.mark.asyncio
async def test_chat_serialize_warns_on_extra_system_messages(caplog):
    parser, _, document = _chat_setup(models={})
    request = {
        "model": "gpt-4",
        "messages": [
            {"role": "system", "content": "First"},
            {"role": "system", "content": "Second"},
            {"role": "user", "content": "Hi"},
        ],
    }

    with caplog.at_level(logging.WARNING, logger="promptdoc.parsers.openai"):
        prompts = await parser.serialize("q", request, document)

    assert prompts[0].metadata.model.settings["system_prompt"] == {"role": "system", "content": "First"}
    assert "2 system messages" in caplog.text
