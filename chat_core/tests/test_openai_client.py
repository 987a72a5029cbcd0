import httpx
import pytest

from chat_core.domain.exceptions import (
    ApiError,
    InvalidParameter,
    MalformedResponseError,
    NetworkError,
    NotInitialized,
    RateLimitError,
    TransportError,
)
from chat_core.domain.models import ChatMessage
from chat_core.providers.openai_client import OpenAICompatibleClient
from chat_core.session.conversation import ConversationSession
from chat_core.session.notifier import CollectingNotifier


class SettingsStub:
    base_url = "https://api.example.test/v1"
    default_model = None
    temperature = 0.7
    top_p = 1.0
    max_tokens = 1000
    http_timeout = None


class FakeResponse:
    def __init__(self, lines=(), status_code=200, body="", json_data=None):
        self._lines = list(lines)
        self.status_code = status_code
        self.text = body
        self._json = json_data

    def iter_lines(self):
        for line in self._lines:
            if isinstance(line, Exception):
                raise line
            yield line

    def read(self):
        return self.text.encode("utf-8")

    def json(self):
        if self._json is None:
            raise ValueError("no json body")
        return self._json


class StreamContext:
    def __init__(self, response):
        self._response = response

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        return False


def make_client_cls(response, captured=None):
    captured = captured if captured is not None else {}

    class Client:
        def __init__(self, *a, **kw):
            captured["init"] = kw
            self.closed = False

        def stream(self, method, url, json=None, **kw):
            captured.setdefault("payloads", []).append(json)
            captured["url"] = url
            return StreamContext(response)

        def post(self, url, json=None, **kw):
            captured.setdefault("payloads", []).append(json)
            captured["url"] = url
            return response

        def close(self):
            self.closed = True
            captured["closed"] = True

    return Client


def ready_client(monkeypatch, response, captured=None):
    monkeypatch.setattr("httpx.Client", make_client_cls(response, captured))
    client = OpenAICompatibleClient(cfg=SettingsStub())
    client.initialize("sk-test-key")
    return client


def test_not_ready_before_initialize():
    client = OpenAICompatibleClient(cfg=SettingsStub())
    assert client.is_ready() is False
    with pytest.raises(NotInitialized):
        client.exchange("hi", [], lambda f: None)
    with pytest.raises(NotInitialized):
        client.complete("hi", [])


def test_not_initialized_is_not_transport_error():
    client = OpenAICompatibleClient(cfg=SettingsStub())
    with pytest.raises(NotInitialized) as exc:
        client.stream("hi", [])
    assert not isinstance(exc.value, TransportError)
    assert exc.value.code == "NOT_INITIALIZED"


def test_initialize_builds_transport(monkeypatch):
    captured = {}
    client = ready_client(monkeypatch, FakeResponse(), captured)
    assert client.is_ready() is True
    init = captured["init"]
    assert init["base_url"] == "https://api.example.test/v1"
    assert init["headers"]["Authorization"] == "Bearer sk-test-key"
    assert init["timeout"] is None


def test_initialize_rejects_blank_credential():
    client = OpenAICompatibleClient(cfg=SettingsStub())
    with pytest.raises(InvalidParameter):
        client.initialize("   ")
    assert client.is_ready() is False


def test_reinitialize_closes_previous_transport(monkeypatch):
    captured = {}
    client = ready_client(monkeypatch, FakeResponse(), captured)
    client.initialize("sk-other-key")
    assert captured["closed"] is True
    assert captured["init"]["headers"]["Authorization"] == "Bearer sk-other-key"


def test_exchange_streams_fragments_in_order(monkeypatch):
    lines = [
        'data: {"choices": [{"index": 0, "delta": {"content": "Hel"}}]}',
        "",
        'data: {"choices": [{"index": 0, "delta": {"content": "lo, "}}]}',
        ": keep-alive",
        'data: {"choices": [{"index": 0, "delta": {"content": "world"}, "finish_reason": "stop"}], "usage": {"prompt_tokens": 3, "completion_tokens": 3, "total_tokens": 6}}',
        "data: [DONE]",
    ]
    client = ready_client(monkeypatch, FakeResponse(lines))
    received = []
    message = client.exchange("hi", [], received.append)
    assert received == ["Hel", "lo, ", "world"]
    assert message.content == "Hello, world"
    assert message.role == "assistant"
    assert message.id.startswith("m-")


def test_exchange_delivers_empty_deltas(monkeypatch):
    lines = [
        'data: {"choices": [{"index": 0, "delta": {"role": "assistant"}}]}',
        'data: {"choices": [{"index": 0, "delta": {"content": "ok"}}]}',
        'data: {"choices": [], "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}}',
        "data: [DONE]",
    ]
    client = ready_client(monkeypatch, FakeResponse(lines))
    received = []
    message = client.exchange("hi", [], received.append)
    assert received == ["", "ok"]
    assert message.content == "ok"


def test_stream_is_lazy_and_cooperative(monkeypatch):
    captured = {}
    lines = [
        'data: {"choices": [{"delta": {"content": "a"}}]}',
        'data: {"choices": [{"delta": {"content": "b"}}]}',
    ]
    client = ready_client(monkeypatch, FakeResponse(lines), captured)
    fragments = client.stream("hi", [])
    assert "payloads" not in captured
    assert next(fragments) == "a"
    assert next(fragments) == "b"
    with pytest.raises(StopIteration):
        next(fragments)


def test_payload_contains_context_and_parameters(monkeypatch):
    captured = {}
    client = ready_client(monkeypatch, FakeResponse(["data: [DONE]"]), captured)
    client.set_model("gpt-4o")
    client.set_temperature(0.2)
    client.set_top_p(0.9)
    client.set_max_output_length(256)
    context = [ChatMessage(role="user", content="q1"), ChatMessage(role="assistant", content="a1")]
    client.exchange("q2", context, lambda f: None)
    payload = captured["payloads"][0]
    assert captured["url"] == "/chat/completions"
    assert payload["messages"] == [
        {"role": "user", "content": "q1"},
        {"role": "assistant", "content": "a1"},
        {"role": "user", "content": "q2"},
    ]
    assert payload["model"] == "gpt-4o"
    assert payload["temperature"] == 0.2
    assert payload["top_p"] == 0.9
    assert payload["max_tokens"] == 256
    assert payload["stream"] is True


def test_setters_take_effect_on_next_exchange(monkeypatch):
    captured = {}
    lines = ['data: {"choices": [{"delta": {"content": "x"}}]}', "data: [DONE]"]
    client = ready_client(monkeypatch, FakeResponse(lines), captured)

    def change_mid_stream(fragment):
        client.set_temperature(0.1)

    client.exchange("first", [], change_mid_stream)
    client.exchange("second", [], lambda f: None)
    assert captured["payloads"][0]["temperature"] == 0.7
    assert captured["payloads"][1]["temperature"] == 0.1


def test_set_temperature_out_of_range_keeps_previous():
    client = OpenAICompatibleClient(cfg=SettingsStub())
    client.set_temperature(0.4)
    with pytest.raises(InvalidParameter):
        client.set_temperature(1.5)
    with pytest.raises(InvalidParameter):
        client.set_temperature(-0.1)
    assert client.temperature == 0.4


def test_invalid_setters():
    client = OpenAICompatibleClient(cfg=SettingsStub())
    with pytest.raises(InvalidParameter):
        client.set_max_output_length(0)
    with pytest.raises(InvalidParameter):
        client.set_model("  ")
    with pytest.raises(InvalidParameter):
        client.set_top_p(2)
    assert client.max_output_length == 1000
    assert client.model == "gpt-4o-mini"
    assert client.top_p == 1.0


def test_rate_limit_maps_to_rate_limit_error(monkeypatch):
    client = ready_client(monkeypatch, FakeResponse(status_code=429, body="slow down"))
    with pytest.raises(RateLimitError) as exc:
        client.exchange("hi", [], lambda f: None)
    assert exc.value.http_status == 429


def test_http_error_maps_to_api_error(monkeypatch):
    body = '{"error": {"message": "Incorrect API key provided"}}'
    client = ready_client(monkeypatch, FakeResponse(status_code=401, body=body))
    with pytest.raises(ApiError) as exc:
        client.exchange("hi", [], lambda f: None)
    assert exc.value.http_status == 401
    assert exc.value.message == "Incorrect API key provided"
    assert isinstance(exc.value, TransportError)


def test_malformed_chunk_after_fragments(monkeypatch):
    lines = [
        'data: {"choices": [{"delta": {"content": "Par"}}]}',
        'data: {"choices": [{"delta": {"content": "tial"}}]}',
        "data: {not json",
    ]
    client = ready_client(monkeypatch, FakeResponse(lines))
    received = []
    with pytest.raises(MalformedResponseError):
        client.exchange("hi", [], received.append)
    assert received == ["Par", "tial"]


def test_error_object_in_stream(monkeypatch):
    lines = ['data: {"error": {"message": "overloaded"}}']
    client = ready_client(monkeypatch, FakeResponse(lines))
    with pytest.raises(ApiError) as exc:
        client.exchange("hi", [], lambda f: None)
    assert exc.value.message == "overloaded"


def test_network_error_mid_stream(monkeypatch):
    lines = [
        'data: {"choices": [{"delta": {"content": "a"}}]}',
        httpx.ReadError("connection reset"),
    ]
    client = ready_client(monkeypatch, FakeResponse(lines))
    received = []
    with pytest.raises(NetworkError) as exc:
        client.exchange("hi", [], received.append)
    assert received == ["a"]
    assert exc.value.code == "NETWORK_ERROR"


def test_complete_non_streaming(monkeypatch):
    captured = {}
    data = {
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "done"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
    }
    client = ready_client(monkeypatch, FakeResponse(json_data=data), captured)
    message = client.complete("hi", [])
    assert message.content == "done"
    assert captured["payloads"][0]["stream"] is False


def test_complete_without_choices(monkeypatch):
    client = ready_client(monkeypatch, FakeResponse(json_data={"choices": []}))
    with pytest.raises(MalformedResponseError):
        client.complete("hi", [])


def test_close_resets_readiness(monkeypatch):
    captured = {}
    client = ready_client(monkeypatch, FakeResponse(), captured)
    client.close()
    assert captured["closed"] is True
    assert client.is_ready() is False


BAD_CHUNKS = [
    'data: {"choices": ["oops"]}',
    'data: {"choices": [{"delta": "tial"}]}',
    'data: {"choices": [{"delta": {"content": 5}}]}',
    'data: {"choices": [], "usage": 7}',
    'data: {"choices": "abc"}',
]


@pytest.mark.parametrize("bad_line", BAD_CHUNKS)
def test_bad_chunk_shape_is_malformed_response(monkeypatch, bad_line):
    lines = ['data: {"choices": [{"delta": {"content": "Par"}}]}', bad_line]
    client = ready_client(monkeypatch, FakeResponse(lines))
    received = []
    with pytest.raises(MalformedResponseError) as exc:
        client.exchange("hi", [], received.append)
    assert received == ["Par"]
    assert exc.value.code == "MALFORMED_RESPONSE"


@pytest.mark.parametrize("bad_line", BAD_CHUNKS)
def test_session_reports_bad_chunk_as_failed_exchange(monkeypatch, bad_line):
    lines = ['data: {"choices": [{"delta": {"content": "Par"}}]}', bad_line]
    client = ready_client(monkeypatch, FakeResponse(lines))
    notifier = CollectingNotifier()
    session = ConversationSession(client, notifier=notifier)
    session.submit("hello")
    user, assistant = session.messages
    assert user.status == "error"
    assert assistant.content == "Par"
    assert session.busy is False
    assert notifier.kinds() == ["ExchangeFailed"]


def test_null_content_and_usage_counts_are_tolerated(monkeypatch):
    lines = [
        'data: {"choices": [{"delta": {"content": null}}]}',
        'data: {"choices": [{"delta": {"content": "ok"}}], "usage": {"prompt_tokens": 1, "completion_tokens": null, "total_tokens": 1}}',
        "data: [DONE]",
    ]
    client = ready_client(monkeypatch, FakeResponse(lines))
    received = []
    message = client.exchange("hi", [], received.append)
    assert received == ["", "ok"]
    assert message.content == "ok"


@pytest.mark.parametrize(
    "data",
    [
        {"choices": ["oops"]},
        {"choices": [{"message": "text"}]},
        {"choices": [{"message": {"content": ["a"]}}]},
        {"choices": [{"message": {"content": "ok"}}], "usage": 7},
    ],
)
def test_complete_bad_shape_is_malformed_response(monkeypatch, data):
    client = ready_client(monkeypatch, FakeResponse(json_data=data))
    with pytest.raises(MalformedResponseError):
        client.complete("hi", [])
