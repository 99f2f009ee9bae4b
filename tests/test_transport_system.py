"""
chatrelay - Transport Tests

Tests for the HTTP stream transport and SSE framing, using
httpx.MockTransport in place of a real upstream:
- SSE event assembly, comments and [DONE]
- HTTP error statuses classified before streaming
- Concatenated JSON objects in one event
- Malformed deltas skipped without ending the stream
- Connection release
"""

import json

import httpx
import pytest

from chatrelay.adapters import AnthropicDecoder, HttpStreamTransport, OpenAIDecoder
from chatrelay.adapters.sse import SSEEventParser, parse_event_data, split_json_objects
from chatrelay.core.errors import (
    AuthError,
    ProtocolError,
    QuotaError,
    TransportError,
    UpstreamError,
)
from chatrelay.core.models import ApiKeyCredentials, OAuthCredentials


ENDPOINT = "https://api.example.com/v1/chat/completions"
BODY = {"model": "gpt-4o", "messages": [], "stream": True}


def sse(*payloads):
    """Encode payloads as an SSE body."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


def chunk(content):
    return {"choices": [{"index": 0, "delta": {"content": content}}]}


def make_transport(handler, metrics, decoder=OpenAIDecoder, provider="openai"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpStreamTransport(decoder, provider=provider, client=client, metrics=metrics)


async def collect(source):
    async with source:
        return [delta async for delta in source]


# ============================================================
# SSE Framing
# ============================================================

class TestSSEEventParser:
    """Test line-level SSE parsing."""

    def test_single_event(self):
        parser = SSEEventParser()

        assert parser.feed_line('data: {"a": 1}') is None
        assert parser.feed_line("") == '{"a": 1}'

    def test_multiline_data_joined(self):
        parser = SSEEventParser()
        parser.feed_line("data: first")
        parser.feed_line("data: second")

        assert parser.feed_line("") == "first\nsecond"

    def test_comments_and_other_fields_ignored(self):
        parser = SSEEventParser()
        parser.feed_line(": keep-alive")
        parser.feed_line("event: message_start")
        parser.feed_line("data:no-space")

        assert parser.feed_line("\r") == "no-space"

    def test_blank_line_without_data(self):
        assert SSEEventParser().feed_line("") is None

    def test_flush_trailing_event(self):
        parser = SSEEventParser()
        parser.feed_line("data: tail")

        assert parser.flush() == "tail"
        assert parser.flush() is None


class TestJsonSplitting:
    """Test splitting of back-to-back JSON objects."""

    def test_two_objects(self):
        assert split_json_objects('{"a": 1}{"b": 2}') == ['{"a": 1}', '{"b": 2}']

    def test_braces_inside_strings(self):
        data = '{"text": "a } b { c"}{"n": {"m": 1}}'

        assert split_json_objects(data) == ['{"text": "a } b { c"}', '{"n": {"m": 1}}']

    def test_escaped_quote_inside_string(self):
        data = '{"q": "say \\"}\\""}{"z": 0}'

        assert len(split_json_objects(data)) == 2

    def test_parse_event_data_concatenated(self):
        assert parse_event_data('{"a": 1}{"b": 2}', "openai") == [{"a": 1}, {"b": 2}]

    def test_parse_event_data_invalid(self):
        with pytest.raises(ProtocolError):
            parse_event_data("{not json", "openai")


# ============================================================
# HTTP Stream Transport
# ============================================================

class TestHttpStreamTransport:
    """Test opening and reading streams over HTTP."""

    @pytest.mark.asyncio
    async def test_streams_deltas(self, metrics):
        def handler(request):
            body = sse(chunk("Hel"), chunk("lo"), "[DONE]")
            body = body.replace(b"data: [DONE]", b": ping\n\ndata: [DONE]")
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        transport = make_transport(handler, metrics)
        source = await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY, account_id="a")
        deltas = await collect(source)

        assert [d.content for d in deltas] == ["Hel", "lo"]
        assert source.closed is True

    @pytest.mark.asyncio
    async def test_request_shape(self, metrics):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["accept"] = request.headers["accept"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=sse(chunk("ok")))

        transport = make_transport(handler, metrics)
        credentials = OAuthCredentials("tok-1", endpoint="https://alt.example.com/stream")
        await collect(await transport.open_stream(ENDPOINT, credentials, BODY))

        assert seen["url"] == "https://alt.example.com/stream"
        assert seen["auth"] == "Bearer tok-1"
        assert seen["accept"] == "text/event-stream"
        assert seen["body"]["stream"] is True

    @pytest.mark.asyncio
    async def test_custom_headers_sent(self, metrics):
        seen = {}

        def handler(request):
            seen["tenant"] = request.headers.get("x-tenant")
            return httpx.Response(200, content=sse(chunk("ok")))

        transport = make_transport(handler, metrics)
        credentials = ApiKeyCredentials("sk-a", custom_headers=(("X-Tenant", "acme"),))
        await collect(await transport.open_stream(ENDPOINT, credentials, BODY))

        assert seen["tenant"] == "acme"

    @pytest.mark.asyncio
    async def test_concatenated_json_in_one_event(self, metrics):
        def handler(request):
            data = json.dumps(chunk("a")) + json.dumps(chunk("b"))
            return httpx.Response(200, content=sse(data))

        transport = make_transport(handler, metrics)
        deltas = await collect(await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY))

        assert [d.content for d in deltas] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_malformed_delta_skipped(self, metrics):
        def handler(request):
            return httpx.Response(200, content=sse(chunk("before"), "{broken", chunk("after")))

        transport = make_transport(handler, metrics)
        deltas = await collect(await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY))

        assert [d.content for d in deltas] == ["before", "after"]
        assert metrics.registry.get_sample_value(
            "chatrelay_protocol_errors_total", {"provider": "openai"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_trailing_event_without_blank_line(self, metrics):
        def handler(request):
            return httpx.Response(200, content=b'data: {"choices": [{"delta": {"content": "end"}}]}')

        transport = make_transport(handler, metrics)
        deltas = await collect(await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY))

        assert [d.content for d in deltas] == ["end"]

    @pytest.mark.asyncio
    async def test_anthropic_event_stream(self, metrics):
        def handler(request):
            body = (
                b"event: message_start\n"
                b'data: {"type": "message_start", "message": {"usage": {"input_tokens": 4}}}\n\n'
                b"event: content_block_delta\n"
                b'data: {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Yo"}}\n\n'
                b"event: message_delta\n"
                b'data: {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 2}}\n\n'
                b"event: message_stop\n"
                b'data: {"type": "message_stop"}\n\n'
            )
            return httpx.Response(200, content=body)

        transport = make_transport(handler, metrics, decoder=AnthropicDecoder, provider="anthropic")
        deltas = await collect(await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY))

        assert deltas[0].content == "Yo"
        assert deltas[1].finish_reason == "stop"
        assert deltas[1].usage.total_tokens == 6

    @pytest.mark.asyncio
    async def test_in_stream_error_raises_classified(self, metrics):
        def handler(request):
            return httpx.Response(200, content=sse(
                chunk("partial"),
                {"error": {"message": "You exceeded your current quota", "code": "insufficient_quota"}},
            ))

        transport = make_transport(handler, metrics)
        source = await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY)

        async with source:
            assert (await source.read()).content == "partial"
            with pytest.raises(QuotaError) as exc_info:
                await source.read()

        assert exc_info.value.long_term is True


class TestHttpErrorClassification:
    """Test HTTP status classification before streaming."""

    @pytest.mark.asyncio
    async def test_429_with_retry_after(self, metrics):
        def handler(request):
            return httpx.Response(
                429,
                json={"error": {"message": "Rate limit reached", "type": "rate_limit_error"}},
                headers={"retry-after": "30"},
            )

        transport = make_transport(handler, metrics)
        with pytest.raises(QuotaError) as exc_info:
            await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY, account_id="a")

        error = exc_info.value
        assert error.error.retry_after == 30.0
        assert error.error.http_status == 429
        assert error.error.account_id == "a"
        assert error.long_term is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_statuses(self, metrics, status):
        def handler(request):
            return httpx.Response(status, json={"error": {"message": "denied"}})

        transport = make_transport(handler, metrics)
        with pytest.raises(AuthError):
            await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY)

    @pytest.mark.asyncio
    async def test_server_error_is_upstream_error(self, metrics):
        def handler(request):
            return httpx.Response(500, text="internal error")

        transport = make_transport(handler, metrics)
        with pytest.raises(UpstreamError) as exc_info:
            await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY)

        assert exc_info.value.error.http_status == 500
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_quota_message_on_400(self, metrics):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "Quota exceeded for this project"}})

        transport = make_transport(handler, metrics)
        with pytest.raises(QuotaError):
            await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY)

    @pytest.mark.asyncio
    async def test_connect_error(self, metrics):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = make_transport(handler, metrics)
        with pytest.raises(TransportError) as exc_info:
            await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY)

        assert exc_info.value.timeout is False

    @pytest.mark.asyncio
    async def test_timeout(self, metrics):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        transport = make_transport(handler, metrics)
        with pytest.raises(TransportError) as exc_info:
            await transport.open_stream(ENDPOINT, ApiKeyCredentials("sk-a"), BODY)

        assert exc_info.value.timeout is True
        assert exc_info.value.error.code == "timeout"


class TestTransportLifecycle:
    """Test client ownership."""

    @pytest.mark.asyncio
    async def test_injected_client_left_open(self, metrics, settings):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        transport = HttpStreamTransport(OpenAIDecoder, provider="openai", settings=settings, client=client)

        await transport.close()

        assert client.is_closed is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self, settings):
        transport = HttpStreamTransport(OpenAIDecoder, provider="openai", settings=settings)

        await transport.close()

        assert transport.client.is_closed is True
