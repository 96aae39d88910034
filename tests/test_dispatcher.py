"""Tests for the HTTP gateway dispatcher and error message extraction."""
import httpx
import pytest

from channels.dispatcher import DispatchError, HttpDispatcher, extract_error_message
from config.settings import GatewayConfig


def make_dispatcher(handler, **config):
    return HttpDispatcher(GatewayConfig(**config), transport=httpx.MockTransport(handler))


class TestHttpDispatcher:
    @pytest.mark.asyncio
    async def test_success_returns_json_body(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = request.read()
            seen["header"] = request.headers.get("X-Trace")
            return httpx.Response(201, json={"id": "true_123@c.us_ABC"})

        dispatcher = make_dispatcher(handler)
        result = await dispatcher.dispatch(
            "post", "http://gw.test/api/sendText", {"X-Trace": "t1"},
            {"session": "S1", "chatId": "123@c.us", "text": "hi"}, 5.0,
        )
        await dispatcher.close()

        assert result == {"id": "true_123@c.us_ABC"}
        assert seen["method"] == "POST"
        assert seen["url"] == "http://gw.test/api/sendText"
        assert b'"chatId"' in seen["body"]
        assert seen["header"] == "t1"

    @pytest.mark.asyncio
    async def test_empty_and_text_bodies(self):
        responses = iter([httpx.Response(204), httpx.Response(200, text="OK")])
        dispatcher = make_dispatcher(lambda request: next(responses))
        assert await dispatcher.dispatch("POST", "http://gw.test/a", {}, None, 5.0) is None
        assert await dispatcher.dispatch("POST", "http://gw.test/a", {}, None, 5.0) == "OK"
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_error_response_carries_body(self):
        def handler(request):
            return httpx.Response(422, json={"message": "Session S1 is not started", "statusCode": 422})

        dispatcher = make_dispatcher(handler)
        with pytest.raises(DispatchError) as exc_info:
            await dispatcher.dispatch("POST", "http://gw.test/api/sendText", {}, {}, 5.0)
        await dispatcher.close()

        err = exc_info.value
        assert err.status_code == 422
        assert err.body["statusCode"] == 422
        assert extract_error_message(err) == "Session S1 is not started"

    @pytest.mark.asyncio
    async def test_transport_error_is_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = make_dispatcher(handler)
        with pytest.raises(DispatchError) as exc_info:
            await dispatcher.dispatch("POST", "http://gw.test/api/sendText", {}, {}, 5.0)
        await dispatcher.close()
        assert "connection refused" in str(exc_info.value)
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_timeout_is_wrapped(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        dispatcher = make_dispatcher(handler)
        with pytest.raises(DispatchError, match="timed out after 2.5s"):
            await dispatcher.dispatch("POST", "http://gw.test/api/sendText", {}, {}, 2.5)
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_relative_url_resolves_against_gateway_base(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(201, json={})

        dispatcher = make_dispatcher(handler, base_url="http://waha.internal:3000")
        await dispatcher.dispatch("POST", "/api/sendText", {}, {"chatId": "1"}, 5.0)
        await dispatcher.dispatch("POST", "http://other.test/api/sendText", {}, {"chatId": "1"}, 5.0)
        await dispatcher.close()

        assert seen == [
            "http://waha.internal:3000/api/sendText",
            "http://other.test/api/sendText",
        ]

    @pytest.mark.asyncio
    async def test_api_key_header_on_default_client(self):
        dispatcher = HttpDispatcher(GatewayConfig(api_key="secret", api_key_header="X-Api-Key"))
        client = await dispatcher._get_client()
        assert client.headers["X-Api-Key"] == "secret"
        assert await dispatcher._get_client() is client
        await dispatcher.close()
        assert client.is_closed


class TestExtractErrorMessage:
    def test_prefers_body_message(self):
        err = DispatchError("500", body={"message": "Chat not found"})
        assert extract_error_message(err) == "Chat not found"

    def test_falls_back_to_text(self):
        assert extract_error_message(DispatchError("Gateway responded 502", body="<html>")) == "Gateway responded 502"
        assert extract_error_message(ValueError("bad payload")) == "bad payload"

    def test_unknown(self):
        assert extract_error_message(RuntimeError()) == "Unknown error occurred"
