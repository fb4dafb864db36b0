"""Unit tests for HttpProviderTransport using httpx.MockTransport."""

import json

import httpx
import pytest

from weaver.infrastructure.tools.http_transport import HttpProviderTransport


def make_transport(handler):
    client = httpx.AsyncClient(base_url="http://provider", transport=httpx.MockTransport(handler))
    return HttpProviderTransport("http://provider", client=client), client


@pytest.mark.asyncio
async def test_send_posts_operation_with_idempotency_key():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["key"] = request.headers.get("Idempotency-Key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "ok", "result": {"installed": True}})

    transport, client = make_transport(handler)

    reply = await transport.send("install_dependency", {"name": "lib"}, idempotency_key="plan-1:install")

    assert reply == {"status": "ok", "result": {"installed": True}}
    assert seen == {
        "path": "/invoke",
        "key": "plan-1:install",
        "body": {"operation": "install_dependency", "parameters": {"name": "lib"}},
    }
    await client.aclose()


@pytest.mark.asyncio
async def test_error_reply_is_passed_through():
    transport, client = make_transport(
        lambda request: httpx.Response(
            409, json={"status": "error", "kind": "Rejected", "message": "license"}
        )
    )

    reply = await transport.send("install_dependency", {})

    assert reply["kind"] == "Rejected"
    assert reply["message"] == "license"
    await client.aclose()


@pytest.mark.asyncio
async def test_unexpected_body_becomes_rejection():
    transport, client = make_transport(lambda request: httpx.Response(404, text="not here"))

    reply = await transport.send("facts", {})

    assert reply["status"] == "error"
    assert reply["kind"] == "Rejected"
    assert "404" in reply["message"]
    await client.aclose()


@pytest.mark.asyncio
async def test_server_error_is_connection_error():
    transport, client = make_transport(lambda request: httpx.Response(503))

    with pytest.raises(ConnectionError):
        await transport.send("facts", {})
    await client.aclose()


@pytest.mark.asyncio
async def test_timeout_is_translated():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    transport, client = make_transport(handler)

    with pytest.raises(TimeoutError):
        await transport.send("facts", {})
    await client.aclose()


@pytest.mark.asyncio
async def test_connect_error_is_translated():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    transport, client = make_transport(handler)

    with pytest.raises(ConnectionError):
        await transport.send("facts", {})
    await client.aclose()


@pytest.mark.asyncio
async def test_ping_checks_health_endpoint():
    def handler(request):
        return httpx.Response(200 if request.url.path == "/health" else 404)

    transport, client = make_transport(handler)

    assert await transport.ping() is True
    await client.aclose()


@pytest.mark.asyncio
async def test_injected_client_is_not_closed():
    transport, client = make_transport(lambda request: httpx.Response(200))

    await transport.close()

    assert not client.is_closed
    await client.aclose()
