import contextlib
import json

import pytest
from aiohttp import test_utils, web

from core.utils.exceptions import SnapshotAuthError, SnapshotFetchError
from services.broker_sync.client import (
    MetaApiClient,
    order_number,
    pending_order_volume,
)
from services.broker_sync.models import OrderType, Side


@contextlib.asynccontextmanager
async def metaapi_backend(settings, routes):
    """Serve `routes` ({(method, path): handler}) and yield a client pointed at it."""
    app = web.Application()
    requests = []

    @web.middleware
    async def record(request, handler):
        body = await request.text()
        requests.append({
            "method": request.method,
            "path": request.path,
            "query": dict(request.query),
            "headers": request.headers.copy(),
            "json": json.loads(body) if body else None,
        })
        return await handler(request)

    app.middlewares.append(record)
    for (method, path), handler in routes.items():
        app.router.add_route(method, path, handler)

    server = test_utils.TestServer(app)
    await server.start_server()
    settings.metaapi.base_url = f"http://{server.host}:{server.port}"
    client = MetaApiClient(settings)
    client.requests = requests
    try:
        yield client
    finally:
        await client.close()
        await server.close()


def reply(status=200, body=None):
    async def handler(request):
        return web.json_response(body, status=status)
    return handler


def test_order_number_strips_generated_prefix():
    assert order_number("Generated-123") == 123
    assert order_number("456") == 456
    assert order_number("abc") is None
    assert order_number("0") is None


def test_pending_volume_units():
    assert pending_order_volume("EURUSD", 0.25) == 25
    assert pending_order_volume("US30", 0.1234) == 0.123


@pytest.mark.asyncio
async def test_snapshot_accepts_bare_list_and_wrapped_list(test_settings):
    routes = {
        ("GET", "/api/client/Positions"): reply(body=[{"PositionId": 1}]),
        ("GET", "/api/client/Orders"): reply(body={"data": {"orders": [{"OrderId": 2}]}}),
    }
    async with metaapi_backend(test_settings, routes) as client:
        assert await client.get_positions("1001", "tok") == [{"PositionId": 1}]
        assert await client.get_pending_orders("1001", "tok") == [{"OrderId": 2}]

        headers = client.requests[0]["headers"]
        assert headers["Authorization"] == "Bearer tok"
        assert headers["AccountId"] == "1001"


@pytest.mark.asyncio
async def test_snapshot_unauthorized(test_settings):
    routes = {("GET", "/api/client/Positions"): reply(401, {"message": "expired"})}
    async with metaapi_backend(test_settings, routes) as client:
        with pytest.raises(SnapshotAuthError) as exc_info:
            await client.get_positions("1001", "tok")
    assert exc_info.value.status == 401


@pytest.mark.asyncio
async def test_snapshot_server_error(test_settings):
    routes = {("GET", "/api/client/Orders"): reply(503, {"message": "down"})}
    async with metaapi_backend(test_settings, routes) as client:
        with pytest.raises(SnapshotFetchError) as exc_info:
            await client.get_pending_orders("1001", "tok")
    assert exc_info.value.status == 503
    assert not isinstance(exc_info.value, SnapshotAuthError)


@pytest.mark.asyncio
async def test_market_order_payload(test_settings):
    routes = {("POST", "/api/client/trade-sell"): reply(body={"OrderId": 77})}
    async with metaapi_backend(test_settings, routes) as client:
        result = await client.place_market_order("1001", "tok", "EURUSD", Side.SELL, 0.25, take_profit=1.05)

        sent = client.requests[0]
        assert sent["query"] == {"account_id": "1001"}
        assert sent["json"] == {"Symbol": "EURUSD", "Volume": 25, "Price": 0, "StopLoss": 0.0,
                                "TakeProfit": 1.05, "Comment": "Sell"}
    assert result.success
    assert result.data == {"OrderId": 77}


@pytest.mark.asyncio
async def test_request_placed_return_code_counts_as_success(test_settings):
    routes = {("POST", "/api/client/buy-limit"): reply(400, {"returnCode": 10012})}
    async with metaapi_backend(test_settings, routes) as client:
        result = await client.place_pending_order("1001", "tok", "EURUSD", Side.BUY, OrderType.LIMIT, 1, 1.09)

        assert client.requests[0]["json"]["Expiration"] == "0001-01-01T00:00:00"
        assert client.requests[0]["json"]["Volume"] == 100
    assert result.success


@pytest.mark.asyncio
async def test_rejected_mutation_reports_status_and_body(test_settings):
    routes = {("POST", "/api/client/position/modify"): reply(422, {"message": "invalid stops"})}
    async with metaapi_backend(test_settings, routes) as client:
        result = await client.modify_position("1001", "tok", "100", stop_loss=None, take_profit=1.2)

        assert client.requests[0]["json"] == {"PositionId": 100, "StopLoss": 0.0, "TakeProfit": 1.2,
                                              "Comment": "Modified TP/SL"}
    assert not result.success
    assert result.status == 422
    assert result.message.startswith("Failed to modify position: 422")


@pytest.mark.asyncio
async def test_unsupported_order_modify_is_soft_success(test_settings):
    routes = {("PUT", "/api/client/order/200"): reply(404, {"message": "no route"})}
    async with metaapi_backend(test_settings, routes) as client:
        result = await client.modify_pending_order("1001", "tok", "Generated-200", price=1.24)
    assert result.success
    assert "not supported" in result.message


@pytest.mark.asyncio
async def test_close_falls_back_to_post(test_settings):
    routes = {
        ("DELETE", "/api/client/position/100"): reply(405, {"message": "nope"}),
        ("POST", "/api/client/position/close"): reply(body={"ok": True}),
    }
    async with metaapi_backend(test_settings, routes) as client:
        result = await client.close_position("1001", "tok", "100")

        assert [r["method"] for r in client.requests] == ["DELETE", "POST"]
        assert client.requests[1]["json"] == {"positionId": 100, "comment": "Closed"}
    assert result.success


@pytest.mark.asyncio
async def test_invalid_ids_fail_without_a_request(test_settings):
    async with metaapi_backend(test_settings, {}) as client:
        result = await client.cancel_order("1001", "tok", "100_TP")
        assert not result.success
        assert client.requests == []


@pytest.mark.asyncio
async def test_login(test_settings):
    routes = {("POST", "/api/client/ClientAuth/login"): reply(body={"Token": "fresh"})}
    async with metaapi_backend(test_settings, routes) as client:
        assert await client.login("1001", "pw", "dev", "web") == "fresh"
        assert client.requests[0]["json"] == {"AccountId": 1001, "Password": "pw",
                                              "DeviceId": "dev", "DeviceType": "web"}


@pytest.mark.asyncio
async def test_login_rejected(test_settings):
    routes = {("POST", "/api/client/ClientAuth/login"): reply(403, {"message": "bad password"})}
    async with metaapi_backend(test_settings, routes) as client:
        assert await client.login("1001", "pw", "dev", "web") is None
