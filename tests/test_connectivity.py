import httpx
import pytest

from offline_capture.config import get_settings
from offline_capture.connectivity import get_connection_status, is_online


@pytest.mark.asyncio
async def test_any_http_answer_counts_as_online(isolated_env):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(503)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await is_online(client=client) is True

    assert seen[0].method == "HEAD"
    assert str(seen[0].url) == get_settings().connectivity.probe_url


@pytest.mark.asyncio
async def test_transport_error_means_offline(isolated_env):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        status = await get_connection_status(client=client)

    assert status["online"] is False
    assert status["timestamp"]
