import asyncio
import httpx
import pytest
from storefront.common.retries import is_transient_gateway_error, retry_async


def status_error(status_code):
    request = httpx.Request("GET", "https://api.razorpay.test/v1/payments/pay_1")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(status_code, request=request))


def test_transient_classification():
    assert is_transient_gateway_error(httpx.ConnectError("refused"))
    assert is_transient_gateway_error(status_error(502))
    assert is_transient_gateway_error(status_error(429))
    assert not is_transient_gateway_error(status_error(400))
    assert not is_transient_gateway_error(ValueError("bad amount"))
    assert not is_transient_gateway_error(asyncio.CancelledError())


@pytest.mark.asyncio
async def test_retries_until_success():
    calls = []

    @retry_async(attempts=3, base_delay=0)
    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise httpx.ReadTimeout("slow")
        return "ok"

    assert await flaky() == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_answers_are_not_retried():
    calls = []

    @retry_async(attempts=3, base_delay=0)
    async def rejected():
        calls.append(1)
        raise status_error(400)

    with pytest.raises(httpx.HTTPStatusError):
        await rejected()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_last_error_surfaces_after_exhaustion():
    calls = []

    @retry_async(attempts=2, base_delay=0)
    async def down():
        calls.append(1)
        raise httpx.ConnectError("refused")

    with pytest.raises(httpx.ConnectError):
        await down()
    assert len(calls) == 2
