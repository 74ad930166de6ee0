"""Price service client tests."""

from __future__ import annotations

import json
from datetime import date

import httpx
import pytest

from portfolio_replay.models import AssetClass
from portfolio_replay.providers import CachingPriceOracle
from portfolio_replay.providers.price_oracle import PriceQuote, PriceRequest
from portfolio_replay.providers.price_service import PriceServiceClient, PriceServiceError


def build_requests():
    return [
        PriceRequest(instrument="AAPL", asset_class=AssetClass.EQUITY, as_of_date=date(2024, 1, 31)),
        PriceRequest(instrument="BTC", asset_class=AssetClass.CRYPTO, as_of_date=date(2024, 1, 31)),
    ]


def make_client(handler, settings) -> PriceServiceClient:
    transport = httpx.MockTransport(handler)
    return PriceServiceClient(
        "http://prices.test/",
        token="secret",
        client=httpx.AsyncClient(transport=transport),
        settings=settings,
    )


@pytest.mark.asyncio
async def test_batch_request_and_quotes(settings):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"prices": {"AAPL": {"price": 184.4, "found": True}, "BTC": {"price": None, "found": False}}},
        )

    client = make_client(handler, settings)
    quotes = await client.resolve_closing_prices(build_requests())

    assert quotes == {"AAPL": PriceQuote.of(184.4), "BTC": PriceQuote.missing()}
    request = seen[0]
    assert str(request.url) == "http://prices.test/prices/close"
    assert request.headers["Authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body["requests"][1] == {"instrument": "BTC", "asset_class": "crypto", "as_of_date": "2024-01-31"}


@pytest.mark.asyncio
async def test_instrument_absent_from_payload_is_missing(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"prices": {"AAPL": {"price": "101.5"}}})

    quotes = await make_client(handler, settings).resolve_closing_prices(build_requests())

    assert quotes["AAPL"] == PriceQuote.of(101.5)
    assert quotes["BTC"] == PriceQuote.missing()


@pytest.mark.asyncio
async def test_error_status_raises(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "maintenance"})

    with pytest.raises(PriceServiceError, match="maintenance"):
        await make_client(handler, settings).resolve_closing_prices(build_requests())


@pytest.mark.asyncio
async def test_network_error_raises(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(PriceServiceError):
        await make_client(handler, settings).resolve_closing_prices(build_requests())


@pytest.mark.asyncio
async def test_payload_without_prices_raises(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": []})

    with pytest.raises(PriceServiceError):
        await make_client(handler, settings).resolve_closing_prices(build_requests())


@pytest.mark.asyncio
async def test_empty_batch_skips_the_network(settings):
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be called
        raise AssertionError("unexpected request")

    assert await make_client(handler, settings).resolve_closing_prices([]) == {}


@pytest.mark.asyncio
async def test_caching_oracle_fetches_each_close_once(settings):
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(len(body["requests"]))
        return httpx.Response(
            200, json={"prices": {item["instrument"]: {"price": 10.0, "found": True} for item in body["requests"]}}
        )

    oracle = CachingPriceOracle(make_client(handler, settings))
    requests = build_requests()
    await oracle.resolve_closing_prices(requests[:1])
    quotes = await oracle.resolve_closing_prices(requests)

    assert calls == [1, 1]
    assert quotes["BTC"] == PriceQuote.of(10.0)
