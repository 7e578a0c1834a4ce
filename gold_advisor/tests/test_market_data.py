from __future__ import annotations

import asyncio
import time

import httpx
import pytest

from gold_advisor.errors import FetchError
from gold_advisor.market_data import MarketDataClient, parse_tgju_payload
from gold_advisor.models import FEATURE_KEYS

TGJU_URL = "https://tgju.test/ajax.json"
TALASEA_URL = "https://talasea.test/api/market/getGoldPrice"


def _make_client(handler) -> MarketDataClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MarketDataClient(TGJU_URL, TALASEA_URL, client=client)


def _ok_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "tgju.test":
        return httpx.Response(
            200,
            json={
                "current": {
                    "ons": {"p": "2,650.10", "ts": "2025-10-09 12:00:00"},
                    "price_dollar_rl": {"p": "1,050,000", "ts": "2025-10-09 12:01:00"},
                    "usdt-irr": "malformed",
                }
            },
        )
    return httpx.Response(200, json={"price": "7,150"})


def test_fetch_quote_combines_both_providers() -> None:
    async def _run():
        client = _make_client(_ok_handler)
        try:
            return await client.fetch_quote(timeout_ms=5_000)
        finally:
            await client.aclose()

    quote = asyncio.run(_run())
    assert quote.price == "7,150"
    assert set(quote.indicators) == set(FEATURE_KEYS)
    assert quote.indicators["ons"].value == "2,650.10"
    assert quote.indicators["ons"].timestamp == "2025-10-09 12:00:00"
    assert quote.indicators["usdt-irr"].value is None
    assert quote.indicators["silver"].value is None


def test_sends_provider_headers() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen[request.url.host] = request.headers
        return _ok_handler(request)

    async def _run():
        client = _make_client(handler)
        try:
            await client.fetch_quote(timeout_ms=5_000)
        finally:
            await client.aclose()

    asyncio.run(_run())
    assert seen["talasea.test"]["origin"] == "https://talasea.ir"
    assert seen["tgju.test"]["referer"] == "https://www.tgju.org/"


def test_http_error_becomes_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "talasea.test":
            return httpx.Response(503)
        return _ok_handler(request)

    async def _run():
        client = _make_client(handler)
        try:
            await client.fetch_quote(timeout_ms=5_000)
        finally:
            await client.aclose()

    with pytest.raises(FetchError, match="HTTP 503"):
        asyncio.run(_run())


def test_timeout_becomes_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async def _run():
        client = _make_client(handler)
        try:
            await client.fetch_quote(timeout_ms=3_000)
        finally:
            await client.aclose()

    with pytest.raises(FetchError, match="timed out"):
        asyncio.run(_run())


def test_trickling_body_is_bounded_by_the_request_timeout() -> None:
    body = b'{"price":"7,150"}'

    async def _trickle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await reader.readuntil(b"\r\n\r\n")
        writer.write(
            b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
            b"Content-Length: %d\r\nConnection: close\r\n\r\n" % len(body)
        )
        try:
            for i in range(len(body)):
                writer.write(body[i:i + 1])
                await writer.drain()
                await asyncio.sleep(0.1)
        except ConnectionError:
            pass
        finally:
            writer.close()

    async def _run():
        server = await asyncio.start_server(_trickle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        base = f"http://127.0.0.1:{port}"
        client = MarketDataClient(
            f"{base}/tgju", f"{base}/talasea", client=httpx.AsyncClient(trust_env=False)
        )
        started = time.monotonic()
        try:
            with pytest.raises(FetchError, match="timed out"):
                await client.fetch_quote(timeout_ms=400)
            return time.monotonic() - started
        finally:
            await client.aclose()
            server.close()

    elapsed = asyncio.run(_run())
    assert elapsed < 1.0


def test_invalid_json_becomes_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>blocked</html>")

    async def _run():
        client = _make_client(handler)
        try:
            await client.fetch_quote(timeout_ms=3_000)
        finally:
            await client.aclose()

    with pytest.raises(FetchError, match="invalid JSON"):
        asyncio.run(_run())


def test_parse_tgju_payload_tolerates_garbage() -> None:
    out = parse_tgju_payload(["not", "a", "mapping"])
    assert all(ind.value is None for ind in out.values())
    assert len(out) == len(FEATURE_KEYS)
