"""HTTP market data source: retail gold quote plus TGJU auxiliary indicators."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from gold_advisor.config import DEFAULT_TALASEA_URL, DEFAULT_TGJU_URL
from gold_advisor.errors import FetchError
from gold_advisor.models import FEATURE_KEYS
from gold_advisor.normalizer import RawIndicator, RawQuote

LOGGER = logging.getLogger(__name__)

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/144.0.0.0 Safari/537.36"
)

TALASEA_HEADERS: Dict[str, str] = {
    "accept": "application/json, text/plain, */*",
    "accept-language": "en-US,en;q=0.9",
    "origin": "https://talasea.ir",
    "platform": "webClient",
    "referer": "https://talasea.ir/",
    "user-agent": _USER_AGENT,
}

TGJU_HEADERS: Dict[str, str] = {
    "accept": "*/*",
    "accept-language": "en-US,en;q=0.9",
    "cache-control": "no-cache",
    "origin": "https://www.tgju.org",
    "pragma": "no-cache",
    "referer": "https://www.tgju.org/",
    "user-agent": _USER_AGENT,
}


class MarketDataSource(Protocol):
    async def fetch_quote(self, timeout_ms: int) -> RawQuote: ...

    async def aclose(self) -> None: ...


def parse_tgju_payload(payload: Any) -> Dict[str, RawIndicator]:
    """Pull ``current[key].p`` / ``current[key].ts`` for every tracked key.

    Missing or malformed entries come back as empty indicators.
    """
    current = payload.get("current") if isinstance(payload, Mapping) else None
    if not isinstance(current, Mapping):
        current = {}
    out: Dict[str, RawIndicator] = {}
    for key in FEATURE_KEYS:
        entry = current.get(key)
        if isinstance(entry, Mapping):
            out[key] = RawIndicator(value=entry.get("p"), timestamp=entry.get("ts"))
        else:
            out[key] = RawIndicator(value=None)
    return out


def parse_talasea_payload(payload: Any) -> Any:
    if isinstance(payload, Mapping):
        return payload.get("price")
    return None


class MarketDataClient:
    """Fetches both providers concurrently over one ``httpx.AsyncClient``.

    Parameters
    ----------
    tgju_url / talasea_url:
        Provider endpoints.
    client:
        Optional pre-built client (tests pass one with a mock transport).
    """

    def __init__(
        self,
        tgju_url: str = DEFAULT_TGJU_URL,
        talasea_url: str = DEFAULT_TALASEA_URL,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._tgju_url = tgju_url
        self._talasea_url = talasea_url
        self._client = client or httpx.AsyncClient(follow_redirects=True)

    async def _request(self, url: str, headers: Mapping[str, str], timeout_s: float) -> Any:
        response = await self._client.get(url, headers=dict(headers), timeout=timeout_s)
        response.raise_for_status()
        return response.json()

    async def _get_json(self, url: str, headers: Mapping[str, str], timeout_s: float) -> Any:
        # httpx timeouts are per operation; wait_for bounds the whole request.
        try:
            return await asyncio.wait_for(self._request(url, headers, timeout_s), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise FetchError(f"{url} timed out after {timeout_s:.1f}s") from exc
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                f"{url} -> HTTP {exc.response.status_code} {exc.response.reason_phrase}"
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"{url} request failed: {exc}") from exc
        except ValueError as exc:
            raise FetchError(f"{url} returned invalid JSON") from exc

    async def fetch_quote(self, timeout_ms: int) -> RawQuote:
        timeout_s = max(0.001, timeout_ms / 1000.0)
        tgju_raw, talasea_raw = await asyncio.gather(
            self._get_json(self._tgju_url, TGJU_HEADERS, timeout_s),
            self._get_json(self._talasea_url, TALASEA_HEADERS, timeout_s),
        )
        return RawQuote(
            price=parse_talasea_payload(talasea_raw),
            indicators=parse_tgju_payload(tgju_raw),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
