"""SerpApi client."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from rankwatch.errors import QuotaExhaustedError, SerpQueryError
from rankwatch.serp.credentials import ApiCredential
from rankwatch.utils.retry import retry_async

logger = logging.getLogger(__name__)

SERP_ENDPOINT = "https://serpapi.com/search.json"
DEFAULT_GL = os.environ.get("SERP_DEFAULT_GL", "id")
DEFAULT_HL = os.environ.get("SERP_DEFAULT_HL", "id")
RESULTS_NUM = int(os.environ.get("SERP_RESULTS_NUM", 10))
TIMEOUT_SECONDS = float(os.environ.get("SERP_TIMEOUT_SECONDS", 20))

_QUOTA_MARKERS = ("run out of searches", "searches per month", "limit", "quota")


@dataclass(slots=True)
class Locale:
    gl: str = DEFAULT_GL
    hl: str = DEFAULT_HL


@dataclass(slots=True)
class SerpResult:
    rank: int
    title: str
    link: str
    snippet: str = ""


def _is_quota_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _QUOTA_MARKERS)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"


def parse_organic_results(data: dict[str, Any]) -> list[SerpResult]:
    results = []
    for index, item in enumerate(data.get("organic_results") or [], start=1):
        link = item.get("link") or ""
        if not link:
            continue
        results.append(
            SerpResult(
                rank=int(item.get("position") or index),
                title=item.get("title") or "",
                link=link,
                snippet=item.get("snippet") or "",
            )
        )
    return results


class SerpClient:
    def __init__(
        self,
        *,
        session: httpx.AsyncClient | None = None,
        timeout: float = TIMEOUT_SECONDS,
    ) -> None:
        self.session = session or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self.session.aclose()

    async def query(
        self,
        credential: ApiCredential,
        query_text: str,
        locale: Locale | None = None,
        *,
        num: int = RESULTS_NUM,
    ) -> list[SerpResult]:
        locale = locale or Locale()
        params = {
            "engine": "google",
            "q": query_text,
            "gl": locale.gl,
            "hl": locale.hl,
            "num": num,
            "api_key": credential.secret,
        }
        try:
            response = await retry_async(self.session.get)(SERP_ENDPOINT, params=params)
        except httpx.HTTPError as exc:
            raise SerpQueryError(f"SERP request failed: {exc.__class__.__name__}") from exc

        if response.status_code == 429:
            raise QuotaExhaustedError(_error_message(response), status_code=429)
        if response.status_code >= 400:
            message = _error_message(response)
            if response.status_code not in (401, 403) and _is_quota_message(message):
                raise QuotaExhaustedError(message, status_code=response.status_code)
            raise SerpQueryError(message, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise SerpQueryError("SERP response is not JSON", status_code=response.status_code) from exc
        if data.get("error"):
            message = str(data["error"])
            if _is_quota_message(message):
                raise QuotaExhaustedError(message, status_code=response.status_code)
            if "hasn't returned any results" in message.lower():
                return []
            raise SerpQueryError(message, status_code=response.status_code)

        results = parse_organic_results(data)
        logger.debug("SERP %r (%s/%s): %s results", query_text, locale.gl, locale.hl, len(results))
        return results
